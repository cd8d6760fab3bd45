"""Requeue one dead-letter item through the gateway API.

Requeue creates a fresh retry job with the original request and a zeroed
retry counter, then removes the archived item.
"""

import argparse

import httpx


def find_item(
    client: httpx.Client,
    dead_letter_id: int | None,
    original_job_id: int | None,
    correlation_id: str | None,
    page_size: int = 50,
) -> dict | None:
    """Page through the archive until an item matches every given filter."""

    offset = 0
    while True:
        resp = client.get("/api/dead-letter", params={"limit": page_size, "offset": offset})
        resp.raise_for_status()
        items = resp.json()["data"]["items"]
        for item in items:
            if dead_letter_id is not None and item["id"] != dead_letter_id:
                continue
            if original_job_id is not None and item["original_job_id"] != original_job_id:
                continue
            if correlation_id is not None and item.get("correlation_id") != correlation_id:
                continue
            return item
        if len(items) < page_size:
            return None
        offset += page_size


def replay_once(
    base_url: str,
    dead_letter_id: int | None,
    original_job_id: int | None,
    correlation_id: str | None,
    dry_run: bool,
    timeout_seconds: float,
    transport: httpx.BaseTransport | None = None,
) -> int:
    """Find one matching item and requeue it (or dry-run)."""

    if dead_letter_id is None and original_job_id is None and not correlation_id:
        raise ValueError("Provide --id, --original-job-id or --correlation-id")

    with httpx.Client(base_url=base_url, timeout=timeout_seconds, transport=transport) as client:
        item = find_item(client, dead_letter_id, original_job_id, correlation_id)
        if item is None:
            print("No matching dead-letter item found.")
            return 1

        print(
            f"Matched dead_letter_id={item['id']} original_job_id={item['original_job_id']} "
            f"job_type={item['job_type']} final_error={item.get('final_error')!r}"
        )
        if dry_run:
            print("Dry run only; nothing requeued.")
            return 0

        resp = client.post(f"/api/dead-letter/{item['id']}/retry")
        if resp.status_code >= 400:
            print(f"Requeue failed: HTTP {resp.status_code} {resp.text}")
            return 2
        print(f"Requeued as job_id={resp.json()['data']['newJobId']}")
        return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Requeue one dead-letter item for another delivery attempt.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--id", type=int, default=None, help="dead-letter item id")
    parser.add_argument("--original-job-id", type=int, default=None)
    parser.add_argument("--correlation-id", default=None)
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--timeout-seconds", type=float, default=30)
    args = parser.parse_args()

    rc = replay_once(
        base_url=args.base_url,
        dead_letter_id=args.id,
        original_job_id=args.original_job_id,
        correlation_id=args.correlation_id,
        dry_run=args.dry_run,
        timeout_seconds=args.timeout_seconds,
    )
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
