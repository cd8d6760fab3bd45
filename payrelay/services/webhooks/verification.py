"""Webhook origin verification: IP allow-list, per-IP rate limit, audit row.

Every call to `WebhookVerifier.verify` produces exactly one
`CallbackVerificationLog` row, including rejected and rate-limited requests.
Audit writes never fail the request.
"""

import asyncio
import ipaddress
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

import redis
from fastapi import BackgroundTasks

from payrelay.common.errors import VerificationError
from payrelay.common.logging import logger
from payrelay.common.metrics import webhook_requests_total
from payrelay.services.webhooks.models import CallbackVerificationLog


MAPPED_IPV4_PREFIX = "::ffff:"


def extract_client_ip(headers: Mapping[str, str]) -> str:
    """First `x-forwarded-for` hop, else `x-real-ip`, else "unknown"."""

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return "unknown"


class IpAllowList:
    """Exact addresses, CIDR ranges and literal host names (e.g. `localhost`)."""

    def __init__(self, entries: list[str]) -> None:
        self.networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
        self.addresses: set[ipaddress.IPv4Address | ipaddress.IPv6Address] = set()
        self.literals: set[str] = set()
        for entry in entries:
            entry = entry.strip()
            if not entry:
                continue
            try:
                if "/" in entry:
                    self.networks.append(ipaddress.ip_network(entry, strict=False))
                else:
                    self.addresses.add(ipaddress.ip_address(entry))
            except ValueError:
                self.literals.add(entry)

    def allows(self, client_ip: str) -> bool:
        if client_ip in self.literals:
            return True
        cleaned = client_ip[len(MAPPED_IPV4_PREFIX):] if client_ip.startswith(MAPPED_IPV4_PREFIX) else client_ip
        try:
            address = ipaddress.ip_address(cleaned)
        except ValueError:
            return False
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        if address in self.addresses:
            return True
        if address == ipaddress.ip_address("::1") and ipaddress.ip_address("127.0.0.1") in self.addresses:
            return True
        return any(address.version == network.version and address in network for network in self.networks)


class InMemoryRateLimiter:
    """Fixed-window counter per key; expired windows are swept periodically."""

    def __init__(self, limit: int = 100, window_seconds: float = 60, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window[1]:
                self._windows[key] = [1, now + self.window_seconds]
                return True
            if window[0] >= self.limit:
                return False
            window[0] += 1
            return True

    def sweep(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if now > window[1]]
            for key in expired:
                del self._windows[key]
        return len(expired)

    async def run_sweeper(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug("rate_limit_windows_swept count=%s", removed)


class RedisRateLimiter:
    """Fixed-window counter shared across processes; keys expire with the window."""

    def __init__(self, client: redis.Redis, limit: int = 100, window_seconds: int = 60, prefix: str = "webhook-rate"):
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds
        self.prefix = prefix

    def allow(self, key: str) -> bool:
        redis_key = f"{self.prefix}:{key}"
        try:
            count = self.client.incr(redis_key)
            if count == 1:
                self.client.expire(redis_key, self.window_seconds)
        except redis.RedisError as exc:
            # Shared counters unavailable; accept rather than drop provider callbacks.
            logger.warning("rate_limit_backend_unavailable key=%s error=%s", key, exc)
            return True
        return count <= self.limit

    def sweep(self) -> int:
        return 0

    async def run_sweeper(self, interval_seconds: float) -> None:
        return None


@dataclass
class VerificationResult:
    valid: bool
    client_ip: str
    user_agent: str
    reason: str | None = None
    rate_limited: bool = False

    def raise_for_status(self) -> None:
        if not self.valid:
            raise VerificationError(self.reason or "Unverified", code="RATE_LIMITED" if self.rate_limited else None)


class WebhookVerifier:
    """Decides whether an inbound callback may mutate state."""

    def __init__(
        self,
        session_factory,
        allow_list: IpAllowList,
        rate_limiter: InMemoryRateLimiter | RedisRateLimiter,
        skip_ip_verification: bool = False,
        service_name: str = "payrelay",
    ) -> None:
        self.session_factory = session_factory
        self.allow_list = allow_list
        self.rate_limiter = rate_limiter
        self.skip_ip_verification = skip_ip_verification
        self.service_name = service_name

    def verify(
        self,
        headers: Mapping[str, str],
        callback_type: str,
        background_tasks: BackgroundTasks | None = None,
    ) -> VerificationResult:
        client_ip = extract_client_ip(headers)
        user_agent = headers.get("user-agent") or "unknown"
        logger.info(
            "webhook_verify callback_type=%s client_ip=%s user_agent=%s",
            callback_type,
            client_ip,
            user_agent,
        )

        if self.skip_ip_verification:
            logger.warning("webhook_ip_verification_skipped callback_type=%s", callback_type)
        elif not self.allow_list.allows(client_ip):
            logger.warning("webhook_ip_rejected callback_type=%s client_ip=%s", callback_type, client_ip)
            result = VerificationResult(False, client_ip, user_agent, reason="IP address not whitelisted")
            self._audit(callback_type, result, "IP not whitelisted", background_tasks)
            webhook_requests_total.labels(
                service=self.service_name, callback_type=callback_type, outcome="rejected"
            ).inc()
            return result

        if not self.rate_limiter.allow(client_ip):
            logger.warning("webhook_rate_limited callback_type=%s client_ip=%s", callback_type, client_ip)
            result = VerificationResult(False, client_ip, user_agent, reason="Rate limited", rate_limited=True)
            self._audit(callback_type, result, "Rate limited", background_tasks)
            webhook_requests_total.labels(
                service=self.service_name, callback_type=callback_type, outcome="rate_limited"
            ).inc()
            return result

        result = VerificationResult(True, client_ip, user_agent)
        self._audit(callback_type, result, None, background_tasks)
        webhook_requests_total.labels(service=self.service_name, callback_type=callback_type, outcome="verified").inc()
        return result

    def _audit(
        self,
        callback_type: str,
        result: VerificationResult,
        failure_reason: str | None,
        background_tasks: BackgroundTasks | None,
    ) -> None:
        args = (callback_type, result.client_ip, result.user_agent, result.valid, failure_reason)
        if background_tasks is not None:
            background_tasks.add_task(self.log_attempt, *args)
        else:
            self.log_attempt(*args)

    def log_attempt(
        self,
        callback_type: str,
        ip_address: str,
        user_agent: str,
        verified: bool,
        failure_reason: str | None = None,
    ) -> None:
        try:
            with self.session_factory() as db:
                db.add(
                    CallbackVerificationLog(
                        callback_type=callback_type,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        verified=verified,
                        failure_reason=failure_reason,
                        created_at=datetime.now(timezone.utc),
                    )
                )
                db.commit()
        except Exception as exc:
            logger.error("webhook_verification_log_failed callback_type=%s error=%s", callback_type, exc)
