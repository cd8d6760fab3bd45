"""Startup-time helpers for safe config logging."""

from payrelay.common.config import CommonSettings, settings
from payrelay.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "credential", "passkey")


def redact_value(name: str, value: object) -> object:
    """Hide secret-like settings and credentials embedded in connection URLs."""

    if value in (None, ""):
        return "<unset>"
    if any(marker in name.lower() for marker in SECRET_MARKERS):
        return "<redacted>"
    if name.endswith("_url") and isinstance(value, str) and "@" in value:
        scheme, _, rest = value.partition("://")
        return f"{scheme}://<redacted>@{rest.rsplit('@', 1)[1]}"
    return value


def log_startup_config(process: str, fields: list[str], config: CommonSettings = settings) -> dict[str, object]:
    """Log the effective values of `fields` (defaults included) for one process."""

    values = config.model_dump()
    snapshot: dict[str, object] = {"process": process}
    for field in fields:
        snapshot[field] = redact_value(field, values.get(field))
    logger.info("startup_config=%s", snapshot)
    return snapshot
