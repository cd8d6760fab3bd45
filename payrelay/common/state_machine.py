"""Status transitions for retry jobs and payment transactions."""

JOB_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing"},
    "processing": {"completed", "pending", "dead_letter", "failed"},
    "completed": set(),
    "failed": set(),
    "dead_letter": set(),
}

TRANSACTION_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"completed", "failed", "cancelled"},
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}


def validate_job_transition(current: str, new: str) -> None:
    """Raise when a retry job transition is not allowed."""

    if new not in JOB_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid job transition: {current} -> {new}")


def validate_transaction_transition(current: str, new: str) -> None:
    """Raise when a transaction transition is not allowed."""

    if new not in TRANSACTION_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transaction transition: {current} -> {new}")
