"""Unit tests for retry-job and transaction status guardrails."""

import pytest

from payrelay.common.state_machine import validate_job_transition, validate_transaction_transition


def test_valid_job_transition():
    """A pending job may be claimed for processing."""

    validate_job_transition("pending", "processing")
    validate_job_transition("processing", "dead_letter")


def test_invalid_job_transition():
    """Completed jobs never leave their terminal state."""

    with pytest.raises(ValueError):
        validate_job_transition("completed", "pending")
    with pytest.raises(ValueError):
        validate_job_transition("pending", "completed")


def test_transaction_leaves_pending_once():
    """Terminal transactions reject any further transition."""

    validate_transaction_transition("pending", "cancelled")
    with pytest.raises(ValueError):
        validate_transaction_transition("completed", "failed")
