"""Error taxonomy shared by the retry queue, webhooks and provider client."""


class PayRelayError(Exception):
    """Base class for errors surfaced through the API envelope."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class TransientDeliveryError(PayRelayError):
    """Network error, timeout or non-2xx response; eligible for retry."""

    code = "DELIVERY_FAILED"
    status_code = 502

    def __init__(self, message: str, job_id: int | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.job_id = job_id
        self.upstream_status = status_code


class PermanentRejectionError(PayRelayError):
    """Explicit business rejection; recorded but never queued."""

    code = "REJECTED"
    status_code = 422


class VerificationError(PayRelayError):
    """Webhook origin could not be verified or the caller was rate limited."""

    code = "UNVERIFIED"
    status_code = 403


class StorageError(PayRelayError):
    """Any job-store or persistence failure."""

    code = "STORAGE_ERROR"
    status_code = 503


class NotFoundError(PayRelayError):
    code = "NOT_FOUND"
    status_code = 404


class CallbackParseError(PayRelayError):
    """Callback body does not match the schema of its callback type."""

    code = "INVALID_CALLBACK"
    status_code = 400


class ProviderConfigurationError(PayRelayError):
    code = "PROVIDER_NOT_CONFIGURED"
    status_code = 500
