"""Custom exceptions for the admission controller."""


class AdmissionError(Exception):
    """Base class for admission exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Admission error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(AdmissionError):
    """Raised when the caller asks for something the limiter cannot do.

    Fatal to the single request and never retried.
    Maps to HTTP 400 Bad Request.
    """
    status_code = 400


class InvalidVariantError(ConfigurationError):
    """Raised when an unknown rate limiting algorithm is requested."""

    def __init__(self, variant: object):
        self.variant = variant
        super().__init__(f"Unknown rate limit algorithm: {variant!r}")


class RateLimitExceededError(AdmissionError):
    """Raised by the HTTP layer when a request is denied.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, limit: int, reset_at_ms: int, retry_after: int | None = None):
        self.limit = limit
        self.reset_at_ms = reset_at_ms
        self.retry_after = retry_after
        super().__init__("Too many requests")


class StoreUnavailableError(AdmissionError):
    """Raised when the shared state store is unreachable or times out.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, operation: str, reason: str = ""):
        self.operation = operation
        self.reason = reason
        message = f"State store unavailable during {operation}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class StoreContentionError(AdmissionError):
    """Raised when a compare-and-set loop gives up under heavy contention.

    Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, key: str, attempts: int):
        self.key = key
        self.attempts = attempts
        super().__init__(f"Gave up updating {key} after {attempts} conflicting writes")


class StateCorruptionError(AdmissionError):
    """Raised when a stored value cannot be decoded into the expected state.

    Never reaches the caller: the engine logs it and treats the state as absent.
    """

    def __init__(self, kind: str, raw: object, reason: str = ""):
        self.kind = kind
        self.raw = raw
        self.reason = reason
        message = f"Cannot decode {kind} state from {raw!r}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)
