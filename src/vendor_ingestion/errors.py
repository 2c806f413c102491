class PipelineError(Exception):
    """Base class for every error a city job can record."""

    kind: str = "Pipeline"
    retryable: bool = False
    # Attempts spent by the stage that raised it, set when retries give up
    attempts: int = 0


# ----------------------------
# Fetch
# ----------------------------
class FetchError(PipelineError):
    kind = "Fetch"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(FetchError):
    kind = "RateLimited"
    retryable = True


class TransientFetchError(FetchError):
    kind = "Transient"
    retryable = True


class PermanentFetchError(FetchError):
    kind = "Permanent"


# ----------------------------
# Transform
# ----------------------------
class TransformError(PipelineError):
    kind = "Transform"


class MissingRequiredFieldError(TransformError):
    kind = "MissingRequiredField"

    def __init__(self, field_name: str, detail: str = "absent"):
        super().__init__(f"Required field '{field_name}' is {detail}")
        self.field_name = field_name


class MalformedValueError(TransformError):
    kind = "MalformedValue"


class SystemicTransformError(TransformError):
    """Too many records of a page were dropped; the whole city is failed."""

    kind = "SystemicTransform"

    def __init__(self, message: str, drop_reasons: dict[str, int] | None = None):
        super().__init__(message)
        self.drop_reasons = drop_reasons or {}


# ----------------------------
# Write
# ----------------------------
class WriteError(PipelineError):
    kind = "Write"


class WriteEncodingError(WriteError):
    kind = "Encoding"


class WriteIOError(WriteError):
    kind = "IO"


# ----------------------------
# Upload
# ----------------------------
class UploadError(PipelineError):
    kind = "Upload"


class TransientUploadError(UploadError):
    kind = "UploadTransient"
    retryable = True


class PermanentUploadError(UploadError):
    kind = "UploadPermanent"


class UnacknowledgedUploadError(UploadError):
    kind = "Unacknowledged"
    retryable = True


class RunCancelledError(PipelineError):
    kind = "Cancelled"


class ConfigError(ValueError):
    pass
