"""Exception taxonomy shared by the inference layer, the per-file pipeline and the batch."""


class RenamerError(Exception):
    """Base class for every error raised on purpose by photo-renamer."""


class ConfigError(RenamerError):
    """The configuration file is missing, unreadable or invalid."""


class BatchError(RenamerError):
    """The batch cannot start (e.g. the working directory does not exist)."""


class InferenceError(RenamerError):
    """Base class for failures of a call to the inference server."""


class CircuitOpenError(InferenceError):
    """The circuit breaker rejected the call; no request was sent."""


class PayloadTooLargeError(InferenceError):
    """The serialized request exceeds the configured payload ceiling."""

    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Payload of {size_bytes / (1024 * 1024):.2f} MB exceeds the "
            f"{limit_bytes / (1024 * 1024):.2f} MB limit",
        )


class FatalAPIError(InferenceError):
    """The server answered with a status code that retrying cannot fix (400, 401, 403)."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"Inference server rejected the request with HTTP {status_code}")


class RetriesExhaustedError(InferenceError):
    """Every attempt failed; ``last_error`` holds the final failure."""

    def __init__(self, attempts: int, last_error: Exception | None) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Inference failed after {attempts} attempts: {last_error}")


class FileValidationError(RenamerError):
    """Terminal failure for a single file; never retried."""


class InvalidImageError(FileValidationError):
    """The file is not a structurally valid image."""


class NoKeywordsError(FileValidationError):
    """Image analysis returned no usable keywords."""


class FilenameGenerationError(FileValidationError):
    """Filename generation returned an empty or unusable result."""


class InvalidFilenameError(FileValidationError):
    """The generated filename contains characters the filesystem does not accept."""
