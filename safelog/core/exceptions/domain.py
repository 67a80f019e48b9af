from safelog.core.exceptions.base import SafelogException


class LoggerConfigurationError(SafelogException):
    """Raised when a logger cannot be built from the given sinks or settings."""

    def __init__(self, message: str = "Invalid logger configuration"):
        super().__init__(message)


class ManifestError(SafelogException):
    """Raised when a project manifest exists but cannot be read."""

    def __init__(self, path: str = "manifest", reason: str = ""):
        message = f"Could not read {path}"
        if reason:
            message = f"Could not read {path}: {reason}"
        self.path = path
        super().__init__(message)
