"""Domain-specific errors for driver checks."""


class DriverWatchError(Exception):
    """Base error for driver inventory and reconciliation."""


class CollaboratorError(DriverWatchError, OSError):
    """Raised when an external query process fails or cannot be started."""


class InstallPipelineError(CollaboratorError):
    """Raised when the driver update installer exits unsuccessfully."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class CatalogParseError(DriverWatchError, ValueError):
    """Raised when catalog or inventory output cannot be decoded."""
