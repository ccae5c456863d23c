"""Exception hierarchy shared by the processing pipeline."""


class SpatialVaultError(Exception):
    """Base class for every error raised by the package."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ProcessingError(SpatialVaultError):
    """A processing step (conversion, metadata extraction, download) failed."""

    def __str__(self) -> str:
        return f"Processing error: {self.message}"


class BadRequestError(SpatialVaultError):
    """The inputs supplied to a job are invalid."""

    def __str__(self) -> str:
        return f"Bad request: {self.message}"