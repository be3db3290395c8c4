"""Exception taxonomy for the Prioritizer API.

Domain modules raise these; ``app.py`` renders them into the response
envelope using each class's ``status_code``.
"""
from __future__ import annotations


class PrioritizerError(Exception):
    """Base exception for Prioritizer."""

    status_code = 500
    error = "Internal error"

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)

    @property
    def details(self) -> dict:
        """Extra fields rendered into the error envelope."""
        return {}


class ValidationError(PrioritizerError):
    status_code = 400
    error = "Validation failed"

    def __init__(self, message: str = "Validation failed", field: str | None = None):
        if field:
            message = f"Validation failed for field '{field}': {message}"
        super().__init__(message)


class InvalidFile(ValidationError):
    error = "Invalid file"

    def __init__(self, message: str = "File could not be read as an Excel spreadsheet"):
        super().__init__(message)


class InvalidMapping(ValidationError):
    error = "Invalid mapping"


class MissingKeyMapping(InvalidMapping):
    def __init__(self, message: str = "Key field mapping is required"):
        super().__init__(message)


class InvalidCodeError(ValidationError):
    error = "Invalid code"

    def __init__(self, message: str = "Code is invalid or has expired"):
        super().__init__(message)


class NotFoundError(PrioritizerError):
    status_code = 404
    error = "Not found"

    def __init__(self, resource: str = "Resource", identifier: str | None = None):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(message)


class RateLimitedError(PrioritizerError):
    status_code = 429
    error = "Too many requests"


class ImportCommitError(PrioritizerError):
    """A row failed during commit. Rows before it stay committed."""

    error = "Import failed"

    def __init__(self, row: int, applied: int, message: str):
        self.row = row
        self.applied = applied
        super().__init__(f"Row {row}: {message}")

    @property
    def details(self) -> dict:
        return {"row": self.row, "applied": self.applied}


class UpstreamError(PrioritizerError):
    """An upstream service answered with an error status."""

    error = "Upstream error"

    def __init__(self, message: str, status_code: int = 502):
        self.status_code = status_code
        super().__init__(message)


class UpstreamUnavailableError(PrioritizerError):
    status_code = 503
    error = "Upstream unavailable"


class DeliveryError(UpstreamUnavailableError):
    error = "Delivery failed"
