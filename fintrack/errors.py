from __future__ import annotations


class FintrackError(Exception):
    """Base error carrying an HTTP status code for the API layer."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(FintrackError):
    """A required field is missing or a value is out of range."""

    status_code = 400


class UnauthorizedError(FintrackError):
    """No credential, or a credential that does not verify."""

    status_code = 401


class NotFoundError(FintrackError):
    """The record does not exist or belongs to another user."""

    status_code = 404


class ConflictError(FintrackError):
    """Uniqueness or optimistic-version conflict."""

    status_code = 409


class BlobStoreError(FintrackError):
    """The object store rejected or failed an upload/delete."""

    status_code = 502
