"""
Error taxonomy for FileTrack.
Business operations raise these; the API layer maps them to HTTP responses.
"""


class FileTrackError(Exception):
    """Base class for errors raised by FileTrack operations."""
    status_code = 500

    def __init__(self, message: str = "Request failed"):
        super().__init__(message)
        self.message = message


class InvalidFilter(FileTrackError):
    """A filter value (date, enum, id, size) could not be parsed."""
    status_code = 400


class InvalidPageSize(FileTrackError):
    """Pagination parameters are out of range."""
    status_code = 400


class NotFound(FileTrackError):
    status_code = 404


class PermissionDenied(FileTrackError):
    status_code = 403


class Conflict(FileTrackError):
    status_code = 409


class StorageUnavailable(FileTrackError):
    """The database or blob store could not be reached."""
    status_code = 503
