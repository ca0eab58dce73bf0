"""Error taxonomy shared by ingestion and retrieval."""


class LibraryError(Exception):
    """Base class for all library errors."""
    pass


class InputError(LibraryError):
    """Raised for empty or invalid queries and missing ingestion arguments.

    Never retried.
    """
    pass


class DependencyError(LibraryError):
    """Raised when a storage or embedding-service call fails."""
    pass


class DataIntegrityError(LibraryError):
    """Raised when a row that must exist is missing, e.g. a book vanished mid-run."""
    pass


class IngestionError(DependencyError):
    """Raised when an ingestion run ends in the failed state.

    The failed run is attached so callers can report its id and error message.
    """

    def __init__(self, message: str, run=None):
        super().__init__(message)
        self.run = run
