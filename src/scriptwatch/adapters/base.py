"""Abstract base class and error taxonomy for registry clients."""

from abc import ABC, abstractmethod

from scriptwatch.models.schemas import ChangeBatch, Cursor, Packument


class RegistryError(Exception):
    """Base class for registry client failures.

    `retryable` tells the job pipeline whether another attempt can succeed.
    """

    retryable = True


class TransportError(RegistryError):
    """Network failure, timeout, or an unexpected HTTP status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(RegistryError):
    """Raised when a package cannot be found (removed or renamed)."""

    retryable = False

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Package '{name}' not found in registry")


class ProtocolError(RegistryError):
    """The response did not have the expected shape."""

    retryable = False


class BaseRegistryClient(ABC):
    """Base class for change feed and metadata clients.

    Implementations are stateless: the cursor belongs to the poller.
    """

    @abstractmethod
    async def get_current_cursor(self) -> Cursor:
        """Return the feed head position.

        Raises:
            TransportError: On network or HTTP failure.
            ProtocolError: If the database info lacks an update sequence.
        """
        ...

    @abstractmethod
    async def get_change_batch(self, cursor: Cursor, limit: int) -> ChangeBatch:
        """Return up to `limit` change events after `cursor`.

        An empty batch is a valid idle-feed result.
        """
        ...

    @abstractmethod
    async def get_packument(self, name: str) -> Packument:
        """Fetch the version history document for a package.

        Raises:
            NotFoundError: If the package doesn't exist.
            TransportError: On network failure or timeout.
            ProtocolError: If the document is malformed.
        """
        ...
