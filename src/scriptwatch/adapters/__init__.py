"""Registry clients."""

from scriptwatch.adapters.base import (
    BaseRegistryClient,
    NotFoundError,
    ProtocolError,
    RegistryError,
    TransportError,
)
from scriptwatch.adapters.npm import NpmRegistryClient

__all__ = [
    "BaseRegistryClient",
    "NotFoundError",
    "NpmRegistryClient",
    "ProtocolError",
    "RegistryError",
    "TransportError",
]
