"""Live event delivery to remote observers."""

from .backoff import BackoffPolicy
from .broadcaster import Broadcaster
from .transport import HttpRelayTransport, MemoryTransport, Transport

__all__ = [
    "BackoffPolicy",
    "Broadcaster",
    "HttpRelayTransport",
    "MemoryTransport",
    "Transport",
]
