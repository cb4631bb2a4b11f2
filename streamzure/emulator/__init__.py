"""In-memory blob service for exercising transfers without a network."""

from .backend import BlobServiceBackend, EmulatorError, StoredBlob
from .transport import Fault, FaultKind, MemoryTransport

__all__ = [
    "BlobServiceBackend",
    "EmulatorError",
    "Fault",
    "FaultKind",
    "MemoryTransport",
    "StoredBlob",
]
