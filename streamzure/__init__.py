"""
StreamZure: Resumable Blob Transfers

Client-side engine for streaming blobs to and from Azure-style object storage
with resumable downloads, typed commit strategies and optimistic concurrency.
"""

__version__ = "0.1.0"
__author__ = "Ayodele Oladeji"

from .blob import (
    AppendBlobClient,
    BlobClient,
    BlobIdentity,
    BlobRequestOptions,
    BlockBlobClient,
    ConditionalPrecondition,
    PageBlobClient,
    ResumableDownloadEngine,
)

__all__ = [
    "AppendBlobClient",
    "BlobClient",
    "BlobIdentity",
    "BlobRequestOptions",
    "BlockBlobClient",
    "ConditionalPrecondition",
    "PageBlobClient",
    "ResumableDownloadEngine",
    "__version__",
]
