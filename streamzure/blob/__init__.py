"""Blob transfer engine: resumable downloads, write streams and preconditions."""

from .attempt import OperationContext, RequestResult, SimpleAttempt, TransferAttempt, execute
from .client import AppendBlobClient, BlobClient, BlockBlobClient, PageBlobClient
from .conditions import ConditionalPrecondition
from .download import BlobReadStream, ResumableDownloadEngine
from .exceptions import (
    AuthorizationError,
    BlobErrorCode,
    BlobTransferError,
    BlobTypeMismatchError,
    CallerUsageError,
    ConflictError,
    IntegrityError,
    OperationCancelledError,
    OperationTimeoutError,
    PreconditionFailedError,
    ResourceNotFoundError,
    StorageServiceError,
    TransientTransportError,
)
from .models import (
    AppendUnit,
    BlobIdentity,
    BlobType,
    LocationMode,
    PageRange,
    SequenceNumberAction,
    StorageLocation,
    TransferRange,
)
from .options import BlobRequestOptions
from .retry import ExponentialRetry, LinearRetry, NoRetry, RetryPolicy
from .state import BlobEntityState, apply_response
from .strategies import AppendCommitStrategy, BlockCommitStrategy, CommitStrategy, PageCommitStrategy
from .transport import BlobOperation, LocationSelector, RequestSpec, ResponseSpec, Transport
from .write_stream import BlobWriteStream

__all__ = [
    "AppendBlobClient",
    "AppendCommitStrategy",
    "AppendUnit",
    "AuthorizationError",
    "BlobClient",
    "BlobEntityState",
    "BlobErrorCode",
    "BlobIdentity",
    "BlobOperation",
    "BlobReadStream",
    "BlobRequestOptions",
    "BlobTransferError",
    "BlobType",
    "BlobTypeMismatchError",
    "BlobWriteStream",
    "BlockBlobClient",
    "BlockCommitStrategy",
    "CallerUsageError",
    "CommitStrategy",
    "ConditionalPrecondition",
    "ConflictError",
    "ExponentialRetry",
    "IntegrityError",
    "LinearRetry",
    "LocationMode",
    "LocationSelector",
    "NoRetry",
    "OperationCancelledError",
    "OperationContext",
    "OperationTimeoutError",
    "PageBlobClient",
    "PageCommitStrategy",
    "PageRange",
    "PreconditionFailedError",
    "RequestResult",
    "RequestSpec",
    "ResourceNotFoundError",
    "ResponseSpec",
    "ResumableDownloadEngine",
    "RetryPolicy",
    "SequenceNumberAction",
    "SimpleAttempt",
    "StorageLocation",
    "StorageServiceError",
    "TransferAttempt",
    "TransferRange",
    "TransientTransportError",
    "Transport",
    "apply_response",
    "execute",
]
