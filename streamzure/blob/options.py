"""Per-operation request options."""

from dataclasses import dataclass, field, replace
from typing import Optional

from .exceptions import CallerUsageError
from .models import DEFAULT_WRITE_BLOCK_SIZE, MIN_STREAM_WRITE_SIZE, LocationMode
from .retry import ExponentialRetry, RetryPolicy


@dataclass
class BlobRequestOptions:
    """
    Knobs a caller sets per client or per operation.

    Attributes:
        retry_policy: Policy cloned for every logical operation
        location_mode: Replicas reads may target; writes always go to the primary
        use_transactional_md5: Hash every request payload and ask for hashes on
            bounded range reads
        store_blob_content_md5: Compute a whole-blob MD5 while writing and set
            it at commit
        disable_content_md5_validation: Skip the final hash check on downloads
        absorb_conditional_errors_on_retry: Treat an append-position or
            max-size 412 on the retry of an append as that append having
            landed on the earlier attempt
        stream_write_size_in_bytes: Write-stream unit size
        maximum_execution_time: Overall wall-clock limit per operation, in seconds
    """

    retry_policy: RetryPolicy = field(default_factory=ExponentialRetry)
    location_mode: LocationMode = LocationMode.PRIMARY_ONLY
    use_transactional_md5: bool = False
    store_blob_content_md5: bool = False
    disable_content_md5_validation: bool = False
    absorb_conditional_errors_on_retry: bool = False
    stream_write_size_in_bytes: int = DEFAULT_WRITE_BLOCK_SIZE
    maximum_execution_time: Optional[float] = None

    def __post_init__(self) -> None:
        if self.stream_write_size_in_bytes < MIN_STREAM_WRITE_SIZE:
            raise CallerUsageError(
                f"stream_write_size_in_bytes must be at least {MIN_STREAM_WRITE_SIZE}",
                details={"stream_write_size_in_bytes": self.stream_write_size_in_bytes},
            )

    def copy(self, **changes) -> 'BlobRequestOptions':
        return replace(self, **changes)
