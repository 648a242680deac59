"""Status enums for flash jobs."""

from enum import Enum


class StageName(str, Enum):
    """Flash job stages, in execution order.

    connect → build? → download? → erase → flash
    """

    CONNECT = "connect"
    BUILD = "build"
    DOWNLOAD = "download"
    ERASE = "erase"
    FLASH = "flash"


STAGE_ORDER = (
    StageName.CONNECT,
    StageName.BUILD,
    StageName.DOWNLOAD,
    StageName.ERASE,
    StageName.FLASH,
)


class JobStatus(str, Enum):
    """Overall job lifecycle.

    pending → running → succeeded
                 ↓
           failed | cancelled
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class SourceKind(str, Enum):
    """Where a firmware binary comes from."""

    RELEASES = "releases"
    PR_BUILD = "pr-build"
    CLOUDBUILD = "cloudbuild"
    FILE = "file"
