"""Error taxonomy for flash jobs.

Every failure inside a job is attached to the stage that was active when it
happened, rendered as ``"<CODE>: <message>"``.
"""

from typing import Optional


class FlasherError(Exception):
    """Base class for all flash-job failures."""

    code = "FLASHER_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def describe(self) -> str:
        """Render the error the way it is stored on a stage."""
        return f"{self.code}: {self.message}"


class DeviceNotFound(FlasherError):
    code = "DEVICE_NOT_FOUND"


class SourceUnavailable(FlasherError):
    """Network or remote archive access failed."""

    code = "SOURCE_UNAVAILABLE"


class UnsupportedArchive(SourceUnavailable):
    code = "UNSUPPORTED_ARCHIVE"


class EntryNotFound(FlasherError):
    """Requested firmware file is missing from the archive."""

    code = "ENTRY_NOT_FOUND"


class FirmwareNotRegistered(FlasherError):
    code = "FIRMWARE_NOT_REGISTERED"


class BuildFailed(FlasherError):
    code = "BUILD_FAILED"


class UnprotectTimeout(FlasherError):
    code = "UNPROTECT_TIMEOUT"


class TransferError(FlasherError):
    """Fault reported by the DFU driver."""

    code = "TRANSFER_ERROR"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class Cancelled(FlasherError):
    code = "CANCELLED"
