"""Pydantic models for HTTP API requests and responses."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from flasher.models.firmware import FirmwareDescriptor


class CreateFlashJobRequest(BaseModel):
    """POST /api/v1.0/jobs payload.

    Example:
        {
            "device_id": "0x0483:0xDF11",
            "firmware": {"source": "releases", "target": "nv14", "version": "v2.5.0"},
            "unprotect": false
        }
    """

    device_id: str = Field(..., min_length=1, description="Device id from GET /devices")
    firmware: FirmwareDescriptor
    unprotect: bool = Field(False, description="Force read/write unprotect before erasing")


class FirmwareRegistration(BaseModel):
    """Response data of POST /api/v1.0/firmware."""

    id: str = Field(..., description="Use as target of a 'file' firmware descriptor")
    size: int = Field(..., ge=0)
    md5: str


class ApiResponse(BaseModel):
    """Envelope for every endpoint.

    HTTP status code is always 200, the real status is in 'code'.
    """

    code: int = Field(200, description="Application-level status code (200/400/404/500)")
    msg: str = Field("success")
    data: Optional[Any] = None
