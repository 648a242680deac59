"""Job snapshot models published to pollers and subscribers."""

from typing import Optional

from pydantic import BaseModel, Field

from flasher.models.status import JobStatus


class StageStatus(BaseModel):
    """Progress of one stage.

    ``started`` and ``completed`` only ever flip to True; ``completed``
    implies ``started``. Once ``error`` is set the stage never completes.
    """

    started: bool = False
    completed: bool = False
    progress: int = Field(0, ge=0, le=100, description="Percentage completion (0-100)")
    error: Optional[str] = Field(None, description="'<CODE>: <message>' when the stage failed")


class FirmwareMeta(BaseModel):
    target: str
    version: str


class JobMeta(BaseModel):
    firmware: FirmwareMeta
    device_id: str = Field(..., serialization_alias="deviceId")


class JobStages(BaseModel):
    """Stage map; a stage not applicable to the firmware source is None."""

    connect: Optional[StageStatus] = None
    build: Optional[StageStatus] = None
    download: Optional[StageStatus] = None
    erase: Optional[StageStatus] = None
    flash: Optional[StageStatus] = None


class FlashJobSnapshot(BaseModel):
    """Full job state; every update carries the whole snapshot, never a diff."""

    id: str
    status: JobStatus
    cancelled: bool
    meta: JobMeta
    stages: JobStages

    def to_wire(self) -> dict:
        """Serialize with the external field names."""
        return self.model_dump(mode="json", by_alias=True)
