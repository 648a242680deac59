"""Normalized DFU transfer events and device properties."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class DfuOperation(str, Enum):
    ERASE = "erase"
    WRITE = "write"
    SESSION = "session"


class DfuPhase(str, Enum):
    START = "start"
    PROCESS = "process"
    END = "end"


class DfuEvent(BaseModel):
    """One phase event of a DFU operation."""

    operation: DfuOperation
    phase: DfuPhase
    current: Optional[int] = None
    total: Optional[int] = None

    @property
    def percent(self) -> Optional[int]:
        """Progress percentage for ``process`` events, clamped to 0-100."""
        if self.current is None or not self.total:
            return None
        return max(0, min(100, int(self.current * 100 / self.total)))


class DfuProperties(BaseModel):
    """Functional descriptor values reported by the driver."""

    transfer_size: int = Field(1024, gt=0, alias="TransferSize")
    read_protected: bool = Field(False, alias="ReadProtected")

    model_config = {"populate_by_name": True, "extra": "ignore"}
