"""Firmware descriptor models."""

import re
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from flasher.models.status import SourceKind

PR_VERSION_PATTERN = re.compile(r"^pr-(?P<number>\d+)@(?P<sha>[0-9a-fA-F]{7,40})$")


class FirmwareFlag(BaseModel):
    """Build flag for cloudbuild requests (e.g. language=EN)."""

    name: str = Field(..., min_length=1)
    value: str


class FirmwareDescriptor(BaseModel):
    """What to flash.

    Example:
        {
            "source": "releases",
            "target": "nv14",
            "version": "v2.5.0",
            "flags": []
        }

    For ``file`` sources ``target`` is the id returned by firmware registration.
    """

    source: SourceKind = Field(..., description="Firmware source kind")
    target: str = Field(..., min_length=1, description="Target board or registered file id")
    version: str = Field(..., min_length=1, description="Release tag, pr-<n>@<sha>, or 'local'")
    flags: list[FirmwareFlag] = Field(default_factory=list)

    model_config = {"frozen": True}

    @field_validator("flags", mode="before")
    @classmethod
    def none_flags_as_empty(cls, v):
        return [] if v is None else v

    @model_validator(mode="after")
    def pr_build_version_format(self):
        if self.source == SourceKind.PR_BUILD and not PR_VERSION_PATTERN.match(self.version):
            raise ValueError(
                f"pr-build version must look like pr-<number>@<sha>, got {self.version!r}"
            )
        return self

    @property
    def effective_source(self) -> SourceKind:
        """Source used for dispatch; release versions naming a PR build are CI artifacts."""
        if self.source == SourceKind.RELEASES and PR_VERSION_PATTERN.match(self.version):
            return SourceKind.PR_BUILD
        return self.source

    @property
    def requires_build(self) -> bool:
        return self.effective_source == SourceKind.CLOUDBUILD

    @property
    def requires_download(self) -> bool:
        return self.effective_source != SourceKind.FILE

    def pr_reference(self) -> Optional[tuple[int, str]]:
        """Return (pr_number, commit_sha) for PR-build versions, None otherwise."""
        match = PR_VERSION_PATTERN.match(self.version)
        if not match:
            return None
        return int(match.group("number")), match.group("sha").lower()
