"""Runtime configuration for the flasher service."""

import os
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/96.0.4664.45 Safari/537.36"
)


class FlasherConfig(BaseModel):
    """Policy knobs for every component.

    Defaults suit a desktop process with direct network egress. Each field can
    be overridden with a ``FLASHER_<FIELD>`` environment variable.
    """

    # Remote archive access
    proxy_url: Optional[str] = Field(
        None, description="Prefix prepended to every remote URL (sandboxed workers)"
    )
    user_agent: str = Field(DEFAULT_USER_AGENT, description="User-Agent for remote reads")
    referer: str = Field("https://github.com/", description="Referer for remote reads")
    http_timeout: float = Field(30.0, gt=0, description="Per-request timeout in seconds")
    zip_index_cache_size: int = Field(32, ge=1, description="Archive indexes kept in memory")

    # Firmware sources
    github_api_url: str = Field("https://api.github.com")
    github_organization: str = Field("EdgeTX")
    github_firmware_repo: str = Field("edgetx")
    github_token: Optional[str] = Field(None, description="Token for CI artifact downloads")
    ci_artifact_name: str = Field("firmware")
    cloudbuild_url: str = Field("https://cloudbuild.edgetx.org")
    cloudbuild_poll_interval: float = Field(5.0, gt=0)
    cloudbuild_timeout: float = Field(600.0, gt=0)

    # Device handling
    unprotect_timeout: float = Field(10.0, gt=0, description="Wait for unprotect confirmation")
    device_poll_interval: float = Field(0.5, gt=0)
    reconnect_timeout: float = Field(10.0, gt=0, description="Wait for device re-enumeration")
    validate_write: bool = Field(True, description="Read back after writing")

    # Job registry
    job_retention_seconds: float = Field(600.0, ge=0, description="Keep terminal jobs this long")
    gc_interval: float = Field(60.0, gt=0)

    # Service
    usb_backend: Optional[str] = Field(
        None, description="'module:factory' returning (UsbBackend, DfuConnector)"
    )
    host: str = Field("127.0.0.1")
    port: int = Field(12316)
    log_file: str = Field("./logs/flasher.log")
    log_level: str = Field("INFO")
    log_component_levels: str = Field(
        "", description="Per-component overrides, e.g. resolver=DEBUG,remote_zip=WARNING"
    )

    @classmethod
    def from_env(cls, prefix: str = "FLASHER_") -> "FlasherConfig":
        """Build a config from defaults overlaid with environment variables.

        Args:
            prefix: Environment variable prefix

        Returns:
            Validated FlasherConfig
        """
        overrides = {}
        for name in cls.model_fields:
            value = os.environ.get(f"{prefix}{name.upper()}")
            if value is not None:
                overrides[name] = value
        return cls(**overrides)
