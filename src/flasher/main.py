"""FastAPI application for the firmware flasher."""

import asyncio
import importlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
import uvicorn

from flasher.api.routes import router
from flasher.config import FlasherConfig
from flasher.ports import DfuConnector, UsbBackend
from flasher.services.cloudbuild import CloudbuildClient
from flasher.services.devices import DeviceService
from flasher.services.firmware_store import FirmwareStore
from flasher.services.job_bus import JobUpdateBus
from flasher.services.job_manager import FlashJobManager
from flasher.services.release_catalog import GithubReleaseCatalog
from flasher.services.remote_zip import ZipIndexCache
from flasher.services.resolver import FirmwareResolver
from flasher.utils.logging import parse_component_levels, setup_logger


def build_resolver(config: FlasherConfig, firmware_store: FirmwareStore) -> FirmwareResolver:
    """Wire the firmware sources from config."""
    catalog = GithubReleaseCatalog(
        organization=config.github_organization,
        repository=config.github_firmware_repo,
        api_url=config.github_api_url,
        token=config.github_token,
        artifact_name=config.ci_artifact_name,
        timeout=config.http_timeout,
    )
    return FirmwareResolver(
        firmware_store,
        catalog,
        CloudbuildClient(config.cloudbuild_url, timeout=config.http_timeout),
        zip_cache=ZipIndexCache(config.zip_index_cache_size),
        proxy_url=config.proxy_url,
        request_headers={"User-Agent": config.user_agent, "Referer": config.referer},
        http_timeout=config.http_timeout,
        build_poll_interval=config.cloudbuild_poll_interval,
        build_timeout=config.cloudbuild_timeout,
    )


def create_app(
    usb_backend: UsbBackend,
    dfu_connector: DfuConnector,
    config: Optional[FlasherConfig] = None,
) -> FastAPI:
    """Build the application around an injected USB stack.

    Process-scoped stores (firmware buffers, job registry, update bus) are
    created at startup and shared through ``app.state``.
    """
    config = config or FlasherConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: logger, stores, job manager, GC sweep. Shutdown: cancel jobs."""
        logger = setup_logger(
            "flasher",
            config.log_file,
            level=config.log_level,
            component_levels=parse_component_levels(config.log_component_levels),
        )
        logger.info("Flasher starting up...")

        firmware_store = FirmwareStore()
        devices = DeviceService(usb_backend, poll_interval=config.device_poll_interval)
        manager = FlashJobManager(
            build_resolver(config, firmware_store),
            devices,
            dfu_connector,
            bus=JobUpdateBus(),
            retention_seconds=config.job_retention_seconds,
            validate_write=config.validate_write,
            unprotect_timeout=config.unprotect_timeout,
            reconnect_timeout=config.reconnect_timeout,
        )
        app.state.firmware_store = firmware_store
        app.state.devices = devices
        app.state.job_manager = manager

        gc_task = asyncio.create_task(manager.run_gc_loop(config.gc_interval))
        logger.info(f"Flasher ready on {config.host}:{config.port}")

        yield

        logger.info("Flasher shutting down...")
        gc_task.cancel()
        await asyncio.gather(gc_task, return_exceptions=True)
        await manager.shutdown()

    app = FastAPI(
        title="Firmware Flasher",
        description="DFU flash job orchestration for USB radios",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.include_router(router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "flasher", "version": "1.0.0"}

    return app


def load_backend(path: str) -> tuple[UsbBackend, DfuConnector]:
    """Import a 'module:factory' callable returning (UsbBackend, DfuConnector)."""
    module_name, _, attr = path.partition(":")
    if not attr:
        raise ValueError(f"Backend must be given as 'module:factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


def main():
    """Main entry point for running the server."""
    config = FlasherConfig.from_env()
    if not config.usb_backend:
        logging.basicConfig(level=logging.ERROR)
        logging.getLogger("flasher").error(
            "No USB backend configured, set FLASHER_USB_BACKEND=module:factory"
        )
        raise SystemExit(2)

    usb_backend, dfu_connector = load_backend(config.usb_backend)
    uvicorn.run(
        create_app(usb_backend, dfu_connector, config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
