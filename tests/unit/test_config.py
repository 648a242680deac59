"""Unit tests for configuration and entry point wiring."""

from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError

from flasher.config import FlasherConfig
from flasher.main import build_resolver, load_backend, main
from flasher.services.firmware_store import FirmwareStore


@pytest.mark.unit
class TestFlasherConfig:
    def test_defaults(self):
        config = FlasherConfig()

        assert config.proxy_url is None
        assert config.validate_write is True
        assert config.job_retention_seconds == 600
        assert config.port == 12316

    def test_from_env(self, monkeypatch):
        # Arrange
        monkeypatch.setenv("FLASHER_PORT", "9000")
        monkeypatch.setenv("FLASHER_VALIDATE_WRITE", "false")
        monkeypatch.setenv("FLASHER_PROXY_URL", "https://proxy.example")

        # Act
        config = FlasherConfig.from_env()

        # Assert
        assert config.port == 9000
        assert config.validate_write is False
        assert config.proxy_url == "https://proxy.example"

    def test_component_log_levels_from_env(self, monkeypatch):
        monkeypatch.setenv("FLASHER_LOG_COMPONENT_LEVELS", "resolver=DEBUG")

        assert FlasherConfig.from_env().log_component_levels == "resolver=DEBUG"

    def test_from_env_custom_prefix(self, monkeypatch):
        monkeypatch.setenv("TEST_FLASHER_GITHUB_TOKEN", "secret")

        assert FlasherConfig.from_env(prefix="TEST_FLASHER_").github_token == "secret"

    def test_from_env_invalid_value(self, monkeypatch):
        monkeypatch.setenv("FLASHER_HTTP_TIMEOUT", "-1")

        with pytest.raises(ValidationError):
            FlasherConfig.from_env()

    def test_build_resolver_uses_config(self):
        config = FlasherConfig(
            proxy_url="https://proxy.example",
            github_organization="Acme",
            github_firmware_repo="radio",
            zip_index_cache_size=4,
            referer="https://acme.example/",
        )

        resolver = build_resolver(config, FirmwareStore())

        assert resolver.proxy_url == "https://proxy.example"
        assert resolver.catalog.repo_url == "https://api.github.com/repos/Acme/radio"
        assert resolver.zip_cache.max_entries == 4
        assert resolver.request_headers["Referer"] == "https://acme.example/"


@pytest.mark.unit
class TestEntryPoint:
    def test_load_backend(self):
        backend, connector = MagicMock(), MagicMock()
        module = MagicMock()
        module.make_stack.return_value = (backend, connector)

        with patch("flasher.main.importlib.import_module", return_value=module) as mock_import:
            result = load_backend("acme_usb.stack:make_stack")

        mock_import.assert_called_once_with("acme_usb.stack")
        assert result == (backend, connector)

    def test_load_backend_requires_factory(self):
        with pytest.raises(ValueError, match="module:factory"):
            load_backend("acme_usb.stack")

    def test_main_without_backend(self, monkeypatch):
        monkeypatch.delenv("FLASHER_USB_BACKEND", raising=False)

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 2

    def test_main_runs_uvicorn(self, monkeypatch, usb_backend, connector):
        monkeypatch.setenv("FLASHER_USB_BACKEND", "acme_usb.stack:make_stack")
        monkeypatch.setenv("FLASHER_PORT", "9000")

        with patch("flasher.main.load_backend", return_value=(usb_backend, connector)):
            with patch("flasher.main.uvicorn.run") as mock_run:
                main()

        _, kwargs = mock_run.call_args
        assert kwargs["port"] == 9000
        assert kwargs["host"] == "127.0.0.1"
