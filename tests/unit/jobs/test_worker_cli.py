import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from receipt_vault.common.config import MetricsConfig, WorkerConfig
from receipt_vault.jobs.app import (
    cli,
    get_app_config,
    get_services,
    handle_signal,
    run_cleanup,
    run_worker,
    setup_app,
)


@pytest.fixture
def worker_config(tmp_path):
    return WorkerConfig(
        worker_id="worker-a",
        metrics=MetricsConfig(enabled=False),
        jobs={
            "storage_dir": str(tmp_path / "attachments"),
            "export_dir": str(tmp_path / "exports"),
        },
    )


class TestWorkerApp:

    def test_get_app_config_not_initialized(self):
        """Test that get_app_config raises an exception when not initialized."""
        with patch("receipt_vault.jobs.app._app_config", None):
            with pytest.raises(RuntimeError, match="Application config not initialized"):
                get_app_config()

    def test_get_services_not_initialized(self):
        with patch("receipt_vault.jobs.app._services", None):
            with pytest.raises(RuntimeError, match="Services not initialized"):
                get_services()

    def test_setup_app(self, worker_config):
        """Test that setup_app builds the services with the configured worker id."""
        with patch("receipt_vault.jobs.app._app_config", None), patch(
            "receipt_vault.jobs.app._services", None
        ), patch("receipt_vault.jobs.app._shutdown_event", None):
            setup_app(worker_config)

            assert get_app_config() == worker_config
            assert get_services().worker_pool.worker_id == "worker-a"

    @pytest.mark.asyncio
    async def test_run_worker(self, worker_config):
        """Test that run_worker starts the services, runs the pool and closes them."""
        services = MagicMock()
        services.start = AsyncMock()
        services.close = AsyncMock()
        services.worker_pool.run = AsyncMock()
        shutdown_event = asyncio.Event()

        with patch("receipt_vault.jobs.app._app_config", worker_config), patch(
            "receipt_vault.jobs.app._services", services
        ), patch("receipt_vault.jobs.app._shutdown_event", shutdown_event), patch(
            "receipt_vault.jobs.app.start_metrics_server"
        ) as mock_start_metrics:
            await run_worker()

        services.start.assert_awaited_once()
        services.worker_pool.run.assert_awaited_once_with(shutdown_event)
        services.close.assert_awaited_once()
        mock_start_metrics.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_worker_closes_services_on_error(self, worker_config):
        services = MagicMock()
        services.start = AsyncMock()
        services.close = AsyncMock()
        services.worker_pool.run = AsyncMock(side_effect=RuntimeError("store gone"))

        with patch("receipt_vault.jobs.app._app_config", worker_config), patch(
            "receipt_vault.jobs.app._services", services
        ), patch("receipt_vault.jobs.app._shutdown_event", asyncio.Event()):
            await run_worker()

        services.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_cleanup(self):
        services = MagicMock()
        services.start = AsyncMock()
        services.close = AsyncMock()
        services.worker_pool.run_maintenance = AsyncMock(
            return_value={"reclaimed": 0, "pruned": {"ocr": 1}}
        )

        with patch("receipt_vault.jobs.app._services", services):
            summary = await run_cleanup()

        assert summary == {"reclaimed": 0, "pruned": {"ocr": 1}}
        services.close.assert_awaited_once()

    def test_handle_signal(self):
        """Test that handle_signal sets the shutdown event."""
        shutdown_event = asyncio.Event()
        with patch("receipt_vault.jobs.app._shutdown_event", shutdown_event):
            handle_signal(signal.SIGTERM, None)
        assert shutdown_event.is_set()

    def test_handle_signal_before_setup(self):
        with patch("receipt_vault.jobs.app._shutdown_event", None):
            handle_signal(signal.SIGINT, None)


class TestWorkerCLI:

    def test_cleanup_command(self, tmp_path, worker_config):
        """Test that the cleanup command loads the config and prints the summary."""
        config_file = tmp_path / "worker.yaml"
        with open(config_file, "w") as f:
            yaml.dump(worker_config.model_dump(mode="json"), f)

        with patch("receipt_vault.jobs.app.setup_app") as mock_setup, patch(
            "receipt_vault.jobs.app.run_cleanup", new=AsyncMock(return_value={"reclaimed": 2})
        ):
            result = CliRunner().invoke(cli, ["cleanup", "-c", str(config_file)])

        assert result.exit_code == 0
        assert "reclaimed" in result.output
        assert mock_setup.call_args.args[0].worker_id == "worker-a"

    def test_missing_config_file_exits(self, tmp_path):
        result = CliRunner().invoke(cli, ["run", "-c", str(tmp_path / "missing.yaml")])
        assert result.exit_code == 1
