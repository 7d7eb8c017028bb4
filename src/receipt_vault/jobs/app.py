import asyncio
import signal
import sys
from typing import Optional

import click
from loguru import logger

from receipt_vault.common.config import WorkerConfig, load_config_from_file
from receipt_vault.common.logging import configure_logging
from receipt_vault.common.metrics import start_metrics_server
from receipt_vault.services import Services, build_services


_app_config: Optional[WorkerConfig] = None
_services: Optional[Services] = None
_shutdown_event: Optional[asyncio.Event] = None


def get_app_config() -> WorkerConfig:
    global _app_config
    if not _app_config:
        raise RuntimeError("Application config not initialized")
    return _app_config


def get_services() -> Services:
    global _services
    if not _services:
        raise RuntimeError("Services not initialized")
    return _services


def setup_app(config: WorkerConfig):
    """Initialize the worker with the given config."""
    global _app_config, _services, _shutdown_event

    configure_logging(config.log_level)
    config.validate_store_config()

    _services = build_services(config, worker_id=config.worker_id)
    _shutdown_event = asyncio.Event()
    _app_config = config

    logger.info(
        f"Receipt Vault worker {_services.worker_pool.worker_id} initialized "
        f"with {config.store_type.value} store"
    )


async def run_worker():
    """Run the worker pool until a termination signal arrives."""
    config = get_app_config()
    services = get_services()

    if config.metrics.enabled:
        start_metrics_server(config.metrics.port, config.metrics.host)
        logger.info(f"Metrics server started on {config.metrics.host}:{config.metrics.port}")

    await services.start()
    logger.info("Receipt Vault worker started")
    try:
        await services.worker_pool.run(_shutdown_event)
    except Exception as e:
        logger.error(f"Worker error: {e}")
    finally:
        await services.close()
        logger.info("Receipt Vault worker stopped")


async def run_cleanup():
    """Run one maintenance pass and print what it removed."""
    services = get_services()
    await services.start()
    try:
        summary = await services.worker_pool.run_maintenance()
    finally:
        await services.close()
    logger.info(f"Maintenance finished: {summary}")
    return summary


def handle_signal(sig, frame):
    """Handle termination signals."""
    global _shutdown_event
    if _shutdown_event:
        logger.info(f"Received signal {sig}, shutting down...")
        _shutdown_event.set()


@click.group()
def cli():
    """Receipt Vault Worker CLI"""
    pass


@cli.command("run")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def run(config: str):
    """Start the job workers and the webhook redelivery loop."""
    try:
        config_obj = load_config_from_file(config, WorkerConfig)
        setup_app(config_obj)

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        asyncio.run(run_worker())
    except Exception as e:
        logger.error(f"Failed to start worker: {e}")
        sys.exit(1)


@cli.command("cleanup")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def cleanup(config: str):
    """Reclaim expired leases and prune old jobs and deliveries once."""
    try:
        config_obj = load_config_from_file(config, WorkerConfig)
        setup_app(config_obj)
        summary = asyncio.run(run_cleanup())
        click.echo(summary)
    except Exception as e:
        logger.error(f"Cleanup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
