import sys

import click
from loguru import logger

from receipt_vault.api.server import run_server
from receipt_vault.common.config import APIConfig, load_config_from_file
from receipt_vault.common.logging import configure_logging


def setup_app(config_path: str) -> APIConfig:
    """Load the API configuration and configure logging."""
    config = load_config_from_file(config_path, APIConfig)
    configure_logging(config.log_level)
    config.validate_store_config()
    logger.info(f"Receipt Vault API configured with {config.store_type.value} store")
    return config


@click.group()
def cli():
    """Receipt Vault API CLI"""
    pass


@cli.command("serve")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def serve(config: str):
    """Start the API server."""
    try:
        config_obj = setup_app(config)
        run_server(config_obj)
    except Exception as e:
        logger.error(f"Failed to start API: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
