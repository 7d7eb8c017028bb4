"""HTTP interface for job status and webhook management."""

from receipt_vault.api.app import cli, setup_app
from receipt_vault.api.server import create_app, run_server

__all__ = [
    "cli",
    "setup_app",
    "create_app",
    "run_server",
]
