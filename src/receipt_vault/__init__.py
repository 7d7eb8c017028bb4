"""Receipt Vault background jobs and webhook delivery."""

__version__ = "0.1.0"
