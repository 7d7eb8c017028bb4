import time
from functools import wraps
from typing import Callable, Dict, Optional, Union

from loguru import logger
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server


class MetricsRegistry:
    def __init__(self, registry=None):
        # Use a provided registry or the default one
        self.registry = registry or REGISTRY

        # Job metrics
        self.jobs_enqueued_total = Counter(
            "receipt_vault_jobs_enqueued_total",
            "Total number of jobs enqueued",
            ["queue"],
            registry=self.registry,
        )
        self.jobs_completed_total = Counter(
            "receipt_vault_jobs_completed_total",
            "Total number of jobs completed successfully",
            ["queue"],
            registry=self.registry,
        )
        self.jobs_failed_total = Counter(
            "receipt_vault_jobs_failed_total",
            "Total number of jobs that ended in the failed state",
            ["queue"],
            registry=self.registry,
        )
        self.job_retries_total = Counter(
            "receipt_vault_job_retries_total",
            "Total number of job retries scheduled",
            ["queue"],
            registry=self.registry,
        )
        self.jobs_reclaimed_total = Counter(
            "receipt_vault_jobs_reclaimed_total",
            "Total number of jobs reclaimed after their lease expired",
            ["queue"],
            registry=self.registry,
        )
        self.job_processing_time = Histogram(
            "receipt_vault_job_processing_seconds",
            "Time spent running job handlers",
            ["queue"],
            registry=self.registry,
        )

        # Event and webhook metrics
        self.events_emitted_total = Counter(
            "receipt_vault_events_emitted_total",
            "Total number of domain events emitted",
            ["event_type"],
            registry=self.registry,
        )
        self.deliveries_total = Counter(
            "receipt_vault_webhook_deliveries_total",
            "Total number of webhook delivery attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.delivery_latency = Histogram(
            "receipt_vault_webhook_delivery_seconds",
            "Time spent sending webhook deliveries",
            ["target"],
            registry=self.registry,
        )

        # Common metrics
        self.up = Gauge(
            "receipt_vault_up",
            "Whether the receipt vault component is up",
            ["component"],
            registry=self.registry,
        )


# Global metrics registry
metrics = MetricsRegistry()


def start_metrics_server(port: int = 9090, host: str = "127.0.0.1"):
    """Start the Prometheus metrics server."""
    start_http_server(port, host)


def measure_time(
    metric: Histogram, labels: Optional[Union[Dict[str, str], Callable]] = None
) -> Callable:
    """Decorator to measure the execution time of a coroutine.

    ``labels`` is either a fixed dict or a callable that receives the
    positional arguments of the call and returns the label dict.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            labels_dict = {}
            if callable(labels):
                try:
                    labels_dict = labels(*args)
                except Exception as e:
                    logger.error(f"Error getting labels from function: {e}")
            elif isinstance(labels, dict):
                labels_dict = labels

            start_time = time.time()
            try:
                return await func(*args, **kwargs)
            finally:
                duration = time.time() - start_time
                try:
                    metric.labels(**labels_dict).observe(duration)
                except Exception as e:
                    logger.error(f"Error recording metric: {e}")

        return wrapper

    return decorator
