import time
from functools import wraps
from typing import Callable, Dict, Optional, Union

from loguru import logger
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server


class MetricsRegistry:
    def __init__(self, registry=None):
        self.registry = registry or REGISTRY

        # Collector metrics
        self.webhook_received_total = Counter(
            "webhook_pipeline_received_total",
            "Total number of webhooks received",
            ["provider"],
            registry=self.registry,
        )
        self.webhook_rejected_total = Counter(
            "webhook_pipeline_rejected_total",
            "Total number of webhooks rejected before enqueue",
            ["provider", "reason"],
            registry=self.registry,
        )
        self.webhook_processing_time = Histogram(
            "webhook_pipeline_processing_seconds",
            "Time spent handling webhooks",
            ["provider"],
            registry=self.registry,
        )
        self.queue_publish_total = Counter(
            "webhook_pipeline_queue_publish_total",
            "Total number of jobs added to a queue",
            ["queue"],
            registry=self.registry,
        )
        self.queue_publish_errors = Counter(
            "webhook_pipeline_queue_publish_errors",
            "Total number of errors adding jobs to a queue",
            ["queue"],
            registry=self.registry,
        )

        # Worker metrics
        self.job_completed_total = Counter(
            "webhook_pipeline_job_completed_total",
            "Total number of jobs completed",
            ["queue"],
            registry=self.registry,
        )
        self.job_failed_total = Counter(
            "webhook_pipeline_job_failed_total",
            "Total number of job attempts that raised",
            ["queue"],
            registry=self.registry,
        )
        self.job_dead_total = Counter(
            "webhook_pipeline_job_dead_total",
            "Total number of jobs parked after exhausting retries",
            ["queue"],
            registry=self.registry,
        )
        self.job_stalled_total = Counter(
            "webhook_pipeline_job_stalled_total",
            "Total number of stalled jobs moved back to wait",
            ["queue"],
            registry=self.registry,
        )
        self.job_duration = Histogram(
            "webhook_pipeline_job_seconds",
            "Time spent processing jobs",
            ["queue"],
            registry=self.registry,
        )

        # Common metrics
        self.memory_rss_bytes = Gauge(
            "webhook_pipeline_memory_rss_bytes",
            "Resident set size sampled by the health check",
            registry=self.registry,
        )
        self.up = Gauge(
            "webhook_pipeline_up",
            "Whether the webhook pipeline component is up",
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
    """Decorator to measure the execution time of a coroutine."""

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            labels_dict = {}
            if callable(labels) and args:
                # Label factories receive the bound instance
                try:
                    labels_dict = labels(args[0])
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
