"""Common models, configuration and queueing for the webhook pipeline."""

from webhook_pipeline.common.collaborators import (
    CollaboratorLoadError,
    Database,
    RulesEngine,
    build_collaborator,
    load_factory,
)
from webhook_pipeline.common.config import (
    BaseConfig,
    CollectorConfig,
    EmailConfig,
    MetricsConfig,
    Provider,
    PushConfig,
    RedisConfig,
    RetryConfig,
    WebhookSourceConfig,
    WorkerConfig,
)
from webhook_pipeline.common.emitter import EventEmitter
from webhook_pipeline.common.models import (
    Job,
    JobOptions,
    JobState,
    NormalizedEvent,
    ScheduleSpec,
    VerificationFailure,
    VerificationResult,
    WebhookError,
    WebhookRequest,
    WebhookResult,
)
from webhook_pipeline.common.queue import (
    JobQueue,
    QueueBackend,
    QueueError,
    RedisQueueBackend,
    create_queue_backend,
)
from webhook_pipeline.common.metrics import (
    MetricsRegistry,
    metrics,
    measure_time,
    start_metrics_server,
)

__all__ = [
    # Collaborators
    "CollaboratorLoadError",
    "Database",
    "RulesEngine",
    "build_collaborator",
    "load_factory",
    # Config
    "BaseConfig",
    "CollectorConfig",
    "EmailConfig",
    "MetricsConfig",
    "Provider",
    "PushConfig",
    "RedisConfig",
    "RetryConfig",
    "WebhookSourceConfig",
    "WorkerConfig",
    # Models
    "Job",
    "JobOptions",
    "JobState",
    "NormalizedEvent",
    "ScheduleSpec",
    "VerificationFailure",
    "VerificationResult",
    "WebhookError",
    "WebhookRequest",
    "WebhookResult",
    # Queue
    "EventEmitter",
    "JobQueue",
    "QueueBackend",
    "QueueError",
    "RedisQueueBackend",
    "create_queue_backend",
    # Metrics
    "MetricsRegistry",
    "metrics",
    "measure_time",
    "start_metrics_server",
]
