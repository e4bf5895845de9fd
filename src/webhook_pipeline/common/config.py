from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Provider(str, Enum):
    STRIPE = "stripe"
    ASAAS = "asaas"
    CUSTOM = "custom"


DEFAULT_SIGNATURE_HEADERS = {
    Provider.STRIPE: "stripe-signature",
    Provider.ASAAS: "asaas-access-token",
    Provider.CUSTOM: "x-webhook-signature",
}


class RedisConfig(BaseModel):
    url: str
    prefix: str = "webhook-pipeline"


class MetricsConfig(BaseModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090
    path: str = "/metrics"


class RetryConfig(BaseModel):
    attempts: int = 3
    backoff_delay: float = 5.0  # seconds, doubled per attempt
    keep_completed: int = 100
    dedupe_ttl: int = 7 * 24 * 60 * 60  # seconds a trimmed job id still dedupes


class WebhookSourceConfig(BaseModel):
    name: Provider
    secret: Optional[str] = None
    signature_header: Optional[str] = None

    def header_name(self) -> str:
        return self.signature_header or DEFAULT_SIGNATURE_HEADERS[self.name]


class EmailConfig(BaseModel):
    api_key: Optional[str] = None
    from_address: str = "Finance <noreply@example.com>"
    api_url: str = "https://api.resend.com/emails"
    timeout: int = 10  # seconds


class PushConfig(BaseModel):
    vapid_public_key: Optional[str] = None
    vapid_private_key: Optional[str] = None
    vapid_subject: Optional[str] = None

    @property
    def configured(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key)


class BaseConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="WEBHOOK_PIPELINE_",
        extra="ignore",
    )

    log_level: str = "INFO"
    redis: Optional[RedisConfig] = None
    retry: RetryConfig = RetryConfig()
    metrics: MetricsConfig = MetricsConfig()
    database_factory: Optional[str] = None  # "package.module:callable"

    def validate_queue_config(self) -> None:
        if not self.redis or not self.redis.url:
            raise ValueError("No queue backend configured: redis.url is required")


class CollectorConfig(BaseConfig):
    host: str = "0.0.0.0"
    port: int = 8000
    webhook_sources: List[WebhookSourceConfig] = []

    def get_source(self, provider: Provider) -> WebhookSourceConfig:
        source = next(
            (src for src in self.webhook_sources if src.name == provider), None
        )
        return source or WebhookSourceConfig(name=provider)


class WorkerConfig(BaseConfig):
    rules_engine_factory: Optional[str] = None
    app_url: str = "http://localhost:3000"
    workflow_concurrency: int = 5
    gc_after_job: bool = True
    poll_interval: float = 1.0  # seconds
    lock_duration: int = 30  # seconds
    stalled_interval: int = 30  # seconds
    shutdown_timeout: float = 30  # seconds
    health_check_interval: float = 180  # seconds
    memory_threshold_mb: int = 512
    memory_critical_factor: float = 1.5
    log_retention_days: int = 7
    heartbeat_url: Optional[str] = None
    email: EmailConfig = EmailConfig()
    push: PushConfig = Field(default_factory=PushConfig)

    def validate_collaborators(self) -> None:
        if not self.database_factory:
            raise ValueError("No persistence configured: database_factory is required")
        if not self.rules_engine_factory:
            raise ValueError(
                "No rules engine configured: rules_engine_factory is required"
            )
