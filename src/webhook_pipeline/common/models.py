from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from webhook_pipeline.common.config import Provider


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookRequest(BaseModel):
    """An inbound webhook call as received by the transport."""

    model_config = ConfigDict(frozen=True)

    body: Any = None
    headers: Dict[str, Optional[str]] = Field(default_factory=dict)
    raw_body: Optional[bytes] = None
    received_at: datetime = Field(default_factory=utcnow)

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def header_map(self) -> Dict[str, str]:
        return {key: value for key, value in self.headers.items() if value}


class VerificationFailure(str, Enum):
    MISSING_SIGNATURE = "missing_signature"
    MISSING_SECRET = "missing_secret"
    BAD_SIGNATURE = "bad_signature"
    TIMESTAMP_EXPIRED = "timestamp_expired"


class VerificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    reason: Optional[VerificationFailure] = None

    @property
    def valid(self) -> bool:
        return self.reason is None

    @classmethod
    def ok(cls) -> "VerificationResult":
        return cls()

    @classmethod
    def invalid(cls, reason: VerificationFailure) -> "VerificationResult":
        return cls(reason=reason)


class WebhookError(str, Enum):
    AUTHENTICATION = "authentication"
    CONFIGURATION = "configuration"
    ATTRIBUTION = "attribution"
    NOT_FOUND = "not_found"


class WebhookResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    event_id: Optional[str] = Field(default=None, serialization_alias="eventId")
    error: Optional[WebhookError] = Field(default=None, exclude=True)


class NormalizedEvent(BaseModel):
    organization_id: str = Field(min_length=1)
    provider: Provider
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class JobOptions(BaseModel):
    job_id: Optional[str] = None
    delay: float = 0  # seconds
    attempts: int = 3
    backoff_delay: float = 5.0  # seconds
    repeat_key: Optional[str] = None
    repeat_pattern: Optional[str] = None

    def backoff_for(self, attempts_made: int) -> float:
        """Exponential backoff before the next attempt."""
        return self.backoff_delay * (2 ** max(attempts_made - 1, 0))


class Job(BaseModel):
    id: str
    queue_name: str
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    options: JobOptions = Field(default_factory=JobOptions)
    attempts_made: int = 0
    state: JobState = JobState.WAITING
    created_at: datetime = Field(default_factory=utcnow)
    scheduled_for: Optional[datetime] = None
    failed_reason: Optional[str] = None
    return_value: Optional[Dict[str, Any]] = None
    finished_at: Optional[datetime] = None

    @property
    def repeat(self) -> Optional[str]:
        return self.options.repeat_pattern


class ScheduleSpec(BaseModel):
    """A recurring job registered under a stable id."""

    model_config = ConfigDict(frozen=True)

    queue_name: str
    job_name: str
    job_id: str
    pattern: str
    data: Dict[str, Any] = Field(default_factory=dict)


# Job payloads


WorkflowJobData = NormalizedEvent


class MaintenanceJobData(BaseModel):
    type: Literal["cleanup-automation-logs"] = "cleanup-automation-logs"
    retention_days: int = 7


class DeletionJobData(BaseModel):
    type: Literal["process-deletions", "send-reminders"]


# Job results


class WorkflowJobResult(BaseModel):
    rules_evaluated: int = 0
    rules_matched: int = 0


class MaintenanceJobResult(BaseModel):
    deleted_count: int = 0


class DeletionJobResult(BaseModel):
    processed_count: int = 0
    emails_sent: int = 0


# Persistence records


class UserRecord(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


class DeletionRequest(BaseModel):
    id: str
    user_id: str
    scheduled_deletion_at: datetime
    reminders_sent: List[str] = Field(default_factory=list)

    @field_validator("reminders_sent", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return value or []
