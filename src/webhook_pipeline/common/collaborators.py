import importlib
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, List, Optional

from loguru import logger

from webhook_pipeline.common.models import (
    DeletionRequest,
    NormalizedEvent,
    UserRecord,
    WorkflowJobResult,
)


class CollaboratorLoadError(Exception):
    pass


class Database(ABC):
    """Persistence operations the pipeline calls into."""

    @abstractmethod
    async def find_organization(self, organization_id: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def delete_automation_logs_before(self, cutoff: datetime) -> int:
        pass

    @abstractmethod
    async def find_due_deletions(self, now: datetime) -> List[DeletionRequest]:
        """Pending grace-period requests scheduled at or before ``now``."""

    @abstractmethod
    async def find_deletions_scheduled_between(
        self, start: datetime, end: datetime, exclude_reminder: str
    ) -> List[DeletionRequest]:
        """Pending grace-period requests in [start, end] not yet sent ``exclude_reminder``."""

    @abstractmethod
    async def find_user(self, user_id: str) -> Optional[UserRecord]:
        pass

    @abstractmethod
    async def delete_user_data(self, user_id: str) -> None:
        """Delete every record owned by the user, then the user itself."""

    @abstractmethod
    async def mark_deletion_completed(self, request_id: str, completed_at: datetime) -> None:
        pass

    @abstractmethod
    async def record_reminder_sent(self, request_id: str, reminder: str) -> None:
        pass

    async def close(self) -> None:
        pass


class RulesEngine(ABC):
    @abstractmethod
    async def evaluate(self, event: NormalizedEvent) -> WorkflowJobResult:
        """Run the organization's automation rules against an event."""


def load_factory(path: str) -> Callable:
    """Resolve a ``package.module:attribute`` import string."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise CollaboratorLoadError(
            f"Invalid factory path {path!r}, expected 'package.module:callable'"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise CollaboratorLoadError(f"Could not import {module_name}: {e}") from e
    try:
        factory = getattr(module, attr)
    except AttributeError as e:
        raise CollaboratorLoadError(f"{module_name} has no attribute {attr}") from e
    if not callable(factory):
        raise CollaboratorLoadError(f"{path} is not callable")
    return factory


def build_collaborator(path: str, config, expected: type):
    """Call the factory at ``path`` with the config and check the result type."""
    instance = load_factory(path)(config)
    if not isinstance(instance, expected):
        raise CollaboratorLoadError(
            f"{path} returned {type(instance).__name__}, expected {expected.__name__}"
        )
    logger.info(f"Loaded {expected.__name__} from {path}")
    return instance
