"""Worker component: queue consumers and the process supervisor."""

from webhook_pipeline.worker.app import (
    build_supervisor,
    cli,
    load_config_from_file,
    run_supervisor,
)
from webhook_pipeline.worker.base import Worker
from webhook_pipeline.worker.supervisor import Supervisor, SupervisorState

__all__ = [
    "load_config_from_file",
    "build_supervisor",
    "run_supervisor",
    "cli",
    "Worker",
    "Supervisor",
    "SupervisorState",
]
