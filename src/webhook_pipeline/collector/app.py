import sys
from pathlib import Path
from typing import Optional, Tuple

import click
import yaml
from loguru import logger

from webhook_pipeline.collector.handlers import WebhookRouter
from webhook_pipeline.collector.server import run_server
from webhook_pipeline.common.collaborators import Database, build_collaborator
from webhook_pipeline.common.config import CollectorConfig
from webhook_pipeline.common.emitter import EventEmitter
from webhook_pipeline.common.log import setup_logging
from webhook_pipeline.common.queue import (
    JobQueue,
    QueueBackend,
    create_queue_backend,
    default_job_options,
)
from webhook_pipeline.common.schedules import WORKFLOW_QUEUE


def load_config_from_file(config_path: str) -> CollectorConfig:
    """Load configuration from a YAML file."""
    file_path = Path(config_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(file_path, "r") as f:
        config_data = yaml.safe_load(f) or {}

    return CollectorConfig.model_validate(config_data)


def setup_app(
    config: CollectorConfig,
) -> Tuple[WebhookRouter, QueueBackend, Optional[Database]]:
    """Build the collector's collaborators from config."""
    setup_logging(config.log_level)

    config.validate_queue_config()

    backend = create_queue_backend(config.redis, config.retry)

    db = None
    if config.database_factory:
        db = build_collaborator(config.database_factory, config, Database)
    else:
        logger.warning("No database_factory configured, custom webhooks will be rejected")

    queue = JobQueue(WORKFLOW_QUEUE, backend, default_job_options(config.retry))
    webhook_router = WebhookRouter(config, EventEmitter(queue), db)

    logger.info("Webhook Pipeline Collector initialized")
    return webhook_router, backend, db


@click.group()
def cli():
    """Webhook Pipeline Collector CLI"""
    pass


@cli.command("serve")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def serve(config: str):
    """Start the collector server."""
    try:
        config_obj = load_config_from_file(config)
        webhook_router, backend, db = setup_app(config_obj)
        run_server(config_obj, webhook_router, backend=backend, db=db)
    except Exception as e:
        logger.error(f"Failed to start collector: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
