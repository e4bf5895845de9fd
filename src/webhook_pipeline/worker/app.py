import asyncio
import signal
import sys
from pathlib import Path

import click
import yaml
from loguru import logger

from webhook_pipeline.common.collaborators import Database, RulesEngine, build_collaborator
from webhook_pipeline.common.config import WorkerConfig
from webhook_pipeline.common.log import setup_logging
from webhook_pipeline.common.metrics import start_metrics_server
from webhook_pipeline.common.queue import create_queue_backend
from webhook_pipeline.worker.clients import HeartbeatClient, ResendEmailClient
from webhook_pipeline.worker.supervisor import Supervisor


def load_config_from_file(config_path: str) -> WorkerConfig:
    """Load configuration from a YAML file."""
    file_path = Path(config_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(file_path, "r") as f:
        config_data = yaml.safe_load(f) or {}

    return WorkerConfig.model_validate(config_data)


def build_supervisor(config: WorkerConfig) -> Supervisor:
    """Validate the config and build the supervisor with its collaborators."""
    setup_logging(config.log_level)

    config.validate_queue_config()
    config.validate_collaborators()

    backend = create_queue_backend(config.redis, config.retry)
    db = build_collaborator(config.database_factory, config, Database)
    rules_engine = build_collaborator(config.rules_engine_factory, config, RulesEngine)

    email_client = ResendEmailClient.from_config(config.email)
    heartbeat = HeartbeatClient(config.heartbeat_url)
    if not heartbeat.enabled:
        logger.info("No heartbeat URL configured, heartbeat disabled")

    logger.info("Webhook Pipeline Worker initialized")
    return Supervisor(
        config,
        backend,
        db,
        rules_engine,
        email_client=email_client,
        heartbeat=heartbeat,
    )


async def run_supervisor(supervisor: Supervisor, config: WorkerConfig) -> int:
    """Run the supervisor until it shuts down, returning its exit code."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(supervisor.handle_loop_exception)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            sig, lambda s=sig: supervisor.request_shutdown(s.name)
        )

    if config.metrics.enabled:
        start_metrics_server(config.metrics.port, config.metrics.host)
        logger.info(f"Metrics server started on {config.metrics.host}:{config.metrics.port}")

    return await supervisor.run()


@click.group()
def cli():
    """Webhook Pipeline Worker CLI"""
    pass


@cli.command("serve")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def serve(config: str):
    """Start the queue workers."""
    try:
        config_obj = load_config_from_file(config)
        exit_code = asyncio.run(_serve(config_obj))
    except Exception as e:
        logger.error(f"Failed to start worker: {e}")
        sys.exit(1)
    sys.exit(exit_code)


async def _serve(config: WorkerConfig) -> int:
    supervisor = build_supervisor(config)
    return await run_supervisor(supervisor, config)


if __name__ == "__main__":
    cli()
