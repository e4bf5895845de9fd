"""Collector component: receives, verifies and enqueues provider webhooks."""

from webhook_pipeline.collector.app import cli, load_config_from_file, setup_app
from webhook_pipeline.collector.handlers import WebhookRouter
from webhook_pipeline.collector.server import create_app, run_server
from webhook_pipeline.collector.signature import SignatureScheme, sign, verify

__all__ = [
    "load_config_from_file",
    "setup_app",
    "cli",
    "create_app",
    "run_server",
    "WebhookRouter",
    "SignatureScheme",
    "sign",
    "verify",
]
