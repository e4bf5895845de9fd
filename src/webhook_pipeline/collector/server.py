from typing import Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger

from webhook_pipeline.collector.handlers import WebhookRouter
from webhook_pipeline.collector.routes import router
from webhook_pipeline.common.collaborators import Database
from webhook_pipeline.common.config import CollectorConfig, Provider
from webhook_pipeline.common.log import setup_logging
from webhook_pipeline.common.metrics import metrics, start_metrics_server
from webhook_pipeline.common.queue import QueueBackend


def create_app(
    config: CollectorConfig,
    webhook_router: Optional[WebhookRouter] = None,
    backend: Optional[QueueBackend] = None,
    db: Optional[Database] = None,
) -> FastAPI:
    app = FastAPI(
        title="Webhook Pipeline Collector",
        description="Verifies provider webhooks and queues them for processing",
        version="0.1.0",
    )
    app.state.webhook_router = webhook_router

    app.include_router(router, prefix="/webhooks")

    @app.on_event("startup")
    async def startup_event():
        setup_logging(config.log_level)

        if config.metrics.enabled:
            start_metrics_server(config.metrics.port, config.metrics.host)
            logger.info(
                f"Metrics server started on {config.metrics.host}:{config.metrics.port}"
            )

        metrics.up.labels(component="collector").set(1)

        logger.info(f"Webhook Pipeline Collector started on {config.host}:{config.port}")

        for provider in Provider:
            source = config.get_source(provider)
            if source.secret:
                logger.info(
                    f"Accepting {provider.value} webhooks signed via {source.header_name()}"
                )
            else:
                logger.warning(
                    f"No secret configured for {provider.value}, its webhooks will be rejected"
                )

    @app.on_event("shutdown")
    async def shutdown_event():
        metrics.up.labels(component="collector").set(0)
        if backend is not None:
            await backend.close()
        if db is not None:
            await db.close()
        logger.info("Webhook Pipeline Collector shutting down")

    return app


def run_server(
    config: CollectorConfig,
    webhook_router: WebhookRouter,
    backend: Optional[QueueBackend] = None,
    db: Optional[Database] = None,
):
    app = create_app(config, webhook_router, backend=backend, db=db)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="info",
    )
