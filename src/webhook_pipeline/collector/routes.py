import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger

from webhook_pipeline.collector.handlers import WebhookRouter
from webhook_pipeline.common.metrics import measure_time, metrics
from webhook_pipeline.common.models import WebhookError, WebhookRequest, WebhookResult


router = APIRouter()

ERROR_STATUS = {
    WebhookError.AUTHENTICATION: 401,
    WebhookError.CONFIGURATION: 503,
    WebhookError.ATTRIBUTION: 422,
    WebhookError.NOT_FOUND: 404,
}


async def get_webhook_router(request: Request) -> WebhookRouter:
    webhook_router = getattr(request.app.state, "webhook_router", None)
    if webhook_router is None:
        raise HTTPException(status_code=503, detail="Webhook router not initialized")
    return webhook_router


async def build_webhook_request(request: Request) -> WebhookRequest:
    """Capture the raw bytes before parsing so signatures see the original body."""
    raw_body = await request.body()
    try:
        body = json.loads(raw_body) if raw_body else {}
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return WebhookRequest(
        body=body,
        headers={k: v for k, v in request.headers.items()},
        raw_body=raw_body,
    )


def to_response(result: WebhookResult) -> JSONResponse:
    status_code = 202 if result.success else ERROR_STATUS.get(result.error, 400)
    return JSONResponse(
        status_code=status_code,
        content=result.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


async def _dispatch(provider: str, handler) -> JSONResponse:
    try:
        result = await handler
    except Exception as e:
        metrics.queue_publish_errors.labels(queue="workflow").inc()
        logger.error(f"Failed to queue {provider} webhook: {e}")
        raise HTTPException(status_code=500, detail="Failed to queue webhook")
    return to_response(result)


@router.post("/stripe", status_code=202)
@measure_time(metrics.webhook_processing_time, {"provider": "stripe"})
async def receive_stripe_webhook(
    webhook: WebhookRequest = Depends(build_webhook_request),
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    return await _dispatch("stripe", webhook_router.handle_stripe(webhook))


@router.post("/asaas", status_code=202)
@measure_time(metrics.webhook_processing_time, {"provider": "asaas"})
async def receive_asaas_webhook(
    webhook: WebhookRequest = Depends(build_webhook_request),
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    return await _dispatch("asaas", webhook_router.handle_asaas(webhook))


@router.post("/custom/{organization_id}", status_code=202)
@measure_time(metrics.webhook_processing_time, {"provider": "custom"})
async def receive_custom_webhook(
    organization_id: str,
    event_type: Optional[str] = None,
    webhook: WebhookRequest = Depends(build_webhook_request),
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    return await _dispatch(
        "custom", webhook_router.handle_custom(organization_id, event_type, webhook)
    )


@router.get("/health")
async def health_check():
    return {"status": "ok"}
