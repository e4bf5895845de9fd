import json
from typing import Any, Callable, Dict, Optional

from loguru import logger

from webhook_pipeline.collector.signature import SignatureScheme, verify
from webhook_pipeline.common.collaborators import Database
from webhook_pipeline.common.config import CollectorConfig, Provider
from webhook_pipeline.common.emitter import EventEmitter
from webhook_pipeline.common.metrics import metrics
from webhook_pipeline.common.models import (
    VerificationFailure,
    WebhookError,
    WebhookRequest,
    WebhookResult,
)

PROVIDER_LABELS = {
    Provider.STRIPE: "Stripe",
    Provider.ASAAS: "Asaas",
    Provider.CUSTOM: "Custom",
}

MISSING_SIGNATURE_MESSAGES = {
    Provider.STRIPE: "Missing Stripe signature",
    Provider.ASAAS: "Missing Asaas access token",
    Provider.CUSTOM: "Missing Custom webhook signature",
}


def _dig(body: Any, *path: str) -> Optional[Any]:
    current = body
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def extract_stripe_organization_id(body: Any) -> Optional[str]:
    value = _dig(body, "data", "object", "metadata", "organization_id")
    return str(value) if value else None


def extract_asaas_organization_id(body: Any) -> Optional[str]:
    value = _dig(body, "payment", "externalReference")
    return str(value) if value else None


def canonical_body(request: WebhookRequest) -> bytes:
    """Bytes the signature was computed over.

    Re-serializing the parsed body can change key order or number formatting
    and break the HMAC; the transport should always pass the raw bytes.
    """
    if request.raw_body is not None:
        return request.raw_body
    logger.warning("Raw webhook body unavailable, verifying against re-serialized JSON")
    return json.dumps(request.body, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _reject(provider: Provider, reason: str, message: str, error: WebhookError) -> WebhookResult:
    metrics.webhook_rejected_total.labels(provider=provider.value, reason=reason).inc()
    logger.warning(f"Rejected {provider.value} webhook: {message}")
    return WebhookResult(success=False, message=message, error=error)


class WebhookRouter:
    """Per-provider webhook entry points.

    Every failure is returned as an unsuccessful ``WebhookResult``; nothing is
    enqueued unless all checks pass.
    """

    def __init__(self, config: CollectorConfig, emitter: EventEmitter, db: Optional[Database] = None):
        self.config = config
        self.emitter = emitter
        self.db = db

    def _authenticate(
        self, provider: Provider, request: WebhookRequest, scheme: SignatureScheme
    ) -> Optional[WebhookResult]:
        source = self.config.get_source(provider)
        label = PROVIDER_LABELS[provider]
        signature = request.header(source.header_name())

        result = verify(canonical_body(request), signature, source.secret, scheme)
        if result.valid:
            return None
        if result.reason == VerificationFailure.MISSING_SECRET:
            return _reject(
                provider,
                result.reason.value,
                f"{label} webhook secret not configured",
                WebhookError.CONFIGURATION,
            )
        if result.reason == VerificationFailure.MISSING_SIGNATURE:
            message = MISSING_SIGNATURE_MESSAGES[provider]
        elif result.reason == VerificationFailure.TIMESTAMP_EXPIRED:
            message = f"Expired {label} signature timestamp"
        else:
            message = f"Invalid {label} signature"
        return _reject(provider, result.reason.value, message, WebhookError.AUTHENTICATION)

    async def _accept(
        self,
        provider: Provider,
        request: WebhookRequest,
        organization_id: str,
        event_type: str,
        event_id: Optional[str] = None,
    ) -> WebhookResult:
        payload = request.body if isinstance(request.body, dict) else {"body": request.body}
        job = await self.emitter.emit(
            organization_id,
            provider,
            event_type,
            payload,
            request.header_map(),
            event_id=event_id,
        )
        metrics.webhook_received_total.labels(provider=provider.value).inc()
        return WebhookResult(
            success=True,
            message=f"{PROVIDER_LABELS[provider]} webhook received",
            event_id=job.id,
        )

    async def _handle_payload_attributed(
        self,
        provider: Provider,
        request: WebhookRequest,
        extract: Callable[[Any], Optional[str]],
        event_type_key: str,
        missing_message: str,
    ) -> WebhookResult:
        rejection = self._authenticate(provider, request, self._scheme(provider))
        if rejection:
            return rejection

        organization_id = extract(request.body)
        if not organization_id:
            return _reject(provider, "missing_organization", missing_message, WebhookError.ATTRIBUTION)

        body: Dict[str, Any] = request.body
        event_type = str(body.get(event_type_key) or "unknown")
        event_id = body.get("id")
        return await self._accept(
            provider, request, organization_id, event_type, str(event_id) if event_id else None
        )

    @staticmethod
    def _scheme(provider: Provider) -> SignatureScheme:
        if provider == Provider.STRIPE:
            return SignatureScheme.TIMESTAMPED_HMAC
        return SignatureScheme.STATIC_TOKEN

    async def handle_stripe(self, request: WebhookRequest) -> WebhookResult:
        return await self._handle_payload_attributed(
            Provider.STRIPE,
            request,
            extract_stripe_organization_id,
            "type",
            "Organization ID not found in webhook payload metadata",
        )

    async def handle_asaas(self, request: WebhookRequest) -> WebhookResult:
        return await self._handle_payload_attributed(
            Provider.ASAAS,
            request,
            extract_asaas_organization_id,
            "event",
            "Organization ID not found in webhook payload",
        )

    async def handle_custom(
        self,
        organization_id: str,
        event_type: Optional[str],
        request: WebhookRequest,
    ) -> WebhookResult:
        rejection = self._authenticate(
            Provider.CUSTOM, request, SignatureScheme.STATIC_TOKEN
        )
        if rejection:
            return rejection

        if not organization_id:
            return _reject(
                Provider.CUSTOM,
                "missing_organization",
                "Organization ID not provided",
                WebhookError.ATTRIBUTION,
            )
        if self.db is None:
            return _reject(
                Provider.CUSTOM,
                "no_database",
                "Organization lookup not configured",
                WebhookError.CONFIGURATION,
            )
        organization = await self.db.find_organization(organization_id)
        if not organization:
            return _reject(
                Provider.CUSTOM,
                "unknown_organization",
                "Organization not found",
                WebhookError.NOT_FOUND,
            )

        return await self._accept(
            Provider.CUSTOM, request, organization_id, event_type or "custom.event"
        )
