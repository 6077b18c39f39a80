import json

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from replyflow.dependencies import channel_adapter_or_500, get_orchestrator, get_tenant_config
from replyflow.logging_config import get_logger
from replyflow.schemas.events import Channel
from replyflow.schemas.tenant import TenantConfig
from replyflow.schemas.webhook import WebhookResponse
from replyflow.services.orchestrator import Orchestrator

logger = get_logger("line_webhook")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/line/{tenant_id}", response_model=WebhookResponse)
async def handle_line_webhook(
    tenant_id: str,
    request: Request,
    tenant: TenantConfig = Depends(get_tenant_config),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """LINE Messaging API webhook.

    - Bad signature -> 403
    - Malformed body -> 200 "ignored" so LINE does not retry it
    - Per-event failures are logged; the delivery is still acknowledged
    """
    adapter = channel_adapter_or_500(tenant, Channel.LINE)
    body = await request.body()

    if not adapter.verify_signature(body, request.headers):
        logger.warning("Invalid LINE signature", extra={"context": {"tenant_id": tenant_id}})
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        events = adapter.parse_events(tenant_id, json.loads(body))
    except (ValueError, ValidationError) as e:
        logger.warning("Malformed LINE payload", extra={"context": {"tenant_id": tenant_id, "error": str(e)}})
        return WebhookResponse(status="ignored", message="Malformed payload")

    if not events:
        return WebhookResponse(message="No actionable events")

    outcomes = await orchestrator.handle_events(events, tenant, adapter)
    return WebhookResponse(
        processed=len(events),
        outcomes=[outcome.status.value if outcome else None for outcome in outcomes],
    )
