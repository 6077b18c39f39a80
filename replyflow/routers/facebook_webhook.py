import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from replyflow.dependencies import channel_adapter_or_500, get_orchestrator, get_tenant_config
from replyflow.logging_config import get_logger
from replyflow.schemas.events import Channel
from replyflow.schemas.tenant import TenantConfig
from replyflow.schemas.webhook import WebhookResponse
from replyflow.services.channels.facebook import FacebookAdapter
from replyflow.services.orchestrator import Orchestrator

logger = get_logger("facebook_webhook")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.get("/facebook/{tenant_id}", response_class=PlainTextResponse)
async def verify_facebook_webhook(
    tenant_id: str,
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    tenant: TenantConfig = Depends(get_tenant_config),
):
    """Messenger subscription handshake: echo hub.challenge when the verify token matches."""
    adapter = channel_adapter_or_500(tenant, Channel.FACEBOOK)
    echoed = adapter.verify_subscription(mode, token, challenge) if isinstance(adapter, FacebookAdapter) else None
    if echoed is None:
        logger.warning("Facebook verification rejected", extra={"context": {"tenant_id": tenant_id}})
        raise HTTPException(status_code=403, detail="Verification failed")
    return echoed


@router.post("/facebook/{tenant_id}", response_model=WebhookResponse)
async def handle_facebook_webhook(
    tenant_id: str,
    request: Request,
    tenant: TenantConfig = Depends(get_tenant_config),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    adapter = channel_adapter_or_500(tenant, Channel.FACEBOOK)
    body = await request.body()

    if not adapter.verify_signature(body, request.headers):
        logger.warning("Invalid Facebook signature", extra={"context": {"tenant_id": tenant_id}})
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        events = adapter.parse_events(tenant_id, json.loads(body))
    except (ValueError, ValidationError) as e:
        logger.warning("Malformed Facebook payload", extra={"context": {"tenant_id": tenant_id, "error": str(e)}})
        return WebhookResponse(status="ignored", message="Malformed payload")

    if not events:
        return WebhookResponse(message="No actionable events")

    outcomes = await orchestrator.handle_events(events, tenant, adapter)
    return WebhookResponse(
        processed=len(events),
        outcomes=[outcome.status.value if outcome else None for outcome in outcomes],
    )
