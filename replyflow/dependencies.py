"""FastAPI dependencies shared by the webhook and admin routers."""

from fastapi import Depends, HTTPException
from sqlalchemy.orm import Session

from replyflow.database import get_db
from replyflow.redis_client import get_redis
from replyflow.schemas.events import Channel
from replyflow.schemas.tenant import TenantConfig
from replyflow.services.admin_service import AdminService
from replyflow.services.background import BackgroundDispatcher
from replyflow.services.channels import ChannelAdapter, get_channel_adapter
from replyflow.services.orchestrator import Orchestrator
from replyflow.services.tenant_service import (
    ChannelNotConfiguredError,
    TenantNotConfiguredError,
    resolve_tenant_config,
)

dispatcher = BackgroundDispatcher()


def get_dispatcher() -> BackgroundDispatcher:
    return dispatcher


def get_tenant_config(tenant_id: str, db: Session = Depends(get_db)) -> TenantConfig:
    """Resolved once per request and passed down by reference."""
    try:
        return resolve_tenant_config(db, tenant_id)
    except TenantNotConfiguredError as e:
        raise HTTPException(status_code=404, detail=str(e))


def get_orchestrator(
    redis_client=Depends(get_redis),
    background: BackgroundDispatcher = Depends(get_dispatcher),
) -> Orchestrator:
    return Orchestrator(redis_client, background)


def get_admin_service(orchestrator: Orchestrator = Depends(get_orchestrator)) -> AdminService:
    return AdminService(
        orchestrator.store,
        orchestrator.learned_store,
        orchestrator.dispatcher,
        orchestrator.chain_factory,
        orchestrator.config,
    )


def channel_adapter_or_500(tenant: TenantConfig, channel: Channel) -> ChannelAdapter:
    try:
        return get_channel_adapter(tenant, channel)
    except ChannelNotConfiguredError as e:
        raise HTTPException(status_code=500, detail=str(e))
