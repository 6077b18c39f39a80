"""Internal review API for tenant admins."""

import hmac
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, model_validator

from replyflow.config import settings
from replyflow.dependencies import (
    channel_adapter_or_500,
    get_admin_service,
    get_orchestrator,
    get_tenant_config,
)
from replyflow.schemas.conversation import AdminAction, CustomerStage, PurchaseIntent
from replyflow.schemas.learned import LearnedKind, QAReviewStatus
from replyflow.schemas.tenant import BusinessHoursConfig, TenantConfig
from replyflow.services.admin_service import AdminService
from replyflow.services.business_hours import check_business_hours, get_business_hours
from replyflow.services.crm_service import extract_crm_profile
from replyflow.services.digest_service import build_daily_digest, get_chat_summary
from replyflow.services.followup_service import run_followup_scan
from replyflow.services.guard_service import get_rate_limit_status
from replyflow.services.orchestrator import Orchestrator
from replyflow.services.result import Result
from replyflow.services.tenant_service import effective


def require_admin_token(x_admin_token: Optional[str] = Header(None)) -> None:
    expected = settings.admin_api_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Invalid admin token")


def get_admin_user(x_admin_user: Optional[str] = Header(None)) -> str:
    return (x_admin_user or "admin").strip() or "admin"


router = APIRouter(
    prefix="/admin/{tenant_id}",
    tags=["admin"],
    dependencies=[Depends(require_admin_token), Depends(get_tenant_config)],
)


# === SCHEMAS ===


class SendRequest(BaseModel):
    text: str = ""
    image_url: Optional[str] = None
    correction_of: Optional[str] = None

    @model_validator(mode="after")
    def require_content(self) -> "SendRequest":
        if not self.text.strip() and not self.image_url:
            raise ValueError("text or image_url is required")
        return self


class BotToggleRequest(BaseModel):
    enabled: bool


class PinRequest(BaseModel):
    reason: Optional[str] = None


class AssignRequest(BaseModel):
    admin: str


class CRMUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    budget: Optional[str] = None
    province: Optional[str] = None
    occupation: Optional[str] = None
    purchase_intent: Optional[PurchaseIntent] = None
    stage: Optional[CustomerStage] = None
    interested_products: Optional[list[str]] = None
    tags: Optional[list[str]] = None
    note: Optional[str] = None


class LearnedToggleRequest(BaseModel):
    enabled: bool


class CorrectionRequest(BaseModel):
    question: str
    bot_answer: str = ""
    admin_answer: str
    user_id: str = ""


class QAReviewRequest(BaseModel):
    status: QAReviewStatus


class FollowupSendRequest(BaseModel):
    text: Optional[str] = None


def _unwrap(result: Result):
    if result.ok:
        return result.value
    if result.error_code == "not_found":
        raise HTTPException(status_code=404, detail=result.error)
    if result.error_code == "invalid_state":
        raise HTTPException(status_code=409, detail=result.error)
    raise HTTPException(status_code=502, detail=result.error or "Channel send failed")


async def _require_conversation(orchestrator: Orchestrator, tenant_id: str, user_id: str):
    conversation = await orchestrator.store.get_conversation(tenant_id, user_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail=f"Conversation '{user_id}' not found")
    return conversation


# === CONVERSATIONS ===


@router.get("/conversations")
async def list_conversations(
    tenant_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    items = await orchestrator.store.list_conversations(tenant_id, offset=offset, limit=limit)
    return {"total": await orchestrator.store.count_conversations(tenant_id), "items": items}


@router.get("/conversations/{user_id}")
async def get_conversation(tenant_id: str, user_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    conversation = await _require_conversation(orchestrator, tenant_id, user_id)
    return {
        "conversation": conversation,
        "followup": await orchestrator.store.get_followup(tenant_id, user_id),
        "crm": await orchestrator.store.get_crm_profile(tenant_id, user_id),
    }


@router.get("/conversations/{user_id}/messages")
async def get_messages(
    tenant_id: str,
    user_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    await _require_conversation(orchestrator, tenant_id, user_id)
    return {
        "total": await orchestrator.store.count_messages(tenant_id, user_id),
        "items": await orchestrator.store.get_messages(tenant_id, user_id, limit=limit),
    }


@router.delete("/conversations/{user_id}")
async def delete_conversation(
    tenant_id: str,
    user_id: str,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    _unwrap(await admin.delete_conversation(tenant_id, user_id, username))
    return {"success": True}


@router.post("/conversations/{user_id}/send")
async def send_message(
    tenant_id: str,
    user_id: str,
    data: SendRequest,
    username: str = Depends(get_admin_user),
    tenant: TenantConfig = Depends(get_tenant_config),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    admin: AdminService = Depends(get_admin_service),
):
    """Send as a human admin. Switches the bot off for this conversation."""
    conversation = await _require_conversation(orchestrator, tenant_id, user_id)
    adapter = channel_adapter_or_500(tenant, conversation.source)
    message = _unwrap(
        await admin.send(
            tenant,
            adapter,
            user_id,
            username,
            text=data.text.strip(),
            image_url=data.image_url,
            correction_of=data.correction_of,
        )
    )
    return {"success": True, "message": message}


@router.post("/conversations/{user_id}/bot")
async def toggle_bot(
    tenant_id: str,
    user_id: str,
    data: BotToggleRequest,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    control = _unwrap(await admin.toggle_bot(tenant_id, user_id, username, data.enabled))
    return control.as_fields()


@router.post("/conversations/{user_id}/pin")
async def pin_conversation(
    tenant_id: str,
    user_id: str,
    data: PinRequest,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    control = _unwrap(await admin.pin(tenant_id, user_id, username, data.reason))
    return control.as_fields()


@router.post("/conversations/{user_id}/unpin")
async def unpin_conversation(
    tenant_id: str,
    user_id: str,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    control = _unwrap(await admin.unpin(tenant_id, user_id, username))
    return control.as_fields()


@router.post("/conversations/{user_id}/assign")
async def assign_conversation(
    tenant_id: str,
    user_id: str,
    data: AssignRequest,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    _unwrap(await admin.assign(tenant_id, user_id, username, data.admin.strip()))
    return {"success": True, "assigned_admin": data.admin.strip()}


@router.post("/conversations/{user_id}/unassign")
async def unassign_conversation(
    tenant_id: str,
    user_id: str,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    _unwrap(await admin.assign(tenant_id, user_id, username, None))
    return {"success": True, "assigned_admin": None}


@router.post("/conversations/{user_id}/read")
async def mark_read(tenant_id: str, user_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    await _require_conversation(orchestrator, tenant_id, user_id)
    await orchestrator.store.mark_read(tenant_id, user_id)
    return {"success": True}


@router.get("/conversations/{user_id}/summary")
async def conversation_summary(
    tenant_id: str,
    user_id: str,
    refresh: bool = False,
    tenant: TenantConfig = Depends(get_tenant_config),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    await _require_conversation(orchestrator, tenant_id, user_id)
    summary = await get_chat_summary(
        orchestrator.store, orchestrator.chain_factory(tenant), tenant_id, user_id, refresh=refresh
    )
    if summary is None:
        raise HTTPException(status_code=404, detail="No summary available")
    return summary


# === TENANT SETTINGS ===


@router.get("/bot")
async def get_global_bot(tenant_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return {"enabled": await orchestrator.store.get_global_bot_enabled(tenant_id)}


@router.put("/bot")
async def set_global_bot(
    tenant_id: str,
    data: BotToggleRequest,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    await admin.set_global_bot(tenant_id, username, data.enabled)
    return {"enabled": data.enabled}


@router.get("/business-hours")
async def read_business_hours(
    tenant_id: str,
    tenant: TenantConfig = Depends(get_tenant_config),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    hours = await get_business_hours(orchestrator.store, tenant_id, tenant.business_hours)
    status = check_business_hours(hours)
    return {
        "config": hours,
        "is_open": status.is_open,
        "day": status.day_name,
        "current_time": status.current_time,
    }


@router.put("/business-hours")
async def update_business_hours(
    tenant_id: str,
    data: BusinessHoursConfig,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    return await admin.update_business_hours(tenant_id, username, data)


@router.get("/rate-limit/{user_id}")
async def rate_limit_status(
    tenant_id: str,
    user_id: str,
    tenant: TenantConfig = Depends(get_tenant_config),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    status = await get_rate_limit_status(
        orchestrator.redis,
        tenant_id,
        user_id,
        effective(tenant, "rate_limit_messages", orchestrator.config),
        effective(tenant, "rate_limit_window_seconds", orchestrator.config),
    )
    return asdict(status)


# === ACTIVITY ===


@router.get("/activity")
async def list_activity(
    tenant_id: str,
    since: Optional[int] = None,
    until: Optional[int] = None,
    username: Optional[str] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.store.get_admin_activity(
        tenant_id, since=since, until=until, username=username, offset=offset, limit=limit
    )


@router.get("/admin-stats")
async def admin_stats(tenant_id: str, since: Optional[int] = None, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.store.get_admin_stats(tenant_id, since=since)


# === CRM ===


@router.get("/crm")
async def list_crm(
    tenant_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.store.list_crm_profiles(tenant_id, offset=offset, limit=limit)


@router.get("/crm/{user_id}")
async def get_crm(tenant_id: str, user_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    profile = await orchestrator.store.get_crm_profile(tenant_id, user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"No CRM profile for '{user_id}'")
    return profile


@router.put("/crm/{user_id}")
async def save_crm(
    tenant_id: str,
    user_id: str,
    data: CRMUpdate,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    updates = data.model_dump(mode="json", exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    return await admin.save_crm(tenant_id, user_id, username, updates)


@router.post("/crm/{user_id}/extract")
async def extract_crm(
    tenant_id: str,
    user_id: str,
    tenant: TenantConfig = Depends(get_tenant_config),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    await _require_conversation(orchestrator, tenant_id, user_id)
    profile = await extract_crm_profile(
        orchestrator.store,
        orchestrator.chain_factory(tenant),
        tenant_id,
        user_id,
        min_customer_messages=1,
    )
    return {"extracted": profile is not None, "profile": profile}


# === LEARNING ===


@router.get("/learned")
async def list_learned(
    tenant_id: str,
    kind: Optional[LearnedKind] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    if kind is not None:
        return await orchestrator.learned_store.get_items(tenant_id, kind)
    return await orchestrator.learned_store.get_all_learned_data(tenant_id)


@router.get("/learned/stats")
async def learned_stats(tenant_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.learned_store.get_stats(tenant_id)


async def _require_learned(orchestrator: Orchestrator, tenant_id: str, kind: LearnedKind, item_id: str):
    item = await orchestrator.learned_store.get_item(tenant_id, kind, item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Learned {kind.value} '{item_id}' not found")
    return item


@router.patch("/learned/{kind}/{item_id}")
async def toggle_learned(
    tenant_id: str,
    kind: LearnedKind,
    item_id: str,
    data: LearnedToggleRequest,
    username: str = Depends(get_admin_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    admin: AdminService = Depends(get_admin_service),
):
    item = await _require_learned(orchestrator, tenant_id, kind, item_id)
    await admin.set_learned_enabled(tenant_id, username, item, data.enabled)
    return {"id": item_id, "kind": kind, "enabled": data.enabled}


@router.delete("/learned/{kind}/{item_id}")
async def delete_learned(
    tenant_id: str,
    kind: LearnedKind,
    item_id: str,
    username: str = Depends(get_admin_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    admin: AdminService = Depends(get_admin_service),
):
    item = await _require_learned(orchestrator, tenant_id, kind, item_id)
    await admin.delete_learned(tenant_id, username, item)
    return {"success": True}


@router.post("/corrections", status_code=202)
async def record_correction(
    tenant_id: str,
    data: CorrectionRequest,
    username: str = Depends(get_admin_user),
    tenant: TenantConfig = Depends(get_tenant_config),
    admin: AdminService = Depends(get_admin_service),
):
    """Queue a correction for analysis. The learned entity, if any, appears once the job finishes."""
    await admin.record_correction(tenant, username, data.question, data.bot_answer, data.admin_answer, data.user_id)
    return {"queued": True}


@router.get("/misses")
async def list_misses(
    tenant_id: str,
    limit: int = Query(50, ge=1, le=500),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.learned_store.get_top_misses(tenant_id, limit=limit)


@router.get("/qa-log")
async def list_qa_log(
    tenant_id: str,
    status: Optional[QAReviewStatus] = None,
    limit: int = Query(50, ge=1, le=500),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.learned_store.get_qa_log(tenant_id, status=status, limit=limit)


@router.patch("/qa-log/{entry_id}")
async def review_qa(
    tenant_id: str,
    entry_id: str,
    data: QAReviewRequest,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    if not await admin.review_qa(tenant_id, username, entry_id, data.status):
        raise HTTPException(status_code=404, detail=f"Q&A entry '{entry_id}' not found")
    return {"id": entry_id, "review_status": data.status}


# === FOLLOW-UPS ===


@router.get("/followups")
async def list_followups(tenant_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.store.get_followups(tenant_id)


@router.post("/followups/analyze", status_code=202)
async def analyze_followups(
    tenant_id: str,
    limit: int = Query(50, ge=1, le=200),
    tenant: TenantConfig = Depends(get_tenant_config),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    orchestrator.dispatcher.dispatch(
        run_followup_scan(
            orchestrator.store,
            orchestrator.chain_factory(tenant),
            tenant_id,
            tenant.name or tenant_id,
            limit=limit,
        ),
        name="followup_scan",
        context={"tenant_id": tenant_id},
    )
    return {"queued": True}


@router.post("/followups/{user_id}/send")
async def send_followup(
    tenant_id: str,
    user_id: str,
    data: FollowupSendRequest,
    username: str = Depends(get_admin_user),
    tenant: TenantConfig = Depends(get_tenant_config),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    admin: AdminService = Depends(get_admin_service),
):
    followup = await orchestrator.store.get_followup(tenant_id, user_id)
    text = (data.text or (followup.suggested_message if followup else "")).strip()
    if not text:
        raise HTTPException(status_code=404, detail=f"No follow-up message for '{user_id}'")

    conversation = await _require_conversation(orchestrator, tenant_id, user_id)
    adapter = channel_adapter_or_500(tenant, conversation.source)
    message = _unwrap(await admin.send(tenant, adapter, user_id, username, text=text, action=AdminAction.SEND_FOLLOWUP))
    return {"success": True, "message": message}


@router.post("/followups/{user_id}/dismiss")
async def dismiss_followup(
    tenant_id: str,
    user_id: str,
    username: str = Depends(get_admin_user),
    admin: AdminService = Depends(get_admin_service),
):
    await admin.dismiss_followup(tenant_id, user_id, username)
    return {"success": True}


# === DIGEST & USAGE ===


@router.get("/digest")
async def daily_digest(
    tenant_id: str,
    date: Optional[str] = None,
    force: bool = False,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await build_daily_digest(
        orchestrator.store,
        orchestrator.learned_store,
        orchestrator.ledger,
        tenant_id,
        date=date,
        config=orchestrator.config,
        force=force,
    )


@router.get("/usage/daily")
async def usage_daily(
    tenant_id: str,
    days: int = Query(7, ge=1, le=90),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.ledger.get_daily_usage(tenant_id, days=days)


@router.get("/usage/totals")
async def usage_totals(tenant_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.ledger.get_usage_totals(tenant_id)


@router.get("/usage/models")
async def usage_by_model(
    tenant_id: str,
    days: int = Query(30, ge=1, le=90),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.ledger.get_usage_by_model(tenant_id, days=days)


@router.get("/usage/log")
async def usage_log(
    tenant_id: str,
    limit: int = Query(100, ge=1, le=1000),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.ledger.get_usage_log(tenant_id, limit=limit)
