"""Resolve a TenantConfig from the tenant_settings row, the YAML business profile and env fallbacks."""

import os
from pathlib import Path
from typing import Optional

import yaml
from sqlalchemy.orm import Session

from replyflow.config import Settings, settings
from replyflow.logging_config import get_logger
from replyflow.models import TenantSettings
from replyflow.schemas.events import Channel
from replyflow.schemas.tenant import ChannelCredentials, TenantConfig
from replyflow.services.fallback_chain import parse_provider_order

logger = get_logger("tenant_service")

CREDENTIAL_FIELDS = (
    "line_channel_secret",
    "line_channel_access_token",
    "facebook_page_access_token",
    "facebook_verify_token",
    "facebook_app_secret",
)


class TenantNotConfiguredError(Exception):
    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant '{tenant_id}' is not configured or inactive")


class ChannelNotConfiguredError(Exception):
    def __init__(self, tenant_id: str, channel: Channel, missing: list[str]):
        self.tenant_id = tenant_id
        self.channel = channel
        self.missing = missing
        super().__init__(f"Tenant '{tenant_id}' has no {channel.value} credentials: missing {', '.join(missing)}")


def _env_credential(tenant_id: str, field: str) -> Optional[str]:
    prefix = tenant_id.upper().replace("-", "_")
    return os.environ.get(f"{prefix}_{field.upper()}") or None


def load_business_profile(tenant_id: str, tenants_dir: Optional[str] = None) -> dict:
    """Read tenants/{tenant_id}.yaml. A missing file yields an empty profile."""
    path = Path(tenants_dir or settings.tenants_dir) / f"{tenant_id}.yaml"
    if not path.exists():
        return {}
    with path.open(encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        logger.warning("Ignoring malformed tenant profile", extra={"context": {"path": str(path)}})
        return {}
    return data


def resolve_credentials(tenant_id: str, row: Optional[TenantSettings], config: Settings = settings) -> ChannelCredentials:
    """Row value, then {TENANT}_FIELD env var, then the deployment-wide setting."""
    values = {}
    for field in CREDENTIAL_FIELDS:
        value = getattr(row, field, None) if row is not None else None
        values[field] = value or _env_credential(tenant_id, field) or getattr(config, field, "") or ""
    return ChannelCredentials(**values)


def resolve_tenant_config(db: Session, tenant_id: str, config: Settings = settings) -> TenantConfig:
    row = db.query(TenantSettings).filter(TenantSettings.tenant_id == tenant_id).first()
    profile = load_business_profile(tenant_id, config.tenants_dir)

    if row is None and not profile:
        raise TenantNotConfiguredError(tenant_id)
    if row is not None and row.is_active is False:
        raise TenantNotConfiguredError(tenant_id)

    provider_order = parse_provider_order(
        (row.provider_order if row is not None and row.provider_order else None)
        or profile.pop("provider_order", None)
        or config.default_provider_order
    )
    profile.pop("provider_order", None)

    name = (row.name if row is not None and row.name else None) or profile.pop("name", None) or tenant_id
    profile.pop("name", None)
    resolver_url = (row.resolver_url if row is not None else None) or profile.pop("resolver_url", None)
    for reserved in ("tenant_id", "credentials", "notify_bot_token", "notify_chat_id", "resolver_url"):
        profile.pop(reserved, None)

    return TenantConfig(
        tenant_id=tenant_id,
        name=name,
        credentials=resolve_credentials(tenant_id, row, config),
        notify_bot_token=row.telegram_bot_token if row is not None else None,
        notify_chat_id=row.telegram_chat_id if row is not None else None,
        resolver_url=resolver_url,
        provider_order=provider_order,
        **profile,
    )


def require_channel_credentials(tenant: TenantConfig, channel: Channel) -> None:
    creds = tenant.credentials
    if channel == Channel.LINE:
        required = {
            "line_channel_secret": creds.line_channel_secret,
            "line_channel_access_token": creds.line_channel_access_token,
        }
    else:
        required = {"facebook_page_access_token": creds.facebook_page_access_token}
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise ChannelNotConfiguredError(tenant.tenant_id, channel, missing)


def effective(tenant: TenantConfig, name: str, config: Settings = settings):
    """Tenant override for a tunable, or the deployment default."""
    value = getattr(tenant, name, None)
    return value if value is not None else getattr(config, name)
