from replyflow.config import settings
from replyflow.schemas.events import Channel
from replyflow.schemas.tenant import TenantConfig
from replyflow.services.channels.base import ChannelAdapter
from replyflow.services.channels.facebook import FacebookAdapter
from replyflow.services.channels.line import LineAdapter, strip_markdown
from replyflow.services.tenant_service import require_channel_credentials


def get_channel_adapter(tenant: TenantConfig, channel: Channel) -> ChannelAdapter:
    """Build the adapter for a tenant. Raises ChannelNotConfiguredError on missing credentials."""
    require_channel_credentials(tenant, channel)
    creds = tenant.credentials
    if channel == Channel.LINE:
        return LineAdapter(
            creds.line_channel_secret,
            creds.line_channel_access_token,
            timeout_seconds=settings.channel_timeout_seconds,
        )
    return FacebookAdapter(
        creds.facebook_page_access_token,
        verify_token=creds.facebook_verify_token,
        app_secret=creds.facebook_app_secret,
        timeout_seconds=settings.channel_timeout_seconds,
    )


__all__ = ["ChannelAdapter", "LineAdapter", "FacebookAdapter", "get_channel_adapter", "strip_markdown"]
