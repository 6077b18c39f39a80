from sqlalchemy import Boolean, Column, Text, TIMESTAMP
from sqlalchemy.sql import func

from replyflow.database import Base


class TenantSettings(Base):
    __tablename__ = "tenant_settings"

    tenant_id = Column(Text, primary_key=True)
    name = Column(Text)
    is_active = Column(Boolean, default=True)
    line_channel_secret = Column(Text)
    line_channel_access_token = Column(Text)
    facebook_page_access_token = Column(Text)
    facebook_verify_token = Column(Text)
    facebook_app_secret = Column(Text)
    telegram_bot_token = Column(Text)
    telegram_chat_id = Column(Text)
    resolver_url = Column(Text)
    provider_order = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
