from replyflow.models.tenant_settings import TenantSettings

__all__ = ["TenantSettings"]
