from infinet.api.chat import router as chat_router
from infinet.api.image import router as image_router
from infinet.api.usage import router as usage_router
from infinet.api.webhooks import router as webhooks_router
from infinet.api.billing import router as billing_router
from infinet.api.auth import get_current_identity, get_optional_identity
from infinet.api.deps import require_entitlement

__all__ = [
    "chat_router",
    "image_router",
    "usage_router",
    "webhooks_router",
    "billing_router",
    "get_current_identity",
    "get_optional_identity",
    "require_entitlement",
]
