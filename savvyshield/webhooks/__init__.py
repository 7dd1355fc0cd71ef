# Webhooks Module
from .signing import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    build_headers,
    encode_payload,
    sign_payload,
    verify_webhook,
)
from .dispatcher import WebhookDispatcher, build_payload
from .receiver import (
    EnforcementWebhook,
    RestrictionRegistry,
    create_receiver_router,
    require_feature,
)

__all__ = [
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "build_headers",
    "encode_payload",
    "sign_payload",
    "verify_webhook",
    "WebhookDispatcher",
    "build_payload",
    "EnforcementWebhook",
    "RestrictionRegistry",
    "create_receiver_router",
    "require_feature",
]
