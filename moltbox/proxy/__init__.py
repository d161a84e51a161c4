from .access import AccessConfigurationError, AccessDeniedError, AccessKeyCache, AccessVerifier
from .ws_bridge import WebSocketBridge

__all__ = [
    "AccessConfigurationError",
    "AccessDeniedError",
    "AccessKeyCache",
    "AccessVerifier",
    "WebSocketBridge",
]
