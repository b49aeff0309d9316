from .client import FeishuClient
from .models import MessageSubmission, OutboundMessage, TenantAccessToken

__all__ = [
    "FeishuClient",
    "MessageSubmission",
    "OutboundMessage",
    "TenantAccessToken",
]
