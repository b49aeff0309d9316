"""
Resilience layer around Feishu delivery.

- CredentialCache: shared tenant access token with single-flight refresh
- AdmissionController: per-client sliding window rate limiting
- DispatchQueue: paced, batched, failure-isolated outbound sends
- ResourceJanitor: TTL reclamation of uploaded temp files
"""

from .credential_cache import Credential, CredentialCache
from .dispatch_queue import DispatchQueue, DispatchTask
from .janitor import ResourceJanitor, SweepReport
from .rate_limiter import AdmissionController

__all__ = [
    "AdmissionController",
    "Credential",
    "CredentialCache",
    "DispatchQueue",
    "DispatchTask",
    "ResourceJanitor",
    "SweepReport",
]
