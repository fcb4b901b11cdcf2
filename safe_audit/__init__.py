# Entrypoint for the safe_audit package.
# This file makes the public API available to programmers.

from __future__ import annotations

from safe_audit.__about__ import __version__
from safe_audit.address import classify
from safe_audit.admission import AdmissionController
from safe_audit.api import AuditService, check_url, run_audit
from safe_audit.dns_safety import DnsSafetyResolver
from safe_audit.models import AuditReport, AuditRequest, Rejection, TargetUrl
from safe_audit.rate_limit import RateLimiter
from safe_audit.url_validator import UrlValidator

# The __all__ variable defines the public API of the package.
__all__ = [
    "AdmissionController",
    "AuditReport",
    "AuditRequest",
    "AuditService",
    "DnsSafetyResolver",
    "RateLimiter",
    "Rejection",
    "TargetUrl",
    "UrlValidator",
    "check_url",
    "classify",
    "run_audit",
    "__version__",
]
