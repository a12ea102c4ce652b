"""Site Auditor: tiered SEO audits of websites."""

from site_auditor.errors import AuditError, RootUnreachableError
from site_auditor.models.audit import AddOns, AuditRequest, AuditResult, Tier

__version__ = "1.0.0"

__all__ = ["AddOns", "AuditError", "AuditRequest", "AuditResult", "RootUnreachableError", "Tier"]
