from creditflow.models.user import User
from creditflow.models.credit_entry import CreditEntryDocument
from creditflow.models.checkout_mapping import CheckoutMappingDocument
from creditflow.models.audit_log import AuditLog
from creditflow.models.failed_job import FailedJob

__all__ = [
    "User",
    "CreditEntryDocument",
    "CheckoutMappingDocument",
    "AuditLog",
    "FailedJob",
]
