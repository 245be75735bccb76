from app.db.base import Base
from .user import User
from .transaction import Transaction
from .batch import Batch, transaction_batch
from .audit_log import AuditLog

__all__ = [
    "Base",
    "User",
    "Transaction",
    "Batch",
    "transaction_batch",
    "AuditLog",
]
