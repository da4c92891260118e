from app.services.purchases.errors import (
    ConcurrentPurchase,
    ConflictError,
    DuplicateSession,
    NotFound,
    SessionError,
    SessionExpired,
)
from app.services.purchases.models import (
    ErrorKind,
    FailureReason,
    Outcome,
    PaymentLink,
    Provisioned,
    PurchaseError,
    PurchaseSession,
    SessionState,
    StatusUpdate,
)
from app.services.purchases.orchestrator import PurchaseConfig, PurchaseOrchestrator
from app.services.purchases.registry import SessionRegistry
from app.services.purchases.sweeper import run_expiry_sweeper

__all__ = [
    "ConcurrentPurchase",
    "ConflictError",
    "DuplicateSession",
    "ErrorKind",
    "FailureReason",
    "NotFound",
    "Outcome",
    "PaymentLink",
    "Provisioned",
    "PurchaseConfig",
    "PurchaseError",
    "PurchaseOrchestrator",
    "PurchaseSession",
    "SessionError",
    "SessionExpired",
    "SessionRegistry",
    "SessionState",
    "StatusUpdate",
    "run_expiry_sweeper",
]
