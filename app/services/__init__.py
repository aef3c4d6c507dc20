"""Services package."""

from app.services.booking_service import BookingService
from app.services.payment_ledger import PaymentLedgerService
from app.services.reconciliation_service import ReconciliationService
from app.services.transaction_coordinator import TransactionCoordinator

__all__ = [
    "BookingService",
    "PaymentLedgerService",
    "ReconciliationService",
    "TransactionCoordinator",
]
