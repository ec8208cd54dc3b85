"""
Corporate Welfare Ledger

This module provides:
- Company credit balances and their distribution as employee points
- A partner service catalog
- Bookings that debit points into pending transactions
- Time-limited QR vouchers that partners validate to settle a booking
- An optional local JSON snapshot of the durable state
"""

from .models import (
    ServiceCategory,
    TransactionStatus,
    Company,
    Employee,
    Service,
    Transaction,
    Voucher,
    PointDistribution,
)
from .service import (
    WelfareStore,
    WelfareStoreError,
    NotFoundError,
    InsufficientBalanceError,
    VoucherExpiredError,
)

__all__ = [
    "ServiceCategory",
    "TransactionStatus",
    "Company",
    "Employee",
    "Service",
    "Transaction",
    "Voucher",
    "PointDistribution",
    "WelfareStore",
    "WelfareStoreError",
    "NotFoundError",
    "InsufficientBalanceError",
    "VoucherExpiredError",
]
