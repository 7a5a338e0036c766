"""SQLAlchemy models package."""

from .account import (  # noqa: F401
    GLOBAL_SERIAL_SCOPE,
    Account,
    AccountRole,
    SerialCounter,
    local_serial_scope,
)
from .ledger import DEBIT_KINDS, LedgerEntry, LedgerEntryKind  # noqa: F401
from .rewards import (  # noqa: F401
    InfinityCycle,
    ReferralCommission,
    RippleReward,
    ShoppingVoucher,
    StepUpReward,
)
