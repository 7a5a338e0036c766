"""Points ledger exports."""

from .points_ledger import (  # noqa: F401
    RESERVED_KEY_NAMESPACES,
    LedgerCommand,
    LedgerPage,
    PointsLedger,
    decode_ledger_cursor,
    derive_idempotency_key,
    encode_ledger_cursor,
    is_reserved_idempotency_key,
)
