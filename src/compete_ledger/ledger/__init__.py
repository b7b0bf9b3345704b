"""Balance ledger and trade settlement."""

from compete_ledger.ledger.cache import BalanceCache
from compete_ledger.ledger.settlement import (
    BalanceLedger,
    SettledTrade,
    TradeSettler,
    is_retryable_db_error,
    with_retry,
)

__all__ = [
    "BalanceCache",
    "BalanceLedger",
    "SettledTrade",
    "TradeSettler",
    "is_retryable_db_error",
    "with_retry",
]
