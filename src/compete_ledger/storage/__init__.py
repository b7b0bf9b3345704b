"""Storage layer - Database schemas and repositories."""

from compete_ledger.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
    to_async_url,
)
from compete_ledger.storage.models import (
    AgentBoostModel,
    AgentBoostTotalModel,
    BalanceModel,
    Base,
    BoostBalanceModel,
    BoostChangeModel,
    IndexingEventModel,
    RewardModel,
    RewardsRootModel,
    RewardsTreeModel,
    StakeBoostAwardModel,
    StakeChangeModel,
    StakeModel,
    TradeModel,
)
from compete_ledger.storage.repos import (
    BalanceDTO,
    BalanceNotFoundError,
    BalanceRepository,
    BoostRepository,
    IndexingEventRepository,
    InsufficientBalanceError,
    LedgerError,
    RewardsRepository,
    StakeRepository,
    TradeDTO,
    TradeRepository,
)

__all__ = [
    "AgentBoostModel",
    "AgentBoostTotalModel",
    "BalanceDTO",
    "BalanceModel",
    "BalanceNotFoundError",
    "BalanceRepository",
    "Base",
    "BoostBalanceModel",
    "BoostChangeModel",
    "BoostRepository",
    "DatabaseManager",
    "IndexingEventModel",
    "IndexingEventRepository",
    "InsufficientBalanceError",
    "LedgerError",
    "RewardModel",
    "RewardsRepository",
    "RewardsRootModel",
    "RewardsTreeModel",
    "StakeBoostAwardModel",
    "StakeChangeModel",
    "StakeModel",
    "StakeRepository",
    "TradeDTO",
    "TradeModel",
    "TradeRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "to_async_url",
]
