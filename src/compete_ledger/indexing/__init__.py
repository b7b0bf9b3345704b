"""On-chain staking and rewards event indexing."""

from compete_ledger.indexing.chain import ChainClient, ChainClientError, RPCError
from compete_ledger.indexing.events import ChainEvent, EventDecodeError, decode_log
from compete_ledger.indexing.processor import EventJournal, EventProcessor
from compete_ledger.indexing.service import IndexingError, IndexingService, IndexingStats
from compete_ledger.indexing.stakes import StakeProjectionError, StakeProjector, StakeStatus, stake_status

__all__ = [
    "ChainClient",
    "ChainClientError",
    "ChainEvent",
    "EventDecodeError",
    "EventJournal",
    "EventProcessor",
    "IndexingError",
    "IndexingService",
    "IndexingStats",
    "RPCError",
    "StakeProjectionError",
    "StakeProjector",
    "StakeStatus",
    "decode_log",
    "stake_status",
]
