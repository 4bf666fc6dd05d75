"""Chain access - RPC client, retry policy and event codecs."""

from launchpad_indexer.chain.client import ChainClient, ReceiptInfo, TransactionInfo
from launchpad_indexer.chain.events import (
    SWAP_TOPIC,
    SYNC_TOPIC,
    TRANSFER_TOPIC,
    ZERO_ADDRESS,
    LogEvent,
)
from launchpad_indexer.chain.retry import (
    ChainClientError,
    RateLimitError,
    RetryPolicy,
    RPCError,
    is_rate_limit_error,
)

__all__ = [
    "SWAP_TOPIC",
    "SYNC_TOPIC",
    "TRANSFER_TOPIC",
    "ZERO_ADDRESS",
    "ChainClient",
    "ChainClientError",
    "LogEvent",
    "RPCError",
    "RateLimitError",
    "ReceiptInfo",
    "RetryPolicy",
    "TransactionInfo",
    "is_rate_limit_error",
]
