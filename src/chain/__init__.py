"""On-chain access: JSON-RPC client, codec contract, and rate limiting."""

from src.chain.client import ChainClient, SignatureStatus, SolanaRpcClient, await_confirmation
from src.chain.codec import ProgramCodec
from src.chain.exceptions import (
    ChainError,
    ConfirmationTimeoutError,
    RpcResponseError,
    TransactionFailedError,
    TransientNetworkError,
)
from src.chain.rate_limiter import RateLimiter, TokenBucket

__all__ = [
    "ChainClient",
    "ChainError",
    "ConfirmationTimeoutError",
    "ProgramCodec",
    "RateLimiter",
    "RpcResponseError",
    "SignatureStatus",
    "SolanaRpcClient",
    "TokenBucket",
    "TransactionFailedError",
    "TransientNetworkError",
    "await_confirmation",
]
