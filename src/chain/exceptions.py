"""Exception hierarchy for the on-chain reader and transaction submission."""

from __future__ import annotations


class ChainError(Exception):
    """Base exception for all chain client errors."""


class TransientNetworkError(ChainError):
    """RPC endpoint unreachable, timed out, or rate limited. Retried next tick."""


class RpcResponseError(ChainError):
    """The RPC node answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransactionFailedError(ChainError):
    """A submitted transaction landed with an on-chain error."""


class ConfirmationTimeoutError(TransientNetworkError):
    """A submitted transaction was not confirmed within the allowed window."""
