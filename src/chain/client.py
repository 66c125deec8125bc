"""On-chain reader: the ChainClient contract and a Solana JSON-RPC implementation."""

from __future__ import annotations

import abc
import asyncio
import base64
import itertools
import time
from enum import StrEnum
from types import TracebackType
from typing import Any

import httpx
import structlog

from src.chain.exceptions import (
    ConfirmationTimeoutError,
    RpcResponseError,
    TransactionFailedError,
    TransientNetworkError,
)
from src.chain.rate_limiter import RateLimiter
from src.core.config import RpcConfig
from src.core.types import RawAccount

logger = structlog.stdlib.get_logger()

# JSON-RPC error codes the node uses for overload / node-behind conditions
_TRANSIENT_RPC_CODES = frozenset({-32005, -32004, -32014, 429})


class SignatureStatus(StrEnum):
    """Confirmation state of a submitted transaction."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class ChainClient(abc.ABC):
    """Narrow contract the keeper needs from the chain."""

    @abc.abstractmethod
    async def get_slot(self) -> int:
        """Current slot, used as a liveness probe."""

    @abc.abstractmethod
    async def get_accounts_matching(
        self, program_id: str, filters: list[dict[str, Any]],
    ) -> list[RawAccount]:
        """All accounts owned by *program_id* that match *filters*."""

    @abc.abstractmethod
    async def get_account_data(self, address: str) -> bytes | None:
        """Raw data of one account, or None if it does not exist."""

    @abc.abstractmethod
    async def get_latest_blockhash(self) -> str:
        """A recent blockhash for transaction construction."""

    @abc.abstractmethod
    async def send_transaction(self, signed: bytes) -> str:
        """Submit a signed transaction; returns its signature."""

    @abc.abstractmethod
    async def get_signature_status(self, signature: str) -> SignatureStatus:
        """Confirmation status of a previously submitted signature."""

    async def close(self) -> None:  # noqa: B027
        """Release transport resources."""


async def await_confirmation(
    chain: ChainClient,
    signature: str,
    timeout_secs: float = 60.0,
    poll_secs: float = 2.0,
) -> None:
    """Poll signature status until confirmed.

    A transient error while polling is logged and polling continues; only
    the deadline ends an unresolved wait.

    Raises:
        TransactionFailedError: The transaction landed with an error.
        ConfirmationTimeoutError: Not confirmed within *timeout_secs*.
    """
    deadline = time.monotonic() + timeout_secs
    while True:
        try:
            status = await chain.get_signature_status(signature)
        except TransientNetworkError as exc:
            logger.warning("confirmation_poll_error", signature=signature, error=str(exc))
            status = SignatureStatus.PENDING
        if status == SignatureStatus.CONFIRMED:
            return
        if status == SignatureStatus.FAILED:
            raise TransactionFailedError(f"Transaction {signature} failed on-chain")
        if time.monotonic() >= deadline:
            raise ConfirmationTimeoutError(
                f"Transaction {signature} not confirmed after {timeout_secs}s"
            )
        await asyncio.sleep(poll_secs)


class SolanaRpcClient(ChainClient):
    """JSON-RPC client over httpx with rate limiting and an optional fallback.

    Usage::

        async with SolanaRpcClient(settings.rpc) as chain:
            slot = await chain.get_slot()
    """

    def __init__(
        self,
        config: RpcConfig | None = None,
        rate_limiter: RateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        from src.core.config import get_settings

        self._config = config or get_settings().rpc
        self._rate_limiter = rate_limiter or RateLimiter()
        self._http = http_client or httpx.AsyncClient(timeout=self._config.timeout_secs)
        self._owns_http = http_client is None
        self._ids = itertools.count(1)

    @property
    def endpoints(self) -> list[str]:
        urls = [self._config.url]
        if self._config.fallback_url:
            urls.append(self._config.fallback_url)
        return urls

    async def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._http.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"{payload['method']}: {type(exc).__name__}") from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientNetworkError(f"{payload['method']}: HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise RpcResponseError(
                f"{payload['method']}: HTTP {resp.status_code}", code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransientNetworkError(f"{payload['method']}: invalid JSON body") from exc
        if not isinstance(body, dict):
            raise RpcResponseError(f"{payload['method']}: unexpected response shape")
        return body

    async def _call(self, method: str, params: list[Any] | None = None) -> Any:
        """Issue one JSON-RPC call, falling back to the secondary endpoint on transport errors."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        last_exc: TransientNetworkError | None = None
        for url in self.endpoints:
            await self._rate_limiter.acquire()
            try:
                body = await self._post(url, payload)
            except TransientNetworkError as exc:
                last_exc = exc
                logger.warning("rpc_transport_error", method=method, error=str(exc))
                continue

            error = body.get("error")
            if error:
                code = error.get("code") if isinstance(error, dict) else None
                message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                if code in _TRANSIENT_RPC_CODES:
                    last_exc = TransientNetworkError(f"{method}: {message}")
                    continue
                raise RpcResponseError(f"{method}: {message}", code=code)
            return body.get("result")

        if last_exc is None:
            raise TransientNetworkError(f"{method}: no RPC endpoint configured")
        raise last_exc

    async def get_slot(self) -> int:
        result = await self._call("getSlot", [{"commitment": self._config.commitment}])
        return int(result)

    async def get_accounts_matching(
        self, program_id: str, filters: list[dict[str, Any]],
    ) -> list[RawAccount]:
        result = await self._call(
            "getProgramAccounts",
            [
                program_id,
                {
                    "encoding": "base64",
                    "commitment": self._config.commitment,
                    "filters": filters,
                },
            ],
        )
        accounts: list[RawAccount] = []
        for entry in result or []:
            data_field = entry.get("account", {}).get("data")
            if not data_field:
                continue
            accounts.append(RawAccount(
                address=entry["pubkey"],
                data=base64.b64decode(data_field[0]),
            ))
        return accounts

    async def get_account_data(self, address: str) -> bytes | None:
        result = await self._call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self._config.commitment}],
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        return base64.b64decode(value["data"][0])

    async def get_latest_blockhash(self) -> str:
        result = await self._call(
            "getLatestBlockhash", [{"commitment": self._config.commitment}],
        )
        return str(result["value"]["blockhash"])

    async def send_transaction(self, signed: bytes) -> str:
        result = await self._call(
            "sendTransaction",
            [
                base64.b64encode(signed).decode("ascii"),
                {
                    "encoding": "base64",
                    "skipPreflight": False,
                    "preflightCommitment": self._config.commitment,
                },
            ],
        )
        return str(result)

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        result = await self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        status = values[0]
        if status is None:
            return SignatureStatus.PENDING
        if status.get("err") is not None:
            return SignatureStatus.FAILED
        if status.get("confirmationStatus") in ("confirmed", "finalized"):
            return SignatureStatus.CONFIRMED
        return SignatureStatus.PENDING

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
        logger.info("rpc_client_closed")

    async def __aenter__(self) -> SolanaRpcClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
