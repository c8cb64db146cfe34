"""Solana JSON-RPC ledger client used by the chain poller."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp
import orjson

from ..http import HTTPError, dumps, get_session, loads
from .errors import InvalidError, TransientError
from .types import SignatureInfo

log = logging.getLogger(__name__)

PUMP_FUN_PROGRAM_ID = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"

# SPL token account layout: 32 byte mint, 32 byte owner, then amount.
_TOKEN_ACCOUNT_SIZE = 165

# JSON-RPC error codes that mean "try again later".
_TRANSIENT_RPC_CODES = {-32005, -32014, -32016, 429}


class LedgerClient(Protocol):
    async def get_recent_signatures(self, address: str, limit: int) -> List[SignatureInfo]:
        ...

    async def get_event(self, signature: str) -> Optional[Dict[str, Any]]:
        ...


def _signature_info(item: Any) -> Optional[SignatureInfo]:
    """Return ``None`` for entries that cannot be read."""

    if not isinstance(item, dict):
        return None
    signature = item.get("signature")
    if not isinstance(signature, str) or not signature:
        return None
    block_time = item.get("blockTime")
    try:
        return SignatureInfo(
            signature=signature,
            slot=int(item.get("slot") or 0),
            block_time=float(block_time) if block_time is not None else None,
            err=item.get("err"),
        )
    except (TypeError, ValueError):
        return None


class SolanaRpcClient:
    """Minimal async JSON-RPC client over the shared aiohttp session.

    HTTP 429 and 5xx responses, connection errors and timeouts surface as
    :class:`TransientError`; anything else the node rejects is an
    :class:`InvalidError`.
    """

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        *,
        timeout: float = 10.0,
        commitment: str = "confirmed",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout = float(timeout)
        self.commitment = commitment
        self._session = session
        self._ids = itertools.count(1)
        self.malformed_entries = 0

    async def _session_for_call(self) -> aiohttp.ClientSession:
        if self._session is not None:
            return self._session
        return await get_session()

    async def call(self, method: str, params: Sequence[Any]) -> Any:
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        session = await self._session_for_call()
        client_timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with session.post(
                self.rpc_url,
                data=dumps(body),
                headers={"Content-Type": "application/json"},
                timeout=client_timeout,
            ) as resp:
                if resp.status == 429 or resp.status >= 500:
                    raise TransientError(f"{method} -> HTTP {resp.status}", status=resp.status)
                if resp.status >= 400:
                    text = await resp.text()
                    raise HTTPError(f"{method} -> HTTP {resp.status}: {text[:300]}", status=resp.status)
                body = await resp.read()
        except asyncio.TimeoutError as exc:
            raise TransientError(f"{method} timed out after {self.timeout:.1f}s") from exc
        except aiohttp.ClientError as exc:
            raise TransientError(f"{method} failed: {exc}") from exc
        except HTTPError as exc:
            raise InvalidError(str(exc)) from exc

        try:
            payload = loads(body)
        except orjson.JSONDecodeError as exc:
            raise InvalidError(f"{method} returned malformed JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise InvalidError(f"{method} returned a non-object payload")
        error = payload.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else str(error)
            if code in _TRANSIENT_RPC_CODES:
                raise TransientError(f"{method} rpc error {code}: {message}", status=429 if code == 429 else None)
            raise InvalidError(f"{method} rpc error {code}: {message}")
        return payload.get("result")

    async def get_recent_signatures(self, address: str, limit: int) -> List[SignatureInfo]:
        result = await self.call(
            "getSignaturesForAddress",
            [address, {"limit": int(limit), "commitment": self.commitment}],
        )
        if not isinstance(result, list):
            raise InvalidError("getSignaturesForAddress returned no list")
        infos: List[SignatureInfo] = []
        for item in result:
            info = _signature_info(item)
            if info is None:
                self.malformed_entries += 1
                log.debug("skipping malformed signature entry: %r", item)
                continue
            infos.append(info)
        return infos

    async def get_event(self, signature: str) -> Optional[Dict[str, Any]]:
        result = await self.call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "maxSupportedTransactionVersion": 0,
                    "commitment": self.commitment,
                },
            ],
        )
        if result is None:
            return None
        if not isinstance(result, dict):
            raise InvalidError(f"getTransaction({signature}) returned {type(result).__name__}")
        return result

    async def get_holder_count(self, mint: str) -> int:
        """Count token accounts for ``mint`` holding a non-zero balance.

        Uses ``getProgramAccounts`` with a mint filter, which some hosted RPC
        providers disable; callers should treat failures as transient.
        """

        result = await self.call(
            "getProgramAccounts",
            [
                TOKEN_PROGRAM_ID,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "filters": [
                        {"dataSize": _TOKEN_ACCOUNT_SIZE},
                        {"memcmp": {"offset": 0, "bytes": mint}},
                    ],
                },
            ],
        )
        if not isinstance(result, list):
            raise InvalidError("getProgramAccounts returned no list")
        holders = 0
        for account in result:
            data = ((account or {}).get("account") or {}).get("data")
            if not isinstance(data, dict):
                continue
            info = (data.get("parsed") or {}).get("info") or {}
            amount = (info.get("tokenAmount") or {}).get("amount")
            if amount not in (None, "0", 0):
                holders += 1
        return holders


__all__ = [
    "LedgerClient",
    "SolanaRpcClient",
    "PUMP_FUN_PROGRAM_ID",
    "TOKEN_PROGRAM_ID",
    "DEFAULT_RPC_URL",
]
