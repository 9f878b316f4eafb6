"""Solana RPC client wrapper."""
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..config import SolanaSettings
from ..exceptions import RPCError, SourceTransactionError, TransientRPCError

logger = logging.getLogger(__name__)

# Node-side conditions that clear up on their own (unhealthy node, slot
# skipped or not yet available, rate limit)
TRANSIENT_ERROR_CODES = {-32004, -32005, -32007, -32009, -32014, -32016, 429}


class SolanaClient:
    """Async Solana JSON-RPC client.

    Uses raw httpx for every call; transaction building and signing live in
    ``transactions.py``. All Solana RPC methods are called via JSON-RPC 2.0.
    """

    def __init__(
        self,
        config: SolanaSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or SolanaSettings()
        self._client = http_client or httpx.AsyncClient(timeout=self.config.timeout_seconds)
        self._request_id = 0

    async def _rpc(self, method: str, params: list[Any] | None = None) -> Any:
        """Make a JSON-RPC call to Solana."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        resp = await self._client.post(self.config.rpc_url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if "error" in data:
            error = data["error"]
            code = error.get("code")
            error_cls = TransientRPCError if code in TRANSIENT_ERROR_CODES else RPCError
            raise error_cls(
                f"{method}: {error.get('message', 'Unknown RPC error')}",
                code=code,
                data=error.get("data"),
                chain="solana",
            )
        return data.get("result")

    async def get_signatures_for_address(
        self,
        address: str,
        limit: int = 20,
        before: str | None = None,
        until: str | None = None,
    ) -> list[dict[str, Any]]:
        """List recent signatures for an account, newest first."""
        options: dict[str, Any] = {"limit": limit, "commitment": self.config.commitment}
        if before:
            options["before"] = before
        if until:
            options["until"] = until
        result = await self._rpc("getSignaturesForAddress", [address, options])
        return result or []

    async def get_transaction(
        self, signature: str, encoding: str = "json"
    ) -> Optional[dict[str, Any]]:
        """Fetch a full transaction body. Returns None if the node does not have it yet."""
        return await self._rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": encoding,
                    "commitment": self.config.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_account_info(self, pubkey: str) -> Optional[dict[str, Any]]:
        """Get raw account info (base64 data). Returns None for a missing account."""
        result = await self._rpc(
            "getAccountInfo",
            [pubkey, {"encoding": "base64", "commitment": self.config.commitment}],
        )
        return result.get("value") if result else None

    async def get_token_accounts_by_owner(
        self, owner: str, mint: str
    ) -> list[dict[str, Any]]:
        """Get all token accounts for an owner and mint."""
        result = await self._rpc(
            "getTokenAccountsByOwner",
            [
                owner,
                {"mint": mint},
                {"encoding": "jsonParsed", "commitment": self.config.commitment},
            ],
        )
        return result.get("value", [])

    async def get_latest_blockhash(self) -> str:
        """Get latest blockhash for transaction building."""
        result = await self._rpc(
            "getLatestBlockhash", [{"commitment": self.config.commitment}]
        )
        return result["value"]["blockhash"]

    async def send_raw_transaction(self, signed_tx_base64: str) -> str:
        """Send a signed transaction. Returns transaction signature."""
        result = await self._rpc(
            "sendTransaction",
            [
                signed_tx_base64,
                {
                    "encoding": "base64",
                    "skipPreflight": False,
                    "preflightCommitment": self.config.commitment,
                },
            ],
        )
        logger.info("Solana tx sent: %s", result)
        return result

    async def confirm_transaction(
        self, signature: str, commitment: str | None = None
    ) -> bool:
        """Check whether a transaction reached the desired commitment level.

        Raises:
            SourceTransactionError: The transaction landed with an execution error.
        """
        result = await self._rpc(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
        )
        statuses = result.get("value", [])
        if not statuses or statuses[0] is None:
            return False
        status = statuses[0]
        if status.get("err"):
            raise SourceTransactionError(signature, "solana", reason=str(status["err"]))
        target = commitment or self.config.commitment
        # confirmed and finalized both satisfy "confirmed"
        confirmation = status.get("confirmationStatus", "")
        if target == "finalized":
            return confirmation == "finalized"
        return confirmation in ("confirmed", "finalized")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "SolanaClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
