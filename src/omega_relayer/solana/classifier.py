"""Turns resolved Solana transactions into transfer intents.

Classification looks only at ``meta.preTokenBalances`` /
``meta.postTokenBalances`` and the log lines; instruction shapes are left
to the memo decoder.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from web3 import Web3

from ..exceptions import PayloadDecodeError
from ..models import AssetKind, CandidateEvent, Ledger, TransferIntent, WatchedSource
from .memo import extract_memo

logger = logging.getLogger(__name__)

BURN_LOG_MARKER = "Instruction: Burn"


def _balances(meta: dict[str, Any], key: str) -> Dict[int, dict[str, Any]]:
    return {
        entry["accountIndex"]: entry
        for entry in meta.get(key) or []
        if isinstance(entry, dict) and "accountIndex" in entry
    }


def _raw_amount(entry: Optional[dict[str, Any]]) -> int:
    if not entry:
        return 0
    return int((entry.get("uiTokenAmount") or {}).get("amount") or 0)


def _decimals(entry: dict[str, Any]) -> Optional[int]:
    return (entry.get("uiTokenAmount") or {}).get("decimals")


def has_burn_instruction(tx: dict[str, Any]) -> bool:
    """True if the logs show an SPL Burn/BurnChecked instruction."""
    meta = tx.get("meta") or {}
    return any(
        isinstance(line, str) and BURN_LOG_MARKER in line
        for line in meta.get("logMessages") or []
    )


def extract_burn_amount(tx: Optional[dict[str, Any]], mint: str) -> int:
    """Raw amount of ``mint`` burned by a transaction, 0 if it is not a burn.

    The amount is the net decrease across all token accounts of the mint, so
    a transfer bundled with the burn does not inflate it. A transaction
    whose logs carry no Burn instruction always yields 0, even if some
    account balance went down.
    """
    if not tx or not tx.get("meta"):
        return 0
    meta = tx["meta"]
    if meta.get("err") or not has_burn_instruction(tx):
        return 0

    pre = {i: e for i, e in _balances(meta, "preTokenBalances").items() if e.get("mint") == mint}
    post = {i: e for i, e in _balances(meta, "postTokenBalances").items() if e.get("mint") == mint}

    decreased = any(_raw_amount(entry) > _raw_amount(post.get(index)) for index, entry in pre.items())
    if not decreased:
        return 0

    net = sum(_raw_amount(e) for e in pre.values()) - sum(_raw_amount(e) for e in post.values())
    return max(net, 0)


def extract_nft_deposit(tx: Optional[dict[str, Any]], owner: str) -> Optional[Tuple[str, int]]:
    """Find a zero-decimal token whose balance owned by ``owner`` increased.

    Returns (mint, increase) for the first match, or None.
    """
    if not tx or not tx.get("meta"):
        return None
    meta = tx["meta"]
    if meta.get("err"):
        return None

    pre = _balances(meta, "preTokenBalances")
    for index, entry in _balances(meta, "postTokenBalances").items():
        if entry.get("owner") != owner or _decimals(entry) != 0:
            continue
        increase = _raw_amount(entry) - _raw_amount(pre.get(index))
        if increase > 0:
            return entry["mint"], increase
    return None


def normalize_omega_address(memo: str) -> str:
    """Validate a memo as an Omega (EVM) address and checksum it."""
    candidate = memo.strip()
    if not Web3.is_address(candidate):
        raise PayloadDecodeError(
            f"Memo is not a valid Omega address: {candidate!r}",
            details={"memo": candidate},
        )
    return Web3.to_checksum_address(candidate)


class TransferClassifier:
    """Builds TransferIntents for one watched Solana source.

    Args:
        source: The watched account (token mint for burns, relayer wallet
            for NFT deposits).
    """

    def __init__(self, source: WatchedSource):
        self.source = source

    def classify(self, event: CandidateEvent) -> Optional[TransferIntent]:
        """Return the intent carried by ``event``, or None if it does not qualify.

        Raises:
            PayloadDecodeError: The transaction qualifies but its memo is
                not a usable destination address.
        """
        tx = event.body
        if self.source.kind == AssetKind.FUNGIBLE_BURN:
            amount = extract_burn_amount(tx, self.source.address)
            if amount <= 0:
                return None
            asset_id = self.source.address
        else:
            deposit = extract_nft_deposit(tx, self.source.address)
            if deposit is None:
                return None
            asset_id, amount = deposit
            if amount != 1:
                logger.warning(
                    f"NFT deposit of {asset_id} in {event.tx_id} increased balance by {amount}, treating as 1"
                )
            amount = 1

        memo = extract_memo(tx)
        if memo is None:
            logger.info(
                f"Qualifying {self.source.kind.value} in {event.tx_id} carries no memo, ignoring"
            )
            return None

        destination = normalize_omega_address(memo)
        return TransferIntent(
            flow=self.source.flow,
            source_id=event.tx_id,
            destination=destination,
            origin_ledger=Ledger.SOLANA,
            asset_id=asset_id,
            amount=amount,
        )
