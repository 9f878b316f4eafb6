"""Memo extraction from Solana transaction bodies.

The memo carries the destination address on the other ledger. Three body
shapes reach this module:

- ``json`` encoding: ``message.instructions`` with ``programIdIndex`` into
  ``message.accountKeys`` and base58 ``data``
- compiled/versioned: ``message.compiledInstructions`` with
  ``programIdIndex`` into ``message.staticAccountKeys`` (plus loaded
  addresses) and ``data`` as raw bytes or base58
- ``jsonParsed`` encoding: instructions carrying ``programId`` and a
  ``parsed`` string

Log lines of the form ``Memo (len N): "<payload>"`` are the fallback.
"""
from __future__ import annotations

import json
import logging
import re
import string
from typing import Any, Iterator, Optional

import base58

logger = logging.getLogger(__name__)

MEMO_PROGRAM_V1 = "Memo1UhkJRfHyvLMcVucJwxXeuD728EqVDDwQDxFMNo"
MEMO_PROGRAM_V2 = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcQb"
MEMO_PROGRAM_IDS = frozenset((MEMO_PROGRAM_V1, MEMO_PROGRAM_V2))

MEMO_LOG_PATTERN = re.compile(r'Memo \(len \d+\): "(.*)"')


def _clean(text: str) -> Optional[str]:
    cleaned = text.rstrip("\x00" + string.whitespace).lstrip()
    return cleaned or None


def _key_to_str(key: Any) -> str:
    # jsonParsed bodies list account keys as {"pubkey": ..., "signer": ...}
    if isinstance(key, dict):
        return str(key.get("pubkey", ""))
    return str(key)


def _account_keys(message: dict[str, Any], meta: dict[str, Any]) -> list[str]:
    keys = message.get("accountKeys") or message.get("staticAccountKeys") or []
    resolved = [_key_to_str(k) for k in keys]
    loaded = meta.get("loadedAddresses") or {}
    resolved.extend(loaded.get("writable") or [])
    resolved.extend(loaded.get("readonly") or [])
    return resolved


def _decode_data(data: Any) -> Optional[str]:
    if isinstance(data, (bytes, bytearray)):
        raw = bytes(data)
    elif isinstance(data, list):
        raw = bytes(data)
    elif isinstance(data, dict) and data.get("type") == "Buffer":
        raw = bytes(data.get("data") or [])
    elif isinstance(data, str):
        raw = base58.b58decode(data)
    else:
        return None
    return _clean(raw.decode("utf-8"))


def _iter_instructions(message: dict[str, Any]) -> Iterator[dict[str, Any]]:
    for key in ("instructions", "compiledInstructions"):
        for ix in message.get(key) or []:
            if isinstance(ix, dict):
                yield ix


def _memo_from_instructions(tx: dict[str, Any]) -> Optional[str]:
    transaction = tx.get("transaction") or {}
    message = transaction.get("message") or {}
    meta = tx.get("meta") or {}
    keys = _account_keys(message, meta)

    for ix in _iter_instructions(message):
        program_id = ix.get("programId")
        if program_id is None:
            index = ix.get("programIdIndex")
            if not isinstance(index, int) or not 0 <= index < len(keys):
                continue
            program_id = keys[index]

        if _key_to_str(program_id) not in MEMO_PROGRAM_IDS:
            continue

        parsed = ix.get("parsed")
        if isinstance(parsed, str):
            memo = _clean(parsed)
        else:
            memo = _decode_data(ix.get("data"))
        if memo:
            return memo
    return None


def _unescape_log_payload(payload: str) -> str:
    # The runtime renders the memo with Rust's {:?}, escaping quotes and backslashes
    try:
        return json.loads(f'"{payload}"')
    except ValueError:
        return payload


def _memo_from_logs(tx: dict[str, Any]) -> Optional[str]:
    meta = tx.get("meta") or {}
    for line in meta.get("logMessages") or []:
        if not isinstance(line, str):
            continue
        match = MEMO_LOG_PATTERN.search(line)
        if match:
            memo = _clean(_unescape_log_payload(match.group(1)))
            if memo:
                return memo
    return None


def extract_memo(tx: Optional[dict[str, Any]]) -> Optional[str]:
    """Return the memo attached to a transaction, or None if there is none.

    Never raises: any malformed encoding counts as "not found" for that
    source and the log fallback is tried next.
    """
    if not isinstance(tx, dict):
        return None

    try:
        memo = _memo_from_instructions(tx)
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Memo instruction decode failed, falling back to logs: {e}")
        memo = None
    if memo:
        return memo

    try:
        return _memo_from_logs(tx)
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Memo log scan failed: {e}")
        return None
