"""Parsing helpers for node CLI output: addresses, mnemonics, tx results."""

from __future__ import annotations

import json
from typing import Any, Optional

from mnemonic import Mnemonic

from ..errors import ValidationError
from .models import DebugAddress

ACCOUNT_PREFIX = "push1"
VALOPER_PREFIX = "pushvaloper1"
BECH32_CHECKSUM_LEN = 6
MNEMONIC_WORD_COUNTS = (12, 24)

_ERROR_MARKERS = (
    "rpc error:",
    "failed to execute message",
    "insufficient",
    "unauthorized",
    "key not found",
    "failed to convert",
    "account sequence mismatch",
)

_wordlist = None


def bech32_data(address: str, prefix: str) -> Optional[str]:
    """Data part of a bech32 address with its 6-char checksum removed."""
    if not address.startswith(prefix):
        return None
    data = address[len(prefix):]
    if len(data) <= BECH32_CHECKSUM_LEN:
        return None
    return data[:-BECH32_CHECKSUM_LEN]


def same_key(account_address: str, operator_address: str) -> bool:
    """True when an account and an operator address encode the same key bytes."""
    acc = bech32_data(account_address, ACCOUNT_PREFIX)
    val = bech32_data(operator_address, VALOPER_PREFIX)
    return acc is not None and acc == val


def parse_debug_addr(output: str) -> DebugAddress:
    result = DebugAddress()
    for line in output.splitlines():
        label, sep, value = line.partition(":")
        if not sep:
            continue
        label, value = label.strip(), value.strip()
        if label == "Address (hex)":
            result.hex = value
        elif label == "Bech32 Acc":
            result.account = value
        elif label == "Bech32 Val":
            result.validator = value
    return result


def validate_mnemonic(phrase: str) -> str:
    """Normalise and check a BIP-39 English mnemonic.

    Raises:
        ValidationError: wrong word count, unknown word or bad checksum.
    """
    global _wordlist
    words = phrase.lower().split()
    if len(words) not in MNEMONIC_WORD_COUNTS:
        raise ValidationError(f"invalid mnemonic: expected 12 or 24 words, got {len(words)}")
    mnemo = Mnemonic("english")
    if _wordlist is None:
        _wordlist = frozenset(mnemo.wordlist)
    for position, word in enumerate(words, start=1):
        if word not in _wordlist:
            raise ValidationError(f"invalid word at position {position}: '{word}'")
    normalised = " ".join(words)
    if not mnemo.check(normalised):
        raise ValidationError("invalid mnemonic phrase: checksum verification failed")
    return normalised


def load_json(output: str) -> Any:
    """First JSON value in ``output``, skipping any leading warning lines."""
    decoder = json.JSONDecoder()
    for idx, ch in enumerate(output):
        if ch in "{[":
            try:
                value, _ = decoder.raw_decode(output, idx)
                return value
            except ValueError:
                continue
    raise ValueError("no JSON document in output")


def extract_mnemonic(output: str) -> str:
    """Mnemonic from ``keys add`` output (JSON or the human-readable banner)."""
    try:
        data = load_json(output)
        if isinstance(data, dict) and data.get("mnemonic"):
            return data["mnemonic"].strip()
    except ValueError:
        pass

    lines = [line.strip() for line in output.splitlines()]
    after_warning = False
    for line in lines:
        if "write this mnemonic phrase" in line:
            after_warning = True
            continue
        if after_warning and line and not line.startswith("**") and not line.startswith("It is") and len(line) > 20:
            return line
    return ""


def extract_error_line(output: str) -> str:
    for line in output.splitlines():
        if any(marker in line for marker in _ERROR_MARKERS):
            return line.strip()
    return ""


def last_line(output: str) -> str:
    for line in reversed(output.strip().splitlines()):
        if line.strip():
            return line.strip()
    return ""


def extract_tx_hash(output: str) -> Optional[str]:
    for line in output.splitlines():
        if "txhash:" in line:
            return line.split("txhash:", 1)[1].strip()
    try:
        data = load_json(output)
    except ValueError:
        return None
    if isinstance(data, dict) and data.get("txhash"):
        return data["txhash"]
    return None
