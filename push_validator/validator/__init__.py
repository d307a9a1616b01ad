"""Validator facade over the node binary."""

from .addresses import parse_debug_addr, same_key, validate_mnemonic
from .models import (
    BondStatus,
    DebugAddress,
    DelegateArgs,
    KeyInfo,
    Proposal,
    RegisterArgs,
    RestakeResult,
    SlashingInfo,
    ValidatorRecord,
    ValidatorRewards,
    VoteArgs,
    VoteOption,
)
from .service import ValidatorOptions, ValidatorService, classify_failure

__all__ = [
    "BondStatus",
    "DebugAddress",
    "DelegateArgs",
    "KeyInfo",
    "Proposal",
    "RegisterArgs",
    "RestakeResult",
    "SlashingInfo",
    "ValidatorOptions",
    "ValidatorRecord",
    "ValidatorRewards",
    "ValidatorService",
    "VoteArgs",
    "VoteOption",
    "classify_failure",
    "parse_debug_addr",
    "same_key",
    "validate_mnemonic",
]
