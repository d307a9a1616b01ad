"""Data models for keys, validators and transaction arguments."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class BondStatus(str, Enum):
    BONDED = "BONDED"
    UNBONDING = "UNBONDING"
    UNBONDED = "UNBONDED"

    @classmethod
    def from_chain(cls, value: str) -> "BondStatus":
        """Map ``BOND_STATUS_*`` strings; anything unrecognised is UNBONDED."""
        value = (value or "").upper()
        for status in cls:
            if value.endswith(status.value):
                return status
        return cls.UNBONDED


class VoteOption(str, Enum):
    YES = "yes"
    NO = "no"
    ABSTAIN = "abstain"
    NO_WITH_VETO = "no_with_veto"


@dataclass
class KeyInfo:
    name: str
    address: str
    pubkey: str = ""
    type: str = ""
    mnemonic: str = ""  # only populated when the key was just created

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if not self.mnemonic:
            data.pop("mnemonic")
        return data


@dataclass
class SlashingInfo:
    tombstoned: bool = False
    jailed_until: str = ""
    missed_blocks: int = 0
    jail_reason: str = "Unknown"


@dataclass
class ValidatorRecord:
    """Chain-side view of one validator."""

    operator_address: str
    moniker: str
    status: BondStatus
    account_address: str = ""
    jailed: bool = False
    tokens: str = "0"
    voting_power: int = 0
    voting_fraction: float = 0.0
    commission_rate: str = "0"
    jailed_until: str = ""
    missed_blocks: int = 0
    tombstoned: bool = False
    jail_reason: str = ""
    slashing_error: str = ""
    consensus_match: bool = True

    @property
    def commission_percent(self) -> str:
        try:
            rate = float(self.commission_rate)
        except ValueError:
            return "0%"
        if rate > 1:
            rate = rate / 1e18
        return f"{rate * 100:.0f}%"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["commission"] = self.commission_percent
        return data


@dataclass
class RegisterArgs:
    moniker: str
    amount: str  # base units
    key_name: str
    commission_rate: str = "0.10"
    min_self_delegation: str = "1"


@dataclass
class DelegateArgs:
    validator_address: str
    amount: str  # base units
    key_name: str


@dataclass
class VoteArgs:
    proposal_id: str
    option: str
    key_name: str


@dataclass
class DebugAddress:
    """Fields printed by ``<node-bin> debug addr``."""

    hex: str = ""
    account: str = ""
    validator: str = ""

    @property
    def evm(self) -> Optional[str]:
        return f"0x{self.hex}" if self.hex else None


@dataclass
class ValidatorRewards:
    """Unclaimed commission and outstanding rewards, in base units."""

    validator_address: str
    commission: int = 0
    outstanding: int = 0

    @property
    def total(self) -> int:
        return self.commission + self.outstanding

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total"] = self.total
        return data


@dataclass
class RestakeResult:
    withdraw_txhash: str
    delegate_txhash: str = ""
    amount: int = 0  # base units delegated

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Proposal:
    id: str
    title: str
    status: str
    voting_end: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
