"""Validator operations through the node binary's CLI.

Queries and transactions go to the remote RPC (``https://<genesis_domain>``)
so registration and balance checks see canonical chain state even while the
local node is still syncing.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..debuglog import debug as _debug
from ..errors import (
    AlreadyRegisteredError,
    InsufficientFundsError,
    InvalidArgsError,
    JailNotExpiredError,
    KeyNotFoundError,
    NetworkError,
    ProtocolError,
    PushValidatorError,
    StateError,
    SubprocessError,
    ValidationError,
    VotingPeriodClosedError,
)
from ..process.runner import Runner
from .addresses import (
    extract_error_line,
    extract_mnemonic,
    extract_tx_hash,
    last_line,
    load_json,
    parse_debug_addr,
    same_key,
    validate_mnemonic,
)
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

TX_TIMEOUT = 60.0
QUERY_TIMEOUT = 30.0
TOKEN_DECIMALS = 10 ** 18
MIN_COMMISSION = Decimal("0.01")
MAX_COMMISSION = Decimal("1.0")
GAS_RESERVE = 15 * 10 ** 16  # 0.15 PC kept back from a restake for fees
PROPOSAL_STATUSES = {
    "voting": "voting_period",
    "passed": "passed",
    "rejected": "rejected",
    "deposit": "deposit_period",
}

_NETWORK_MARKERS = ("connection refused", "no such host", "dial tcp", "i/o timeout", "post failed", "context deadline exceeded")


@dataclass
class ValidatorOptions:
    bin_path: str = "pchaind"
    home_dir: str = ""
    chain_id: str = "push_42101-1"
    keyring_backend: str = "test"
    genesis_domain: str = "donut.rpc.push.org"
    denom: str = "upc"

    @property
    def remote(self) -> str:
        domain = self.genesis_domain.strip().rstrip("/")
        if domain.startswith(("http://", "https://")):
            return domain
        return f"https://{domain}"


def classify_failure(err: SubprocessError, action: str) -> PushValidatorError:
    """Translate node CLI failure output into a typed error."""
    output = err.output or ""
    low = output.lower()
    reason = extract_error_line(output) or last_line(output) or err.message

    if "validator already exist" in low:
        return AlreadyRegisteredError(
            f"{action}: validator already registered",
            actions=["Check it with: push-validator status"],
        )
    if "insufficient funds" in low or "insufficient fee" in low or "insufficient" in low:
        return InsufficientFundsError(
            f"{action}: insufficient funds",
            actions=["Top up from the faucet: https://faucet.push.org", "Check with: push-validator balance"],
        )
    if "key not found" in low or "not a valid name or address" in low:
        return KeyNotFoundError(f"{action}: key not found", actions=["List keys with: pchaind keys list"])
    if "still jailed" in low or "cannot be unjailed" in low:
        return JailNotExpiredError(f"{action}: {reason}", actions=["Wait for the jail period to end, then retry"])
    if "inactive proposal" in low or "voting period" in low:
        return VotingPeriodClosedError(f"{action}: proposal is not in its voting period")
    if any(marker in low for marker in _NETWORK_MARKERS):
        return NetworkError(f"{action}: {reason}")
    return SubprocessError(f"{action}: {reason}", returncode=err.returncode, output=output)


def reward_error(err: PushValidatorError) -> PushValidatorError:
    msg = err.message.lower()
    if "no delegation distribution info" in msg or "invalid coins" in msg or "empty" in msg:
        return StateError("No rewards available to withdraw yet.")
    if "unauthorized" in msg:
        return StateError("Transaction signing failed. Check that the key exists and is accessible.")
    return err


class ValidatorService:
    """Key management, balance and validator transactions."""

    def __init__(self, runner: Runner, options: ValidatorOptions):
        self.runner = runner
        self.opts = options

    # --- plumbing -------------------------------------------------------

    def _run(self, *args: str, input: Optional[str] = None, timeout: Optional[float] = None) -> str:
        return self.runner.run(self.opts.bin_path, *args, input=input, timeout=timeout)

    def _keyring_flags(self) -> List[str]:
        return ["--keyring-backend", self.opts.keyring_backend, "--home", self.opts.home_dir]

    def _tx_flags(self, key_name: str) -> List[str]:
        return [
            "--from", key_name,
            "--chain-id", self.opts.chain_id,
            *self._keyring_flags(),
            "--node", self.opts.remote,
            "--gas=auto",
            "--gas-adjustment=1.3",
            f"--gas-prices=1000000000{self.opts.denom}",
            "--yes",
        ]

    def _json(self, *args: str, timeout: float = QUERY_TIMEOUT) -> Any:
        output = self._run(*args, timeout=timeout)
        try:
            return load_json(output)
        except ValueError as e:
            raise ProtocolError(f"unexpected output from '{' '.join(args[:3])}'", e)

    def _submit(self, action: str, *args: str) -> str:
        try:
            output = self._run(*args, timeout=TX_TIMEOUT)
        except SubprocessError as e:
            raise classify_failure(e, action)
        tx_hash = extract_tx_hash(output)
        if not tx_hash:
            raise ProtocolError(f"{action}: transaction submitted but txhash not found in output")
        return tx_hash

    # --- keys -----------------------------------------------------------

    def show_key(self, name: str) -> Optional[KeyInfo]:
        try:
            data = self._json("keys", "show", name, *self._keyring_flags(), "--output", "json")
        except SubprocessError:
            return None
        return _key_info(data, name)

    def ensure_key(self, name: str) -> KeyInfo:
        """Return the named key, creating it when absent (mnemonic set only then)."""
        if not name:
            raise InvalidArgsError("key name required")
        existing = self.show_key(name)
        if existing is not None:
            return existing

        try:
            output = self._run(
                "keys", "add", name, *self._keyring_flags(),
                "--algo", "eth_secp256k1", "--output", "json",
            )
        except SubprocessError as e:
            raise classify_failure(e, "keys add")
        mnemonic = extract_mnemonic(output)
        try:
            info = _key_info(load_json(output), name)
        except ValueError:
            info = self.show_key(name)
            if info is None:
                raise KeyNotFoundError(f"key '{name}' was not created")
        info.mnemonic = mnemonic
        return info

    def import_key(self, name: str, mnemonic: str) -> KeyInfo:
        """Recover a key from a mnemonic.

        Raises:
            ValidationError: malformed mnemonic.
            StateError: a key with this name already exists.
        """
        if not name:
            raise InvalidArgsError("key name required")
        if not mnemonic:
            raise InvalidArgsError("mnemonic phrase required")
        phrase = validate_mnemonic(mnemonic)

        existing = self.show_key(name)
        if existing is not None:
            raise StateError(f"key '{name}' already exists with address {existing.address}")

        try:
            self._run(
                "keys", "add", name, "--recover", *self._keyring_flags(),
                "--algo", "eth_secp256k1",
                input=phrase + "\n",
            )
        except SubprocessError as e:
            low = (e.output or "").lower()
            if "invalid mnemonic" in low or "invalid checksum" in low:
                raise ValidationError("invalid mnemonic phrase: checksum verification failed")
            if "duplicated address" in low:
                return self._find_key_by_mnemonic(phrase)
            raise classify_failure(e, "key import")

        info = self.show_key(name)
        if info is None:
            raise KeyNotFoundError(f"imported key '{name}' not found in keyring")
        return info

    def _find_key_by_mnemonic(self, phrase: str) -> KeyInfo:
        """Existing keyring entry for a mnemonic imported under another name."""
        with tempfile.TemporaryDirectory(prefix="push-key-derive-") as tmp:
            try:
                derived = load_json(self._run(
                    "keys", "add", "temp", "--recover", "--dry-run",
                    "--keyring-backend", "test", "--algo", "eth_secp256k1",
                    "--home", tmp, "--output", "json",
                    input=phrase + "\n",
                ))
            except (SubprocessError, ValueError):
                derived = {}
        address = derived.get("address") if isinstance(derived, dict) else None
        if address:
            for key in self.list_keys():
                if key.address == address:
                    return key
        raise StateError("wallet already exists in keyring (use the existing key name)")

    def list_keys(self) -> List[KeyInfo]:
        try:
            data = self._json("keys", "list", *self._keyring_flags(), "--output", "json")
        except SubprocessError:
            return []
        if not isinstance(data, list):
            return []
        return [_key_info(item, item.get("name", "")) for item in data if isinstance(item, dict)]

    # --- addresses ------------------------------------------------------

    def debug_addr(self, address: str) -> DebugAddress:
        if not address:
            raise InvalidArgsError("address required")
        try:
            output = self._run("debug", "addr", address)
        except SubprocessError as e:
            raise classify_failure(e, "debug addr")
        return parse_debug_addr(output)

    def get_evm_address(self, address: str) -> str:
        evm = self.debug_addr(address).evm
        if not evm:
            raise ProtocolError("could not extract EVM address from debug output")
        return evm

    # --- queries --------------------------------------------------------

    def _consensus_pubkey(self) -> Dict[str, str]:
        try:
            data = self._json("tendermint", "show-validator", "--home", self.opts.home_dir)
        except SubprocessError as e:
            raise classify_failure(e, "show-validator")
        if not isinstance(data, dict) or not data.get("key"):
            raise ProtocolError("empty consensus pubkey")
        return data

    def _validators(self) -> List[Dict[str, Any]]:
        try:
            data = self._json("query", "staking", "validators", "--node", self.opts.remote, "-o", "json")
        except SubprocessError as e:
            raise classify_failure(e, "query validators")
        validators = data.get("validators") if isinstance(data, dict) else None
        return [v for v in validators or [] if isinstance(v, dict)]

    def is_validator(self, address: str = "") -> bool:
        """Whether this node (or ``address`` when given) is a registered validator.

        Without an address the local consensus pubkey is compared against the
        remote validator set.
        """
        if address:
            return self.is_address_validator(address)
        key = self._consensus_pubkey()["key"]
        for v in self._validators():
            value = (v.get("consensus_pubkey") or {}).get("value", "")
            if value and value.lower() == key.lower():
                return True
        return False

    def is_address_validator(self, account_address: str) -> bool:
        if not account_address:
            raise InvalidArgsError("address required")
        return any(same_key(account_address, v.get("operator_address", "")) for v in self._validators())

    def balance(self, address: str) -> str:
        """Balance of ``address`` in the base denomination ("0" when none)."""
        if not address:
            raise InvalidArgsError("address required")
        try:
            data = self._json("query", "bank", "balances", address, "--node", self.opts.remote, "-o", "json")
        except SubprocessError as e:
            raise classify_failure(e, "query balance")
        for coin in (data.get("balances") if isinstance(data, dict) else None) or []:
            if coin.get("denom") == self.opts.denom:
                return str(coin.get("amount", "0"))
        return "0"

    def my_validator(self) -> Optional[ValidatorRecord]:
        """Validator controlled by this node's consensus key or a local keyring key."""
        pubkey = self._consensus_pubkey()
        validators = self._validators()
        total_power = sum(_voting_power(v.get("tokens")) for v in validators)

        match = None
        for v in validators:
            value = (v.get("consensus_pubkey") or {}).get("value", "")
            if value and value.lower() == pubkey["key"].lower():
                match = v
                break
        consensus_match = match is not None
        if match is None:
            addresses = [k.address for k in self.list_keys()]
            for v in validators:
                if any(same_key(addr, v.get("operator_address", "")) for addr in addresses):
                    match = v
                    break
        if match is None:
            return None

        record = _record(match, total_power)
        record.consensus_match = consensus_match
        try:
            record.account_address = self.debug_addr(record.operator_address).account
        except PushValidatorError as e:
            _debug(f"debug addr failed for {record.operator_address}: {e}")
        if record.jailed:
            try:
                info = self.slashing_info(json.dumps(pubkey, separators=(",", ":")))
                record.jailed_until = info.jailed_until
                record.missed_blocks = info.missed_blocks
                record.tombstoned = info.tombstoned
                record.jail_reason = info.jail_reason
            except PushValidatorError as e:
                record.slashing_error = f"Failed to fetch jail reason: {e}"
        return record

    def slashing_info(self, consensus_pubkey_json: str) -> SlashingInfo:
        try:
            data = self._json(
                "query", "slashing", "signing-info", consensus_pubkey_json,
                "--node", self.opts.remote, "-o", "json",
            )
        except SubprocessError as e:
            raise classify_failure(e, "query signing-info")
        raw = (data.get("val_signing_info") if isinstance(data, dict) else None) or {}
        info = SlashingInfo(
            tombstoned=bool(raw.get("tombstoned", False)),
            jailed_until=raw.get("jailed_until", ""),
        )
        try:
            info.missed_blocks = int(raw.get("missed_blocks_counter") or 0)
        except (TypeError, ValueError):
            info.missed_blocks = 0
        if info.tombstoned:
            info.jail_reason = "Double Sign"
        elif (info.jailed_until and not info.jailed_until.startswith("1970-01-01")) or info.missed_blocks > 0:
            info.jail_reason = "Downtime"
        return info

    def validators(self) -> List[ValidatorRecord]:
        """The remote validator set, highest voting power first."""
        validators = self._validators()
        total_power = sum(_voting_power(v.get("tokens")) for v in validators)
        records = [_record(v, total_power) for v in validators]
        records.sort(key=lambda r: (-r.voting_power, r.moniker.lower()))
        return records

    def rewards(self, validator_address: str) -> ValidatorRewards:
        """Unclaimed commission plus outstanding rewards of a validator."""
        if not validator_address:
            raise InvalidArgsError("validator address required")
        try:
            commission = self._json(
                "query", "distribution", "commission", validator_address,
                "--node", self.opts.remote, "-o", "json",
            )
            outstanding = self._json(
                "query", "distribution", "validator-outstanding-rewards", validator_address,
                "--node", self.opts.remote, "-o", "json",
            )
        except SubprocessError as e:
            raise classify_failure(e, "query rewards")
        return ValidatorRewards(
            validator_address=validator_address,
            commission=self._coin_amount(_nested(commission, "commission", "commission")),
            outstanding=self._coin_amount(_nested(outstanding, "rewards", "rewards")),
        )

    def proposals(self, status: str = "") -> List[Proposal]:
        """Governance proposals, optionally filtered by ``status``.

        ``status`` is one of ``PROPOSAL_STATUSES`` (``voting``, ``passed``,
        ``rejected``, ``deposit``).
        """
        args = ["query", "gov", "proposals", "--node", self.opts.remote, "-o", "json"]
        if status:
            key = status.strip().lower()
            if key not in PROPOSAL_STATUSES:
                raise ValidationError(
                    f"invalid proposal status {status!r} (choose one of: {', '.join(PROPOSAL_STATUSES)})"
                )
            args += ["--status", PROPOSAL_STATUSES[key]]
        try:
            data = self._json(*args)
        except SubprocessError as e:
            if "no proposals found" in f"{e.message} {e.output}".lower():
                return []
            raise classify_failure(e, "query proposals")
        proposals = []
        for raw in (data.get("proposals") if isinstance(data, dict) else None) or []:
            if not isinstance(raw, dict):
                continue
            end = raw.get("voting_end_time") or ""
            if end.startswith("0001-01-01"):
                end = ""
            proposals.append(Proposal(
                id=str(raw.get("id") or raw.get("proposal_id") or ""),
                title=_proposal_title(raw),
                status=_proposal_status(raw.get("status", "")),
                voting_end=end,
            ))
        return proposals

    def _coin_amount(self, coins: Any) -> int:
        """Base-unit amount of the configured denom in a coin list.

        Entries are either ``{"denom", "amount"}`` objects or strings such
        as ``"123.45upc"``; fractional base units are dropped.
        """
        for coin in coins or []:
            if isinstance(coin, dict):
                if coin.get("denom") != self.opts.denom:
                    continue
                amount = str(coin.get("amount", "0"))
            else:
                text = str(coin)
                if not text.endswith(self.opts.denom):
                    continue
                amount = text[:-len(self.opts.denom)]
            try:
                return int(Decimal(amount))
            except (InvalidOperation, ValueError, OverflowError):
                raise ProtocolError(f"invalid coin amount {coin!r}")
        return 0

    # --- transactions ---------------------------------------------------

    def register(self, args: RegisterArgs) -> str:
        """Submit create-validator; returns the tx hash."""
        if not args.key_name:
            raise InvalidArgsError("key name required")
        if not args.moniker:
            raise InvalidArgsError("moniker required")
        _require_amount(args.amount)
        rate = _commission(args.commission_rate or "0.10")
        min_self = args.min_self_delegation or "1"

        pubkey = self._consensus_pubkey()
        payload = {
            "pubkey": pubkey,
            "amount": f"{args.amount}{self.opts.denom}",
            "moniker": args.moniker,
            "identity": "",
            "website": "",
            "security": "",
            "details": "Push Chain Validator",
            "commission-rate": rate,
            "commission-max-rate": "0.20",
            "commission-max-change-rate": "0.01",
            "min-self-delegation": min_self,
        }
        path = Path(self.opts.home_dir) / "config" / "create-validator.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
        try:
            return self._submit(
                "register validator",
                "tx", "staking", "create-validator", str(path),
                *self._tx_flags(args.key_name),
            )
        finally:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

    def delegate(self, args: DelegateArgs) -> str:
        if not args.validator_address:
            raise InvalidArgsError("validator address required")
        if not args.key_name:
            raise InvalidArgsError("key name required")
        _require_amount(args.amount)
        return self._submit(
            "delegate",
            "tx", "staking", "delegate", args.validator_address, f"{args.amount}{self.opts.denom}",
            *self._tx_flags(args.key_name),
        )

    def unjail(self, key_name: str) -> str:
        if not key_name:
            raise InvalidArgsError("key name required")
        return self._submit("unjail", "tx", "slashing", "unjail", *self._tx_flags(key_name))

    def withdraw_rewards(self, validator_address: str, key_name: str, include_commission: bool = False) -> str:
        if not validator_address:
            raise InvalidArgsError("validator address required")
        if not key_name:
            raise InvalidArgsError("key name required")
        args = ["tx", "distribution", "withdraw-rewards", validator_address, *self._tx_flags(key_name)]
        if include_commission:
            args.append("--commission")
        try:
            return self._submit("withdraw rewards", *args)
        except SubprocessError as e:
            raise reward_error(e)

    def restake(
        self,
        validator_address: str,
        key_name: str,
        amount: Optional[int] = None,
        reserve: int = GAS_RESERVE,
    ) -> RestakeResult:
        """Withdraw rewards and commission, then delegate them back.

        Without ``amount`` everything withdrawn except ``reserve`` is
        delegated. The result has no delegate hash when nothing is left
        to stake.
        """
        if amount is not None and amount <= 0:
            raise ValidationError(f"invalid amount {amount!r}: expected a positive integer in base units")
        rewards = self.rewards(validator_address)
        withdraw_tx = self.withdraw_rewards(validator_address, key_name, include_commission=True)
        stake = amount if amount is not None else rewards.total - reserve
        result = RestakeResult(withdraw_txhash=withdraw_tx)
        if stake <= 0:
            _debug(f"restake: {rewards.total} withdrawn, nothing left after reserve {reserve}")
            return result
        result.delegate_txhash = self.delegate(DelegateArgs(validator_address, str(stake), key_name))
        result.amount = stake
        return result

    def vote(self, args: VoteArgs) -> str:
        if not args.proposal_id or not str(args.proposal_id).isdigit():
            raise ValidationError(f"invalid proposal id: {args.proposal_id!r}")
        option = (args.option or "").strip().lower().replace("-", "_")
        try:
            option = VoteOption(option).value
        except ValueError:
            choices = ", ".join(o.value for o in VoteOption)
            raise ValidationError(f"invalid vote option {args.option!r} (choose one of: {choices})")
        if not args.key_name:
            raise InvalidArgsError("key name required")
        return self._submit(
            "vote",
            "tx", "gov", "vote", str(args.proposal_id), option,
            *self._tx_flags(args.key_name),
        )


def _key_info(data: Any, name: str) -> KeyInfo:
    if not isinstance(data, dict):
        raise ProtocolError("unexpected key output")
    pubkey = data.get("pubkey", "")
    if isinstance(pubkey, dict):
        pubkey = json.dumps(pubkey, separators=(",", ":"))
    return KeyInfo(
        name=data.get("name") or name,
        address=data.get("address", ""),
        pubkey=pubkey,
        type=data.get("type", ""),
    )


def _record(raw: Dict[str, Any], total_power: int) -> ValidatorRecord:
    power = _voting_power(raw.get("tokens"))
    return ValidatorRecord(
        operator_address=raw.get("operator_address", ""),
        moniker=(raw.get("description") or {}).get("moniker", ""),
        status=BondStatus.from_chain(raw.get("status", "")),
        jailed=bool(raw.get("jailed", False)),
        tokens=str(raw.get("tokens", "0")),
        voting_power=power,
        voting_fraction=power / total_power if total_power else 0.0,
        commission_rate=((raw.get("commission") or {}).get("commission_rates") or {}).get("rate", "0"),
    )


def _nested(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _proposal_title(raw: Dict[str, Any]) -> str:
    if raw.get("title"):
        return raw["title"]
    if (raw.get("content") or {}).get("title"):
        return raw["content"]["title"]
    messages = raw.get("messages") or []
    if messages and isinstance(messages[0], dict):
        first = messages[0]
        if first.get("title"):
            return first["title"]
        if (first.get("content") or {}).get("title"):
            return first["content"]["title"]
    return "Untitled Proposal"


def _proposal_status(status: str) -> str:
    """``PROPOSAL_STATUS_VOTING_PERIOD`` -> ``VOTING``; unknown values unchanged."""
    name = status.upper()
    if name.startswith("PROPOSAL_STATUS_"):
        name = name[len("PROPOSAL_STATUS_"):]
        if name.endswith("_PERIOD"):
            name = name[:-len("_PERIOD")]
        return name
    return status


def _voting_power(tokens: Any) -> int:
    try:
        return int(Decimal(str(tokens or 0))) // TOKEN_DECIMALS
    except (InvalidOperation, ValueError):
        return 0


def _require_amount(amount: str) -> None:
    if not amount or not str(amount).isdigit() or int(amount) <= 0:
        raise ValidationError(f"invalid amount {amount!r}: expected a positive integer in base units")


def _commission(rate: str) -> str:
    try:
        value = Decimal(rate)
    except InvalidOperation:
        raise ValidationError(f"invalid commission rate {rate!r}")
    if not value.is_finite():
        raise ValidationError(f"invalid commission rate {rate!r}")
    if not MIN_COMMISSION <= value <= MAX_COMMISSION:
        raise ValidationError(f"commission rate {rate} out of range (0.01 - 1.0)")
    return rate
