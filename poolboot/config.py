"""
Pool Bootstrap - Configuration

JSON config file plus signing keys from the environment (.env supported).

Layout:
    network    rpc_url, chain_id, receipt_timeout
    contracts  factory, router, oracle, wrapped_native
    tokens     address -> {symbol, decimals, requires_zero_reset}
    pairs      [{label, token_a, token_b, amount_a, amount_b, slippage_bps,
                 deadline_seconds, allow_create, use_native, provision_via}]
    oracle     minimum_liquidity (raw units), check_owner, skip_registered
    gas        gas_limit, max_fee_gwei, max_priority_fee_gwei
    accounts   optional [{key_env, pairs: [label, ...]}] for multi-account runs
    ledger_file

Pair amounts are human decimal strings ("1.5"), converted with the
token's decimals. Tokens in pairs may be given by address or symbol.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from web3 import Web3

from .amm_types import PROVISION_ROUTER, PairSpec, TokenAmount, normalize_address, same_address
from .workflow import WorkflowSettings

log = logging.getLogger(__name__)

PRIVATE_KEY_ENV = "POOLBOOT_PRIVATE_KEY"
DEFAULT_DEADLINE_SECONDS = 1200
DEFAULT_SLIPPAGE_BPS = 100

# Default configuration
DEFAULT_CONFIG = {
    "network": {
        "rpc_url": "http://127.0.0.1:8545",
        "chain_id": 31337,
        "receipt_timeout": 120
    },
    "contracts": {
        "factory": "",
        "router": "",
        "oracle": "",
        "wrapped_native": ""
    },
    "tokens": {},
    "pairs": [],
    "oracle": {
        "minimum_liquidity": "1000",
        "check_owner": False,
        "skip_registered": True
    },
    "gas": {
        "gas_limit": 0,         # 0 = estimate
        "max_fee_gwei": 0,      # 0 = legacy gasPrice from node
        "max_priority_fee_gwei": 1
    },
    "accounts": [],
    "ledger_file": "poolboot_ledger.json"
}


class ConfigError(ValueError):
    """Configuration file is missing, malformed or inconsistent."""


@dataclass
class TokenInfo:
    address: str
    symbol: str = ""
    decimals: int = 18
    requires_zero_reset: bool = False


@dataclass
class AccountConfig:
    """Extra sending account: key read from env var key_env, runs the listed pairs."""
    key_env: str
    pairs: List[str] = field(default_factory=list)


@dataclass
class BootstrapConfig:
    rpc_url: str
    chain_id: Optional[int]
    receipt_timeout: float
    settings: WorkflowSettings
    tokens: Dict[str, TokenInfo]
    pairs: List[Dict[str, Any]]
    gas: Dict[str, Any] = field(default_factory=dict)
    accounts: List[AccountConfig] = field(default_factory=list)
    ledger_file: str = "poolboot_ledger.json"

    def token(self, ref: str) -> TokenInfo:
        """Look a token up by address or symbol."""
        for info in self.tokens.values():
            if info.symbol and info.symbol == ref:
                return info
            if Web3.is_address(ref) and same_address(info.address, ref):
                return info
        raise ConfigError(f"Unknown token {ref!r}; add it to 'tokens'")

    def labels(self) -> List[str]:
        return [p["label"] for p in self.pairs]

    def build_specs(self, labels: Optional[List[str]] = None,
                    now: Optional[float] = None) -> List[PairSpec]:
        """
        Build PairSpecs, deadlines counted from now.

        Args:
            labels: Only these pairs (all when None)
            now: Unix time the deadlines are relative to

        Raises:
            ConfigError: Unknown label, unknown token, bad amount or
                invalid pair parameters
        """
        now = time.time() if now is None else now
        if labels:
            unknown = [label for label in labels if label not in self.labels()]
            if unknown:
                raise ConfigError(f"Unknown pair label(s): {', '.join(unknown)}")

        specs = []
        for entry in self.pairs:
            if labels and entry["label"] not in labels:
                continue
            specs.append(self._build_spec(entry, now))
        return specs

    def _build_spec(self, entry: Dict[str, Any], now: float) -> PairSpec:
        label = entry["label"]
        token_a = self.token(entry["token_a"])
        token_b = self.token(entry["token_b"])
        try:
            spec = PairSpec(
                token_a=TokenAmount.from_human(token_a.address, entry["amount_a"], token_a.decimals),
                token_b=TokenAmount.from_human(token_b.address, entry["amount_b"], token_b.decimals),
                slippage_bps=int(entry.get("slippage_bps", DEFAULT_SLIPPAGE_BPS)),
                deadline=int(now) + int(entry.get("deadline_seconds", DEFAULT_DEADLINE_SECONDS)),
                label=label,
                allow_create=bool(entry.get("allow_create", True)),
                use_native=bool(entry.get("use_native", False)),
                provision_via=entry.get("provision_via", PROVISION_ROUTER),
            )
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            raise ConfigError(f"Pair {label}: {e}")

        wrapped = self.settings.wrapped_native
        if spec.use_native:
            if not wrapped:
                raise ConfigError(f"Pair {label}: use_native needs contracts.wrapped_native")
            if not (same_address(token_a.address, wrapped) or same_address(token_b.address, wrapped)):
                raise ConfigError(f"Pair {label}: use_native needs one side to be {wrapped}")
        return spec


def _address(value: Any, name: str, required: bool = True) -> Optional[str]:
    if not value:
        if required:
            raise ConfigError(f"{name} is not set")
        return None
    if not Web3.is_address(value):
        raise ConfigError(f"{name} is not a valid address: {value!r}")
    return normalize_address(value)


def parse_config(data: Dict[str, Any]) -> BootstrapConfig:
    """Validate a config dict and build a BootstrapConfig."""
    network = data.get("network", {})
    contracts = data.get("contracts", {})
    oracle = data.get("oracle", {})

    if not network.get("rpc_url"):
        raise ConfigError("network.rpc_url is not set")

    tokens = {}
    for address, meta in data.get("tokens", {}).items():
        checksum = _address(address, f"tokens key {address}")
        try:
            decimals = int(meta.get("decimals", 18))
        except (TypeError, ValueError):
            raise ConfigError(f"tokens.{address}.decimals must be an integer: {meta.get('decimals')!r}")
        if decimals < 0:
            raise ConfigError(f"tokens.{address}.decimals must be >= 0")
        tokens[checksum] = TokenInfo(
            address=checksum,
            symbol=meta.get("symbol", ""),
            decimals=decimals,
            requires_zero_reset=bool(meta.get("requires_zero_reset", False)),
        )

    try:
        minimum = int(oracle.get("minimum_liquidity", 0))
    except (TypeError, ValueError):
        raise ConfigError(f"oracle.minimum_liquidity must be an integer: {oracle.get('minimum_liquidity')!r}")
    if minimum < 0:
        raise ConfigError("oracle.minimum_liquidity must be >= 0")

    settings = WorkflowSettings(
        factory=_address(contracts.get("factory"), "contracts.factory"),
        router=_address(contracts.get("router"), "contracts.router"),
        oracle=_address(contracts.get("oracle"), "contracts.oracle"),
        wrapped_native=_address(contracts.get("wrapped_native"), "contracts.wrapped_native",
                                required=False),
        minimum_liquidity=minimum,
        check_owner=bool(oracle.get("check_owner", False)),
        skip_registered=bool(oracle.get("skip_registered", True)),
        zero_reset_tokens=[t.address for t in tokens.values() if t.requires_zero_reset],
    )

    pairs = []
    seen = set()
    for i, entry in enumerate(data.get("pairs", [])):
        for key in ("token_a", "token_b", "amount_a", "amount_b"):
            if key not in entry:
                raise ConfigError(f"pairs[{i}] is missing '{key}'")
        entry = dict(entry)
        entry.setdefault("label", f"{entry['token_a']}/{entry['token_b']}")
        if entry["label"] in seen:
            raise ConfigError(f"Duplicate pair label {entry['label']!r}")
        seen.add(entry["label"])
        pairs.append(entry)

    accounts = [AccountConfig(key_env=a["key_env"], pairs=list(a.get("pairs", [])))
                for a in data.get("accounts", [])]
    assigned = [label for a in accounts for label in a.pairs]
    for label in assigned:
        if label not in seen:
            raise ConfigError(f"accounts reference unknown pair {label!r}")
    if len(assigned) != len(set(assigned)):
        raise ConfigError("A pair is assigned to more than one account")

    chain_id = network.get("chain_id")
    return BootstrapConfig(
        rpc_url=network["rpc_url"],
        chain_id=int(chain_id) if chain_id is not None else None,
        receipt_timeout=float(network.get("receipt_timeout", 120)),
        settings=settings,
        tokens=tokens,
        pairs=pairs,
        gas=dict(data.get("gas", {})),
        accounts=accounts,
        ledger_file=data.get("ledger_file", DEFAULT_CONFIG["ledger_file"]),
    )


def write_default_config(path) -> Path:
    path = Path(path)
    path.write_text(json.dumps(DEFAULT_CONFIG, indent=2))
    log.info(f"Saved default config to {path}")
    return path


def load_config(path) -> BootstrapConfig:
    """
    Load and validate a config file.

    Raises:
        ConfigError: File missing (a template is written in its place),
            not JSON, or invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        write_default_config(config_path)
        raise ConfigError(f"Config file {config_path} not found; wrote a template, fill it in")
    try:
        data = json.loads(config_path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigError(f"{config_path} is not valid JSON: {e}")
    log.info(f"Loaded config from {config_path}")
    return parse_config(data)


def load_private_key(env_name: str = PRIVATE_KEY_ENV, env_file: Optional[str] = None) -> Optional[str]:
    """Signing key from the environment, after loading .env if present."""
    load_dotenv(env_file)
    key = os.getenv(env_name)
    return key.strip() if key else None
