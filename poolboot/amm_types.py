"""
Pool Bootstrap - Data Types

Token amounts, pairs to bootstrap, on-chain pair records and the per-step result
type shared by every workflow component.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
BPS_DENOMINATOR = 10000

# How liquidity reaches the pool
PROVISION_ROUTER = "router"     # router addLiquidity / addLiquidityETH
PROVISION_PAIR = "pair"         # transfer both tokens to the pair, then pair.mint(to)
PROVISION_MODES = (PROVISION_ROUTER, PROVISION_PAIR)


def normalize_address(address: str) -> str:
    """Return the checksummed form of an address."""
    return Web3.to_checksum_address(address)


def is_zero_address(address: Optional[str]) -> bool:
    return not address or int(address, 16) == 0


def same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


# ═══════════════════════════════════════════════════════════════════════════════
# AMOUNTS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TokenAmount:
    """
    Raw on-chain quantity of one token.

    raw is always an int in the token's smallest unit. Two amounts only
    combine when they share token and decimals; anything else must be
    rescaled explicitly first.
    """
    token: str
    raw: int
    decimals: int = 18

    def __post_init__(self):
        if not isinstance(self.raw, int) or isinstance(self.raw, bool):
            raise TypeError(f"raw amount must be int, got {type(self.raw).__name__}")
        if self.raw < 0:
            raise ValueError(f"raw amount must be >= 0, got {self.raw}")
        if self.decimals < 0:
            raise ValueError(f"decimals must be >= 0, got {self.decimals}")

    @classmethod
    def from_human(cls, token: str, value: Any, decimals: int = 18) -> "TokenAmount":
        """
        Convert a human readable amount ("3.33") into raw units.

        Args:
            token: Token address
            value: Decimal string, int or Decimal
            decimals: Token decimals

        Raises:
            ValueError: If the value is negative, not a number, or has more
                fractional digits than the token supports
        """
        try:
            d = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Not a decimal amount: {value!r}")
        if not d.is_finite():
            raise ValueError(f"Not a finite amount: {value!r}")
        scaled = d.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"{value} has more than {decimals} fractional digits")
        return cls(token=token, raw=int(scaled), decimals=decimals)

    def to_human(self) -> Decimal:
        return Decimal(self.raw).scaleb(-self.decimals)

    def rescale(self, decimals: int) -> "TokenAmount":
        """Rescale to other decimals, truncating when precision is lost."""
        if decimals >= self.decimals:
            raw = self.raw * 10 ** (decimals - self.decimals)
        else:
            raw = self.raw // 10 ** (self.decimals - decimals)
        return TokenAmount(self.token, raw, decimals)

    def _check_compatible(self, other: "TokenAmount"):
        if not same_address(self.token, other.token):
            raise ValueError(f"Cannot combine amounts of {self.token} and {other.token}")
        if self.decimals != other.decimals:
            raise ValueError(
                f"Cannot combine amounts with {self.decimals} and {other.decimals} decimals "
                f"without rescaling"
            )

    def __add__(self, other: "TokenAmount") -> "TokenAmount":
        self._check_compatible(other)
        return TokenAmount(self.token, self.raw + other.raw, self.decimals)

    def __sub__(self, other: "TokenAmount") -> "TokenAmount":
        self._check_compatible(other)
        return TokenAmount(self.token, self.raw - other.raw, self.decimals)

    def with_slippage(self, slippage_bps: int) -> "TokenAmount":
        """Lower bound after slippage, floor division on raw units."""
        return TokenAmount(self.token, min_amount(self.raw, slippage_bps), self.decimals)

    def to_dict(self) -> dict:
        return {"token": self.token, "raw": str(self.raw), "decimals": self.decimals}


def min_amount(desired: int, slippage_bps: int) -> int:
    """desired * (10000 - slippage_bps) // 10000"""
    if not 0 <= slippage_bps < BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps must be in [0, {BPS_DENOMINATOR}), got {slippage_bps}")
    return desired * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


# ═══════════════════════════════════════════════════════════════════════════════
# PAIRS
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CanonicalPair:
    """Token pair in on-chain storage order: token0 < token1 numerically."""
    token0: str
    token1: str

    def __post_init__(self):
        if int(self.token0, 16) >= int(self.token1, 16):
            raise ValueError(f"token0 {self.token0} must sort below token1 {self.token1}")

    @classmethod
    def of(cls, token_a: str, token_b: str) -> "CanonicalPair":
        """Build the canonical pair from tokens in any order."""
        if same_address(token_a, token_b):
            raise ValueError(f"Identical tokens: {token_a}")
        a, b = normalize_address(token_a), normalize_address(token_b)
        if int(a, 16) < int(b, 16):
            return cls(a, b)
        return cls(b, a)

    def as_tuple(self) -> Tuple[str, str]:
        return self.token0, self.token1


@dataclass(frozen=True)
class PairSpec:
    """
    One pool to bootstrap.

    Amounts are in raw units of their own token. deadline is a unix
    timestamp and must lie in the future at construction; it is
    embedded in the router call and is the only cancellation channel.
    provision_via picks the router or the direct transfer + pair.mint path;
    the native asset is only available through the router.
    """
    token_a: TokenAmount
    token_b: TokenAmount
    slippage_bps: int
    deadline: int
    label: str = ""
    allow_create: bool = True
    use_native: bool = False
    provision_via: str = PROVISION_ROUTER

    def __post_init__(self):
        if not 0 <= self.slippage_bps < BPS_DENOMINATOR:
            raise ValueError(
                f"slippage_bps must be in [0, {BPS_DENOMINATOR}), got {self.slippage_bps}"
            )
        if self.provision_via not in PROVISION_MODES:
            raise ValueError(f"provision_via must be one of {PROVISION_MODES}, got {self.provision_via!r}")
        if self.use_native and self.provision_via == PROVISION_PAIR:
            raise ValueError("use_native requires provision_via='router'")
        if same_address(self.token_a.token, self.token_b.token):
            raise ValueError(f"token_a and token_b are identical: {self.token_a.token}")
        if self.deadline <= int(time.time()):
            raise ValueError(f"deadline {self.deadline} is not in the future")
        if not self.label:
            object.__setattr__(self, "label", f"{self.token_a.token}/{self.token_b.token}")

    @property
    def pair_id(self) -> str:
        return self.label

    @property
    def canonical(self) -> CanonicalPair:
        return CanonicalPair.of(self.token_a.token, self.token_b.token)

    def minimum_amounts(self) -> Tuple[int, int]:
        return (min_amount(self.token_a.raw, self.slippage_bps),
                min_amount(self.token_b.raw, self.slippage_bps))

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.deadline

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "token_a": self.token_a.to_dict(),
            "token_b": self.token_b.to_dict(),
            "slippage_bps": self.slippage_bps,
            "deadline": self.deadline,
            "allow_create": self.allow_create,
            "use_native": self.use_native,
            "provision_via": self.provision_via,
        }


@dataclass(frozen=True)
class PairRecord:
    """Snapshot of a pool contract as read from chain."""
    pair_address: str
    token0: str
    token1: str
    has_deployed_code: bool
    reserve0: int = 0
    reserve1: int = 0
    total_shares: int = 0

    @property
    def canonical(self) -> CanonicalPair:
        return CanonicalPair.of(self.token0, self.token1)

    def reserve_of(self, token: str) -> int:
        if same_address(token, self.token0):
            return self.reserve0
        if same_address(token, self.token1):
            return self.reserve1
        raise ValueError(f"{token} is not part of pair {self.pair_address}")

    def to_dict(self) -> dict:
        return {
            "pair_address": self.pair_address,
            "token0": self.token0,
            "token1": self.token1,
            "has_deployed_code": self.has_deployed_code,
            "reserve0": str(self.reserve0),
            "reserve1": str(self.reserve1),
            "total_shares": str(self.total_shares),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PairRecord":
        return cls(
            pair_address=data["pair_address"],
            token0=data["token0"],
            token1=data["token1"],
            has_deployed_code=bool(data["has_deployed_code"]),
            reserve0=int(data.get("reserve0", 0)),
            reserve1=int(data.get("reserve1", 0)),
            total_shares=int(data.get("total_shares", 0)),
        )


# ═══════════════════════════════════════════════════════════════════════════════
# STEP RESULTS
# ═══════════════════════════════════════════════════════════════════════════════

class PairState(Enum):
    """Workflow states a pair moves through."""
    PENDING = "pending"
    ALLOWANCE_CHECKED = "allowance_checked"
    PAIR_RESOLVED = "pair_resolved"
    LIQUIDITY_PROVISIONED = "liquidity_provisioned"
    GATE_CHECKED = "gate_checked"
    REGISTERED = "registered"
    SKIPPED = "skipped"
    FAILED = "failed"


class StepStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorKind(Enum):
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    ALLOWANCE_REJECTED = "AllowanceRejected"
    PAIR_NOT_FOUND = "PairNotFound"
    PHANTOM_PAIR = "PhantomPair"
    TRANSACTION_REVERTED = "TransactionReverted"
    TRANSACTION_TIMEOUT = "TransactionTimeout"
    DEADLINE_EXPIRED = "DeadlineExpired"
    INSUFFICIENT_LIQUIDITY_FOR_ORACLE = "InsufficientLiquidityForOracle"
    REGISTRATION_REJECTED = "RegistrationRejected"
    CHAIN_UNAVAILABLE = "ChainUnavailable"
    UNEXPECTED = "Unexpected"


@dataclass
class StepResult:
    """
    Outcome of one workflow step.

    Variants:
      - SUCCESS: tx_id (None for pure reads) and data
      - FAILED:  error_kind and message
      - SKIPPED: reason

    tx_ids lists every transaction actually broadcast while producing the
    result, including on failure. payload carries typed values between
    components and is not serialized.
    """
    status: StepStatus
    step: PairState
    tx_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None
    message: str = ""
    reason: str = ""
    tx_ids: List[str] = field(default_factory=list)
    payload: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def success(cls, step: PairState, tx_id: Optional[str] = None,
                data: Optional[Dict[str, Any]] = None,
                tx_ids: Optional[List[str]] = None, payload: Any = None) -> "StepResult":
        ids = list(tx_ids or [])
        if tx_id and tx_id not in ids:
            ids.append(tx_id)
        return cls(StepStatus.SUCCESS, step, tx_id=tx_id, data=dict(data or {}),
                   tx_ids=ids, payload=payload)

    @classmethod
    def failed(cls, step: PairState, error_kind: ErrorKind, message: str,
               data: Optional[Dict[str, Any]] = None,
               tx_ids: Optional[List[str]] = None) -> "StepResult":
        return cls(StepStatus.FAILED, step, error_kind=error_kind, message=message,
                   data=dict(data or {}), tx_ids=list(tx_ids or []))

    @classmethod
    def skipped(cls, step: PairState, reason: str,
                data: Optional[Dict[str, Any]] = None) -> "StepResult":
        return cls(StepStatus.SKIPPED, step, reason=reason, data=dict(data or {}))

    @property
    def ok(self) -> bool:
        return self.status is not StepStatus.FAILED

    @property
    def is_failed(self) -> bool:
        return self.status is StepStatus.FAILED

    @property
    def is_skipped(self) -> bool:
        return self.status is StepStatus.SKIPPED

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        out = {
            "status": self.status.value,
            "step": self.step.value,
            "tx_ids": list(self.tx_ids),
            "data": self.data,
        }
        if self.status is StepStatus.SUCCESS:
            out["tx_id"] = self.tx_id
        elif self.status is StepStatus.FAILED:
            out["error_kind"] = self.error_kind.value if self.error_kind else None
            out["message"] = self.message
        else:
            out["reason"] = self.reason
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "StepResult":
        """Create StepResult from dictionary."""
        kind = data.get("error_kind")
        return cls(
            status=StepStatus(data["status"]),
            step=PairState(data["step"]),
            tx_id=data.get("tx_id"),
            data=data.get("data", {}),
            error_kind=ErrorKind(kind) if kind else None,
            message=data.get("message", ""),
            reason=data.get("reason", ""),
            tx_ids=list(data.get("tx_ids", [])),
        )
