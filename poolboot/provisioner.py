"""
Pool Bootstrap - Liquidity Provisioner

Adds liquidity through the router and recovers the pool shares minted.

Fallback ladder when the router call reverts for an unclear reason:
  1. direct             - plain addLiquidity / addLiquidityETH
  2. refresh_allowance  - approve(0) + approve(amount) on every ERC-20 side, retry
  3. sync               - pair.sync() to realign reserves with balances, retry
Each rung runs at most once per provision() call. Expired deadlines and
deterministic router rejections stop the ladder immediately.

Pairs with provision_via="pair" skip the router: both tokens are
transferred to the pair in the ratio the router would use, then
pair.mint(to) is called once. There is no ladder on that path; a sync()
after the transfers would fold the deposit into reserves without minting.
"""

import logging
import time
from typing import Callable, List, Optional, Tuple

from .allowance import AllowanceManager
from .amm_types import (
    PROVISION_PAIR,
    ErrorKind,
    PairRecord,
    PairSpec,
    PairState,
    StepResult,
    same_address,
)
from .chain_client import ChainError, TransactionReverted, TxOutcome, error_kind_for, minted_shares

log = logging.getLogger(__name__)

STEP = PairState.LIQUIDITY_PROVISIONED

RUNG_DIRECT = "direct"
RUNG_REFRESH_ALLOWANCE = "refresh_allowance"
RUNG_SYNC = "sync"
LADDER = (RUNG_DIRECT, RUNG_REFRESH_ALLOWANCE, RUNG_SYNC)

# Router and pair rejections a retry cannot fix
DETERMINISTIC_REVERTS = ("INSUFFICIENT_A_AMOUNT", "INSUFFICIENT_B_AMOUNT",
                         "INSUFFICIENT_TOKEN_AMOUNT", "INSUFFICIENT_ETH_AMOUNT",
                         "INSUFFICIENT_LIQUIDITY_MINTED")
EXPIRED_MARKER = "EXPIRED"


class LiquidityProvisioner:
    """
    Liquidity provisioning for one sending account, through the router
    or straight into the pair.

    Args:
        chain: ChainClient
        router: Router address (also the allowance spender)
        allowances: AllowanceManager used for the refresh rung
        wrapped_native: Wrapped native token; pairs using it with
            use_native=True go through addLiquidityETH
        clock: Returns the current unix time
    """

    def __init__(self, chain, router: str, allowances: AllowanceManager,
                 wrapped_native: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        self.chain = chain
        self.router = router
        self.allowances = allowances
        self.wrapped_native = wrapped_native
        self.clock = clock

    def native_side(self, spec: PairSpec) -> Optional[str]:
        """'a' or 'b' when that side is paid in the native asset, else None."""
        if not spec.use_native or not self.wrapped_native:
            return None
        if same_address(spec.token_a.token, self.wrapped_native):
            return "a"
        if same_address(spec.token_b.token, self.wrapped_native):
            return "b"
        return None

    def provision(self, record: PairRecord, spec: PairSpec) -> StepResult:
        """
        Add liquidity to a resolved pair.

        Returns:
            SUCCESS with payload {"tx_id", "shares_minted"}; FAILED with
            DeadlineExpired, TransactionReverted, TransactionTimeout or
            ChainUnavailable. tx_ids holds every transaction broadcast,
            including approvals and syncs from the ladder.
        """
        amount_a_min, amount_b_min = spec.minimum_amounts()
        if spec.provision_via == PROVISION_PAIR:
            return self._provision_via_pair(record, spec, amount_a_min, amount_b_min)
        native = self.native_side(spec)
        data = {
            "pair_address": record.pair_address,
            "entry_point": "addLiquidityETH" if native else "addLiquidity",
            "amount_a_desired": str(spec.token_a.raw),
            "amount_b_desired": str(spec.token_b.raw),
            "amount_a_min": str(amount_a_min),
            "amount_b_min": str(amount_b_min),
            "deadline": spec.deadline,
        }
        tx_ids: List[str] = []
        attempts: List[dict] = []
        last_error = ""

        for rung in LADDER:
            if rung == RUNG_REFRESH_ALLOWANCE:
                error = self._refresh_allowances(spec, native, tx_ids)
                if error:
                    attempts.append({"rung": rung, "error": error})
                    last_error = error
                    continue
            elif rung == RUNG_SYNC:
                error = self._sync(record, tx_ids)
                if error:
                    attempts.append({"rung": rung, "error": error})
                    last_error = error
                    continue

            if spec.is_expired(self.clock()):
                return self._expired(data, attempts, tx_ids)

            try:
                outcome = self._submit(spec, native, amount_a_min, amount_b_min)
            except TransactionReverted as e:
                if e.tx_id:
                    tx_ids.append(e.tx_id)
                attempts.append({"rung": rung, "error": e.reason, "tx_id": e.tx_id})
                if EXPIRED_MARKER in e.reason.upper() or spec.is_expired(self.clock()):
                    return self._expired(data, attempts, tx_ids)
                if any(marker in e.reason for marker in DETERMINISTIC_REVERTS):
                    log.error(f"{spec.label}: router rejected amounts: {e.reason}")
                    return StepResult.failed(STEP, ErrorKind.TRANSACTION_REVERTED, e.reason,
                                             data=dict(data, attempts=attempts), tx_ids=tx_ids)
                log.warning(f"{spec.label}: provisioning reverted on rung '{rung}': {e.reason}")
                last_error = e.reason
                continue
            except ChainError as e:
                if e.tx_id:
                    tx_ids.append(e.tx_id)
                attempts.append({"rung": rung, "error": e.message, "tx_id": e.tx_id})
                return StepResult.failed(STEP, error_kind_for(e), e.message,
                                         data=dict(data, attempts=attempts), tx_ids=tx_ids)

            tx_ids.append(outcome.tx_id)
            shares = minted_shares(outcome, record.pair_address, self.chain.address)
            if shares == 0:
                log.warning(f"{spec.label}: no mint event to {self.chain.address} found in {outcome.tx_id}")
            log.info(f"{spec.label}: liquidity added on rung '{rung}', {shares} shares minted")
            data.update(rung=rung, attempts=attempts, shares_minted=str(shares),
                        block_number=outcome.block_number)
            return StepResult.success(STEP, tx_id=outcome.tx_id, data=data, tx_ids=tx_ids,
                                      payload={"tx_id": outcome.tx_id, "shares_minted": shares})

        log.error(f"{spec.label}: provisioning failed after {len(attempts)} attempts: {last_error}")
        return StepResult.failed(STEP, ErrorKind.TRANSACTION_REVERTED,
                                 f"Provisioning failed after fallback ladder: {last_error}",
                                 data=dict(data, attempts=attempts), tx_ids=tx_ids)

    # ═══════════════════════════════════════════════════════════════════════
    # DIRECT PAIR MINT
    # ═══════════════════════════════════════════════════════════════════════

    def _provision_via_pair(self, record: PairRecord, spec: PairSpec,
                            amount_a_min: int, amount_b_min: int) -> StepResult:
        a, b = spec.token_a, spec.token_b
        data = {
            "pair_address": record.pair_address,
            "entry_point": "pair.mint",
            "amount_a_desired": str(a.raw),
            "amount_b_desired": str(b.raw),
            "amount_a_min": str(amount_a_min),
            "amount_b_min": str(amount_b_min),
            "deadline": spec.deadline,
        }
        tx_ids: List[str] = []
        if spec.is_expired(self.clock()):
            return self._expired(data, [], tx_ids)

        try:
            reserve0, reserve1, _ = self.chain.get_reserves(record.pair_address)
        except ChainError as e:
            return StepResult.failed(STEP, error_kind_for(e), f"Reserve read failed: {e.message}",
                                     data=data)
        if same_address(a.token, record.token0):
            reserve_a, reserve_b = reserve0, reserve1
        else:
            reserve_a, reserve_b = reserve1, reserve0
        amounts, rejection = quote_deposit(a.raw, b.raw, amount_a_min, amount_b_min,
                                           reserve_a, reserve_b)
        if rejection:
            log.error(f"{spec.label}: pool price outside slippage bounds: {rejection}")
            return StepResult.failed(STEP, ErrorKind.TRANSACTION_REVERTED, rejection, data=data)
        data.update(amount_a=str(amounts[0]), amount_b=str(amounts[1]))

        for amount, token in zip(amounts, (a.token, b.token)):
            try:
                outcome = self.chain.transfer(token, record.pair_address, amount)
            except ChainError as e:
                message = f"Transfer of {token} to pair failed: {e.message}"
                if tx_ids:
                    message += "; earlier transfers stay in the pair until the next mint"
                if e.tx_id:
                    tx_ids.append(e.tx_id)
                return StepResult.failed(STEP, error_kind_for(e), message, data=data, tx_ids=tx_ids)
            tx_ids.append(outcome.tx_id)

        try:
            outcome = self.chain.mint(record.pair_address, self.chain.address)
        except ChainError as e:
            if e.tx_id:
                tx_ids.append(e.tx_id)
            log.error(f"{spec.label}: pair.mint failed, deposit left in {record.pair_address}: {e.message}")
            return StepResult.failed(STEP, error_kind_for(e), f"pair.mint failed: {e.message}",
                                     data=data, tx_ids=tx_ids)

        tx_ids.append(outcome.tx_id)
        shares = minted_shares(outcome, record.pair_address, self.chain.address)
        log.info(f"{spec.label}: liquidity minted directly on {record.pair_address}, {shares} shares")
        data.update(rung=RUNG_DIRECT, shares_minted=str(shares), block_number=outcome.block_number)
        return StepResult.success(STEP, tx_id=outcome.tx_id, data=data, tx_ids=tx_ids,
                                  payload={"tx_id": outcome.tx_id, "shares_minted": shares})

    def _expired(self, data: dict, attempts: List[dict], tx_ids: List[str]) -> StepResult:
        log.error(f"Deadline {data['deadline']} passed, not retrying")
        return StepResult.failed(STEP, ErrorKind.DEADLINE_EXPIRED,
                                 f"Deadline {data['deadline']} passed; re-issue with a new deadline",
                                 data=dict(data, attempts=attempts), tx_ids=tx_ids)

    def _submit(self, spec: PairSpec, native: Optional[str],
                amount_a_min: int, amount_b_min: int) -> TxOutcome:
        a, b = spec.token_a, spec.token_b
        to = self.chain.address
        if native == "b":
            return self.chain.add_liquidity_native(self.router, a.token, a.raw, amount_a_min,
                                                   amount_b_min, to, spec.deadline, value=b.raw)
        if native == "a":
            return self.chain.add_liquidity_native(self.router, b.token, b.raw, amount_b_min,
                                                   amount_a_min, to, spec.deadline, value=a.raw)
        return self.chain.add_liquidity(self.router, a.token, b.token, a.raw, b.raw,
                                        amount_a_min, amount_b_min, to, spec.deadline)

    def _refresh_allowances(self, spec: PairSpec, native: Optional[str],
                            tx_ids: List[str]) -> str:
        sides = [("a", spec.token_a), ("b", spec.token_b)]
        for side, amount in sides:
            if side == native:
                continue
            result = self.allowances.refresh(self.chain.address, self.router, amount.token, amount.raw)
            tx_ids.extend(result.tx_ids)
            if result.is_failed:
                return result.message
        return ""

    def _sync(self, record: PairRecord, tx_ids: List[str]) -> str:
        log.info(f"Forcing sync() on {record.pair_address}")
        try:
            outcome = self.chain.sync(record.pair_address)
        except ChainError as e:
            if e.tx_id:
                tx_ids.append(e.tx_id)
            return f"sync failed: {e.message}"
        tx_ids.append(outcome.tx_id)
        return ""


def quote_deposit(desired_a: int, desired_b: int, min_a: int, min_b: int,
                  reserve_a: int, reserve_b: int) -> Tuple[Tuple[int, int], str]:
    """
    Amounts to deposit so the pool price is kept, as the router computes them.

    Returns:
        ((amount_a, amount_b), "") or ((0, 0), reason) when the pool price
        pushes one side below its minimum
    """
    if reserve_a == 0 and reserve_b == 0:
        return (desired_a, desired_b), ""
    if reserve_a == 0 or reserve_b == 0:
        return (0, 0), "INSUFFICIENT_LIQUIDITY: pool has a one-sided reserve"
    optimal_b = desired_a * reserve_b // reserve_a
    if optimal_b <= desired_b:
        if optimal_b < min_b:
            return (0, 0), f"INSUFFICIENT_B_AMOUNT: pool price needs {optimal_b}, minimum {min_b}"
        return (desired_a, optimal_b), ""
    optimal_a = desired_b * reserve_a // reserve_b
    if optimal_a < min_a:
        return (0, 0), f"INSUFFICIENT_A_AMOUNT: pool price needs {optimal_a}, minimum {min_a}"
    return (optimal_a, desired_b), ""
