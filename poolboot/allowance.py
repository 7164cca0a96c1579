"""
Pool Bootstrap - Allowance Manager

Makes sure a spender may move enough of a token before a transfer-dependent
call. Some tokens (USDT style) refuse to change a nonzero allowance to
another nonzero value; those are flagged in token metadata and get an
approve(0) first.
"""

import logging
from typing import Iterable, List, Optional

from .amm_types import ErrorKind, PairState, StepResult
from .chain_client import ChainError, TransactionReverted, error_kind_for

log = logging.getLogger(__name__)

STEP = PairState.ALLOWANCE_CHECKED


class AllowanceManager:
    """
    Allowance and balance checks for one sending account.

    Args:
        chain: ChainClient (or anything exposing the same read/approve calls)
        zero_reset_tokens: Addresses of tokens that must be reset to zero
            before a nonzero allowance can be raised
    """

    def __init__(self, chain, zero_reset_tokens: Optional[Iterable[str]] = None):
        self.chain = chain
        self.zero_reset_tokens = {t.lower() for t in (zero_reset_tokens or [])}

    def requires_zero_reset(self, token: str) -> bool:
        return token.lower() in self.zero_reset_tokens

    def check_balance(self, owner: str, token: str, required: int,
                      native: bool = False) -> StepResult:
        """Fail with InsufficientBalance when owner holds less than required."""
        try:
            actual = self.chain.native_balance(owner) if native else self.chain.balance_of(token, owner)
        except ChainError as e:
            return StepResult.failed(STEP, ErrorKind.CHAIN_UNAVAILABLE,
                                     f"Balance read failed for {token}: {e.message}")

        data = {"token": token, "native": native, "required": str(required), "actual": str(actual)}
        if actual < required:
            log.warning(f"Insufficient balance of {token}: need {required}, have {actual}")
            return StepResult.failed(STEP, ErrorKind.INSUFFICIENT_BALANCE,
                                     f"Need {required} of {token}, have {actual}", data=data)
        return StepResult.success(STEP, data=data)

    def ensure(self, owner: str, spender: str, token: str, required: int) -> StepResult:
        """
        Ensure spender may transfer at least `required` of token from owner.

        Returns:
            SKIPPED("sufficient") when nothing had to be sent, SUCCESS with the
            approval tx id otherwise, FAILED(AllowanceRejected) if an approval
            reverted.
        """
        try:
            current = self.chain.allowance(token, owner, spender)
        except ChainError as e:
            return StepResult.failed(STEP, ErrorKind.CHAIN_UNAVAILABLE,
                                     f"Allowance read failed for {token}: {e.message}")

        data = {"token": token, "spender": spender, "required": str(required), "current": str(current)}
        if current >= required:
            log.info(f"Allowance for {token} sufficient ({current} >= {required})")
            return StepResult.skipped(STEP, "sufficient", data=data)

        reset = current > 0 and self.requires_zero_reset(token)
        return self._approve(token, spender, required, reset, data)

    def refresh(self, owner: str, spender: str, token: str, amount: int) -> StepResult:
        """Unconditional approve(0) then approve(amount) cycle."""
        data = {"token": token, "spender": spender, "required": str(amount), "refresh": True}
        return self._approve(token, spender, amount, True, data)

    def _approve(self, token: str, spender: str, amount: int, reset_first: bool,
                 data: dict) -> StepResult:
        sent: List[str] = []
        try:
            if reset_first:
                log.info(f"Resetting allowance of {token} for {spender} to 0")
                outcome = self.chain.approve(token, spender, 0)
                sent.append(outcome.tx_id)
            log.info(f"Approving {amount} of {token} for {spender}")
            outcome = self.chain.approve(token, spender, amount)
            sent.append(outcome.tx_id)
        except TransactionReverted as e:
            if e.tx_id:
                sent.append(e.tx_id)
            log.error(f"Approval of {token} rejected: {e.reason}")
            return StepResult.failed(STEP, ErrorKind.ALLOWANCE_REJECTED,
                                     f"approve on {token} reverted: {e.reason}",
                                     data=data, tx_ids=sent)
        except ChainError as e:
            if e.tx_id:
                sent.append(e.tx_id)
            return StepResult.failed(STEP, error_kind_for(e), f"approve on {token} failed: {e.message}",
                                     data=data, tx_ids=sent)

        data = dict(data, approvals=len(sent), zero_reset=reset_first)
        return StepResult.success(STEP, tx_id=sent[-1], data=data, tx_ids=sent)
