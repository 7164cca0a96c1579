"""
Pool Bootstrap - Liquidity Gate

The oracle refuses pairs whose reserves are below its minimum liquidity.
The gate re-reads reserves and stops the workflow before registration is
attempted, so a thin pool fails with the actual numbers instead of an
opaque revert.
"""

import dataclasses
import logging

from .amm_types import ErrorKind, PairRecord, PairState, StepResult
from .chain_client import ChainError, error_kind_for

log = logging.getLogger(__name__)

STEP = PairState.GATE_CHECKED


class LiquidityGate:
    """Reserve threshold check. Pure read, safe to call any number of times."""

    def __init__(self, chain):
        self.chain = chain

    def check_minimum(self, record: PairRecord, minimum_per_token: int) -> StepResult:
        """
        Compare both reserves against the minimum.

        Args:
            record: Resolved pair
            minimum_per_token: Threshold in raw units, applied to each reserve

        Returns:
            SUCCESS with the refreshed PairRecord as payload, or
            FAILED(InsufficientLiquidityForOracle) with required/reserve0/reserve1
        """
        try:
            reserve0, reserve1, _ = self.chain.get_reserves(record.pair_address)
            total_shares = self.chain.total_supply(record.pair_address)
        except ChainError as e:
            return StepResult.failed(STEP, error_kind_for(e),
                                     f"Reserve read failed for {record.pair_address}: {e.message}")

        refreshed = dataclasses.replace(record, reserve0=reserve0, reserve1=reserve1,
                                        total_shares=total_shares)
        data = {
            "pair_address": record.pair_address,
            "required": str(minimum_per_token),
            "reserve0": str(reserve0),
            "reserve1": str(reserve1),
        }
        if reserve0 < minimum_per_token or reserve1 < minimum_per_token:
            log.warning(f"Pair {record.pair_address} below oracle minimum: "
                        f"reserves ({reserve0}, {reserve1}), need {minimum_per_token} each")
            return StepResult.failed(
                STEP, ErrorKind.INSUFFICIENT_LIQUIDITY_FOR_ORACLE,
                f"Reserves ({reserve0}, {reserve1}) below minimum {minimum_per_token}",
                data=data,
            )

        log.info(f"Pair {record.pair_address} passes liquidity gate ({reserve0}, {reserve1})")
        return StepResult.success(STEP, data=data, payload=refreshed)
