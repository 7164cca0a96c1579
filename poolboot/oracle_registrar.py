"""
Pool Bootstrap - Oracle Registrar

Registers a pool with the price oracle. addPair is called with the pair's
own token0/token1 ordering; a pair the oracle already supports is skipped
without sending anything, so re-running a finished pair is harmless.
"""

import logging

from .amm_types import CanonicalPair, ErrorKind, PairRecord, PairState, StepResult, same_address
from .chain_client import ChainError, TransactionReverted, error_kind_for

log = logging.getLogger(__name__)

STEP = PairState.REGISTERED

INSUFFICIENT_LIQUIDITY_MARKER = "INSUFFICIENT_LIQUIDITY"


class OracleRegistrar:
    """
    Oracle registration for one sending account.

    Args:
        chain: ChainClient
        oracle: Oracle contract address
        check_owner: Refuse to send addPair when the sender is not the
            oracle owner (the call would revert anyway)
    """

    def __init__(self, chain, oracle: str, check_owner: bool = False):
        self.chain = chain
        self.oracle = oracle
        self.check_owner = check_owner

    def is_registered(self, pair_address: str) -> bool:
        return self.chain.is_pair_supported(self.oracle, pair_address)

    def register(self, record: PairRecord) -> StepResult:
        """Register record.pair_address with the oracle (idempotent)."""
        canonical = CanonicalPair.of(record.token0, record.token1)
        data = {
            "pair_address": record.pair_address,
            "token0": canonical.token0,
            "token1": canonical.token1,
            "oracle": self.oracle,
        }

        try:
            if self.is_registered(record.pair_address):
                log.info(f"Pair {record.pair_address} already registered with oracle")
                return StepResult.skipped(STEP, "already_registered", data=data)

            if self.check_owner:
                owner = self.chain.oracle_owner(self.oracle)
                if not same_address(owner, self.chain.address):
                    return StepResult.failed(
                        STEP, ErrorKind.REGISTRATION_REJECTED,
                        f"Sender {self.chain.address} is not the oracle owner ({owner})",
                        data=dict(data, owner=owner),
                    )

            log.info(f"Registering {record.pair_address} ({canonical.token0}, {canonical.token1})")
            outcome = self.chain.add_oracle_pair(self.oracle, record.pair_address,
                                                 canonical.token0, canonical.token1)
        except TransactionReverted as e:
            tx_ids = [e.tx_id] if e.tx_id else []
            if INSUFFICIENT_LIQUIDITY_MARKER in e.reason:
                return StepResult.failed(STEP, ErrorKind.INSUFFICIENT_LIQUIDITY_FOR_ORACLE,
                                         f"Oracle rejected pair: {e.reason}",
                                         data=data, tx_ids=tx_ids)
            log.error(f"addPair reverted: {e.reason}")
            return StepResult.failed(STEP, ErrorKind.REGISTRATION_REJECTED,
                                     f"Oracle rejected pair: {e.reason}",
                                     data=data, tx_ids=tx_ids)
        except ChainError as e:
            tx_ids = [e.tx_id] if e.tx_id else []
            return StepResult.failed(STEP, error_kind_for(e),
                                     f"Registration failed: {e.message}", data=data, tx_ids=tx_ids)

        log.info(f"Pair {record.pair_address} registered in tx {outcome.tx_id}")
        return StepResult.success(STEP, tx_id=outcome.tx_id, data=data)
