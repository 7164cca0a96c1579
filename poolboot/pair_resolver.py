"""
Pool Bootstrap - Pair Resolver

Finds (or creates) the pool contract for an unordered token pair and reads
its canonical token order from the pair itself.

Phantom pairs: the factory registry names a pair address but there is no
code at that address. Any later call against it fails opaquely, so the
condition is reported as PhantomPair before anything else is attempted.
"""

import logging
from typing import Optional

from .amm_types import ErrorKind, PairRecord, PairState, StepResult, is_zero_address, normalize_address
from .chain_client import ChainError, TransactionReverted, error_kind_for

log = logging.getLogger(__name__)

STEP = PairState.PAIR_RESOLVED


class PairResolver:
    """
    Factory lookups for one deployment.

    Usage:
        resolver = PairResolver(chain, factory_address)
        result = resolver.resolve(token_a, token_b, allow_create=True)
        if not result.is_failed:
            record = result.payload
    """

    def __init__(self, chain, factory: str):
        self.chain = chain
        self.factory = factory

    def registered_address(self, token_a: str, token_b: str) -> Optional[str]:
        """Pair address registered in the factory, None if unset."""
        address = self.chain.get_pair(self.factory, token_a, token_b)
        if is_zero_address(address):
            return None
        return normalize_address(address)

    def has_code(self, address: str) -> bool:
        return len(self.chain.get_code(address)) > 0

    def check_phantom(self, token_a: str, token_b: str) -> Optional[StepResult]:
        """
        Read-only phantom detection.

        Returns:
            FAILED(PhantomPair) if the factory names an address without code,
            FAILED(ChainUnavailable) if the reads fail, otherwise None
        """
        try:
            address = self.registered_address(token_a, token_b)
            if address is None or self.has_code(address):
                return None
        except ChainError as e:
            return StepResult.failed(STEP, ErrorKind.CHAIN_UNAVAILABLE,
                                     f"Factory lookup failed: {e.message}")
        return self._phantom(address)

    def _phantom(self, address: str) -> StepResult:
        log.error(f"Phantom pair: factory returns {address} but no contract is deployed there")
        return StepResult.failed(
            STEP, ErrorKind.PHANTOM_PAIR,
            f"Factory returns {address} but no contract is deployed there",
            data={"pair_address": address},
        )

    def read_record(self, address: str) -> PairRecord:
        """Read a pair contract's tokens, reserves and share supply."""
        token0, token1 = self.chain.pair_tokens(address)
        reserve0, reserve1, _ = self.chain.get_reserves(address)
        return PairRecord(
            pair_address=normalize_address(address),
            token0=normalize_address(token0),
            token1=normalize_address(token1),
            has_deployed_code=True,
            reserve0=reserve0,
            reserve1=reserve1,
            total_shares=self.chain.total_supply(address),
        )

    def resolve(self, token_a: str, token_b: str, allow_create: bool = False) -> StepResult:
        """
        Resolve the pool for (token_a, token_b).

        Args:
            token_a: Either token, order does not matter
            token_b: The other token
            allow_create: Submit createPair when the factory has no entry

        Returns:
            SUCCESS with the PairRecord as payload (data["created"] tells
            whether this call created it), or FAILED with PairNotFound,
            PhantomPair or the chain error kind
        """
        tx_ids = []
        created = False
        call = "getPair"
        try:
            address = self.registered_address(token_a, token_b)
            if address is None:
                if not allow_create:
                    return StepResult.failed(STEP, ErrorKind.PAIR_NOT_FOUND,
                                             f"No pair for {token_a}/{token_b} and creation disabled")
                log.info(f"Creating pair {token_a}/{token_b}")
                call = "createPair"
                outcome = self.chain.create_pair(self.factory, token_a, token_b)
                tx_ids.append(outcome.tx_id)
                created = True
                call = "getPair"
                address = self.registered_address(token_a, token_b)
                if address is None:
                    return StepResult.failed(STEP, ErrorKind.PAIR_NOT_FOUND,
                                             "createPair was mined but the factory still returns no pair",
                                             tx_ids=tx_ids)

            call = "getCode"
            if not self.has_code(address):
                result = self._phantom(address)
                result.tx_ids = tx_ids
                return result

            call = "pair state read"
            record = self.read_record(address)
            if is_zero_address(record.token0) or is_zero_address(record.token1):
                return StepResult.failed(STEP, ErrorKind.PAIR_NOT_FOUND,
                                         f"Pair {address} is deployed but not initialized",
                                         data=record.to_dict(), tx_ids=tx_ids)
        except TransactionReverted as e:
            if e.tx_id:
                tx_ids.append(e.tx_id)
            return StepResult.failed(STEP, ErrorKind.TRANSACTION_REVERTED,
                                     f"{call} reverted: {e.reason}", tx_ids=tx_ids)
        except ChainError as e:
            if e.tx_id:
                tx_ids.append(e.tx_id)
            return StepResult.failed(STEP, error_kind_for(e),
                                     f"Pair resolution failed: {e.message}", tx_ids=tx_ids)

        log.info(f"Pair resolved: {record.pair_address} token0={record.token0} token1={record.token1}")
        data = dict(record.to_dict(), created=created)
        return StepResult.success(STEP, tx_id=tx_ids[-1] if tx_ids else None,
                                  data=data, tx_ids=tx_ids, payload=record)
