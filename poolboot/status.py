"""
Pool Bootstrap - Status Report

Read-only view of every configured pair: factory entry, deployed code,
canonical tokens, reserves, share supply, oracle support and whether the
liquidity gate would pass. Sends nothing; works with a keyless client.
"""

import logging
from typing import Iterable, List

from .amm_types import PairSpec
from .chain_client import ChainError
from .liquidity_gate import LiquidityGate
from .oracle_registrar import OracleRegistrar
from .pair_resolver import PairResolver
from .workflow import WorkflowSettings

log = logging.getLogger(__name__)


def inspect_pair(chain, settings: WorkflowSettings, spec: PairSpec) -> dict:
    """Status of one pair as a JSON-safe dict."""
    resolver = PairResolver(chain, settings.factory)
    report = {
        "label": spec.label,
        "token_a": spec.token_a.token,
        "token_b": spec.token_b.token,
        "pair_address": None,
        "has_code": False,
        "status": "missing",
    }
    try:
        address = resolver.registered_address(spec.token_a.token, spec.token_b.token)
        if address is None:
            return report
        report["pair_address"] = address
        if not resolver.has_code(address):
            report["status"] = "phantom"
            return report
        report["has_code"] = True

        record = resolver.read_record(address)
        report.update(record.to_dict())
        gate = LiquidityGate(chain).check_minimum(record, settings.minimum_liquidity)
        report["gate_passes"] = gate.ok
        report["minimum_liquidity"] = str(settings.minimum_liquidity)
        registered = OracleRegistrar(chain, settings.oracle).is_registered(address)
        report["oracle_registered"] = registered
    except ChainError as e:
        log.warning(f"[{spec.label}] status read failed: {e.message}")
        report["status"] = "error"
        report["error"] = e.message
        return report

    if registered:
        report["status"] = "registered"
    elif record.total_shares == 0:
        report["status"] = "empty"
    else:
        report["status"] = "funded"
    return report


def inspect_pairs(chain, settings: WorkflowSettings, specs: Iterable[PairSpec]) -> List[dict]:
    return [inspect_pair(chain, settings, spec) for spec in specs]
