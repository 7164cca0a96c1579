"""
Pool Bootstrap

Seeds AMM pools with liquidity and registers them with the TWAP oracle.

Workflow per pair:
  - Allowances    balance pre-flight, approvals (with zero-reset tokens)
  - Resolve       factory lookup / createPair, phantom pair detection
  - Provision     router addLiquidity with slippage minimums, fallback ladder
  - Gate          reserves must reach the oracle minimum
  - Register      oracle addPair in canonical token order, skipped if present

Usage:
    from poolboot import ChainClient, WorkflowOrchestrator, load_config

    config = load_config("poolboot.json")
    chain = ChainClient(config.rpc_url, private_key, chain_id=config.chain_id)

    orchestrator = WorkflowOrchestrator(chain, config.settings)
    ledger = orchestrator.run(config.build_specs())
    ledger.save("ledger.json")
"""

from .amm_types import (
    CanonicalPair,
    ErrorKind,
    PairRecord,
    PairSpec,
    PairState,
    StepResult,
    StepStatus,
    TokenAmount,
    min_amount,
)
from .chain_client import ChainClient, ChainError, TransactionReverted, TransactionTimeout
from .allowance import AllowanceManager
from .pair_resolver import PairResolver
from .provisioner import LiquidityProvisioner
from .liquidity_gate import LiquidityGate
from .oracle_registrar import OracleRegistrar
from .workflow import (
    AccountJob,
    LedgerEntry,
    WorkflowLedger,
    WorkflowOrchestrator,
    WorkflowSettings,
    run_accounts,
)
from .status import inspect_pairs
from .config import BootstrapConfig, ConfigError, load_config

__version__ = "0.1.0"
__all__ = [
    # Types
    "TokenAmount", "PairSpec", "CanonicalPair", "PairRecord",
    "PairState", "StepStatus", "ErrorKind", "StepResult", "min_amount",
    # Chain
    "ChainClient", "ChainError", "TransactionReverted", "TransactionTimeout",
    # Components
    "AllowanceManager", "PairResolver", "LiquidityProvisioner",
    "LiquidityGate", "OracleRegistrar",
    # Workflow
    "WorkflowOrchestrator", "WorkflowSettings", "WorkflowLedger", "LedgerEntry",
    "AccountJob", "run_accounts", "inspect_pairs",
    # Config
    "BootstrapConfig", "ConfigError", "load_config",
]
