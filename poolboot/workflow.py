"""
Pool Bootstrap - Workflow Orchestrator

Drives every configured pair through

    Pending -> AllowanceChecked -> PairResolved -> LiquidityProvisioned
            -> GateChecked -> Registered | FailedAt(step) | Skipped

A failure halts that pair only; the batch always continues. Every step
result lands in the WorkflowLedger, which is written to JSON at the end
of a run.
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .allowance import AllowanceManager
from .amm_types import PROVISION_PAIR, ErrorKind, PairSpec, PairState, StepResult
from .chain_client import ChainError
from .liquidity_gate import LiquidityGate
from .oracle_registrar import OracleRegistrar
from .pair_resolver import PairResolver
from .provisioner import LiquidityProvisioner

log = logging.getLogger(__name__)

# Step attempted next from a given state
NEXT_STEP = {
    PairState.PENDING: PairState.ALLOWANCE_CHECKED,
    PairState.ALLOWANCE_CHECKED: PairState.PAIR_RESOLVED,
    PairState.PAIR_RESOLVED: PairState.LIQUIDITY_PROVISIONED,
    PairState.LIQUIDITY_PROVISIONED: PairState.GATE_CHECKED,
    PairState.GATE_CHECKED: PairState.REGISTERED,
}

TERMINAL_STATES = (PairState.REGISTERED, PairState.SKIPPED, PairState.FAILED)


# ═══════════════════════════════════════════════════════════════════════════════
# LEDGER
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class LedgerEntry:
    """Trace of one pair through the workflow."""
    pair_id: str
    state: PairState = PairState.PENDING
    failed_at: Optional[PairState] = None
    pair_address: Optional[str] = None
    account: str = ""
    spec: Dict[str, Any] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)

    @property
    def tx_ids(self) -> List[str]:
        """Every transaction broadcast for this pair, in order."""
        ids: List[str] = []
        for step in self.steps:
            for tx_id in step.tx_ids:
                if tx_id not in ids:
                    ids.append(tx_id)
        return ids

    @property
    def error(self) -> Optional[StepResult]:
        if self.state is not PairState.FAILED or not self.steps:
            return None
        return self.steps[-1]

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        error = self.error
        return {
            "pair_id": self.pair_id,
            "state": self.state.value,
            "failed_at": self.failed_at.value if self.failed_at else None,
            "error_kind": error.error_kind.value if error and error.error_kind else None,
            "error_message": error.message if error else None,
            "pair_address": self.pair_address,
            "account": self.account,
            "spec": self.spec,
            "tx_ids": self.tx_ids,
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerEntry":
        """Create LedgerEntry from dictionary."""
        failed_at = data.get("failed_at")
        return cls(
            pair_id=data["pair_id"],
            state=PairState(data["state"]),
            failed_at=PairState(failed_at) if failed_at else None,
            pair_address=data.get("pair_address"),
            account=data.get("account", ""),
            spec=data.get("spec", {}),
            steps=[StepResult.from_dict(s) for s in data.get("steps", [])],
        )


class WorkflowLedger:
    """
    Append-only record of a run, keyed by pair id.

    Safe to share between orchestrators on different threads; every
    mutation takes the ledger lock.
    """

    def __init__(self, metadata: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self.entries: Dict[str, LedgerEntry] = {}
        self.metadata: Dict[str, Any] = dict(metadata or {})

    def open(self, pair_id: str, account: str = "",
             spec: Optional[Dict[str, Any]] = None) -> LedgerEntry:
        with self._lock:
            if pair_id in self.entries:
                raise ValueError(f"Pair {pair_id} already has a ledger entry")
            entry = LedgerEntry(pair_id=pair_id, account=account, spec=dict(spec or {}))
            self.entries[pair_id] = entry
            return entry

    def record(self, pair_id: str, result: StepResult,
               state: Optional[PairState] = None) -> LedgerEntry:
        """
        Append a step result.

        A failed result moves the entry to FAILED at the result's step;
        otherwise the entry advances to `state` when one is given.
        """
        with self._lock:
            entry = self.entries[pair_id]
            if entry.state in TERMINAL_STATES:
                raise ValueError(f"Pair {pair_id} already finished as {entry.state.value}")
            entry.steps.append(result)
            if result.is_failed:
                entry.state = PairState.FAILED
                entry.failed_at = result.step
            elif state is not None:
                entry.state = state
            return entry

    def set_pair_address(self, pair_id: str, address: str):
        with self._lock:
            self.entries[pair_id].pair_address = address

    def update_metadata(self, **values):
        with self._lock:
            self.metadata.update(values)

    def get(self, pair_id: str) -> Optional[LedgerEntry]:
        return self.entries.get(pair_id)

    def failed(self) -> List[LedgerEntry]:
        return [e for e in self.entries.values() if e.state is PairState.FAILED]

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for entry in self.entries.values():
            counts[entry.state.value] = counts.get(entry.state.value, 0) + 1
        return counts

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "metadata": dict(self.metadata),
                "summary": self.summary(),
                "pairs": {pid: e.to_dict() for pid, e in self.entries.items()},
            }

    def save(self, path):
        """Write the ledger as JSON."""
        path = Path(path)
        path.write_text(json.dumps(self.to_dict(), indent=2))
        log.info(f"Ledger saved to {path}")

    @classmethod
    def load(cls, path) -> "WorkflowLedger":
        data = json.loads(Path(path).read_text())
        ledger = cls(metadata=data.get("metadata", {}))
        for pair_id, entry in data.get("pairs", {}).items():
            ledger.entries[pair_id] = LedgerEntry.from_dict(entry)
        return ledger


# ═══════════════════════════════════════════════════════════════════════════════
# ORCHESTRATOR
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class WorkflowSettings:
    """Deployment addresses and oracle policy shared by every pair."""
    factory: str
    router: str
    oracle: str
    wrapped_native: Optional[str] = None
    minimum_liquidity: int = 0
    check_owner: bool = False
    skip_registered: bool = True
    zero_reset_tokens: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "factory": self.factory,
            "router": self.router,
            "oracle": self.oracle,
            "wrapped_native": self.wrapped_native,
            "minimum_liquidity": str(self.minimum_liquidity),
        }


class WorkflowOrchestrator:
    """
    Runs pairs for one sending account, strictly one after another.

    Usage:
        orchestrator = WorkflowOrchestrator(chain, settings)
        ledger = orchestrator.run(specs)
        ledger.save("ledger.json")
    """

    def __init__(self, chain, settings: WorkflowSettings,
                 ledger: Optional[WorkflowLedger] = None,
                 clock: Callable[[], float] = time.time):
        self.chain = chain
        self.settings = settings
        self.ledger = ledger if ledger is not None else WorkflowLedger()
        self.clock = clock

        self.allowances = AllowanceManager(chain, settings.zero_reset_tokens)
        self.resolver = PairResolver(chain, settings.factory)
        self.provisioner = LiquidityProvisioner(chain, settings.router, self.allowances,
                                                settings.wrapped_native, clock=clock)
        self.gate = LiquidityGate(chain)
        self.registrar = OracleRegistrar(chain, settings.oracle, settings.check_owner)

    def run(self, specs: Iterable[PairSpec]) -> WorkflowLedger:
        """
        Run every pair; per-pair failures never stop the batch.

        Raises:
            ValueError: If a pair id already has an entry in the ledger
        """
        specs = list(specs)
        seen = set()
        for spec in specs:
            if spec.pair_id in seen or self.ledger.get(spec.pair_id):
                raise ValueError(f"Pair {spec.pair_id} already has a ledger entry")
            seen.add(spec.pair_id)

        if "started_at" not in self.ledger.metadata:
            self.ledger.update_metadata(started_at=int(self.clock()), contracts=self.settings.to_dict())
        log.info(f"Bootstrapping {len(specs)} pair(s) from {self.chain.address}")

        for spec in specs:
            entry = self.run_pair(spec)
            if entry.state is PairState.FAILED:
                log.error(f"[{spec.pair_id}] FAILED at {entry.failed_at.value}: {entry.steps[-1].message}")
            else:
                log.info(f"[{spec.pair_id}] {entry.state.value}")

        self.ledger.update_metadata(finished_at=int(self.clock()))
        return self.ledger

    def run_pair(self, spec: PairSpec) -> LedgerEntry:
        entry = self.ledger.open(spec.pair_id, account=self.chain.address, spec=spec.to_dict())
        mark = len(self.chain.broadcast)
        try:
            self._drive(spec)
        except Exception as e:
            step = NEXT_STEP.get(entry.state, PairState.PENDING)
            log.exception(f"[{spec.pair_id}] unexpected error during {step.value}")
            self._record_unexpected(entry, step, f"{type(e).__name__}: {e}", mark)
        except KeyboardInterrupt:
            step = NEXT_STEP.get(entry.state, PairState.PENDING)
            log.error(f"[{spec.pair_id}] interrupted during {step.value}")
            self._record_unexpected(entry, step, "Interrupted", mark)
            raise
        return entry

    def _record_unexpected(self, entry: LedgerEntry, step: PairState, message: str, mark: int):
        """Fail the entry, keeping transactions the aborted step had already broadcast."""
        if entry.state in TERMINAL_STATES:
            return
        recorded = set(entry.tx_ids)
        spent = [t for t in self.chain.broadcast[mark:] if t not in recorded]
        self.ledger.record(entry.pair_id, StepResult.failed(
            step, ErrorKind.UNEXPECTED, message, tx_ids=spent))

    def _drive(self, spec: PairSpec):
        pid = spec.pair_id
        owner = self.chain.address
        token_a, token_b = spec.token_a.token, spec.token_b.token

        # Read-only short circuits, before anything is broadcast
        phantom = self.resolver.check_phantom(token_a, token_b)
        if phantom:
            self.ledger.record(pid, phantom)
            return
        if self.settings.skip_registered:
            done = self._already_registered(spec)
            if done:
                self.ledger.record(pid, done, PairState.SKIPPED)
                if done.ok:
                    self.ledger.set_pair_address(pid, done.data["pair_address"])
                return

        # Balances and allowances
        native = self.provisioner.native_side(spec)
        sides = (("a", spec.token_a), ("b", spec.token_b))
        for side, amount in sides:
            result = self.allowances.check_balance(owner, amount.token, amount.raw,
                                                   native=(side == native))
            if result.is_failed:
                self.ledger.record(pid, result)
                return
        if spec.provision_via == PROVISION_PAIR:
            # Tokens are transferred to the pair; the router needs no allowance
            self.ledger.record(pid, StepResult.skipped(PairState.ALLOWANCE_CHECKED, "transfer_to_pair"),
                               PairState.ALLOWANCE_CHECKED)
            sides = ()
        for side, amount in sides:
            if side == native:
                continue
            result = self.allowances.ensure(owner, self.settings.router, amount.token, amount.raw)
            self.ledger.record(pid, result, PairState.ALLOWANCE_CHECKED)
            if result.is_failed:
                return

        result = self.resolver.resolve(token_a, token_b, allow_create=spec.allow_create)
        self.ledger.record(pid, result, PairState.PAIR_RESOLVED)
        if result.is_failed:
            return
        record = result.payload
        self.ledger.set_pair_address(pid, record.pair_address)

        result = self.provisioner.provision(record, spec)
        self.ledger.record(pid, result, PairState.LIQUIDITY_PROVISIONED)
        if result.is_failed:
            return

        result = self.gate.check_minimum(record, self.settings.minimum_liquidity)
        self.ledger.record(pid, result, PairState.GATE_CHECKED)
        if result.is_failed:
            return
        record = result.payload

        result = self.registrar.register(record)
        self.ledger.record(pid, result, PairState.REGISTERED)

    def _already_registered(self, spec: PairSpec) -> Optional[StepResult]:
        """Skipped result when the pool exists and the oracle already supports it."""
        try:
            address = self.resolver.registered_address(spec.token_a.token, spec.token_b.token)
            if address is None or not self.resolver.has_code(address):
                return None
            if not self.registrar.is_registered(address):
                return None
        except ChainError as e:
            return StepResult.failed(PairState.PAIR_RESOLVED, ErrorKind.CHAIN_UNAVAILABLE,
                                     f"Registration lookup failed: {e.message}")
        log.info(f"[{spec.pair_id}] pool {address} already registered, skipping")
        return StepResult.skipped(PairState.REGISTERED, "already_registered",
                                  data={"pair_address": address})


# ═══════════════════════════════════════════════════════════════════════════════
# CROSS-ACCOUNT RUNNER
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass
class AccountJob:
    """Pairs to bootstrap from one sending account."""
    chain: Any
    specs: List[PairSpec]


def run_accounts(jobs: List[AccountJob], settings: WorkflowSettings,
                 ledger: Optional[WorkflowLedger] = None,
                 max_workers: Optional[int] = None,
                 clock: Callable[[], float] = time.time) -> WorkflowLedger:
    """
    Run one orchestrator per account in parallel, all writing to one ledger.

    Pairs of a single account stay sequential, so each account's nonce
    counter is only ever touched by one thread.

    Raises:
        ValueError: If a pair id appears in more than one job
    """
    ledger = ledger if ledger is not None else WorkflowLedger()
    seen = set()
    for job in jobs:
        for spec in job.specs:
            if spec.pair_id in seen:
                raise ValueError(f"Pair {spec.pair_id} assigned to more than one account")
            seen.add(spec.pair_id)

    if not jobs:
        return ledger

    ledger.update_metadata(accounts=[job.chain.address for job in jobs],
                           started_at=int(clock()), contracts=settings.to_dict())
    with ThreadPoolExecutor(max_workers=max_workers or len(jobs)) as pool:
        futures = {
            pool.submit(WorkflowOrchestrator(job.chain, settings, ledger, clock).run, job.specs):
                job.chain.address
            for job in jobs
        }
        for future in as_completed(futures):
            future.result()
            log.info(f"Account {futures[future]} finished")
    ledger.update_metadata(finished_at=int(clock()))
    return ledger
