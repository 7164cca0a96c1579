"""
Tests for WorkflowOrchestrator and WorkflowLedger.

End-to-end runs against the fake chain: fresh pool bootstrap, phantom
pairs, thin reserves, batch isolation, idempotent re-runs, persistence and
the cross-account runner.
"""

import itertools
import json

import pytest

from fakes import OTHER_SENDER, ROUTER, SENDER, TOKEN_A, TOKEN_B, TOKEN_C, FakeChain, make_spec
from poolboot.amm_types import ErrorKind, PairState, StepResult
from poolboot.workflow import AccountJob, WorkflowLedger, WorkflowOrchestrator, run_accounts


def entry_error(entry):
    return entry.steps[-1].error_kind


# =============================================================================
# SCENARIOS
# =============================================================================


class TestScenarios:

    def test_fresh_pair_bootstrap(self, chain, settings, spec):
        ledger = WorkflowOrchestrator(chain, settings).run([spec])
        entry = ledger.get(spec.pair_id)

        assert entry.state is PairState.REGISTERED
        assert entry.failed_at is None
        assert chain.methods() == ["approve", "approve", "create_pair", "add_liquidity",
                                   "add_oracle_pair"]
        assert [c["amount"] for c in chain.calls("approve")] == [100, 300]
        call = chain.calls("add_liquidity")[0]
        assert (call["amount_a_min"], call["amount_b_min"]) == (99, 297)
        assert entry.pair_address is not None
        assert len(entry.tx_ids) == 5

        register = chain.calls("add_oracle_pair")[0]
        assert int(register["token0"], 16) < int(register["token1"], 16)

    def test_bootstrap_by_direct_pair_mint(self, chain, settings):
        spec = make_spec(provision_via="pair")
        entry = WorkflowOrchestrator(chain, settings).run([spec]).get(spec.pair_id)

        assert entry.state is PairState.REGISTERED
        assert chain.methods() == ["create_pair", "transfer", "transfer", "mint", "add_oracle_pair"]
        assert entry.steps[0].is_skipped
        assert entry.steps[0].reason == "transfer_to_pair"
        assert len(entry.tx_ids) == 5

    def test_phantom_pair_sends_nothing(self, chain, settings, spec):
        chain.deploy_pair(TOKEN_A, TOKEN_B, code=False)
        entry = WorkflowOrchestrator(chain, settings).run([spec]).get(spec.pair_id)

        assert entry.state is PairState.FAILED
        assert entry.failed_at is PairState.PAIR_RESOLVED
        assert entry_error(entry) is ErrorKind.PHANTOM_PAIR
        assert chain.sent == []
        assert entry.tx_ids == []

    def test_reserves_below_threshold(self, chain, settings, spec):
        settings.minimum_liquidity = 500
        entry = WorkflowOrchestrator(chain, settings).run([spec]).get(spec.pair_id)

        assert entry.failed_at is PairState.GATE_CHECKED
        failure = entry.steps[-1]
        assert failure.error_kind is ErrorKind.INSUFFICIENT_LIQUIDITY_FOR_ORACLE
        assert failure.data["required"] == "500"
        assert {failure.data["reserve0"], failure.data["reserve1"]} == {"100", "300"}
        assert "add_oracle_pair" not in chain.methods()


# =============================================================================
# FAILURE HANDLING
# =============================================================================


class TestFailures:

    def test_insufficient_balance_before_any_tx(self, chain, settings, spec):
        chain.fund(TOKEN_B, 299)
        entry = WorkflowOrchestrator(chain, settings).run([spec]).get(spec.pair_id)
        assert entry.failed_at is PairState.ALLOWANCE_CHECKED
        assert entry_error(entry) is ErrorKind.INSUFFICIENT_BALANCE
        assert chain.sent == []

    def test_missing_pair_without_create(self, chain, settings):
        spec = make_spec(allow_create=False)
        entry = WorkflowOrchestrator(chain, settings).run([spec]).get(spec.pair_id)
        assert entry.failed_at is PairState.PAIR_RESOLVED
        assert entry_error(entry) is ErrorKind.PAIR_NOT_FOUND
        # approvals were already spent
        assert len(entry.tx_ids) == 2

    def test_one_failure_does_not_stop_the_batch(self, chain, settings):
        chain.fund(TOKEN_C, 10**24)
        chain.deploy_pair(TOKEN_A, TOKEN_B, code=False)
        bad = make_spec(TOKEN_A, TOKEN_B, label="A/B")
        good = make_spec(TOKEN_A, TOKEN_C, label="A/C")

        ledger = WorkflowOrchestrator(chain, settings).run([bad, good])
        assert ledger.get("A/B").state is PairState.FAILED
        assert ledger.get("A/C").state is PairState.REGISTERED
        assert ledger.summary() == {"failed": 1, "registered": 1}
        assert [e.pair_id for e in ledger.failed()] == ["A/B"]

    def test_unexpected_exception_is_contained(self, chain, settings, monkeypatch):
        chain.fund(TOKEN_C, 10**24)
        orchestrator = WorkflowOrchestrator(chain, settings)
        calls = []

        def boom(record, minimum):
            calls.append(record)
            if len(calls) == 1:
                raise RuntimeError("reserve decoder exploded")
            return StepResult.success(PairState.GATE_CHECKED, payload=record)

        monkeypatch.setattr(orchestrator.gate, "check_minimum", boom)
        ledger = orchestrator.run([make_spec(label="first"),
                                   make_spec(TOKEN_A, TOKEN_C, label="second")])

        first = ledger.get("first")
        assert first.failed_at is PairState.GATE_CHECKED
        assert entry_error(first) is ErrorKind.UNEXPECTED
        assert "reserve decoder exploded" in first.steps[-1].message
        assert ledger.get("second").state is PairState.REGISTERED

    def test_unexpected_error_keeps_broadcast_tx_ids(self, chain, settings, spec, monkeypatch):
        send = chain.add_liquidity

        def send_then_fail(*args, **kwargs):
            send(*args, **kwargs)
            raise RuntimeError("receipt decoder failed")

        monkeypatch.setattr(chain, "add_liquidity", send_then_fail)
        entry = WorkflowOrchestrator(chain, settings).run([spec]).get(spec.pair_id)

        assert entry.failed_at is PairState.LIQUIDITY_PROVISIONED
        assert entry_error(entry) is ErrorKind.UNEXPECTED
        assert entry.tx_ids == chain.broadcast
        assert entry.steps[-1].tx_ids == [chain.broadcast[-1]]

    def test_interrupt_records_spent_tx_ids_and_propagates(self, chain, settings, spec, monkeypatch):
        send = chain.add_liquidity

        def send_then_interrupt(*args, **kwargs):
            send(*args, **kwargs)
            raise KeyboardInterrupt

        monkeypatch.setattr(chain, "add_liquidity", send_then_interrupt)
        ledger = WorkflowLedger()
        with pytest.raises(KeyboardInterrupt):
            WorkflowOrchestrator(chain, settings, ledger).run([spec])

        entry = ledger.get(spec.pair_id)
        assert entry.state is PairState.FAILED
        assert entry.steps[-1].message == "Interrupted"
        assert len(entry.tx_ids) == 4
        assert entry.tx_ids == chain.broadcast

    def test_expired_deadline_keeps_spent_tx_ids(self, chain, settings, spec):
        orchestrator = WorkflowOrchestrator(chain, settings, clock=lambda: spec.deadline + 1)
        entry = orchestrator.run([spec]).get(spec.pair_id)
        assert entry.failed_at is PairState.LIQUIDITY_PROVISIONED
        assert entry_error(entry) is ErrorKind.DEADLINE_EXPIRED
        assert "add_liquidity" not in chain.methods()
        assert len(entry.tx_ids) == 3

    def test_chain_unavailable(self, chain, settings, spec):
        chain.offline = True
        entry = WorkflowOrchestrator(chain, settings).run([spec]).get(spec.pair_id)
        assert entry.state is PairState.FAILED
        assert entry_error(entry) is ErrorKind.CHAIN_UNAVAILABLE

    def test_duplicate_pair_ids_rejected_up_front(self, chain, settings):
        with pytest.raises(ValueError):
            WorkflowOrchestrator(chain, settings).run([make_spec(label="x"), make_spec(label="x")])
        assert chain.sent == []


# =============================================================================
# IDEMPOTENCY
# =============================================================================


class TestIdempotency:

    def test_registered_pair_is_skipped(self, chain, settings, spec):
        address = chain.deploy_pair(TOKEN_A, TOKEN_B, 1000, 1000, supply=1000)
        chain.supported.add(address.lower())
        entry = WorkflowOrchestrator(chain, settings).run([spec]).get(spec.pair_id)
        assert entry.state is PairState.SKIPPED
        assert entry.pair_address == address
        assert chain.sent == []

    def test_rerun_after_success_is_skipped(self, chain, settings, spec):
        WorkflowOrchestrator(chain, settings).run([spec])
        sent = len(chain.sent)
        entry = WorkflowOrchestrator(chain, settings).run([spec]).get(spec.pair_id)
        assert entry.state is PairState.SKIPPED
        assert len(chain.sent) == sent

    def test_top_up_when_skip_disabled(self, chain, settings, spec):
        settings.skip_registered = False
        address = chain.deploy_pair(TOKEN_A, TOKEN_B, 1000, 3000, supply=1732)
        chain.supported.add(address.lower())
        chain.set_allowance(TOKEN_A, ROUTER, 10**30)
        chain.set_allowance(TOKEN_B, ROUTER, 10**30)

        entry = WorkflowOrchestrator(chain, settings).run([spec]).get(spec.pair_id)
        assert entry.state is PairState.REGISTERED
        assert entry.steps[-1].is_skipped
        assert chain.methods() == ["add_liquidity"]


# =============================================================================
# LEDGER
# =============================================================================


class TestLedger:

    def test_save_and_load(self, chain, settings, spec, tmp_path):
        chain.fund(TOKEN_C, 10**24)
        chain.deploy_pair(TOKEN_A, TOKEN_C, code=False)
        ledger = WorkflowLedger(metadata={"sender": SENDER})
        WorkflowOrchestrator(chain, settings, ledger).run(
            [spec, make_spec(TOKEN_A, TOKEN_C, label="phantom")])

        path = tmp_path / "ledger.json"
        ledger.save(path)
        raw = json.loads(path.read_text())
        assert raw["pairs"]["phantom"]["error_kind"] == "PhantomPair"
        assert raw["pairs"]["phantom"]["failed_at"] == "pair_resolved"
        assert raw["metadata"]["sender"] == SENDER
        assert "finished_at" in raw["metadata"]

        loaded = WorkflowLedger.load(path)
        assert loaded.to_dict()["pairs"] == raw["pairs"]
        assert loaded.get(spec.pair_id).state is PairState.REGISTERED
        assert loaded.get(spec.pair_id).tx_ids == ledger.get(spec.pair_id).tx_ids

    def test_finished_entry_is_append_only(self):
        ledger = WorkflowLedger()
        ledger.open("p")
        ledger.record("p", StepResult.failed(PairState.PAIR_RESOLVED, ErrorKind.PHANTOM_PAIR, "x"))
        with pytest.raises(ValueError):
            ledger.record("p", StepResult.success(PairState.REGISTERED), PairState.REGISTERED)

    def test_open_twice_rejected(self):
        ledger = WorkflowLedger()
        ledger.open("p")
        with pytest.raises(ValueError):
            ledger.open("p")


# =============================================================================
# CROSS-ACCOUNT
# =============================================================================


def funded_chain(address):
    fake = FakeChain(address)
    for token in (TOKEN_A, TOKEN_B, TOKEN_C):
        fake.fund(token, 10**24)
    return fake


class TestRunAccounts:

    def test_accounts_share_one_ledger(self, settings):
        first, second = funded_chain(SENDER), funded_chain(OTHER_SENDER)
        second.owner = OTHER_SENDER
        jobs = [
            AccountJob(first, [make_spec(TOKEN_A, TOKEN_B, label="A/B")]),
            AccountJob(second, [make_spec(TOKEN_A, TOKEN_C, label="A/C"),
                                make_spec(TOKEN_B, TOKEN_C, label="B/C")]),
        ]
        ledger = run_accounts(jobs, settings)

        assert ledger.summary() == {"registered": 3}
        assert ledger.get("A/B").account == SENDER
        assert ledger.get("B/C").account == OTHER_SENDER
        assert sorted(ledger.metadata["accounts"]) == sorted([SENDER, OTHER_SENDER])
        assert first.methods().count("add_liquidity") == 1
        assert second.methods().count("add_liquidity") == 2

    def test_run_times_recorded_once(self, settings):
        ticks = itertools.count(1000)
        jobs = [AccountJob(funded_chain(SENDER), [make_spec(TOKEN_A, TOKEN_B, label="A/B")]),
                AccountJob(funded_chain(OTHER_SENDER), [make_spec(TOKEN_A, TOKEN_C, label="A/C")])]
        jobs[1].chain.owner = OTHER_SENDER
        ledger = run_accounts(jobs, settings, clock=lambda: next(ticks))

        assert ledger.metadata["started_at"] == 1000
        assert ledger.metadata["finished_at"] > 1000
        assert ledger.metadata["contracts"]["router"] == ROUTER

    def test_pair_in_two_jobs_rejected(self, settings):
        spec = make_spec(label="same")
        jobs = [AccountJob(funded_chain(SENDER), [spec]), AccountJob(funded_chain(OTHER_SENDER), [spec])]
        with pytest.raises(ValueError):
            run_accounts(jobs, settings)

    def test_failure_in_one_account_isolated(self, settings):
        first, second = funded_chain(SENDER), funded_chain(OTHER_SENDER)
        second.owner = OTHER_SENDER
        first.deploy_pair(TOKEN_A, TOKEN_B, code=False)
        jobs = [AccountJob(first, [make_spec(label="bad")]),
                AccountJob(second, [make_spec(label="good")])]
        ledger = run_accounts(jobs, settings, max_workers=2)
        assert ledger.get("bad").state is PairState.FAILED
        assert ledger.get("good").state is PairState.REGISTERED
