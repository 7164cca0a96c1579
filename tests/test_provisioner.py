"""Tests for LiquidityProvisioner: router calls, share recovery, fallback ladder."""

import pytest

from fakes import FACTORY, ROUTER, TOKEN_A, TOKEN_B, WETH, make_spec
from poolboot.allowance import AllowanceManager
from poolboot.amm_types import ErrorKind, PairState, StepStatus
from poolboot.pair_resolver import PairResolver
from poolboot.provisioner import LiquidityProvisioner, quote_deposit

GENERIC_REVERT = "execution reverted"


def funded_pair(chain, token_a=TOKEN_A, token_b=TOKEN_B, reserve_a=0, reserve_b=0, supply=0):
    address = chain.deploy_pair(token_a, token_b, reserve_a, reserve_b, supply)
    for token in (token_a, token_b):
        chain.set_allowance(token, ROUTER, 10**30)
    return PairResolver(chain, FACTORY).read_record(address)


def provisioner(chain, **kwargs):
    return LiquidityProvisioner(chain, ROUTER, AllowanceManager(chain), WETH, **kwargs)


# =============================================================================
# DIRECT PATH
# =============================================================================


class TestDirect:

    def test_first_deposit(self, chain, spec):
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, spec)

        assert result.status is StepStatus.SUCCESS
        assert result.step is PairState.LIQUIDITY_PROVISIONED
        assert result.payload == {"tx_id": result.tx_id, "shares_minted": 173}
        assert result.data["rung"] == "direct"
        assert chain.methods() == ["add_liquidity"]

    def test_minimums_sent_to_router(self, chain, spec):
        record = funded_pair(chain)
        provisioner(chain).provision(record, spec)
        call = chain.calls("add_liquidity")[0]
        assert (call["amount_a_min"], call["amount_b_min"]) == (99, 297)
        assert call["deadline"] == spec.deadline
        assert call["to"] == chain.address

    def test_zero_slippage_minimums(self, chain):
        record = funded_pair(chain)
        provisioner(chain).provision(record, make_spec(slippage_bps=0))
        call = chain.calls("add_liquidity")[0]
        assert (call["amount_a_min"], call["amount_b_min"]) == (100, 300)

    def test_locked_minimum_not_counted(self, chain, spec):
        chain.locked_liquidity = 10
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, spec)
        assert result.payload["shares_minted"] == 163

    def test_existing_pool(self, chain, spec):
        record = funded_pair(chain, reserve_a=1000, reserve_b=3000, supply=1732)
        result = provisioner(chain).provision(record, spec)
        assert result.payload["shares_minted"] == 173

    def test_deterministic_rejection_not_laddered(self, chain, spec):
        chain.add_liquidity_failures = ["UniswapV2Router: INSUFFICIENT_B_AMOUNT"]
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, spec)
        assert result.error_kind is ErrorKind.TRANSACTION_REVERTED
        assert chain.methods() == ["add_liquidity"]
        assert len(result.tx_ids) == 1

    def test_too_small_to_mint_not_laddered(self, chain, spec):
        chain.add_liquidity_failures = ["UniswapV2: INSUFFICIENT_LIQUIDITY_MINTED"] * 3
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, spec)
        assert result.error_kind is ErrorKind.TRANSACTION_REVERTED
        assert "INSUFFICIENT_LIQUIDITY_MINTED" in result.message
        assert chain.methods() == ["add_liquidity"]
        assert len(result.data["attempts"]) == 1

    def test_timeout_not_retried(self, chain, spec):
        chain.add_liquidity_timeout = True
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, spec)
        assert result.error_kind is ErrorKind.TRANSACTION_TIMEOUT
        assert chain.methods() == ["add_liquidity"]
        assert result.tx_ids == ["0x%064x" % 1]


# =============================================================================
# DEADLINES
# =============================================================================


class TestDeadline:

    def test_expired_before_submission_sends_nothing(self, chain, spec):
        record = funded_pair(chain)
        result = provisioner(chain, clock=lambda: spec.deadline + 1).provision(record, spec)
        assert result.error_kind is ErrorKind.DEADLINE_EXPIRED
        assert chain.sent == []
        assert result.tx_ids == []

    def test_router_expired_revert_not_retried(self, chain, spec):
        chain.now = lambda: spec.deadline + 30
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, spec)
        assert result.error_kind is ErrorKind.DEADLINE_EXPIRED
        assert chain.methods() == ["add_liquidity"]
        assert len(result.tx_ids) == 1


# =============================================================================
# FALLBACK LADDER
# =============================================================================


class TestLadder:

    def test_refresh_rung(self, chain, spec):
        chain.add_liquidity_failures = ["TransferHelper: TRANSFER_FROM_FAILED"]
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, spec)

        assert result.ok
        assert result.data["rung"] == "refresh_allowance"
        assert chain.methods() == ["add_liquidity", "approve", "approve", "approve", "approve",
                                   "add_liquidity"]
        assert [c["amount"] for c in chain.calls("approve")] == [0, 100, 0, 300]
        assert len(result.tx_ids) == 6

    def test_sync_rung(self, chain, spec):
        chain.add_liquidity_failures = [GENERIC_REVERT, GENERIC_REVERT]
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, spec)

        assert result.ok
        assert result.data["rung"] == "sync"
        assert chain.methods()[-2:] == ["sync", "add_liquidity"]
        assert len(result.data["attempts"]) == 2

    def test_gives_up_after_each_rung_once(self, chain, spec):
        chain.add_liquidity_failures = [GENERIC_REVERT] * 5
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, spec)

        assert result.error_kind is ErrorKind.TRANSACTION_REVERTED
        assert GENERIC_REVERT in result.message
        assert chain.methods().count("add_liquidity") == 3
        assert chain.methods().count("sync") == 1
        assert chain.methods().count("approve") == 4
        assert len(result.tx_ids) == len(chain.sent)
        assert len(chain.add_liquidity_failures) == 2

    def test_failed_sync_skips_retry(self, chain, spec):
        chain.add_liquidity_failures = [GENERIC_REVERT] * 2
        chain.sync_failure = "locked"
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, spec)

        assert result.is_failed
        assert chain.methods().count("add_liquidity") == 2
        assert "sync failed" in result.message


# =============================================================================
# NATIVE ASSET
# =============================================================================


class TestNative:

    def test_native_on_b_side(self, chain):
        record = funded_pair(chain, TOKEN_A, WETH)
        spec = make_spec(token_a=TOKEN_A, token_b=WETH, use_native=True)
        result = provisioner(chain).provision(record, spec)

        assert result.ok
        assert result.data["entry_point"] == "addLiquidityETH"
        call = chain.calls("add_liquidity_native")[0]
        assert call["token"] == TOKEN_A
        assert call["amount_token_desired"] == 100
        assert (call["amount_token_min"], call["amount_native_min"]) == (99, 297)
        assert call["value"] == 300

    def test_native_on_a_side(self, chain):
        record = funded_pair(chain, WETH, TOKEN_A)
        spec = make_spec(token_a=WETH, token_b=TOKEN_A, use_native=True)
        provisioner(chain).provision(record, spec)
        call = chain.calls("add_liquidity_native")[0]
        assert call["token"] == TOKEN_A
        assert call["amount_token_desired"] == 300
        assert call["value"] == 100

    def test_refresh_skips_native_side(self, chain):
        chain.add_liquidity_failures = ["TransferHelper: TRANSFER_FROM_FAILED"]
        record = funded_pair(chain, TOKEN_A, WETH)
        spec = make_spec(token_a=TOKEN_A, token_b=WETH, use_native=True)
        result = provisioner(chain).provision(record, spec)
        assert result.ok
        assert {c["token"] for c in chain.calls("approve")} == {TOKEN_A}

    def test_wrapped_pair_without_native_flag(self, chain):
        record = funded_pair(chain, TOKEN_A, WETH)
        spec = make_spec(token_a=TOKEN_A, token_b=WETH)
        provisioner(chain).provision(record, spec)
        assert chain.methods() == ["add_liquidity"]


@pytest.mark.parametrize("wrapped", [None, TOKEN_B])
def test_native_side_needs_matching_wrapped_token(chain, wrapped):
    spec = make_spec(token_a=TOKEN_A, token_b=WETH, use_native=True)
    prov = LiquidityProvisioner(chain, ROUTER, AllowanceManager(chain), wrapped)
    assert prov.native_side(spec) is None


# =============================================================================
# DIRECT PAIR MINT
# =============================================================================


class TestPairMint:

    def test_first_deposit(self, chain):
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, make_spec(provision_via="pair"))

        assert result.ok
        assert result.data["entry_point"] == "pair.mint"
        assert chain.methods() == ["transfer", "transfer", "mint"]
        assert [c["to"] for c in chain.sent[:2]] == [record.pair_address] * 2
        assert result.payload["shares_minted"] == 173
        assert result.tx_id == result.tx_ids[-1]
        assert len(result.tx_ids) == 3
        assert chain.reserves[record.pair_address.lower()] == [100, 300]

    def test_deposit_follows_pool_price(self, chain):
        record = funded_pair(chain, reserve_a=1000, reserve_b=2000, supply=1414)
        spec = make_spec(amount_a=100, amount_b=300, slippage_bps=5000, provision_via="pair")
        result = provisioner(chain).provision(record, spec)

        assert result.ok
        assert [c["amount"] for c in chain.calls("transfer")] == [100, 200]
        assert result.payload["shares_minted"] == 141

    def test_price_outside_slippage_sends_nothing(self, chain):
        record = funded_pair(chain, reserve_a=1000, reserve_b=2000, supply=1414)
        result = provisioner(chain).provision(record, make_spec(provision_via="pair"))
        assert result.error_kind is ErrorKind.TRANSACTION_REVERTED
        assert "INSUFFICIENT_B_AMOUNT" in result.message
        assert chain.sent == []

    def test_mint_failure_not_laddered(self, chain):
        chain.mint_failures = [GENERIC_REVERT]
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, make_spec(provision_via="pair"))

        assert result.error_kind is ErrorKind.TRANSACTION_REVERTED
        assert "pair.mint failed" in result.message
        assert chain.methods() == ["transfer", "transfer", "mint"]
        assert len(result.tx_ids) == 3

    def test_failed_transfer_reports_stranded_deposit(self, chain):
        chain.fund(TOKEN_B, 1)
        record = funded_pair(chain)
        result = provisioner(chain).provision(record, make_spec(provision_via="pair"))

        assert result.is_failed
        assert "stay in the pair" in result.message
        assert chain.methods() == ["transfer", "transfer"]
        assert len(result.tx_ids) == 2

    def test_expired_before_transfer(self, chain):
        spec = make_spec(provision_via="pair")
        record = funded_pair(chain)
        result = provisioner(chain, clock=lambda: spec.deadline).provision(record, spec)
        assert result.error_kind is ErrorKind.DEADLINE_EXPIRED
        assert chain.sent == []


class TestQuoteDeposit:

    def test_empty_pool_takes_desired(self):
        assert quote_deposit(100, 300, 99, 297, 0, 0) == ((100, 300), "")

    def test_limits_b_side(self):
        assert quote_deposit(100, 300, 0, 0, 1000, 2000) == ((100, 200), "")

    def test_limits_a_side(self):
        assert quote_deposit(100, 100, 0, 0, 1000, 2000) == ((50, 100), "")

    def test_one_sided_reserve_rejected(self):
        amounts, reason = quote_deposit(100, 100, 0, 0, 1000, 0)
        assert amounts == (0, 0)
        assert "one-sided" in reason
