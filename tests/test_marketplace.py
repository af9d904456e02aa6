"""Tests for the session marketplace: creation, proofs, completion, timeout.

Scenario numbers: D = 1,000,000, P = 100, F = 1000 bps.
"""

import pytest
from eth_account import Account

from meterpay.assets.vault import NATIVE_ASSET, InMemoryVault, normalize_address
from meterpay.errors import (
    AuthorizationError,
    InsufficientFundsError,
    ReplayError,
    StateError,
    ValidationError,
)
from meterpay.marketplace import SessionMarketplace
from meterpay.models.session import FundingSource, SessionStatus
from meterpay.persistence.event_log import EventKind
from meterpay.policy.config import AssetLimits, ConfigAuthority, MarketplaceConfig
from meterpay.proof.signing import sign_claim
from meterpay.registry.capability import StaticHostRegistry, StaticModelRegistry, model_id_for

HOST_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
HOST = Account.from_key(HOST_KEY).address
ALICE = normalize_address("0x" + "a1" * 20)
BOB = normalize_address("0x" + "b0" * 20)
OWNER = normalize_address("0x" + "0e" * 20)
TREASURY = normalize_address("0x" + "7e" * 20)
USDC = normalize_address("0x036cbd53842c5426634e7929541ec2318f3dcf7e")
MODEL = model_id_for("acme/llama", "model.gguf")

T0 = 1_760_000_000
DEPOSIT = 1_000_000
PRICE = 100


def _config(**overrides) -> MarketplaceConfig:
    params = dict(
        owner=OWNER,
        treasury=TREASURY,
        fee_basis_points=1000,
        dispute_window=30,
        timeout_multiplier=3,
        min_price_per_unit=1,
        max_price_per_unit=10**17,
        min_duration=60,
        max_duration=31_536_000,
        min_proof_interval=1,
        max_proof_interval=86_400,
        asset_limits={
            NATIVE_ASSET: AssetLimits(min_deposit=1_000, max_deposit=10**24),
            USDC: AssetLimits(min_deposit=1_000, max_deposit=10**15),
        },
    )
    params.update(overrides)
    return MarketplaceConfig(**params)


def _market(**overrides) -> SessionMarketplace:
    vault = InMemoryVault()
    for account in (ALICE, BOB):
        vault.mint(account, NATIVE_ASSET, 10**20)
        vault.mint(account, USDC, 10**12)
    hosts = StaticHostRegistry()
    hosts.register(HOST, default_min_price=50)
    hosts.set_model_price(HOST, MODEL, 80)
    models = StaticModelRegistry({MODEL})
    return SessionMarketplace(ConfigAuthority(_config(**overrides)), hosts, models, vault)


def _open(market: SessionMarketplace, deposit: int = DEPOSIT, interval: int = 100) -> int:
    return market.create_session(
        ALICE, HOST, price_per_unit=PRICE, max_duration=3_600,
        proof_interval=interval, value=deposit, now=T0,
    )


def _prove(market: SessionMarketplace, sid: int, units: int, now: int, ref: str = "ipfs://proof") -> None:
    signature = sign_claim(HOST_KEY, ref, HOST, units, sid)
    market.submit_proof(HOST, sid, units, ref, signature, now=now)


def _wallet(market: SessionMarketplace, account: str, asset: str = NATIVE_ASSET) -> int:
    return market._vault.balance_of(account, asset)


# ------------------------------------------------------------------
# Creation
# ------------------------------------------------------------------


class TestCreateSession:
    def test_native_session_moves_value_to_custody(self) -> None:
        market = _market()
        before = _wallet(market, ALICE)
        sid = _open(market)
        assert sid == 1
        session = market.get_session(sid)
        assert session is not None
        assert session.status == SessionStatus.ACTIVE
        assert session.deposit_amount == DEPOSIT
        assert session.last_proof_time == T0
        assert session.fee_basis_points == 1000
        assert session.funding_source == FundingSource.INLINE
        assert _wallet(market, ALICE) == before - DEPOSIT
        assert _wallet(market, market.address) == DEPOSIT

    def test_ids_are_sequential_and_indexed(self) -> None:
        market = _market()
        first = _open(market)
        second = market.create_session(
            BOB, HOST, price_per_unit=PRICE, max_duration=3_600,
            proof_interval=100, value=DEPOSIT, now=T0,
        )
        assert (first, second) == (1, 2)
        assert market.sessions_of_depositor(ALICE) == [1]
        assert market.sessions_of_depositor(BOB) == [2]
        assert market.sessions_of_host(HOST) == [1, 2]
        assert market.active_session_ids() == [1, 2]

    def test_lookups_accept_any_address_case(self) -> None:
        market = _market()
        _open(market)
        assert market.sessions_of_depositor(ALICE.lower()) == [1]
        assert market.sessions_of_host(HOST.lower()) == [1]
        assert market.sessions_of_host("not-an-address") == []

    def test_token_session_pulls_allowance(self) -> None:
        market = _market()
        market._vault.approve(ALICE, market.address, USDC, 5_000)
        sid = market.create_session_with_token(
            ALICE, HOST, USDC, 5_000, PRICE, 3_600, 100, now=T0,
        )
        assert market.get_session(sid).asset == USDC
        assert _wallet(market, market.address, USDC) == 5_000

    def test_token_session_without_allowance(self) -> None:
        market = _market()
        with pytest.raises(InsufficientFundsError):
            market.create_session_with_token(ALICE, HOST, USDC, 5_000, PRICE, 3_600, 100, now=T0)
        assert market.session_count == 0

    def test_token_variant_rejects_native(self) -> None:
        market = _market()
        with pytest.raises(ValidationError):
            market.create_session_with_token(
                ALICE, HOST, NATIVE_ASSET, 5_000, PRICE, 3_600, 100, now=T0,
            )

    def test_model_session(self) -> None:
        market = _market()
        sid = market.create_session_for_model(
            ALICE, HOST, MODEL, 80, 3_600, 100, value=DEPOSIT, now=T0,
        )
        assert market.get_session(sid).model_id == MODEL

    def test_model_token_session(self) -> None:
        market = _market()
        market._vault.approve(ALICE, market.address, USDC, 5_000)
        sid = market.create_session_for_model_with_token(
            ALICE, HOST, MODEL, USDC, 5_000, 80, 3_600, 100, now=T0,
        )
        assert market.get_session(sid).model_id == MODEL

    def test_model_price_below_host_minimum(self) -> None:
        market = _market()
        with pytest.raises(ValidationError, match="below host minimum"):
            market.create_session_for_model(ALICE, HOST, MODEL, 79, 3_600, 100, value=DEPOSIT, now=T0)

    def test_unapproved_model(self) -> None:
        market = _market()
        other = model_id_for("acme/other", "x.gguf")
        with pytest.raises(AuthorizationError) as exc:
            market.create_session_for_model(ALICE, HOST, other, 100, 3_600, 100, value=DEPOSIT, now=T0)
        assert exc.value.reason == "model_not_approved"

    def test_model_not_served_by_host(self) -> None:
        market = _market()
        other = model_id_for("acme/other", "x.gguf")
        market._models.approve(other)
        with pytest.raises(AuthorizationError) as exc:
            market.create_session_for_model(ALICE, HOST, other, 100, 3_600, 100, value=DEPOSIT, now=T0)
        assert exc.value.reason == "model_not_supported"

    def test_unregistered_host(self) -> None:
        market = _market()
        with pytest.raises(AuthorizationError) as exc:
            market.create_session(ALICE, BOB, PRICE, 3_600, 100, value=DEPOSIT, now=T0)
        assert exc.value.reason == "host_not_registered"

    def test_zero_host(self) -> None:
        market = _market()
        with pytest.raises(ValidationError):
            market.create_session(ALICE, NATIVE_ASSET, PRICE, 3_600, 100, value=DEPOSIT, now=T0)

    def test_price_below_default_minimum(self) -> None:
        market = _market()
        with pytest.raises(ValidationError):
            market.create_session(ALICE, HOST, 49, 3_600, 100, value=DEPOSIT, now=T0)

    @pytest.mark.parametrize(
        "price, duration, interval",
        [(0, 3_600, 100), (PRICE, 59, 10), (PRICE, 3_600, 0), (PRICE, 3_600, 86_401), (PRICE, 60, 61)],
    )
    def test_out_of_range_parameters(self, price: int, duration: int, interval: int) -> None:
        market = _market()
        with pytest.raises(ValidationError):
            market.create_session(ALICE, HOST, price, duration, interval, value=DEPOSIT, now=T0)

    def test_boolean_parameters_rejected(self) -> None:
        market = _market()
        with pytest.raises(ValidationError) as exc:
            market.create_session(ALICE, HOST, True, 3_600, 100, value=DEPOSIT, now=T0)
        assert exc.value.reason == "invalid_price_per_unit"
        with pytest.raises(ValidationError):
            market.create_session(ALICE, HOST, PRICE, 3_600, True, value=DEPOSIT, now=T0)
        assert market.session_count == 0

    def test_deposit_bounds_per_asset(self) -> None:
        market = _market()
        with pytest.raises(ValidationError) as exc:
            _open(market, deposit=999)
        assert exc.value.reason == "deposit_out_of_bounds"

    def test_insufficient_payment(self) -> None:
        market = _market()
        poor = normalize_address("0x" + "99" * 20)
        market._vault.mint(poor, NATIVE_ASSET, 5_000)
        with pytest.raises(InsufficientFundsError):
            market.create_session(poor, HOST, PRICE, 3_600, 100, value=6_000, now=T0)
        assert market.session_count == 0
        assert _wallet(market, poor) == 5_000

    def test_from_deposit_draws_escrow(self) -> None:
        market = _market()
        market.escrow.deposit(ALICE, NATIVE_ASSET, 3 * DEPOSIT, now=T0)
        sid = market.create_session_from_deposit(
            ALICE, HOST, NATIVE_ASSET, DEPOSIT, PRICE, 3_600, 100, now=T0,
        )
        assert market.escrow.balance_of(ALICE, NATIVE_ASSET) == 2 * DEPOSIT
        assert market.get_session(sid).funding_source == FundingSource.DEPOSIT

    def test_from_deposit_insufficient_balance(self) -> None:
        market = _market()
        market.escrow.deposit(ALICE, NATIVE_ASSET, DEPOSIT - 1, now=T0)
        with pytest.raises(InsufficientFundsError):
            market.create_session_from_deposit(
                ALICE, HOST, NATIVE_ASSET, DEPOSIT, PRICE, 3_600, 100, now=T0,
            )
        assert market.escrow.balance_of(ALICE, NATIVE_ASSET) == DEPOSIT - 1
        assert market.session_count == 0

    def test_emits_session_created(self) -> None:
        market = _market()
        sid = _open(market)
        note = market.notifications.all(EventKind.SESSION_CREATED)[-1]
        assert note.payload["session_id"] == sid
        assert note.payload["deposit_amount"] == DEPOSIT
        assert note.timestamp == T0


# ------------------------------------------------------------------
# Proofs
# ------------------------------------------------------------------


class TestSubmitProof:
    def test_accepted_claim_updates_session(self) -> None:
        market = _market()
        sid = _open(market)
        _prove(market, sid, 3_000, T0 + 50)
        session = market.get_session(sid)
        assert session.units_consumed == 3_000
        assert session.last_proof_time == T0 + 50
        assert session.last_proof_digest.startswith("0x")
        assert market.proven_units(sid) == 3_000

    def test_relayer_may_submit(self) -> None:
        market = _market()
        sid = _open(market)
        signature = sign_claim(HOST_KEY, "ref", HOST, 10, sid)
        claim = market.submit_proof(BOB, sid, 10, "ref", signature, now=T0 + 1)
        assert claim.signer == HOST

    def test_replay_of_lower_claim_rejected(self) -> None:
        market = _market()
        sid = _open(market)
        _prove(market, sid, 5_000, T0 + 10)
        with pytest.raises(ReplayError):
            _prove(market, sid, 3_000, T0 + 20)
        with pytest.raises(ReplayError):
            _prove(market, sid, 5_000, T0 + 20)
        assert market.proven_units(sid) == 5_000

    def test_signature_from_other_key(self) -> None:
        market = _market()
        sid = _open(market)
        forged = sign_claim(OTHER_KEY, "ref", HOST, 10, sid)
        with pytest.raises(AuthorizationError) as exc:
            market.submit_proof(HOST, sid, 10, "ref", forged, now=T0 + 1)
        assert exc.value.reason == "signer_not_host"

    def test_signature_bound_to_session(self) -> None:
        market = _market()
        first = _open(market)
        second = _open(market)
        signature = sign_claim(HOST_KEY, "ref", HOST, 10, first)
        with pytest.raises(AuthorizationError):
            market.submit_proof(HOST, second, 10, "ref", signature, now=T0 + 1)

    def test_malformed_signature(self) -> None:
        market = _market()
        sid = _open(market)
        with pytest.raises(AuthorizationError) as exc:
            market.submit_proof(HOST, sid, 10, "ref", b"\x01" * 10, now=T0 + 1)
        assert exc.value.reason == "bad_signature"

    def test_overclaim_rejected_not_clamped(self) -> None:
        market = _market()
        sid = _open(market)
        with pytest.raises(InsufficientFundsError):
            _prove(market, sid, DEPOSIT // PRICE + 1, T0 + 1)
        assert market.proven_units(sid) == 0
        _prove(market, sid, DEPOSIT // PRICE, T0 + 2)
        assert market.proven_units(sid) == DEPOSIT // PRICE

    def test_proof_after_max_duration(self) -> None:
        market = _market()
        sid = _open(market)
        with pytest.raises(StateError) as exc:
            _prove(market, sid, 10, T0 + 3_601)
        assert exc.value.reason == "session_expired"

    def test_unknown_session(self) -> None:
        market = _market()
        with pytest.raises(ValidationError):
            market.submit_proof(HOST, 42, 1, "ref", b"\x00" * 65, now=T0)

    def test_proof_on_completed_session(self) -> None:
        market = _market()
        sid = _open(market)
        market.complete_session(ALICE, sid, now=T0 + 1)
        with pytest.raises(StateError):
            _prove(market, sid, 10, T0 + 2)

    def test_history_kept(self) -> None:
        market = _market()
        sid = _open(market)
        _prove(market, sid, 10, T0 + 1)
        _prove(market, sid, 20, T0 + 2)
        assert [c.claimed_units for c in market.proofs.claims_for(sid)] == [10, 20]
        assert market.proofs.latest(sid).claimed_units == 20


# ------------------------------------------------------------------
# Completion and timeout
# ------------------------------------------------------------------


class TestCompleteSession:
    def test_normal_settlement(self) -> None:
        market = _market()
        sid = _open(market)
        _prove(market, sid, 3_000, T0 + 100)
        before = _wallet(market, ALICE)

        split = market.complete_session(ALICE, sid, now=T0 + 101)

        assert split.host_gross == 300_000
        assert split.platform_fee == 30_000
        assert split.host_net == 270_000
        assert split.depositor_refund == 700_000
        assert _wallet(market, ALICE) == before + 700_000
        assert market.earnings.balance_of(HOST, NATIVE_ASSET) == 270_000
        assert market.treasury.balance_of(NATIVE_ASSET) == 30_000
        session = market.get_session(sid)
        assert session.status == SessionStatus.COMPLETED
        assert session.host_withdrawn and session.depositor_refunded
        assert session.settled_by == ALICE
        assert market.check_solvency() == []

    def test_depositor_completes_immediately(self) -> None:
        market = _market()
        sid = _open(market)
        split = market.complete_session(ALICE, sid, now=T0)
        assert split.depositor_refund == DEPOSIT

    def test_dispute_window_gate(self) -> None:
        market = _market()
        sid = _open(market)
        _prove(market, sid, 1_000, T0 + 100)
        with pytest.raises(StateError) as exc:
            market.complete_session(HOST, sid, now=T0 + 100 + 29)
        assert exc.value.reason == "dispute_window_open"
        split = market.complete_session(HOST, sid, now=T0 + 100 + 30)
        assert split.host_net == 90_000
        assert market.get_session(sid).settled_by == HOST

    def test_second_completion_rejected(self) -> None:
        market = _market()
        sid = _open(market)
        market.complete_session(ALICE, sid, now=T0 + 1)
        with pytest.raises(StateError):
            market.complete_session(ALICE, sid, now=T0 + 2)
        with pytest.raises(StateError):
            market.trigger_timeout(BOB, sid, now=T0 + 10_000)

    def test_completion_event_carries_split(self) -> None:
        market = _market()
        sid = _open(market)
        _prove(market, sid, 3_000, T0 + 1)
        market.complete_session(ALICE, sid, now=T0 + 2)
        note = market.notifications.all(EventKind.SESSION_COMPLETED)[-1]
        assert note.payload["settled_by"] == ALICE
        assert note.payload["host_net"] == 270_000
        assert note.payload["depositor_refund"] == 700_000

    def test_completion_records_final_content_ref(self) -> None:
        market = _market()
        sid = _open(market)
        _prove(market, sid, 3_000, T0 + 1)
        market.complete_session(ALICE, sid, content_ref="ipfs://final", now=T0 + 2)
        assert market.get_session(sid).content_ref == "ipfs://final"
        note = market.notifications.all(EventKind.SESSION_COMPLETED)[-1]
        assert note.payload["content_ref"] == "ipfs://final"

    def test_completion_without_content_ref_keeps_proof_ref(self) -> None:
        market = _market()
        sid = _open(market)
        _prove(market, sid, 3_000, T0 + 1)
        market.complete_session(ALICE, sid, now=T0 + 2)
        assert market.get_session(sid).content_ref == "ipfs://proof"
        note = market.notifications.all(EventKind.SESSION_COMPLETED)[-1]
        assert note.payload["content_ref"] == "ipfs://proof"

    def test_fee_rate_captured_at_creation(self) -> None:
        market = _market()
        sid = _open(market)
        market.set_fee_rate(OWNER, 2_000, now=T0)
        _prove(market, sid, 3_000, T0 + 1)
        split = market.complete_session(ALICE, sid, now=T0 + 2)
        assert split.platform_fee == 30_000

    def test_deposit_funded_refund_returns_to_escrow(self) -> None:
        market = _market()
        market.escrow.deposit(ALICE, NATIVE_ASSET, DEPOSIT, now=T0)
        sid = market.create_session_from_deposit(
            ALICE, HOST, NATIVE_ASSET, DEPOSIT, PRICE, 3_600, 100, now=T0,
        )
        _prove(market, sid, 3_000, T0 + 1)
        wallet = _wallet(market, ALICE)
        market.complete_session(ALICE, sid, now=T0 + 2)
        assert market.escrow.balance_of(ALICE, NATIVE_ASSET) == 700_000
        assert _wallet(market, ALICE) == wallet
        assert market.check_solvency() == []


class TestTriggerTimeout:
    def test_timeout_scenario(self) -> None:
        market = _market()
        sid = _open(market, interval=100)
        _prove(market, sid, 1_000, T0 + 10)
        last = T0 + 10
        with pytest.raises(StateError) as exc:
            market.trigger_timeout(BOB, sid, now=last + 299)
        assert exc.value.reason == "timeout_not_reached"

        split = market.trigger_timeout(BOB, sid, now=last + 300)
        assert split.host_net == 90_000
        assert split.platform_fee == 10_000
        assert split.depositor_refund == 900_000
        assert market.get_session(sid).status == SessionStatus.TIMED_OUT
        assert market.notifications.last.kind == EventKind.SESSION_TIMED_OUT
        assert market.check_solvency() == []

    def test_timeout_without_any_proof_refunds_everything(self) -> None:
        market = _market()
        sid = _open(market, interval=100)
        split = market.trigger_timeout(HOST, sid, now=T0 + 300)
        assert split.host_gross == 0
        assert split.depositor_refund == DEPOSIT
        assert market.earnings.balance_of(HOST, NATIVE_ASSET) == 0

    def test_multiplier_is_configurable(self) -> None:
        market = _market(timeout_multiplier=5)
        sid = _open(market, interval=100)
        with pytest.raises(StateError):
            market.trigger_timeout(BOB, sid, now=T0 + 499)
        market.trigger_timeout(BOB, sid, now=T0 + 500)


# ------------------------------------------------------------------
# Treasury and configuration
# ------------------------------------------------------------------


class TestTreasuryAndConfig:
    def test_owner_sweeps_treasury(self) -> None:
        market = _market()
        sid = _open(market)
        _prove(market, sid, 3_000, T0 + 1)
        market.complete_session(ALICE, sid, now=T0 + 2)
        assert market.withdraw_treasury(OWNER, NATIVE_ASSET, now=T0 + 3) == 30_000
        assert _wallet(market, TREASURY) == 30_000
        assert market.treasury.balance_of(NATIVE_ASSET) == 0
        assert market.check_solvency() == []

    def test_non_owner_cannot_sweep(self) -> None:
        market = _market()
        with pytest.raises(AuthorizationError):
            market.withdraw_treasury(ALICE, NATIVE_ASSET, now=T0)

    def test_sweep_all_skips_empty_assets(self) -> None:
        market = _market()
        sid = _open(market)
        _prove(market, sid, 3_000, T0 + 1)
        market.complete_session(ALICE, sid, now=T0 + 2)
        paid = market.withdraw_all_treasury(OWNER, [NATIVE_ASSET, USDC], now=T0 + 3)
        assert paid == {NATIVE_ASSET: 30_000}

    def test_config_update_emits_event(self) -> None:
        market = _market()
        market.set_dispute_window(OWNER, 60, now=T0)
        assert market.config.dispute_window == 60
        note = market.notifications.last
        assert note.kind == EventKind.CONFIG_UPDATED
        assert note.payload == {"setting": "dispute_window", "value": 60}

    def test_config_update_requires_owner(self) -> None:
        market = _market()
        with pytest.raises(AuthorizationError):
            market.set_fee_rate(ALICE, 0, now=T0)
        assert market.config.fee_basis_points == 1000
        assert market.notifications.count == 0

    def test_invalid_config_update_rejected(self) -> None:
        market = _market()
        with pytest.raises(ValidationError):
            market.set_fee_rate(OWNER, 10_001, now=T0)
        assert market.config.fee_basis_points == 1000

    def test_removed_asset_rejects_new_sessions(self) -> None:
        market = _market()
        market.remove_asset(OWNER, USDC, now=T0)
        market._vault.approve(ALICE, market.address, USDC, 5_000)
        with pytest.raises(ValidationError):
            market.create_session_with_token(ALICE, HOST, USDC, 5_000, PRICE, 3_600, 100, now=T0)
