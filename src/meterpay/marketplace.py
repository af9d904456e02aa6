"""Session marketplace: the lifecycle controller of metered sessions.

Composes the escrow ledger, proof ledger, settlement engine, host
earnings ledger and treasury accumulator behind one set of guarded entry
points. Every entry point is atomic: the marketplace guard is acquired,
every component is snapshotted, and any failure restores them all.

Lifecycle:
    create_*          → ACTIVE    (deposit moved into custody)
    submit_proof      → ACTIVE    (consumption raised, host-signed)
    complete_session  → COMPLETED (depositor any time; others after the
                                   dispute window since the last proof)
    trigger_timeout   → TIMED_OUT (anyone, after proof_interval ×
                                   timeout_multiplier since the last proof)

Both terminal transitions settle the session through the settlement
engine in the same call.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from web3 import Web3

from meterpay.assets.vault import (
    NATIVE_ASSET,
    ZERO_ADDRESS,
    AssetVault,
    is_amount,
    is_native,
    normalize_address,
)
from meterpay.engine.clock import resolve_now
from meterpay.engine.guard import ReentrancyGuard, non_reentrant
from meterpay.engine.notifications import NotificationLog
from meterpay.errors import (
    AuthorizationError,
    InsufficientFundsError,
    StateError,
    ValidationError,
)
from meterpay.ledger.earnings import HostEarningsLedger
from meterpay.ledger.escrow import EscrowLedger
from meterpay.ledger.treasury import TreasuryAccumulator
from meterpay.models.proof import ProofClaim
from meterpay.models.session import FundingSource, Session, SessionStatus
from meterpay.models.settlement import SettlementBreakdown
from meterpay.persistence.event_log import EventKind
from meterpay.policy.config import ConfigAuthority, MarketplaceConfig
from meterpay.proof.ledger import ProofLedger
from meterpay.proof.signing import SignatureLike
from meterpay.registry.capability import HostRegistry, ModelRegistry, normalize_model_id
from meterpay.settlement.engine import SettlementEngine

logger = logging.getLogger(__name__)

# Custody accounts of the two contracts inside the asset vault.
MARKETPLACE_ADDRESS = normalize_address("0x00000000000000000000000000000000000a11ce")
EARNINGS_ADDRESS = normalize_address("0x00000000000000000000000000000000000ea51e")


class SessionMarketplace:
    """Escrowed, metered compute sessions between depositors and hosts.

    Usage:
        market = SessionMarketplace(authority, hosts, models, vault)
        sid = market.create_session(alice, host, price_per_unit=100,
                                    max_duration=3600, proof_interval=100,
                                    value=10**6, now=t0)
        market.submit_proof(host, sid, 3000, "ipfs://...", signature, now=t1)
        market.complete_session(alice, sid, now=t2)
    """

    def __init__(
        self,
        config: ConfigAuthority,
        hosts: HostRegistry,
        models: ModelRegistry,
        vault: AssetVault,
        address: str = MARKETPLACE_ADDRESS,
        earnings_address: str = EARNINGS_ADDRESS,
        notifications: Optional[NotificationLog] = None,
    ) -> None:
        self._config = config
        self._hosts = hosts
        self._models = models
        self._vault = vault
        self._address = normalize_address(address, "marketplace address")
        self._notifications = notifications if notifications is not None else NotificationLog()
        self._guard = ReentrancyGuard("session marketplace")

        self.escrow = EscrowLedger(
            vault, self._address, config, self._notifications, guard=self._guard,
            scope=self._participants,
        )
        self.earnings = HostEarningsLedger(
            vault, earnings_address, config.owner, self._notifications,
            authorized=[self._address], scope=self._participants,
        )
        self.treasury = TreasuryAccumulator(vault, self._address, self._notifications)
        self.proofs = ProofLedger(self._notifications)
        self.settlement = SettlementEngine(
            vault, self._address, self.escrow, self.earnings, self.treasury,
        )

        self._sessions: Dict[int, Session] = {}
        self._by_depositor: Dict[str, List[int]] = {}
        self._by_host: Dict[str, List[int]] = {}
        self._next_session_id = 1

    @property
    def address(self) -> str:
        return self._address

    @property
    def config(self) -> MarketplaceConfig:
        return self._config.current

    @property
    def notifications(self) -> NotificationLog:
        return self._notifications

    def _participants(self) -> tuple:
        return (
            self._config,
            self,
            self.escrow,
            self.earnings,
            self.treasury,
            self.proofs,
            self._vault,
            self._notifications,
        )

    # ------------------------------------------------------------------
    # Session creation
    # ------------------------------------------------------------------

    @non_reentrant
    def create_session(
        self,
        sender: str,
        host: str,
        price_per_unit: int,
        max_duration: int,
        proof_interval: int,
        value: int,
        now: Optional[int] = None,
    ) -> int:
        """Open a session funded with native currency attached as ``value``."""
        return self._open_session(
            sender, host, NATIVE_ASSET, value, price_per_unit, max_duration,
            proof_interval, None, FundingSource.INLINE, now,
        )

    @non_reentrant
    def create_session_with_token(
        self,
        sender: str,
        host: str,
        asset: str,
        amount: int,
        price_per_unit: int,
        max_duration: int,
        proof_interval: int,
        now: Optional[int] = None,
    ) -> int:
        """Open a session funded by pulling ``amount`` of a token from ``sender``."""
        return self._open_session(
            sender, host, self._token(asset), amount, price_per_unit, max_duration,
            proof_interval, None, FundingSource.INLINE, now,
        )

    @non_reentrant
    def create_session_for_model(
        self,
        sender: str,
        host: str,
        model_id: str,
        price_per_unit: int,
        max_duration: int,
        proof_interval: int,
        value: int,
        now: Optional[int] = None,
    ) -> int:
        """Native-funded session bound to an approved model the host serves."""
        return self._open_session(
            sender, host, NATIVE_ASSET, value, price_per_unit, max_duration,
            proof_interval, model_id, FundingSource.INLINE, now,
        )

    @non_reentrant
    def create_session_for_model_with_token(
        self,
        sender: str,
        host: str,
        model_id: str,
        asset: str,
        amount: int,
        price_per_unit: int,
        max_duration: int,
        proof_interval: int,
        now: Optional[int] = None,
    ) -> int:
        return self._open_session(
            sender, host, self._token(asset), amount, price_per_unit, max_duration,
            proof_interval, model_id, FundingSource.INLINE, now,
        )

    @non_reentrant
    def create_session_from_deposit(
        self,
        sender: str,
        host: str,
        asset: str,
        amount: int,
        price_per_unit: int,
        max_duration: int,
        proof_interval: int,
        model_id: Optional[str] = None,
        now: Optional[int] = None,
    ) -> int:
        """Open a session drawn from ``sender``'s escrow balance.

        The refund of a deposit-funded session returns to that balance.
        """
        return self._open_session(
            sender, host, normalize_address(asset, "asset"), amount, price_per_unit,
            max_duration, proof_interval, model_id, FundingSource.DEPOSIT, now,
        )

    # ------------------------------------------------------------------
    # Metering and termination
    # ------------------------------------------------------------------

    @non_reentrant
    def submit_proof(
        self,
        sender: str,
        session_id: int,
        claimed_units: int,
        content_ref: str,
        signature: SignatureLike,
        now: Optional[int] = None,
    ) -> ProofClaim:
        """Record a host-signed cumulative consumption claim.

        Anyone may relay the claim; the signature authenticates the host.
        """
        session = self._require_session(session_id)
        return self.proofs.submit_proof(
            session, claimed_units, content_ref, signature, resolve_now(now),
            submitter=normalize_address(sender, "sender"),
        )

    @non_reentrant
    def complete_session(
        self,
        sender: str,
        session_id: int,
        content_ref: str = "",
        now: Optional[int] = None,
    ) -> SettlementBreakdown:
        """Complete and settle a session.

        The depositor may complete at any time. Anyone else must wait
        until dispute_window seconds have passed since the last proof.
        A non-empty ``content_ref`` (the final conversation reference)
        replaces the one recorded on the session.
        """
        now = resolve_now(now)
        sender = normalize_address(sender, "sender")
        session = self._require_active(session_id)
        if sender != session.depositor:
            opens_at = session.last_proof_time + self.config.dispute_window
            if now < opens_at:
                raise StateError(
                    f"Dispute window for session {session_id} open until {opens_at}",
                    reason="dispute_window_open",
                )
        if content_ref:
            session.content_ref = content_ref
        return self._finish(session, SessionStatus.COMPLETED, sender, now)

    @non_reentrant
    def trigger_timeout(
        self, sender: str, session_id: int, now: Optional[int] = None,
    ) -> SettlementBreakdown:
        """Force-settle a session whose host stopped proving.

        The host is paid only for proof-confirmed consumption.
        """
        now = resolve_now(now)
        sender = normalize_address(sender, "sender")
        session = self._require_active(session_id)
        threshold = self.config.timeout_threshold(session.proof_interval)
        if now < session.last_proof_time + threshold:
            raise StateError(
                f"Session {session_id} cannot time out before "
                f"{session.last_proof_time + threshold}",
                reason="timeout_not_reached",
            )
        return self._finish(session, SessionStatus.TIMED_OUT, sender, now)

    # ------------------------------------------------------------------
    # Treasury (owner only)
    # ------------------------------------------------------------------

    @non_reentrant
    def withdraw_treasury(self, sender: str, asset: str, now: Optional[int] = None) -> int:
        """Pay accumulated fees in ``asset`` to the configured treasury."""
        sender = normalize_address(sender, "sender")
        self._config.require_owner(sender)
        return self.treasury.sweep(
            sender, normalize_address(asset, "asset"), self.config.treasury, resolve_now(now),
        )

    @non_reentrant
    def withdraw_all_treasury(
        self, sender: str, assets: Iterable[str], now: Optional[int] = None,
    ) -> Dict[str, int]:
        """Sweep every listed asset with a non-zero accumulator."""
        sender = normalize_address(sender, "sender")
        self._config.require_owner(sender)
        now = resolve_now(now)
        paid: Dict[str, int] = {}
        for raw in assets:
            asset = normalize_address(raw, "asset")
            if asset in paid or self.treasury.balance_of(asset) == 0:
                continue
            paid[asset] = self.treasury.sweep(sender, asset, self.config.treasury, now)
        return paid

    # ------------------------------------------------------------------
    # Configuration (owner only)
    # ------------------------------------------------------------------

    @non_reentrant
    def set_fee_rate(self, sender: str, fee_basis_points: int, now: Optional[int] = None) -> None:
        """Change the fee rate for sessions created from now on."""
        self._configure(sender, "fee_basis_points", fee_basis_points, now,
                        lambda s: self._config.set_fee_rate(s, fee_basis_points))

    @non_reentrant
    def set_dispute_window(self, sender: str, seconds: int, now: Optional[int] = None) -> None:
        self._configure(sender, "dispute_window", seconds, now,
                        lambda s: self._config.set_dispute_window(s, seconds))

    @non_reentrant
    def set_timeout_multiplier(
        self, sender: str, multiplier: int, now: Optional[int] = None,
    ) -> None:
        self._configure(sender, "timeout_multiplier", multiplier, now,
                        lambda s: self._config.set_timeout_multiplier(s, multiplier))

    @non_reentrant
    def set_treasury(self, sender: str, treasury: str, now: Optional[int] = None) -> None:
        self._configure(sender, "treasury", treasury, now,
                        lambda s: self._config.set_treasury(s, treasury))

    @non_reentrant
    def set_asset_limits(
        self,
        sender: str,
        asset: str,
        min_deposit: int,
        max_deposit: int,
        now: Optional[int] = None,
    ) -> None:
        value = {"asset": asset, "min_deposit": min_deposit, "max_deposit": max_deposit}
        self._configure(sender, "asset_limits", value, now,
                        lambda s: self._config.set_asset_limits(s, asset, min_deposit, max_deposit))

    @non_reentrant
    def remove_asset(self, sender: str, asset: str, now: Optional[int] = None) -> None:
        self._configure(sender, "remove_asset", asset, now,
                        lambda s: self._config.remove_asset(s, asset))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_session(self, session_id: int) -> Optional[Session]:
        """A copy of the session, or None if unknown."""
        session = self._sessions.get(session_id)
        return replace(session) if session is not None else None

    def sessions_of_depositor(self, depositor: str) -> List[int]:
        return self._lookup(self._by_depositor, depositor)

    def sessions_of_host(self, host: str) -> List[int]:
        return self._lookup(self._by_host, host)

    def active_session_ids(self) -> List[int]:
        return [sid for sid, s in self._sessions.items() if s.is_active]

    def proven_units(self, session_id: int) -> int:
        return self._require_session(session_id).units_consumed

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def tracked_assets(self) -> List[str]:
        """Every asset the marketplace currently has any position in."""
        assets = set(self.config.accepted_assets)
        assets.update(s.asset for s in self._sessions.values())
        assets |= self.escrow.assets() | self.earnings.assets() | self.treasury.assets()
        return sorted(assets)

    def check_solvency(self) -> List[str]:
        """Check that custody exactly covers every liability.

        Returns an empty list if solvent, or a list of violation descriptions.
        """
        violations: List[str] = []
        for asset in self.tracked_assets():
            held = (
                self._vault.balance_of(self._address, asset)
                + self._vault.balance_of(self.earnings.address, asset)
            )
            locked = sum(
                s.deposit_amount for s in self._sessions.values()
                if s.is_active and s.asset == asset
            )
            owed = (
                self.escrow.total(asset) + locked
                + self.earnings.total(asset) + self.treasury.total(asset)
            )
            if held != owed:
                violations.append(
                    f"{asset}: custody holds {held} but liabilities total {owed}"
                )
        for session in self._sessions.values():
            if session.amount_owed > session.deposit_amount:
                violations.append(
                    f"session {session.session_id}: consumption value "
                    f"{session.amount_owed} exceeds deposit {session.deposit_amount}"
                )
            settled = session.host_withdrawn and session.depositor_refunded
            if session.is_active == settled:
                violations.append(
                    f"session {session.session_id}: status {session.status.value} "
                    f"inconsistent with settlement flags"
                )
        return violations

    # ------------------------------------------------------------------
    # Transactional / persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> tuple:
        return (
            {sid: replace(s) for sid, s in self._sessions.items()},
            {k: list(v) for k, v in self._by_depositor.items()},
            {k: list(v) for k, v in self._by_host.items()},
            self._next_session_id,
        )

    def restore(self, snapshot: tuple) -> None:
        sessions, by_depositor, by_host, next_id = snapshot
        self._sessions = {sid: replace(s) for sid, s in sessions.items()}
        self._by_depositor = {k: list(v) for k, v in by_depositor.items()}
        self._by_host = {k: list(v) for k, v in by_host.items()}
        self._next_session_id = next_id

    def export_state(self) -> Dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "next_session_id": self._next_session_id,
            "sessions": [self._sessions[sid].to_dict() for sid in sorted(self._sessions)],
            "escrow": self.escrow.export_state(),
            "earnings": self.earnings.export_state(),
            "treasury": self.treasury.export_state(),
            "proofs": self.proofs.export_state(),
        }

    def import_state(self, data: Dict[str, Any]) -> None:
        self._sessions = {}
        self._by_depositor = {}
        self._by_host = {}
        for row in data.get("sessions", []):
            self._index(Session.from_dict(row))
        self._next_session_id = int(data.get("next_session_id", len(self._sessions) + 1))
        self.escrow.import_state(data.get("escrow", []))
        self.earnings.import_state(data.get("earnings", {}))
        self.treasury.import_state(data.get("treasury", {}))
        self.proofs.import_state(data.get("proofs", []))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _open_session(
        self,
        sender: str,
        host: str,
        asset: str,
        amount: int,
        price_per_unit: int,
        max_duration: int,
        proof_interval: int,
        model_id: Optional[str],
        funding: FundingSource,
        now: Optional[int],
    ) -> int:
        now = resolve_now(now)
        sender = normalize_address(sender, "sender")
        host = normalize_address(host, "host")
        config = self.config

        if host == ZERO_ADDRESS:
            raise ValidationError("Host cannot be the zero address", reason="invalid_host")
        self._check_range("price_per_unit", price_per_unit,
                          config.min_price_per_unit, config.max_price_per_unit)
        self._check_range("max_duration", max_duration,
                          config.min_duration, config.max_duration)
        self._check_range("proof_interval", proof_interval,
                          config.min_proof_interval, config.max_proof_interval)
        if proof_interval > max_duration:
            raise ValidationError(
                f"proof_interval {proof_interval} exceeds max_duration {max_duration}",
                reason="invalid_proof_interval",
            )

        limits = config.limits_for(asset)
        if not is_amount(amount) or not limits.min_deposit <= amount <= limits.max_deposit:
            raise ValidationError(
                f"Deposit {amount!r} outside [{limits.min_deposit}, {limits.max_deposit}] "
                f"for {asset}",
                reason="deposit_out_of_bounds",
            )

        if model_id is not None:
            model_id = normalize_model_id(model_id)
            if not self._models.is_approved(model_id):
                raise AuthorizationError(
                    f"Model {model_id} is not approved", reason="model_not_approved",
                )
        if not self._hosts.is_registered(host):
            raise AuthorizationError(
                f"Host {host} is not registered", reason="host_not_registered",
            )
        minimum = self._hosts.min_price_for(host, model_id)
        if minimum is None:
            raise AuthorizationError(
                f"Host {host} does not serve model {model_id}",
                reason="model_not_supported",
            )
        if price_per_unit < minimum:
            raise ValidationError(
                f"Price {price_per_unit} below host minimum {minimum}",
                reason="price_below_host_minimum",
            )

        session = Session(
            session_id=self._next_session_id,
            depositor=sender,
            host=host,
            asset=asset,
            deposit_amount=amount,
            price_per_unit=price_per_unit,
            max_duration=max_duration,
            proof_interval=proof_interval,
            start_time=now,
            last_proof_time=now,
            fee_basis_points=config.fee_basis_points,
            funding_source=funding,
            model_id=model_id,
        )
        self._next_session_id += 1
        self._index(session)
        self._fund(session)

        self._notifications.emit(
            EventKind.SESSION_CREATED,
            sender,
            {
                "session_id": session.session_id,
                "depositor": sender,
                "host": host,
                "asset": asset,
                "deposit_amount": amount,
                "price_per_unit": price_per_unit,
                "max_duration": max_duration,
                "proof_interval": proof_interval,
                "fee_basis_points": session.fee_basis_points,
                "funding_source": funding.value,
                "model_id": model_id,
            },
            now,
        )
        logger.info("session %d opened by %s with host %s", session.session_id, sender, host)
        return session.session_id

    def _fund(self, session: Session) -> None:
        asset, sender, amount = session.asset, session.depositor, session.deposit_amount
        if session.funding_source == FundingSource.DEPOSIT:
            self.escrow.debit(sender, asset, amount)
        elif is_native(asset):
            if self._vault.balance_of(sender, asset) < amount:
                raise InsufficientFundsError(
                    f"Attached value {amount} exceeds wallet balance of {sender}",
                    reason="insufficient_payment",
                )
            self._vault.transfer(asset, sender, self._address, amount)
        else:
            self._vault.transfer_from(asset, self._address, sender, self._address, amount)

    def _finish(
        self, session: Session, status: SessionStatus, sender: str, now: int,
    ) -> SettlementBreakdown:
        session.transition_to(status)
        session.end_time = now
        session.settled_by = sender
        split = self.settlement.settle(session, now)

        kind = (
            EventKind.SESSION_COMPLETED
            if status == SessionStatus.COMPLETED
            else EventKind.SESSION_TIMED_OUT
        )
        payload: Dict[str, Any] = {
            "session_id": session.session_id,
            "depositor": session.depositor,
            "host": session.host,
            "asset": session.asset,
            "settled_by": sender,
            "content_ref": session.content_ref,
        }
        payload.update(split.to_dict())
        self._notifications.emit(kind, sender, payload, now)
        return split

    def _configure(
        self,
        sender: str,
        setting: str,
        value: Any,
        now: Optional[int],
        apply: Callable[[str], MarketplaceConfig],
    ) -> None:
        sender = normalize_address(sender, "sender")
        apply(sender)
        self._notifications.emit(
            EventKind.CONFIG_UPDATED,
            sender,
            {"setting": setting, "value": value},
            resolve_now(now),
        )

    def _index(self, session: Session) -> None:
        self._sessions[session.session_id] = session
        self._by_depositor.setdefault(session.depositor, []).append(session.session_id)
        self._by_host.setdefault(session.host, []).append(session.session_id)

    def _require_session(self, session_id: int) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise ValidationError(f"Unknown session: {session_id}", reason="unknown_session")
        return session

    def _require_active(self, session_id: int) -> Session:
        session = self._require_session(session_id)
        if not session.is_active:
            raise StateError(
                f"Session {session_id} is {session.status.value}",
                reason="session_not_active",
            )
        return session

    @staticmethod
    def _lookup(index: Dict[str, List[int]], account: str) -> List[int]:
        """Session ids indexed under ``account``; empty for invalid input."""
        if not isinstance(account, str) or not Web3.is_address(account):
            return []
        return list(index.get(Web3.to_checksum_address(account), []))

    @staticmethod
    def _token(asset: str) -> str:
        asset = normalize_address(asset, "asset")
        if is_native(asset):
            raise ValidationError(
                "Token variants require a token asset; attach native value instead",
                reason="invalid_asset",
            )
        return asset

    @staticmethod
    def _check_range(name: str, value: int, low: int, high: int) -> None:
        if not is_amount(value) or not low <= value <= high:
            raise ValidationError(
                f"{name} {value!r} outside [{low}, {high}]", reason=f"invalid_{name}",
            )
