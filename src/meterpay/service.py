"""Marketplace service: unified facade for the settlement engine.

This is the primary interface for programmatic access to meterpay.
It wires the marketplace to its collaborators and adds what the core
deliberately leaves out:
- Typed results: every operation returns a ServiceResult, never raises
  for a rejected request.
- Audit trail: notifications emitted by a committed operation are
  appended to the durable EventLog.
- Persistence: the full state is written to the StateStore after each
  committed operation.

Ordering per operation:
1. The marketplace runs the operation atomically (rejections leave no trace).
2. Its notifications are appended to the event log. If that fails the
   in-memory state is rolled back and the operation reports failure.
3. State is persisted. The audit trail is already durable at this point,
   so a failure here only marks persistence as degraded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from meterpay.assets.vault import NATIVE_ASSET, InMemoryVault, is_native, normalize_address
from meterpay.errors import MarketplaceError
from meterpay.marketplace import SessionMarketplace
from meterpay.models.session import Session
from meterpay.persistence.event_log import EventLog, EventRecord
from meterpay.persistence.state_store import StateStore
from meterpay.policy.config import ConfigAuthority, MarketplaceConfig
from meterpay.proof.signing import SignatureLike
from meterpay.registry.capability import StaticHostRegistry, StaticModelRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


class MarketplaceService:
    """Facade over SessionMarketplace with audit and persistence.

    Usage:
        config = MarketplaceConfig.from_config_dir(config_dir)
        service = MarketplaceService(config)

        service.register_host(host, default_min_price=50)
        service.mint(alice, NATIVE_ASSET, 10**18)
        result = service.create_session(alice, host, price_per_unit=100,
                                        max_duration=3600, proof_interval=60,
                                        amount=10**6)
        sid = result.data["session_id"]
        service.submit_proof(relayer, sid, 3000, "ipfs://...", signature)
        service.complete_session(alice, sid)

    Persistence (optional):
        service = MarketplaceService(config, event_log=log, state_store=store)
        # State is persisted on each mutation and loaded on construction.
    """

    def __init__(
        self,
        config: MarketplaceConfig,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
        vault: Optional[InMemoryVault] = None,
        hosts: Optional[StaticHostRegistry] = None,
        models: Optional[StaticModelRegistry] = None,
    ) -> None:
        self._authority = ConfigAuthority(config)
        self._vault = vault if vault is not None else InMemoryVault()
        self._hosts = hosts if hosts is not None else StaticHostRegistry()
        self._models = models if models is not None else StaticModelRegistry()
        self._marketplace = SessionMarketplace(
            self._authority, self._hosts, self._models, self._vault,
        )

        self._event_log = event_log
        self._state_store = state_store

        # Load persisted state or start fresh
        if state_store is not None:
            state = state_store.load()
            if state is not None:
                self._import_state(state)

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0

        # Set when a StateStore write fails after events were committed.
        self._persistence_degraded: bool = False

    @property
    def marketplace(self) -> SessionMarketplace:
        return self._marketplace

    @property
    def vault(self) -> InMemoryVault:
        return self._vault

    @property
    def persistence_degraded(self) -> bool:
        return self._persistence_degraded

    # ------------------------------------------------------------------
    # Wallet-side actions (funding, approvals)
    # ------------------------------------------------------------------

    def mint(self, account: str, asset: str, amount: int) -> ServiceResult:
        """Fund a wallet (faucet). Not part of the marketplace itself."""
        return self._execute(
            lambda: self._vault.mint(account, asset, amount),
            lambda _: {
                "account": normalize_address(account),
                "balance": self.wallet_balance(account, asset),
            },
        )

    def approve(self, owner: str, asset: str, amount: int) -> ServiceResult:
        """Allow the marketplace to pull ``amount`` of a token from ``owner``."""
        return self._execute(
            lambda: self._vault.approve(owner, self._marketplace.address, asset, amount),
            lambda _: {"allowance": amount},
        )

    def wallet_balance(self, account: str, asset: str) -> int:
        return self._vault.balance_of(
            normalize_address(account), normalize_address(asset, "asset"),
        )

    # ------------------------------------------------------------------
    # Registry administration
    # ------------------------------------------------------------------

    def register_host(self, host: str, default_min_price: int = 1) -> ServiceResult:
        return self._execute(
            lambda: self._hosts.register(host, default_min_price),
            lambda _: {"host": normalize_address(host, "host")},
        )

    def set_host_model_price(self, host: str, model_id: str, min_price: int) -> ServiceResult:
        return self._execute(
            lambda: self._hosts.set_model_price(host, model_id, min_price),
        )

    def approve_model(self, model_id: str) -> ServiceResult:
        return self._execute(lambda: self._models.approve(model_id))

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def deposit(
        self, sender: str, asset: str, amount: int, now: Optional[int] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._marketplace.escrow.deposit(sender, asset, amount, now=now),
            lambda balance: {"balance": balance},
        )

    def withdraw(
        self, sender: str, asset: str, amount: int, now: Optional[int] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._marketplace.escrow.withdraw(sender, asset, amount, now=now),
            lambda balance: {"balance": balance},
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        sender: str,
        host: str,
        price_per_unit: int,
        max_duration: int,
        proof_interval: int,
        amount: int,
        asset: str = NATIVE_ASSET,
        model_id: Optional[str] = None,
        from_deposit: bool = False,
        now: Optional[int] = None,
    ) -> ServiceResult:
        """Open a session, choosing the creation variant from the arguments.

        from_deposit draws on the escrow balance; otherwise native assets
        are attached as value and tokens pulled through the allowance.
        """
        market = self._marketplace

        def _create() -> int:
            if from_deposit:
                return market.create_session_from_deposit(
                    sender, host, asset, amount, price_per_unit, max_duration,
                    proof_interval, model_id=model_id, now=now,
                )
            native = is_native(normalize_address(asset, "asset"))
            if model_id is None and native:
                return market.create_session(
                    sender, host, price_per_unit, max_duration, proof_interval,
                    value=amount, now=now,
                )
            if model_id is None:
                return market.create_session_with_token(
                    sender, host, asset, amount, price_per_unit, max_duration,
                    proof_interval, now=now,
                )
            if native:
                return market.create_session_for_model(
                    sender, host, model_id, price_per_unit, max_duration,
                    proof_interval, value=amount, now=now,
                )
            return market.create_session_for_model_with_token(
                sender, host, model_id, asset, amount, price_per_unit,
                max_duration, proof_interval, now=now,
            )

        return self._execute(_create, lambda sid: {"session_id": sid})

    def submit_proof(
        self,
        sender: str,
        session_id: int,
        claimed_units: int,
        content_ref: str,
        signature: SignatureLike,
        now: Optional[int] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._marketplace.submit_proof(
                sender, session_id, claimed_units, content_ref, signature, now=now,
            ),
            lambda claim: claim.to_dict(),
        )

    def complete_session(
        self,
        sender: str,
        session_id: int,
        content_ref: str = "",
        now: Optional[int] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._marketplace.complete_session(
                sender, session_id, content_ref=content_ref, now=now,
            ),
            lambda split: {"session_id": session_id, **split.to_dict()},
        )

    def trigger_timeout(
        self, sender: str, session_id: int, now: Optional[int] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._marketplace.trigger_timeout(sender, session_id, now=now),
            lambda split: {"session_id": session_id, **split.to_dict()},
        )

    def get_session(self, session_id: int) -> Optional[Session]:
        return self._marketplace.get_session(session_id)

    # ------------------------------------------------------------------
    # Earnings and treasury
    # ------------------------------------------------------------------

    def withdraw_earnings(
        self,
        sender: str,
        asset: str,
        amount: Optional[int] = None,
        now: Optional[int] = None,
    ) -> ServiceResult:
        """Withdraw ``amount`` of host earnings, or everything if None."""
        earnings = self._marketplace.earnings
        if amount is None:
            return self._execute(
                lambda: earnings.withdraw_all(sender, asset, now=now),
                lambda paid: {"withdrawn": paid},
            )
        return self._execute(
            lambda: earnings.withdraw(sender, asset, amount, now=now),
            lambda remaining: {"withdrawn": amount, "balance": remaining},
        )

    def withdraw_earnings_multiple(
        self, sender: str, assets: Iterable[str], now: Optional[int] = None,
    ) -> ServiceResult:
        assets = list(assets)
        return self._execute(
            lambda: self._marketplace.earnings.withdraw_multiple(sender, assets, now=now),
            lambda paid: {"withdrawn": paid},
        )

    def withdraw_treasury(
        self, sender: str, asset: str, now: Optional[int] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._marketplace.withdraw_treasury(sender, asset, now=now),
            lambda paid: {"withdrawn": paid},
        )

    # ------------------------------------------------------------------
    # Configuration (owner only)
    # ------------------------------------------------------------------

    def set_fee_rate(
        self, sender: str, fee_basis_points: int, now: Optional[int] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._marketplace.set_fee_rate(sender, fee_basis_points, now=now),
            lambda _: {"fee_basis_points": self._authority.current.fee_basis_points},
        )

    def set_dispute_window(
        self, sender: str, seconds: int, now: Optional[int] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._marketplace.set_dispute_window(sender, seconds, now=now),
            lambda _: {"dispute_window": self._authority.current.dispute_window},
        )

    def set_asset_limits(
        self,
        sender: str,
        asset: str,
        min_deposit: int,
        max_deposit: int,
        now: Optional[int] = None,
    ) -> ServiceResult:
        return self._execute(
            lambda: self._marketplace.set_asset_limits(
                sender, asset, min_deposit, max_deposit, now=now,
            ),
        )

    # ------------------------------------------------------------------
    # Status and invariants
    # ------------------------------------------------------------------

    def check_invariants(self) -> ServiceResult:
        """Run the solvency check. success is False if any violation."""
        violations = self._marketplace.check_solvency()
        return ServiceResult(success=not violations, errors=violations)

    def balances(self, account: str) -> dict[str, dict[str, int]]:
        """Wallet, escrow and earnings balances of ``account`` per asset."""
        account = normalize_address(account)
        market = self._marketplace
        return {
            asset: {
                "wallet": self._vault.balance_of(account, asset),
                "escrow": market.escrow.balance_of(account, asset),
                "earnings": market.earnings.balance_of(account, asset),
            }
            for asset in market.tracked_assets()
        }

    def status(self) -> dict[str, Any]:
        market = self._marketplace
        config = self._authority.current
        counts: dict[str, int] = {}
        for sid in range(1, market.session_count + 1):
            session = market.get_session(sid)
            if session is not None:
                counts[session.status.value] = counts.get(session.status.value, 0) + 1
        return {
            "sessions": {"total": market.session_count, "by_status": counts},
            "config": {
                "fee_basis_points": config.fee_basis_points,
                "dispute_window": config.dispute_window,
                "timeout_multiplier": config.timeout_multiplier,
                "accepted_assets": config.accepted_assets,
            },
            "treasury": {
                asset: market.treasury.balance_of(asset)
                for asset in market.tracked_assets()
            },
            "events": self._event_log.count if self._event_log is not None else 0,
            "persistence_degraded": self._persistence_degraded,
            "solvency_violations": market.check_solvency(),
        }

    def export_state(self) -> dict[str, Any]:
        return {
            "marketplace": self._marketplace.export_state(),
            "vault": self._vault.export_state(),
            "hosts": self._hosts.export_state(),
            "models": self._models.export_state(),
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _participants(self) -> tuple:
        return self._marketplace._participants()

    def _execute(
        self,
        operation: Callable[[], Any],
        describe: Optional[Callable[[Any], dict[str, Any]]] = None,
    ) -> ServiceResult:
        """Run ``operation``, record its events, persist state."""
        mark = self._marketplace.notifications.count
        snapshots = [(p, p.snapshot()) for p in self._participants()]
        try:
            outcome = operation()
        except MarketplaceError as e:
            return ServiceResult(
                success=False,
                errors=[str(e)],
                data={"error": e.kind, "reason": e.reason},
            )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

        def _rollback() -> None:
            for participant, snap in reversed(snapshots):
                participant.restore(snap)

        err = self._record_events(since=mark, on_rollback=_rollback)
        if err:
            return ServiceResult(success=False, errors=[err])

        data = describe(outcome) if describe is not None else {}
        warning = self._safe_persist_post_audit()
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record_events(
        self, since: int, on_rollback: Callable[[], None],
    ) -> Optional[str]:
        """Append notifications emitted after ``since`` to the event log.

        Returns an error string (after rolling back) or None.
        """
        if self._event_log is None:
            return None
        try:
            for item in self._marketplace.notifications.since(since):
                self._event_log.append(
                    EventRecord.create(
                        event_id=self._next_event_id(),
                        event_kind=item.kind,
                        actor_id=item.actor,
                        payload=item.payload,
                        timestamp=item.timestamp,
                    )
                )
        except (OSError, ValueError) as e:
            on_rollback()
            logger.error("event log append failed: %s", e)
            return f"Audit-trail failure: {e}"
        return None

    def _persist_state(self) -> None:
        if self._state_store is None:
            return
        self._state_store.save(self.export_state())

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist state after audit events have been committed.

        Must not roll back in-memory state: the audit trail is already
        durable. Sets the degraded flag and returns a warning instead.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("state persistence degraded: %s", e)
            return f"Persistence degraded: {e} (events committed, state store is stale)"

    def _import_state(self, state: dict[str, Any]) -> None:
        market_state = state.get("marketplace", {})
        if "config" in market_state:
            self._authority.restore(MarketplaceConfig.from_dict(market_state["config"]))
        self._vault.import_state(state.get("vault", {}))
        self._hosts.import_state(state.get("hosts", {}))
        self._models.import_state(state.get("models", []))
        self._marketplace.import_state(market_state)
        logger.info("loaded state: %d sessions", self._marketplace.session_count)
