"""meterpay CLI: command-line interface for the settlement engine.

Usage:
    meterpay status
    meterpay mint --account 0xA11CE... --amount 1000000000000000000
    meterpay register-host --host 0xB0B... --min-price 50
    meterpay deposit --sender 0xA11CE... --amount 100000000000000000
    meterpay create-session --sender 0xA11CE... --host 0xB0B... --price 100 \
        --duration 3600 --interval 60 --amount 1000000
    meterpay submit-proof --sender 0xB0B... --session 1 --units 3000 --content-ref ipfs://...
    meterpay complete-session --sender 0xA11CE... --session 1
    meterpay check-invariants

Settings are read from the environment (and a .env file if present):
    METERPAY_CONFIG_DIR   directory holding marketplace_params.json
    METERPAY_DATA_DIR     directory for events.jsonl and state.json
    HOST_PRIVATE_KEY      key used by submit-proof when --signature is omitted
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from meterpay.assets.vault import NATIVE_ASSET
from meterpay.persistence.event_log import EventLog
from meterpay.persistence.state_store import StateStore
from meterpay.policy.config import MarketplaceConfig
from meterpay.proof.signing import sign_claim
from meterpay.registry.capability import model_id_for
from meterpay.service import MarketplaceService, ServiceResult


ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG = ROOT / "config"
DEFAULT_DATA = ROOT / "data"


def _make_service(config_dir: Path, data_dir: Path) -> MarketplaceService:
    """Create a MarketplaceService with durable persistence."""
    data_dir.mkdir(parents=True, exist_ok=True)
    config = MarketplaceConfig.from_config_dir(config_dir)
    event_log = EventLog(storage_path=data_dir / "events.jsonl")
    state_store = StateStore(storage_path=data_dir / "state.json")
    return MarketplaceService(config, event_log=event_log, state_store=state_store)


def _report(result: ServiceResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    print(json.dumps(service.status(), indent=2))
    return 0


def cmd_mint(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.mint(args.account, args.asset, args.amount))


def cmd_approve(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.approve(args.owner, args.asset, args.amount))


def cmd_register_host(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.register_host(args.host, args.min_price))


def cmd_approve_model(args: argparse.Namespace) -> int:
    if not args.model_id and not (args.repo and args.filename):
        print("Failed: pass --model-id or both --repo and --filename", file=sys.stderr)
        return 1
    service = _make_service(args.config, args.data)
    model_id = args.model_id or model_id_for(args.repo, args.filename)
    result = service.approve_model(model_id)
    if result.success:
        print(model_id)
        return 0
    return _report(result)


def cmd_deposit(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.deposit(args.sender, args.asset, args.amount))


def cmd_withdraw(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.withdraw(args.sender, args.asset, args.amount))


def cmd_create_session(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    result = service.create_session(
        sender=args.sender,
        host=args.host,
        price_per_unit=args.price,
        max_duration=args.duration,
        proof_interval=args.interval,
        amount=args.amount,
        asset=args.asset,
        model_id=args.model_id,
        from_deposit=args.from_deposit,
    )
    return _report(result)


def cmd_submit_proof(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    signature = args.signature
    if signature is None:
        key = os.getenv("HOST_PRIVATE_KEY")
        if not key:
            print("Failed: pass --signature or set HOST_PRIVATE_KEY", file=sys.stderr)
            return 1
        session = service.get_session(args.session)
        if session is None:
            print(f"Failed: unknown session {args.session}", file=sys.stderr)
            return 1
        signature = sign_claim(key, args.content_ref, session.host, args.units, args.session)
    result = service.submit_proof(
        args.sender, args.session, args.units, args.content_ref, signature,
    )
    return _report(result)


def cmd_complete_session(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.complete_session(args.sender, args.session, args.content_ref))


def cmd_trigger_timeout(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.trigger_timeout(args.sender, args.session))


def cmd_withdraw_earnings(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.withdraw_earnings(args.sender, args.asset, args.amount))


def cmd_withdraw_treasury(args: argparse.Namespace) -> int:
    service = _make_service(args.config, args.data)
    return _report(service.withdraw_treasury(args.sender, args.asset))


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Check the configuration file, then solvency of the stored state."""
    tools_dir = ROOT / "tools"
    sys.path.insert(0, str(tools_dir))
    from check_invariants import check

    if check(args.config) != 0:
        return 1
    service = _make_service(args.config, args.data)
    result = service.check_invariants()
    if result.success:
        print("Solvency check passed.")
        return 0
    print("Solvency check failed:")
    for err in result.errors:
        print(f"- {err}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meterpay",
        description="meterpay session settlement engine CLI",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.getenv("METERPAY_CONFIG_DIR", str(DEFAULT_CONFIG))),
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data",
        type=Path,
        default=Path(os.getenv("METERPAY_DATA_DIR", str(DEFAULT_DATA))),
        help="Path to data directory (default: data/)",
    )
    sub = parser.add_subparsers(dest="command")

    # status
    sub.add_parser("status", help="Show marketplace status")

    # mint
    p_mint = sub.add_parser("mint", help="Fund a wallet")
    p_mint.add_argument("--account", required=True)
    p_mint.add_argument("--asset", default=NATIVE_ASSET)
    p_mint.add_argument("--amount", required=True, type=int)

    # approve
    p_approve = sub.add_parser("approve", help="Approve the marketplace to pull a token")
    p_approve.add_argument("--owner", required=True)
    p_approve.add_argument("--asset", required=True)
    p_approve.add_argument("--amount", required=True, type=int)

    # register-host
    p_host = sub.add_parser("register-host", help="Register a host")
    p_host.add_argument("--host", required=True)
    p_host.add_argument("--min-price", type=int, default=1, help="Default minimum price per unit")

    # approve-model
    p_model = sub.add_parser("approve-model", help="Approve a model")
    p_model.add_argument("--model-id", help="0x-prefixed model id")
    p_model.add_argument("--repo", help="Model repository (with --filename)")
    p_model.add_argument("--filename", help="Model file name (with --repo)")

    # deposit / withdraw
    for name, text in (("deposit", "Deposit into escrow"), ("withdraw", "Withdraw from escrow")):
        p = sub.add_parser(name, help=text)
        p.add_argument("--sender", required=True)
        p.add_argument("--asset", default=NATIVE_ASSET)
        p.add_argument("--amount", required=True, type=int)

    # create-session
    p_create = sub.add_parser("create-session", help="Open a metered session")
    p_create.add_argument("--sender", required=True, help="Depositor address")
    p_create.add_argument("--host", required=True, help="Host address")
    p_create.add_argument("--price", required=True, type=int, help="Price per unit")
    p_create.add_argument("--duration", required=True, type=int, help="Max duration (seconds)")
    p_create.add_argument("--interval", required=True, type=int, help="Proof interval (seconds)")
    p_create.add_argument("--amount", required=True, type=int, help="Deposit amount")
    p_create.add_argument("--asset", default=NATIVE_ASSET)
    p_create.add_argument("--model-id", help="Bind the session to an approved model")
    p_create.add_argument(
        "--from-deposit", action="store_true", help="Fund from the escrow balance",
    )

    # submit-proof
    p_proof = sub.add_parser("submit-proof", help="Submit a host-signed consumption claim")
    p_proof.add_argument("--sender", required=True)
    p_proof.add_argument("--session", required=True, type=int)
    p_proof.add_argument("--units", required=True, type=int, help="Cumulative units consumed")
    p_proof.add_argument("--content-ref", required=True, help="Off-chain proof reference")
    p_proof.add_argument("--signature", help="0x-prefixed signature (default: sign with HOST_PRIVATE_KEY)")

    # complete-session
    p_complete = sub.add_parser("complete-session", help="Complete and settle a session")
    p_complete.add_argument("--sender", required=True)
    p_complete.add_argument("--session", required=True, type=int)
    p_complete.add_argument("--content-ref", default="", help="Final conversation reference")

    # trigger-timeout
    p_timeout = sub.add_parser("trigger-timeout", help="Time out and settle an abandoned session")
    p_timeout.add_argument("--sender", required=True)
    p_timeout.add_argument("--session", required=True, type=int)

    # withdraw-earnings
    p_earn = sub.add_parser("withdraw-earnings", help="Withdraw host earnings")
    p_earn.add_argument("--sender", required=True)
    p_earn.add_argument("--asset", default=NATIVE_ASSET)
    p_earn.add_argument("--amount", type=int, help="Amount (default: entire balance)")

    # withdraw-treasury
    p_treasury = sub.add_parser("withdraw-treasury", help="Sweep platform fees to the treasury")
    p_treasury.add_argument("--sender", required=True)
    p_treasury.add_argument("--asset", default=NATIVE_ASSET)

    # check-invariants
    sub.add_parser("check-invariants", help="Check configuration and solvency invariants")

    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "mint": cmd_mint,
        "approve": cmd_approve,
        "register-host": cmd_register_host,
        "approve-model": cmd_approve_model,
        "deposit": cmd_deposit,
        "withdraw": cmd_withdraw,
        "create-session": cmd_create_session,
        "submit-proof": cmd_submit_proof,
        "complete-session": cmd_complete_session,
        "trigger-timeout": cmd_trigger_timeout,
        "withdraw-earnings": cmd_withdraw_earnings,
        "withdraw-treasury": cmd_withdraw_treasury,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
