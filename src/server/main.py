#!/usr/bin/env python
"""
wgfleet Command Line Entry Point

Administrative commands for the interface fleet: discovery and sync,
lifecycle, peers, MTU probing, profiles and backups. Results are printed
as JSON.
"""

import sys
import os
import json
import argparse
from datetime import datetime, timezone
from typing import Any, List, Optional

# add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from src.common.errors import FleetError
from src.common.logging import configure_logging
from src.common.models import Provider
from src.server.config import get_settings
from src.server.context import ServiceContext, build_context
import structlog


def _mtu_list(value: str) -> List[int]:
    try:
        return [int(v) for v in value.split(",") if v.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma separated integers, got {value!r}")


def _provider(value: str) -> Provider:
    try:
        return Provider(value.upper())
    except ValueError:
        choices = ", ".join(p.value for p in Provider)
        raise argparse.ArgumentTypeError(f"unknown provider {value!r} (choose from {choices})")


def _timestamp(value: str) -> datetime:
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an ISO 8601 time, got {value!r}")
    # times without an offset are UTC
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="wgfleet",
        description="wgfleet - WireGuard interface fleet manager"
    )

    # logging settings
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from WGFLEET_LOG_LEVEL or INFO)"
    )
    parser.add_argument(
        "--log-file",
        help="Optional log file path"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # discovery and sync
    sub.add_parser("discover", help="List live interfaces following the naming convention")
    sub.add_parser("sync-all", help="Sync every discovered interface from its config file")
    p = sub.add_parser("sync", help="Sync one interface from its config file")
    p.add_argument("interface")

    # lifecycle
    for name, text in (("start", "Bring an interface up"),
                       ("stop", "Bring an interface down"),
                       ("restart", "Restart an interface")):
        p = sub.add_parser(name, help=text)
        p.add_argument("interface")

    p = sub.add_parser("create", help="Provision a new interface")
    p.add_argument("interface")
    p.add_argument("--address", help="Server address in CIDR notation")
    p.add_argument("--port", type=int, help="Listen port")
    p.add_argument("--mtu", type=int, help="Interface MTU")
    p.add_argument("--dns", help="Comma separated DNS servers")
    p.add_argument("--provider", type=_provider, default=Provider.UNKNOWN)
    p.add_argument("--start", action="store_true", help="Bring the interface up afterwards")

    p = sub.add_parser("delete", help="Remove an interface with its peers and config file")
    p.add_argument("interface")

    # peers
    p = sub.add_parser("add-peer", help="Create a peer on an interface")
    p.add_argument("interface")
    p.add_argument("name")
    p.add_argument("--preshared-key", action="store_true", help="Generate a preshared key")
    p.add_argument("--keepalive", type=int, help="Persistent keepalive seconds")
    p.add_argument("--data-limit", type=int, default=0, help="Monthly transfer allowance in bytes (0 for none)")
    p.add_argument("--expires", type=_timestamp, help="ISO 8601 time after which the peer expires")

    p = sub.add_parser("peers", help="List the peers of an interface")
    p.add_argument("interface")
    p = sub.add_parser("usage", help="Address usage of an interface subnet")
    p.add_argument("interface")

    for name, text in (("enable-peer", "Enable a peer"),
                       ("disable-peer", "Disable a peer without deleting it"),
                       ("delete-peer", "Delete a peer"),
                       ("rotate-keys", "Replace a peer's key pair"),
                       ("client-config", "Print a peer's client configuration")):
        p = sub.add_parser(name, help=text)
        p.add_argument("peer_id")

    p = sub.add_parser("peer-limits", help="Set a peer's transfer allowance or expiry")
    p.add_argument("peer_id")
    p.add_argument("--data-limit", type=int, help="Monthly transfer allowance in bytes (0 for none)")
    p.add_argument("--expires", type=_timestamp, help="ISO 8601 time after which the peer expires")
    p = sub.add_parser("reset-usage", help="Start a new transfer allowance period for a peer")
    p.add_argument("peer_id")
    sub.add_parser("disable-expired", help="Disable every peer past its expiry time")
    sub.add_parser("rotation-due", help="List peers whose keys are due for rotation")

    # mtu probing
    p = sub.add_parser("test-mtu", help="Sweep candidate MTUs over a live interface")
    p.add_argument("interface")
    p.add_argument("--candidates", type=_mtu_list, help="Comma separated MTUs (default: 1280-1500 step 20)")
    p.add_argument("--host", help="Ping target")
    p.add_argument("--record-profile", help="Store the matching sample on this profile")

    # profiles
    p = sub.add_parser("profiles", help="List MTU profiles")
    p.add_argument("--provider", type=_provider)
    sub.add_parser("init-profiles", help="Create default profiles for every provider")
    p = sub.add_parser("generate-profiles", help="Create the standard profile sweep for a provider")
    p.add_argument("provider", type=_provider)
    p.add_argument("--base-mtu", type=int)
    p = sub.add_parser("set-default", help="Make a profile its provider's default")
    p.add_argument("profile")
    p = sub.add_parser("apply-profile", help="Apply a profile to an interface")
    p.add_argument("profile")
    p.add_argument("interface")
    p = sub.add_parser("apply-preset", help="Apply a provider's preset to an interface")
    p.add_argument("interface")
    p.add_argument("provider", type=_provider)
    p = sub.add_parser("apply-preset-all", help="Apply a provider's preset to every interface")
    p.add_argument("provider", type=_provider)
    p = sub.add_parser("test-profile", help="Ping a host at a profile's MTU")
    p.add_argument("profile")
    p.add_argument("--host")
    p = sub.add_parser("compare-profiles", help="Compare two tested profiles")
    p.add_argument("first")
    p.add_argument("second")
    p = sub.add_parser("recommend", help="Best tested profile of a provider")
    p.add_argument("provider", type=_provider)
    sub.add_parser("analyze-profiles", help="Aggregate profile test results per provider")

    # backups
    p = sub.add_parser("backup", help="Write a backup of an interface")
    p.add_argument("interface")
    p = sub.add_parser("restore", help="Restore an interface from a backup file")
    p.add_argument("file")
    p = sub.add_parser("backups", help="List backup files")
    p.add_argument("interface", nargs="?")

    # reporting
    sub.add_parser("stats", help="Fleet statistics")
    sub.add_parser("health", help="Health check")

    return parser


def run_command(ctx: ServiceContext, args: argparse.Namespace) -> Any:
    """Run one parsed command and return its JSON-serializable result."""
    command = args.command

    if command == "discover":
        return ctx.reconciler.discover()
    if command == "sync-all":
        return ctx.reconciler.sync_all().to_dict()
    if command == "sync":
        record = ctx.reconciler.sync_one(args.interface)
        return record.to_public_dict() if record else None
    if command == "start":
        return ctx.reconciler.start(args.interface).to_public_dict()
    if command == "stop":
        return ctx.reconciler.stop(args.interface).to_public_dict()
    if command == "restart":
        return ctx.reconciler.restart(args.interface).to_public_dict()
    if command == "create":
        record = ctx.reconciler.create_interface(
            args.interface,
            address=args.address,
            listen_port=args.port,
            mtu=args.mtu,
            dns=[d.strip() for d in args.dns.split(",")] if args.dns else None,
            provider=args.provider,
            start=args.start,
        )
        return record.to_public_dict()
    if command == "delete":
        return {"interface": args.interface, "peers_removed": ctx.reconciler.delete_interface(args.interface)}

    if command == "add-peer":
        peer = ctx.peers.add_peer(
            args.interface,
            args.name,
            persistent_keepalive=args.keepalive,
            use_preshared_key=args.preshared_key,
            monthly_limit=args.data_limit,
            expires_at=args.expires,
        )
        return ctx.peers.view(peer)
    if command == "peers":
        return [ctx.peers.view(p) for p in ctx.peers.list_peers(args.interface)]
    if command == "usage":
        record = ctx.store.get_interface(args.interface)
        used = ctx.store.used_addresses(args.interface) + [record.server_ip]
        return ctx.allocator.usage(record.subnet, used)
    if command == "enable-peer":
        return ctx.peers.enable(args.peer_id).to_public_dict()
    if command == "disable-peer":
        return ctx.peers.disable(args.peer_id).to_public_dict()
    if command == "delete-peer":
        ctx.peers.delete(args.peer_id)
        return {"deleted": args.peer_id}
    if command == "rotate-keys":
        return ctx.peers.rotate_keys(args.peer_id).to_public_dict()
    if command == "client-config":
        return ctx.peers.client_config(args.peer_id)
    if command == "peer-limits":
        peer = ctx.peers.set_limits(args.peer_id, monthly_limit=args.data_limit, expires_at=args.expires)
        return ctx.peers.view(peer)
    if command == "reset-usage":
        return ctx.peers.view(ctx.peers.reset_data_limit(args.peer_id))
    if command == "disable-expired":
        return [p.name for p in ctx.peers.disable_expired()]
    if command == "rotation-due":
        return [ctx.peers.view(p) for p in ctx.peers.rotation_due()]

    if command == "test-mtu":
        record = ctx.store.get_interface(args.interface)
        kwargs = {"test_host": args.host, "provider": record.provider}
        if args.candidates:
            kwargs["candidates"] = args.candidates
        report = ctx.probe.run(args.interface, **kwargs)
        if args.record_profile:
            ctx.profiles.record_probe(args.record_profile, report)
        return report.model_dump(mode="json")

    if command == "profiles":
        return [p.model_dump(mode="json") for p in ctx.profiles.list_profiles(args.provider)]
    if command == "init-profiles":
        return ctx.profiles.init_defaults()
    if command == "generate-profiles":
        return [p.name for p in ctx.profiles.bulk_generate(args.provider, args.base_mtu)]
    if command == "set-default":
        return ctx.profiles.set_default(args.profile).model_dump(mode="json")
    if command == "apply-profile":
        return ctx.profiles.apply_to_interface(args.profile, args.interface)
    if command == "apply-preset":
        return ctx.profiles.apply_provider_preset(args.interface, args.provider)
    if command == "apply-preset-all":
        return ctx.profiles.bulk_apply_provider(args.provider)
    if command == "test-profile":
        return ctx.profiles.run_test(args.profile, args.host).model_dump(mode="json")
    if command == "compare-profiles":
        return ctx.profiles.compare(args.first, args.second)
    if command == "recommend":
        profile = ctx.profiles.recommended_for(args.provider)
        return profile.model_dump(mode="json") if profile else None
    if command == "analyze-profiles":
        return ctx.profiles.analyze_test_results()

    if command == "backup":
        snapshot, path = ctx.snapshots.create(args.interface)
        return {"file": str(path), "timestamp": snapshot.timestamp, "peers": len(snapshot.peers)}
    if command == "restore":
        record = ctx.snapshots.restore(ctx.snapshots.load(args.file))
        return record.to_public_dict()
    if command == "backups":
        return [str(p) for p in ctx.snapshots.list_backups(args.interface)]

    if command == "stats":
        return ctx.reconciler.statistics()
    if command == "health":
        return ctx.reconciler.health_check()

    raise ValueError(f"unknown command {command}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main command-line entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()

    # configure logging
    configure_logging(
        log_level=args.log_level or settings.LOG_LEVEL,
        log_file=args.log_file or settings.LOG_FILE,
        service_name="wgfleet"
    )

    logger = structlog.get_logger()

    try:
        ctx = build_context(settings)
        result = run_command(ctx, args)
    except FleetError as e:
        logger.error("command failed", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 1

    if isinstance(result, str):
        print(result, end="" if result.endswith("\n") else "\n")
    else:
        print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
