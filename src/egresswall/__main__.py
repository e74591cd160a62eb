"""egresswall CLI entry point.

Invoked with no arguments from the container's post-start hook (via a
sudoers entry scoped to this command), it runs ``init``.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from egresswall.commands import DryRunRunner, run
from egresswall.config import load_config
from egresswall.controller import IptablesController
from egresswall.errors import FirewallError
from egresswall.pipeline import FirewallInitializer
from egresswall.verify import HttpProber, verify_allowed, verify_blocked


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _init(args) -> int:
    config = load_config(args.config)
    runner = run
    if args.dry_run:
        runner = DryRunRunner()
        config = config.model_copy(update={"verify_enabled": False})

    initializer = FirewallInitializer(
        config,
        IptablesController(runner),
        runner=runner,
        check_tools=not args.dry_run,
    )
    report = initializer.run()

    if args.report:
        args.report.parent.mkdir(parents=True, exist_ok=True)
        args.report.write_text(report.model_dump_json(indent=2))

    if report.exit_code != 0:
        stage = report.failed_stage.value if report.failed_stage else "unknown"
        print(
            f"ERROR: firewall initialization failed at stage '{stage}': {report.reason}",
            file=sys.stderr,
        )
    return report.exit_code


def _status(args) -> int:
    config = load_config(args.config)
    snapshot = IptablesController().status(config.ipset_name)

    for name in ("INPUT", "OUTPUT", "FORWARD"):
        chain = snapshot.chains.get(name)
        if chain is None:
            print(f"  {name:<8} missing")
        else:
            print(f"  {name:<8} policy={chain.policy:<6} rules={chain.rules}")

    if not snapshot.set_exists:
        print(f"  ipset {config.ipset_name}: not found")
        return 1
    print(f"  ipset {config.ipset_name}: {len(snapshot.set_members)} members")
    return 0


def _verify(args) -> int:
    config = load_config(args.config)
    prober = HttpProber()
    verify_blocked(prober, config.verify_blocked_url, config.verify_timeout)
    verify_allowed(prober, config.verify_allowed_url, config.verify_timeout)
    return 0


_COMMANDS = ("init", "status", "verify")


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a YAML config file (default: $EGRESSWALL_CONFIG or /etc/egresswall/config.yaml)",
    )
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="egresswall",
        description="Default-deny egress firewall initializer for development containers",
    )
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init", help="Apply the egress allow-list (default)")
    _add_common(init_parser)
    init_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the iptables/ipset commands instead of running them; skip verification",
    )
    init_parser.add_argument(
        "--report",
        type=Path,
        default=None,
        help="Write a JSON run report to this path",
    )

    status_parser = subparsers.add_parser("status", help="Show chain policies and allow-list size")
    _add_common(status_parser)

    verify_parser = subparsers.add_parser("verify", help="Re-run the reachability self-test")
    _add_common(verify_parser)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    argv = sys.argv[1:] if argv is None else list(argv)
    # Bare invocation and bare options mean "init".
    if not argv or argv[0] not in _COMMANDS + ("-h", "--help"):
        argv = ["init", *argv]
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)

    handlers = {"init": _init, "status": _status, "verify": _verify}
    try:
        return handlers[args.command](args)
    except FirewallError as exc:
        stage = exc.stage or args.command
        print(f"ERROR [{stage}]: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
