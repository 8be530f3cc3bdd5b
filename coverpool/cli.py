#!/usr/bin/env python3
"""
COVERPOOL Unified CLI

Command-line interface for a COVERPOOL ledger persisted in a JSON state file.
Every mutating command loads the state, runs exactly one ledger operation and
writes the state back. A failed operation leaves the file untouched.

Usage:
    coverpool [--state FILE] <command> [options]

Commands:
    init        Create a pool with its Issuer and ClaimsAuthority principals
    create      Issue an inactive policy (Issuer)
    activate    Fund and activate a policy (holder)
    reimburse   Pay out a claim (ClaimsAuthority)
    fund        Deposit funds straight into custody
    quote       Premium quote for new coverage
    show        Show one policy
    list        List policies
    exposure    Aggregate exposure and custody balance
    events      Event log, optionally verifying its hash chain
    config      Configuration management

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

import yaml

from coverpool import __version__
from coverpool.config import ConfigError, get_config_manager
from coverpool.hardening import PoolError
from coverpool.observability import (
    PoolLayer,
    configure_logging,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)

logger = get_logger("cli", PoolLayer.CLI)

DEFAULT_STATE_FILE = "coverpool-state.json"


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    else:
        return str(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, dict) and len(data) == 1:
        only = next(iter(data.values()))
        if isinstance(only, list):
            data = only
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:40] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


class CoverpoolCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="coverpool",
            description="COVERPOOL custodial coverage ledger CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"coverpool {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--state", "-s",
            default=os.environ.get("COVERPOOL_STATE", DEFAULT_STATE_FILE),
            help=f"Pool state file (default: $COVERPOOL_STATE or {DEFAULT_STATE_FILE})",
        )
        self.parser.add_argument(
            "--config", "-c",
            help="YAML configuration file, applied after coverpool.yaml and ~/.coverpool/config.yaml",
        )
        self.parser.add_argument(
            "--now",
            type=int,
            help="Override the ledger clock (UNIX seconds)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress non-essential output",
        )

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_pool_commands()
        self._register_policy_commands()
        self._register_query_commands()
        self._register_config_commands()

    def _register_pool_commands(self) -> None:
        init = self.subparsers.add_parser("init", help="Create a new pool state file")
        init.add_argument("--issuer", required=True, help="Issuer principal identity")
        init.add_argument("--claims-authority", required=True, help="ClaimsAuthority principal identity")
        init.add_argument("--term-seconds", type=int, help="Policy term (default from config)")
        init.add_argument("--refund-excess", action="store_true", default=None,
                          help="Return activation funds above the required deposit")
        init.add_argument("--public-quotes", action="store_true",
                          help="Allow any caller to request premium quotes")
        init.add_argument("--force", action="store_true", help="Overwrite an existing state file")

        fund = self.subparsers.add_parser("fund", help="Deposit funds into custody")
        fund.add_argument("--caller", required=True)
        fund.add_argument("--amount", type=int, required=True)

    def _register_policy_commands(self) -> None:
        create = self.subparsers.add_parser("create", help="Issue an inactive policy")
        create.add_argument("--caller", required=True, help="Issuer identity")
        create.add_argument("--holder", required=True)
        create.add_argument("--deposit", type=int, required=True, help="Deposit the holder must exceed")
        create.add_argument("--secured", type=int, required=True, help="Maximum claim")
        create.add_argument("--doc-ref", required=True, help="Content identifier of the policy document")

        activate = self.subparsers.add_parser("activate", help="Fund and activate a policy")
        activate.add_argument("--caller", required=True, help="Holder identity")
        activate.add_argument("--policy-id", type=int, required=True)
        activate.add_argument("--funds", type=int, required=True)

        reimburse = self.subparsers.add_parser("reimburse", help="Pay out a claim")
        reimburse.add_argument("--caller", required=True, help="ClaimsAuthority identity")
        reimburse.add_argument("--holder", required=True)
        reimburse.add_argument("--policy-id", type=int, required=True)
        reimburse.add_argument("--amount", type=int, required=True)

    def _register_query_commands(self) -> None:
        quote = self.subparsers.add_parser("quote", help="Premium quote")
        quote.add_argument("--caller", required=True)
        quote.add_argument("--secured", type=int, required=True)

        show = self.subparsers.add_parser("show", help="Show one policy")
        show.add_argument("--holder", required=True)
        show.add_argument("--policy-id", type=int, required=True)

        lst = self.subparsers.add_parser("list", help="List policies")
        lst.add_argument("--holder", help="Only this holder's policies")

        self.subparsers.add_parser("exposure", help="Aggregate exposure and custody balance")

        events = self.subparsers.add_parser("events", help="Event log")
        events.add_argument("--holder", help="Only events for this holder")
        events.add_argument("--verify", action="store_true", help="Verify the hash chain")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        get = config_sub.add_parser("get", help="Get a config value")
        get.add_argument("path", help="Dotted path, e.g. policy.term_seconds")
        config_sub.add_parser("show", help="Show effective configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        set_correlation_id(generate_correlation_id())
        try:
            manager = get_config_manager()
            manager.load_defaults()
            if parsed.config:
                manager.load_from_file(parsed.config)
            configure_logging(
                level="error" if parsed.quiet else manager.get("observability.log_level"),
                fmt=manager.get("observability.log_format"),
            )

            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except PoolError as e:
            if not parsed.quiet:
                print(f"Error [{e.code}]: {e}", file=sys.stderr)
            return 2

        except (CLIError, ConfigError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return getattr(e, "exit_code", 1)

        except Exception as e:
            logger.error("Unhandled CLI failure", error_code="internal", exc_info=True, command=parsed.command)
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # State helpers
    def _clock(self, args: argparse.Namespace):
        if args.now is None:
            return None
        return lambda: args.now

    def _load(self, args: argparse.Namespace):
        from coverpool.state import StateError, load_state

        try:
            return load_state(Path(args.state), clock=self._clock(args))
        except StateError as e:
            raise CLIError(str(e)) from e

    def _save(self, args: argparse.Namespace, ledger) -> str:
        from coverpool.state import save_state
        return save_state(Path(args.state), ledger)

    # Pool handlers
    def _handle_init(self, args: argparse.Namespace) -> Any:
        from coverpool.ledger import PolicyLedger
        from coverpool.security import AuthorizationGate

        path = Path(args.state)
        if path.exists() and not args.force:
            raise CLIError(f"State file already exists: {path} (use --force to overwrite)")

        gate = AuthorizationGate(issuer=args.issuer, claims_authority=args.claims_authority)
        ledger = PolicyLedger(
            gate,
            clock=self._clock(args),
            term_seconds=args.term_seconds,
            quote_requires_issuer=False if args.public_quotes else None,
            refund_excess=args.refund_excess,
        )
        digest = self._save(args, ledger)
        logger.info("Pool initialized", operation="init", state=str(path))
        return {"state": str(path), "principals": gate.to_dict(), "digest": digest}

    def _handle_fund(self, args: argparse.Namespace) -> Any:
        ledger = self._load(args)
        balance = ledger.fund(args.caller, args.amount)
        self._save(args, ledger)
        return {"custody_balance": balance}

    # Policy handlers
    def _handle_create(self, args: argparse.Namespace) -> Any:
        ledger = self._load(args)
        policy_id = ledger.create(args.caller, args.holder, args.deposit, args.secured, args.doc_ref)
        self._save(args, ledger)
        return ledger.read_policy(args.holder, policy_id).to_dict()

    def _handle_activate(self, args: argparse.Namespace) -> Any:
        ledger = self._load(args)
        receipt = ledger.activate(args.caller, args.policy_id, args.funds)
        self._save(args, ledger)
        out = ledger.read_policy(args.caller, args.policy_id).to_dict()
        out["excess_refunded"] = receipt.excess_refunded
        out["total_secured_amount"] = ledger.total_secured_amount
        return out

    def _handle_reimburse(self, args: argparse.Namespace) -> Any:
        ledger = self._load(args)
        ledger.reimburse(args.caller, args.amount, args.holder, args.policy_id)
        self._save(args, ledger)
        out = ledger.read_policy(args.holder, args.policy_id).to_dict()
        out["paid"] = args.amount
        out["total_secured_amount"] = ledger.total_secured_amount
        return out

    # Query handlers
    def _handle_quote(self, args: argparse.Namespace) -> Any:
        return self._load(args).quote(args.caller, args.secured).to_dict()

    def _handle_show(self, args: argparse.Namespace) -> Any:
        return self._load(args).read_policy(args.holder, args.policy_id).to_dict()

    def _handle_list(self, args: argparse.Namespace) -> Any:
        ledger = self._load(args)
        policies = ledger.policies_of(args.holder) if args.holder else ledger.all_policies()
        return {"policies": [p.to_dict() for p in policies]}

    def _handle_exposure(self, args: argparse.Namespace) -> Any:
        ledger = self._load(args)
        return {
            "total_secured_amount": ledger.total_secured_amount,
            "custody_balance": ledger.custody.balance(),
            "holders": len(ledger.holders()),
        }

    def _handle_events(self, args: argparse.Namespace) -> Any:
        ledger = self._load(args)
        records = ledger.events.records(holder=args.holder)
        out: dict = {"events": [r.to_dict() for r in records]}
        if args.verify:
            ok, bad_index = ledger.events.verify_chain()
            out["chain_valid"] = ok
            if not ok:
                out["first_invalid_index"] = bad_index
        return out

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        return {"path": args.path, "value": get_config_manager().get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        if errors:
            raise CLIError("; ".join(errors))
        return {"valid": True}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()


def main() -> int:
    """CLI entry point."""
    cli = CoverpoolCLI()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
