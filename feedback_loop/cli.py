"""
Command-line interface for the feedback loop audit trail.

Provides subcommands for verifying exported chains and the on-disk ledger,
exporting the ledger as a chain document, showing status, listing
journaled decisions and validating configuration.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import config
from .audit import chain
from .audit import journal
from .audit import ledger
from .logging_config import configure_logging


def _ledger_dir(args: argparse.Namespace) -> Path:
    if args.ledger_dir:
        return Path(args.ledger_dir)
    return Path(config.load_config(Path(args.config)).ledger_dir)


def _logging_settings(args: argparse.Namespace) -> config.LoggingConfig:
    # An invalid config is reported by the command itself
    try:
        return config.load_config(Path(args.config)).log
    except config.ConfigurationError:
        return config.LoggingConfig()


def _print_result(result: chain.VerificationResult, length: int) -> int:
    if result.valid:
        print(f"Chain valid: {length} entries")
        return 0
    print(f"Chain INVALID at index {result.invalid_index}: {result.reason}", file=sys.stderr)
    return 1


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify an exported chain document."""
    try:
        with open(args.document, 'r') as f:
            document = json.load(f)
    except (IOError, json.JSONDecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not isinstance(document, dict):
        print("Error: chain document must be a JSON object", file=sys.stderr)
        return 1

    result = chain.verify_document(document)
    return _print_result(result, len(document.get("entries") or []))


def cmd_verify_ledger(args: argparse.Namespace) -> int:
    """Verify the sealed entries in the ledger."""
    try:
        entries = ledger.read_sealed_entries(_ledger_dir(args))
    except (ledger.LedgerError, config.ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return _print_result(chain.verify_chain(entries), len(entries))


def cmd_export(args: argparse.Namespace) -> int:
    """Export the ledger as a versioned chain document."""
    try:
        entries = ledger.read_sealed_entries(_ledger_dir(args))
        document = chain.AuditChain.from_entries(entries).export_document()
    except (ledger.LedgerError, chain.ChainDocumentError, config.ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    text = json.dumps(document, indent=2, sort_keys=True)
    if args.output:
        output = Path(args.output)
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(text + "\n")
        print(f"Exported {document['chain_length']} entries to {output}")
    else:
        print(text)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show ledger status summary."""
    try:
        ledger_dir = _ledger_dir(args)
        entries = ledger.read_sealed_entries(ledger_dir)
        training = ledger.read_training_records(ledger_dir)
    except (ledger.LedgerError, config.ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    result = chain.verify_chain(entries)
    total_delta = sum(r.get("weight_delta") or 0.0 for r in training)

    print("Feedback Loop Audit Status")
    print("=" * 40)
    print(f"Ledger:            {ledger_dir}")
    print(f"Sealed entries:    {len(entries)}")
    print(f"Head hash:         {entries[-1].hash if entries else '(genesis)'}")
    print(f"Chain valid:       {'yes' if result.valid else 'NO'}")
    print(f"Training records:  {len(training)}")
    print(f"Total weight delta: {total_delta:.6f}")

    if args.verbose and training:
        print()
        print("Recent mutations:")
        for r in training[-10:]:
            print(
                f"  {r['mutation_id']}: {r.get('punished_source') or '-'} "
                f"error={r.get('error_magnitude', 0.0):.4f}"
            )
    return 0 if result.valid else 1


def cmd_decisions(args: argparse.Namespace) -> int:
    """List journaled decisions in the ledger."""
    try:
        entries = ledger.read_sealed_entries(_ledger_dir(args))
    except (ledger.LedgerError, config.ConfigurationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    decisions = [
        journal.DecisionRecord.from_payload(e.payload)
        for e in entries
        if journal.is_decision_entry(e)
    ]
    if args.ticker:
        decisions = [d for d in decisions if d.ticker == args.ticker]

    print(f"Decisions: {len(decisions)}")
    for d in decisions:
        print(f"  {d.id}  {d.timestamp.isoformat()}  {d.ticker}  {d.strategy or '-'}")
        if args.verbose and d.details:
            print(f"    {json.dumps(d.details, sort_keys=True)}")
    return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
    """Validate the configuration file."""
    try:
        cfg = config.load_config(Path(args.config))
    except config.ConfigurationError as e:
        print(f"Validation failed: {e}", file=sys.stderr)
        return 1

    print(f"Config valid: {args.config}")
    print(f"  Polling interval:  {cfg.monitor.polling_interval_seconds}s")
    print(f"  Exogenous cap:     {cfg.reweighting.max_exogenous_weight}")
    print(f"  Endogenous:        {len(cfg.endogenous_sources)} sources")
    print(f"  Exogenous:         {len(cfg.exogenous_sources)} sources")
    print(f"  Log level:         {cfg.log.level}")

    if args.verbose:
        print("\nHorizon thresholds:")
        for horizon, threshold in cfg.monitor.horizon_thresholds.items():
            print(f"  {horizon}: {threshold}")
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main CLI entrypoint."""
    parser = argparse.ArgumentParser(
        prog="feedback-loop",
        description="Feedback loop - audit chain verification and status"
    )

    # Global options
    parser.add_argument(
        "--config",
        default=str(config.DEFAULT_CONFIG_PATH),
        help="Path to feedback_loop.yaml"
    )
    parser.add_argument(
        "--ledger-dir",
        help="Path to ledger directory (defaults to audit.ledger_dir in config)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    verify_parser = subparsers.add_parser("verify", help="Verify an exported chain document")
    verify_parser.add_argument("document", help="Path to chain document (JSON)")
    verify_parser.set_defaults(func=cmd_verify)

    verify_ledger_parser = subparsers.add_parser("verify-ledger", help="Verify the sealed-entry ledger")
    verify_ledger_parser.set_defaults(func=cmd_verify_ledger)

    export_parser = subparsers.add_parser("export", help="Export the ledger as a chain document")
    export_parser.add_argument("--output", "-o", help="Output file (JSON); stdout if omitted")
    export_parser.set_defaults(func=cmd_export)

    status_parser = subparsers.add_parser("status", help="Show ledger status")
    status_parser.set_defaults(func=cmd_status)

    decisions_parser = subparsers.add_parser("decisions", help="List journaled decisions")
    decisions_parser.add_argument("--ticker", help="Only decisions for this ticker")
    decisions_parser.set_defaults(func=cmd_decisions)

    validate_parser = subparsers.add_parser("validate-config", help="Validate configuration")
    validate_parser.set_defaults(func=cmd_validate_config)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    configure_logging(_logging_settings(args), logging.DEBUG if args.verbose else None)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
