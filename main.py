#!/usr/bin/env python3
"""
CDN Certificate Auto-Renewal - Main Entry Point.

Runs the renewal control loop: every cycle it lists the domains on the Qiniu
CDN, obtains new certificates for domains that have none or whose
certificate expires soon, publishes them, enforces HTTPS, retires the old
certificates, and e-mails a report of anything that still failed after one
resume attempt.

Usage:
    # Run forever (default)
    python main.py --config config.yaml

    # Run a single cycle and exit
    python main.py --once

    # Dry run (selection only, no changes)
    python main.py --once --dry-run
"""

import argparse
import signal
import sys
from typing import Optional

from cdnssl.logger import setup_logger
from cdnssl.config_loader import ConfigSource, ConfigurationError
from cdnssl.capabilities import CapabilityFactories, CapabilityRegistry
from cdnssl.certbot import CertbotIssuer
from cdnssl.qiniu import QiniuClient
from cdnssl.notification import build_notifier
from cdnssl.orchestrator import CycleOrchestrator, CycleReport

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG_ERROR = 2


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="CDN Certificate Auto-Renewal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  # Run the renewal loop forever
  %(prog)s --once                           # Single cycle, exit code reflects failures
  %(prog)s --once --dry-run                 # Show what would be renewed
  %(prog)s --once --staging --lookahead 14  # Test against Let's Encrypt staging
        """,
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Test mode: select domains but don't make changes",
    )
    parser.add_argument(
        "--lookahead",
        type=int,
        default=None,
        help="Override renewal lookahead window (days)",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Override minimum seconds between cycle starts",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Override number of domains processed in parallel",
    )
    parser.add_argument(
        "--staging",
        action="store_true",
        help="Use Let's Encrypt staging environment (avoids production rate limits)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write logs to this file",
    )
    parser.add_argument(
        "--json-summary",
        action="store_true",
        help="Print a machine-readable JSON summary after every cycle",
    )

    return parser.parse_args(argv)


def build_overrides(args: argparse.Namespace) -> dict:
    """Collect command-line overrides for ConfigSource."""
    return {
        "lookahead_days": args.lookahead,
        "min_cycle_interval": args.interval,
        "workers": args.workers,
        "dry_run": True if args.dry_run else None,
        "staging": args.staging,
    }


def default_factories() -> CapabilityFactories:
    return CapabilityFactories(
        issuer=CertbotIssuer,
        cdn=QiniuClient,
        notifier=build_notifier,
    )


def main(argv: Optional[list] = None) -> int:
    """
    Main entry point.

    Exit Codes:
        0 - Loop stopped cleanly, or the single cycle succeeded
        1 - The single cycle (--once) left unresolved failures
        2 - Configuration error

    Returns:
        Exit code
    """
    args = parse_arguments(argv)

    logger = setup_logger(
        verbose=args.verbose,
        use_colors=not args.no_color,
        log_file=args.log_file,
    )

    logger.info("CDN Certificate Auto-Renewal")
    logger.info("=" * 50)

    if args.dry_run:
        logger.warning("DRY RUN MODE - No changes will be made")
    if args.staging:
        logger.warning("STAGING MODE - Using Let's Encrypt staging environment")
        logger.warning("Certificates issued will NOT be trusted by browsers")

    source = ConfigSource(args.config, overrides=build_overrides(args))
    try:
        first_snapshot = source.load()
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    orchestrator = CycleOrchestrator(CapabilityRegistry(default_factories()))

    def handle_signal(signum, frame):
        orchestrator.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    def on_cycle(report: CycleReport) -> None:
        if args.json_summary:
            print(report.to_json())

    last_report = orchestrator.run_forever(
        source,
        first_snapshot=first_snapshot,
        max_cycles=1 if args.once else 0,
        on_cycle=on_cycle,
    )

    if not args.once:
        logger.info("Renewal loop stopped")
        return EXIT_OK

    if last_report is not None and last_report.success:
        print("PIPELINE_STATUS=SUCCESS")
        return EXIT_OK

    print("PIPELINE_STATUS=FAILURE")
    return EXIT_FAILURES


if __name__ == "__main__":
    sys.exit(main())
