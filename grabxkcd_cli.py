#!/usr/bin/env python3
"""
grab-xkcd CLI Interface
=======================
Command-line front end for the grab-xkcd core engine.

Features:
- Incremental sync of the xkcd archive
- Live progress from the engine event log
- Read-only status check (probe + scan, no downloads)
"""

import argparse
import sys
import time
from pathlib import Path
from typing import List, Optional

from grabxkcd_core import (
    DEFAULT_ARCHIVE_DIR,
    DEFAULT_RATE_LIMIT,
    XKCD_URL,
    GrabXKCDCore,
    GrabXKCDError,
    MirrorConfig,
)

DEFAULT_LOG_FILE = "grabxkcd_debug.log"

# Seconds between progress polls
POLL_INTERVAL = 0.2


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


class GrabXKCDCLI:
    """Command-line interface for grab-xkcd."""

    def __init__(self):
        self.core = None
        self.log_index = 0

    def _print_header(self):
        print("=" * 70)
        print("📚 grab-xkcd - xkcd Archive Mirror")
        print("=" * 70)
        print()

    def _print_new_logs(self, verbose: bool):
        logs, self.log_index = self.core.get_logs(self.log_index)
        for line in logs:
            if not verbose and "[DEBUG]" in line:
                continue
            print(line)

    def _monitor_progress(self, verbose: bool = False):
        """Stream engine logs until the background run finishes."""
        while self.core.is_running():
            self._print_new_logs(verbose)
            time.sleep(POLL_INTERVAL)
        self._print_new_logs(verbose)

    def _build_config(self, args, log_file: Optional[Path] = None) -> MirrorConfig:
        return MirrorConfig(
            archive_root=Path(args.db_path),
            rate_limit=getattr(args, 'rate_limit', DEFAULT_RATE_LIMIT),
            block_size=getattr(args, 'block_size', None),
            base_url=args.base_url,
            log_file=log_file,
        )

    def sync(self, args) -> int:
        """Download every comic missing from the archive."""
        self._print_header()

        config = self._build_config(args, log_file=Path(args.log_file))
        print("⚙️  Initializing engine...")
        print(f"   Archive directory: {config.archive_root}")
        print(f"   Rate limit: {config.rate_limit} parallel downloads")
        print(f"   Block size: {config.block_size}" if config.block_size else "   Block size: off")
        print(f"   Catalog: {config.base_url}")
        print()

        self.core = GrabXKCDCore(config)
        self.core.start()
        self._monitor_progress(verbose=args.verbose)

        try:
            result = self.core.wait()
        except GrabXKCDError as e:
            print(f"\n❌ Fatal: {e}", file=sys.stderr)
            return 1

        print("\n" + "=" * 70)
        print("✅ SYNC COMPLETE")
        print("=" * 70)
        print(f"Latest comic: #{result.latest_num}")
        print(f"Missing comics: {result.missing_count}")
        print(f"Downloaded: {result.items_done}")
        print(f"Failed: {result.items_failed}")
        if result.partial_items:
            print(f"⚠  Partially archived (not retried on next sync): "
                  f"{', '.join(str(n) for n in result.partial_items)}")
        print("=" * 70)
        return 0

    def status(self, args) -> int:
        """Compare the archive with the catalog without downloading."""
        self._print_header()

        self.core = GrabXKCDCore(self._build_config(args))
        try:
            status = self.core.archive_status()
        except GrabXKCDError as e:
            print(f"❌ Catalog probe failed: {e}", file=sys.stderr)
            return 1

        print(f"📊 Archive Status: {args.db_path}")
        print("=" * 70)
        print(f"Latest comic: #{status['latest_num']}")
        print(f"✅ Archived: {status['archived']}")
        print(f"⏳ Missing: {status['missing']}")
        print("=" * 70)

        if status['missing'] > 0:
            print("\n💡 Tip: Use 'grab-xkcd sync' to download the missing comics")
        return 0


def _add_common_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('-d', '--db-path', default=DEFAULT_ARCHIVE_DIR,
                        help=f'Path where the database should be built (default: {DEFAULT_ARCHIVE_DIR})')
    parser.add_argument('--base-url', default=XKCD_URL,
                        help=f'Catalog base URL (default: {XKCD_URL})')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grab-xkcd",
        description="grab-xkcd - incremental xkcd archive mirror",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Download every missing comic into ./xkcdDB/
  grab-xkcd sync

  # Custom location and at most 50 parallel downloads
  grab-xkcd sync -d ~/comics -r 50

  # Pace downloads in sequential blocks of 200 comics
  grab-xkcd sync --block-size 200

  # Show how far behind the archive is
  grab-xkcd status -d ~/comics
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    # SYNC command
    sync_parser = subparsers.add_parser('sync', help='Download missing comics')
    _add_common_arguments(sync_parser)
    sync_parser.add_argument('-r', '--rate-limit', type=_positive_int, default=DEFAULT_RATE_LIMIT,
                             help=f'Maximum number of parallel downloads (default: {DEFAULT_RATE_LIMIT})')
    sync_parser.add_argument('--block-size', type=_positive_int, default=None,
                             help='Process missing comics in sequential blocks of this size')
    sync_parser.add_argument('--log-file', default=DEFAULT_LOG_FILE,
                             help=f'Debug log file (default: {DEFAULT_LOG_FILE})')
    sync_parser.add_argument('--verbose', '-v', action='store_true', help='Show debug logs')

    # STATUS command
    status_parser = subparsers.add_parser('status', help='Show archive status')
    _add_common_arguments(status_parser)

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    cli = GrabXKCDCLI()

    if args.command == 'sync':
        sys.exit(cli.sync(args))
    elif args.command == 'status':
        sys.exit(cli.status(args))


if __name__ == "__main__":
    main()
