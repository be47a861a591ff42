"""
redupes.cli
CLI entrypoint for the redupes restoration tool.
Supports dry-run and wet mode, path prefix rewriting, logging, and copy verification.
"""

import argparse
import os
import sys
import csv
import tempfile
from collections import Counter
from pathlib import Path
from datetime import datetime
from .core import (
    MarkerScanner, process_lines, human_readable_size, display_path,
    DEFAULT_MAX_SIZE, RESTORED, MISSING, ERROR, SKIPPED, DRYRUN,
)

CONFIRM_ENV = "REDUPES_ARE_YOU_SURE"


def build_parser():
    parser = argparse.ArgumentParser(
        prog="redupes",
        description="Undo IntxLNK deduplication and restore the original files.",
        epilog=(
            "Example: markers under /home/user/Pictures point at "
            "/run/media/user/Backup_Drive/Linux but the files now live on "
            "/run/media/user/Windows_Partition. Use "
            "-o /run/media/user/Backup_Drive/Linux -r /run/media/user/Windows_Partition"
        ),
    )
    parser.add_argument("search_path", type=Path, help="Directory to search recursively for marker files")
    parser.add_argument("-m", "--max-size", type=int, default=DEFAULT_MAX_SIZE, help="Only consider files smaller than this many bytes (default: %(default)s)")
    parser.add_argument("-t", "--threads", type=int, default=1, help="Threads used to read candidate files (default: %(default)s)")
    parser.add_argument("-o", "--original-path", help="Path prefix stored in the markers (use with -r)")
    parser.add_argument("-r", "--replace-path", help="Path prefix to read the original files from instead (use with -o)")
    parser.add_argument("--temp-dir", type=Path, help="Directory that receives backups of the replaced markers")
    parser.add_argument("--wet", action="store_true", help="Enable destructive mode (replaces markers)")
    parser.add_argument("--yes-really", action="store_true", help="Bypass wet mode safety prompt")
    parser.add_argument("--log", type=Path, help="Path to log CSV file")
    parser.add_argument("--strict", action="store_true", help="Verify hash match before replacing a marker")
    parser.add_argument("--verbose", action="store_true", help="Print every record while restoring")
    return parser


def validate_args(parser, args):
    """Reject unusable configuration before anything is touched."""
    if not args.search_path.is_dir():
        parser.error(f"search path {display_path(args.search_path)} does not exist or is not a directory")
    if args.max_size < 1:
        parser.error("--max-size must be a positive number of bytes")
    if args.threads < 1:
        parser.error("--threads must be at least 1")
    if (args.original_path is None) != (args.replace_path is None):
        parser.error("-o/--original-path and -r/--replace-path must be given together")
    if args.original_path is not None:
        if not args.original_path:
            parser.error("-o/--original-path must not be empty")
        if not os.path.exists(args.replace_path):
            parser.error(f"replace path {display_path(args.replace_path)} does not exist or is not accessible")


def main(argv=None):
    """Parse CLI arguments and run the restoration process."""
    parser = build_parser()
    args = parser.parse_args(argv)
    validate_args(parser, args)

    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")

    if not args.temp_dir:
        args.temp_dir = Path(tempfile.gettempdir()) / f"redupes-{timestamp}"
        print(f"[INFO] Using default temp-dir: {display_path(args.temp_dir)}")

    log_path = args.log if args.log else (
        Path(f"redupes-{timestamp}.csv") if not args.wet else args.temp_dir / f"redupes-{timestamp}.csv"
    )

    if args.wet:
        if not args.yes_really or os.environ.get(CONFIRM_ENV) != "YES":
            print(f"[ABORT] Wet mode requires --yes-really and {CONFIRM_ENV}=YES")
            return 1
        args.temp_dir.mkdir(parents=True, exist_ok=True)

    rule = None
    if args.original_path is not None:
        rule = (args.original_path, args.replace_path)

    print("[CONFIG]")
    print(f"- Mode: {'WET' if args.wet else 'DRYRUN'}")
    print(f"- Search path: {display_path(args.search_path)}")
    print(f"- Max marker size: {args.max_size} bytes")
    print(f"- Threads: {args.threads}")
    print(f"- Path rewrite: {' -> '.join(map(display_path, rule)) if rule else 'OFF'}")
    print(f"- Temp directory: {display_path(args.temp_dir)}")
    print(f"- Strict hash verification: {'ON' if args.strict else 'OFF'}")
    print(f"- Log file: {display_path(log_path)}")

    scanner = MarkerScanner(str(args.search_path), args.max_size, args.threads)
    lines = list(scanner.scan())
    print(f"[INFO] Checked {scanner.candidates} candidate files, found {scanner.found} markers.")
    if scanner.unreadable:
        print(f"[WARN] {scanner.unreadable} files could not be read and were skipped.")

    counts = Counter()
    restored_bytes = 0
    with open(log_path, "w", newline="", encoding="utf-8", errors="surrogateescape") as logfile:
        writer = csv.writer(logfile)
        writer.writerow([
            "RECORD_ID", "ACTION", "MARKER_PATH", "TARGET_PATH",
            "BACKUP_PATH", "SIZE", "HASH", "ERROR"
        ])

        results = process_lines(
            lines, str(args.temp_dir), rule=rule, wet=args.wet,
            verify_hash=args.strict, verbose=args.verbose,
        )
        for i, result in enumerate(results, 1):
            counts[result.action] += 1
            if result.action == RESTORED:
                restored_bytes += result.size
            writer.writerow([
                i, result.action, result.marker_path, result.target_path,
                result.backup_path, result.size, result.digest, result.error
            ])

    summary = ", ".join(f"{action}: {counts[action]}" for action in (RESTORED, DRYRUN, MISSING, ERROR, SKIPPED) if counts[action])
    print(f"[DONE] {len(lines)} markers processed ({summary or 'nothing to do'}). "
          f"Restored: {human_readable_size(restored_bytes)}. Log saved to {display_path(log_path)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
