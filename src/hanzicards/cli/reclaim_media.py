"""CLI for deleting stored media that no card references anymore.

Usage:
    hanzicards-reclaim --dry-run
"""

import argparse
import logging
import sys

from hanzicards.exceptions import EnrichmentError
from hanzicards.service import EnrichmentService
from hanzicards.utils.logging_helper import setup_logging

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Delete unreferenced media from the shared cache")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without deleting",
    )
    return parser.parse_args()


def main() -> int:
    """Main entry point for the reclaim CLI."""
    args = parse_args()
    setup_logging()

    if args.dry_run:
        logger.info("🔍 DRY RUN MODE - No files will be deleted")

    try:
        service = EnrichmentService.from_config()
        report = service.reclaim_media(dry_run=args.dry_run)
    except EnrichmentError as e:
        logger.error(f"✗ Reclaim failed: {e}")
        return 1

    for key in report.deleted:
        logger.info(f"{'Would delete' if args.dry_run else 'Deleted'}: {key}")
    logger.info(
        f"✓ Scanned {report.scanned} objects: {len(report.deleted)} unreferenced, "
        f"{len(report.skipped_in_use)} skipped while in use"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
