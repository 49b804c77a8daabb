"""CLI for building an enriched study deck from a list of characters.

Usage:
    hanzicards-enrich \
        --input data/hsk1.txt \
        --owner me \
        --name "HSK 1" \
        --accept-defaults

Features:
- Validates and deduplicates the input before anything is queued
- Asks for a reading when a character has several (or takes the default)
- Progress bar with tqdm, driven by the collection's progress events
- Writes the enriched cards to a JSON file
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, List

from tqdm import tqdm

from hanzicards.exceptions import EnrichmentError, SymbolValidationError
from hanzicards.models.card import PronunciationSelection
from hanzicards.models.dictionary import DisambiguationPrompt
from hanzicards.models.events import EventType
from hanzicards.pipeline.intake import parse_symbol_text
from hanzicards.service import EnrichmentService
from hanzicards.utils.file_io import write_json
from hanzicards.utils.logging_helper import setup_logging

logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Enrich Chinese characters with readings, images and audio")
    parser.add_argument(
        "symbols",
        nargs="*",
        help="Characters to enrich (alternative to --input)",
    )
    parser.add_argument(
        "--input",
        type=Path,
        help="Text file with characters separated by whitespace, commas or 、",
    )
    parser.add_argument("--owner", default="cli", help="Collection owner")
    parser.add_argument("--name", default="Deck", help="Collection name")
    parser.add_argument(
        "--accept-defaults",
        action="store_true",
        help="Use the most common reading instead of asking",
    )
    parser.add_argument(
        "--output",
        type=Path,
        help="Write the enriched cards to this JSON file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser.parse_args()


def ask_reading(prompt: DisambiguationPrompt) -> PronunciationSelection:
    """Ask on stdin which reading to use. Empty input takes the default."""
    print(f"\n'{prompt.symbol}' has {len(prompt.candidates)} readings:")
    for i, candidate in enumerate(prompt.candidates, 1):
        marker = " (default)" if candidate.pronunciation == prompt.default_pronunciation else ""
        print(f"  {i}. {candidate.display:<10} {candidate.meaning}{marker}")

    while True:
        answer = input("Choose a number [default]: ").strip()
        if not answer:
            return PronunciationSelection(accept_default=True)
        if answer.isdigit() and 1 <= int(answer) <= len(prompt.candidates):
            return PronunciationSelection(pronunciation=prompt.candidates[int(answer) - 1].pronunciation)
        print(f"Enter a number between 1 and {len(prompt.candidates)}")


def choose_readings(prompts: List[DisambiguationPrompt], accept_defaults: bool) -> Dict[str, PronunciationSelection]:
    if accept_defaults:
        return {p.symbol: PronunciationSelection(accept_default=True) for p in prompts}
    return {p.symbol: ask_reading(p) for p in prompts}


async def run(args: argparse.Namespace, raw_symbols: List[str]) -> int:
    async with EnrichmentService.from_config() as service:
        collection = service.create_collection(owner=args.owner, name=args.name)

        prompts = service.check_disambiguation(raw_symbols)
        if prompts:
            logger.info(f"{len(prompts)} characters have more than one reading")
        selections = choose_readings(prompts, args.accept_defaults)

        try:
            report, job_id = service.import_collection(collection.id, raw_symbols, selections)
        except SymbolValidationError as e:
            logger.error(f"✗ {e}")
            for rejected in e.report.rejected if e.report else []:
                logger.error(f"  {rejected.raw!r}: {rejected.reason}")
            if e.report and e.report.simplified:
                logger.error(f"Use Traditional forms instead of: {' '.join(e.report.simplified)}")
            return 1

        for rejected in report.rejected:
            logger.warning(f"Skipped {rejected.raw!r}: {rejected.reason}")
        if report.simplified:
            logger.warning(f"Use Traditional forms instead of: {' '.join(report.simplified)}")
        if report.duplicates:
            logger.info(f"Ignored {len(report.duplicates)} duplicates")

        subscription = service.connect_progress(collection.id)
        with tqdm(total=len(report.symbols), desc="Enriching", unit="card") as pbar:
            async for event in subscription:
                if event.type == EventType.PROGRESS:
                    pbar.n = event.data.get("processed", pbar.n)
                    pbar.set_postfix(failed=event.data.get("failed", 0))
                    pbar.refresh()
                elif event.type == EventType.DISAMBIGUATION_REQUIRED:
                    # Only when a reading was not chosen up front
                    symbol = service.get_card(event.card_id).symbol
                    service.submit_disambiguation(
                        symbol,
                        accept_default=True,
                        collection_id=collection.id,
                    )
                elif event.type == EventType.COLLECTION_STOPPED:
                    break

        await service.wait_until_idle()
        collection = service.get_collection_status(collection.id)
        cards = service.list_cards(collection.id)

        logger.info("=" * 80)
        logger.info(f"Collection {collection.id}: {collection.status.value}")
        logger.info(f"Processed: {collection.progress.processed}/{collection.progress.total}")
        logger.info(f"Failed: {collection.progress.failed}")
        logger.info("=" * 80)

        if args.output:
            write_json([card.model_dump(mode="json") for card in cards], args.output)
            logger.info(f"✓ Wrote {len(cards)} cards to {args.output}")

        return 0 if collection.progress.failed == 0 else 2


def main() -> int:
    """Main CLI entry point."""
    args = parse_args()
    setup_logging(level=args.log_level)

    raw_symbols = list(args.symbols)
    if args.input:
        if not args.input.exists():
            logger.error(f"Input file not found: {args.input}")
            return 1
        raw_symbols.extend(parse_symbol_text(args.input.read_text(encoding="utf-8")))
    if not raw_symbols:
        logger.error("No characters given; pass them as arguments or with --input")
        return 1

    try:
        return asyncio.run(run(args, raw_symbols))
    except EnrichmentError as e:
        logger.error(f"✗ {e}")
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
