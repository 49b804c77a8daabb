"""Import normalization: trims, validates and deduplicates raw symbols."""

import logging
import re
from typing import Iterable, List

from pydantic import BaseModel, Field

from hanzicards.exceptions import SymbolValidationError
from hanzicards.validators.symbol_validator import (
    extract_simplified_characters,
    normalize_symbol,
    validate_symbol,
)

logger = logging.getLogger(__name__)

# Whitespace, ASCII and full-width commas, ideographic comma, semicolons
_SEPARATORS = re.compile(r"[\s,，、;；]+")


class RejectedSymbol(BaseModel):
    raw: str
    position: int = Field(..., description="1-based index in the submitted list")
    reason: str


class ImportReport(BaseModel):
    """Outcome of normalizing one import."""

    symbols: List[str] = Field(default_factory=list, description="Accepted symbols, input order")
    rejected: List[RejectedSymbol] = Field(default_factory=list)
    duplicates: List[str] = Field(default_factory=list, description="Repeats dropped from this import")
    simplified: List[str] = Field(
        default_factory=list, description="Simplified-only characters found in rejected entries"
    )

    @property
    def total_submitted(self) -> int:
        return len(self.symbols) + len(self.rejected) + len(self.duplicates)


def parse_symbol_text(text: str) -> List[str]:
    """Split free text (a file, a pasted list) into raw symbol strings.

    Example:
        >>> parse_symbol_text("累, 行\\n長、好")
        ['累', '行', '長', '好']
    """
    return [part for part in _SEPARATORS.split(text) if part]


def normalize_import(raw_symbols: Iterable[str]) -> ImportReport:
    """Normalize a raw symbol list for import into one collection.

    Entries are trimmed and NFC-normalized. Entries with any invalid
    character are dropped and reported. Exact repeats within this import are
    dropped, keeping the first occurrence; symbols already present in other
    collections are not considered here.

    Args:
        raw_symbols: Raw user input, one symbol per entry

    Returns:
        ImportReport with accepted symbols in input order

    Raises:
        SymbolValidationError: If no entry survives normalization
    """
    report = ImportReport()
    seen = set()

    for position, raw in enumerate(raw_symbols, start=1):
        symbol = normalize_symbol(raw or "")
        reason = validate_symbol(symbol)
        if reason:
            report.rejected.append(RejectedSymbol(raw=raw or "", position=position, reason=reason))
            continue
        if symbol in seen:
            report.duplicates.append(symbol)
            continue
        seen.add(symbol)
        report.symbols.append(symbol)

    if report.rejected:
        report.simplified = extract_simplified_characters("".join(r.raw for r in report.rejected))
        logger.warning(
            f"Rejected {len(report.rejected)} of {report.total_submitted} symbols: "
            + ", ".join(f"{r.raw!r} ({r.reason})" for r in report.rejected[:10])
        )
    if report.duplicates:
        logger.info(f"Dropped {len(report.duplicates)} repeated symbols: {report.duplicates[:10]}")

    if not report.symbols:
        raise SymbolValidationError(
            f"No valid Traditional Chinese symbols in import ({len(report.rejected)} rejected)",
            report=report,
        )

    logger.info(f"✓ Accepted {len(report.symbols)} symbols for import")
    return report
