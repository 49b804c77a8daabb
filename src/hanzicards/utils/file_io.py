"""JSON file helpers for record persistence."""

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Union

logger = logging.getLogger(__name__)


def read_json(file_path: Union[str, Path]) -> Dict[str, Any]:
    """Read JSON file and return parsed dictionary.

    Args:
        file_path: Path to JSON file

    Returns:
        Parsed JSON as dictionary

    Raises:
        FileNotFoundError: If file doesn't exist
        json.JSONDecodeError: If file contains invalid JSON
    """
    file_path = Path(file_path)
    logger.debug(f"Reading JSON from {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json(
    data: Union[Dict[str, Any], List[Any]],
    file_path: Union[str, Path],
    indent: int = 2,
    ensure_ascii: bool = False,
) -> None:
    """Atomically write data to a JSON file.

    The payload is written to a temp file next to the target and moved into
    place, so readers never see a partially written document.

    Args:
        data: Data to write (dict or list)
        file_path: Path to output JSON file
        indent: Number of spaces for indentation (default: 2)
        ensure_ascii: If False, non-ASCII characters are preserved (default: False)
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    temp_file = file_path.with_name(f"{file_path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent, ensure_ascii=ensure_ascii)
        os.replace(temp_file, file_path)
    finally:
        if temp_file.exists():
            temp_file.unlink()

    logger.debug(f"Wrote JSON to {file_path}")
