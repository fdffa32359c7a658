"""
Filesystem Intake
=================
Reads user files from disk into RawFile records and writes finished
archives back out. The pipeline itself never touches the filesystem.

Directory Layout (CLI):
    <output>/
    └── {EXAM}_documents_{date}.zip
"""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Iterable

from .models import ConversionResult, RawFile

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".jpg", ".jpeg", ".png", ".pdf")


def read_raw_file(path: str) -> RawFile:
    """
    Load a file with its name and guessed media type.

    Raises:
        FileNotFoundError: If the path does not exist.
    """
    file_path = Path(path)
    if not file_path.is_file():
        raise FileNotFoundError(f"File not found: {path}")

    media_type, _ = mimetypes.guess_type(file_path.name)
    content = file_path.read_bytes()
    logger.debug(f"Read {file_path.name} ({len(content)} bytes)")
    return RawFile(
        name=file_path.name,
        content=content,
        media_type=media_type or "application/octet-stream",
    )


def collect_paths(paths: Iterable[str]) -> list[Path]:
    """Expand directories into their supported files, sorted by name."""
    collected: list[Path] = []
    for path in paths:
        p = Path(path)
        if p.is_dir():
            collected.extend(sorted(
                child for child in p.iterdir()
                if child.is_file() and child.suffix.lower() in SUPPORTED_SUFFIXES
            ))
        else:
            collected.append(p)
    return collected


def write_archive(output_dir: str, result: ConversionResult) -> Path:
    """
    Write the archive to `output_dir`.
    Returns the path of the written file.

    The bytes go to a sibling `.part` file that is renamed into place, so a
    failed write never leaves a truncated archive under the final name.
    """
    dest_dir = Path(output_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / result.archive_name
    partial = dest.with_name(dest.name + ".part")
    try:
        partial.write_bytes(result.content)
        partial.replace(dest)
    except OSError:
        partial.unlink(missing_ok=True)
        logger.error(f"Could not save archive to {dest}")
        raise
    logger.info(f"Archive saved: {dest}")
    return dest
