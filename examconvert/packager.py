"""
Archive Packager
================
Bundles completed files into a single ZIP archive.

Entry names come from the slot and a stable ordering of the original file
names, so the same batch always produces the same archive:

    photo.jpg, signature.jpg, document_1.pdf, document_2.pdf, manifest.json

The archive is assembled in memory and only returned once complete.
"""

from __future__ import annotations

import json
import logging
import zipfile
from collections import defaultdict
from datetime import date
from io import BytesIO
from typing import Iterable, Optional

from .exceptions import PackagingError
from .models import ArchiveEntry, FileStatus, ProcessedFile, Slot

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"

# Fixed entry timestamp (earliest ZIP date) for reproducible archives
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def archive_name(exam_id: str, today: Optional[date] = None) -> str:
    """Default download name, e.g. UPSC_documents_2024-05-01.zip."""
    today = today or date.today()
    return f"{exam_id.upper()}_documents_{today.isoformat()}.zip"


def plan_entries(files: Iterable[ProcessedFile]) -> list[ArchiveEntry]:
    """
    Name every completed file by slot and stable order.

    Files are sorted by original name (then id); a slot holding one file is
    named after the slot alone, otherwise entries are numbered from 1.
    """
    completed = sorted(
        (f for f in files if f.status is FileStatus.COMPLETED),
        key=lambda f: (f.name.lower(), f.name, f.id),
    )

    by_slot: dict[Slot, list[ProcessedFile]] = defaultdict(list)
    for f in completed:
        by_slot[f.slot or Slot.UNKNOWN].append(f)

    entries: list[ArchiveEntry] = []
    for slot in (Slot.PHOTO, Slot.SIGNATURE, Slot.DOCUMENT, Slot.UNKNOWN):
        group = by_slot.get(slot, [])
        for idx, f in enumerate(group, start=1):
            ext = f.output.format.extension
            if len(group) == 1:
                name = f"{slot.value}.{ext}"
            else:
                name = f"{slot.value}_{idx}.{ext}"
            entries.append(ArchiveEntry(
                name=name,
                content=f.output.content,
                slot=slot,
                source_name=f.name,
                width=f.output.width,
                height=f.output.height,
            ))
    return entries


class ZipPackager:
    """
    Deterministic ZIP writer.

    Usage:
        packager = ZipPackager()
        archive = packager.package(plan_entries(snapshot.files), "upsc")
    """

    def __init__(self, include_manifest: bool = True):
        self.include_manifest = include_manifest

    def package(self, entries: list[ArchiveEntry], exam_id: str = "") -> bytes:
        """
        Build the archive.

        Raises:
            PackagingError: If there is nothing to package or writing fails.
        """
        if not entries:
            raise PackagingError("No completed files to package")

        names = [e.name for e in entries]
        if len(set(names)) != len(names) or MANIFEST_NAME in names:
            raise PackagingError(f"Duplicate archive entry names: {names}")

        buffer = BytesIO()
        try:
            with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
                for entry in entries:
                    archive.writestr(self._info(entry.name), entry.content)
                if self.include_manifest:
                    archive.writestr(
                        self._info(MANIFEST_NAME),
                        self._manifest(entries, exam_id),
                    )
        except (OSError, ValueError, zipfile.BadZipFile) as e:
            raise PackagingError(f"Failed to build archive: {e}") from e

        data = buffer.getvalue()
        logger.info(
            f"Packaged {len(entries)} file(s) into {len(data)} byte archive"
        )
        return data

    def _info(self, name: str) -> zipfile.ZipInfo:
        info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
        info.compress_type = zipfile.ZIP_DEFLATED
        info.external_attr = 0o644 << 16
        return info

    def _manifest(self, entries: list[ArchiveEntry], exam_id: str) -> str:
        data = {
            "exam": exam_id,
            "files": [
                {
                    "name": e.name,
                    "source": e.source_name,
                    "slot": e.slot.value,
                    "size_bytes": len(e.content),
                    "width": e.width,
                    "height": e.height,
                }
                for e in entries
            ],
        }
        return json.dumps(data, indent=2, ensure_ascii=False)
