"""
Validation Engine
=================
Output verification and post-run reporting.

Before a file is marked completed its output is decoded again and checked
against the slot constraint:
    - Byte size within the ceiling
    - Encoded in the required format
    - Pixel dimensions exactly as required (image slots)

After each run a batch report is produced:
    - Files per status and per slot
    - Files that failed or need review
    - Input / output byte totals

Never silently ignores failures.
"""

from __future__ import annotations

import io
import logging
from collections import Counter

from PIL import Image, UnidentifiedImageError

from .codecs import pdf_page_count
from .models import (
    BatchReport,
    BatchSnapshot,
    FileStatus,
    FormattedResult,
    OutputFormat,
    SlotConstraint,
)

logger = logging.getLogger(__name__)

_PIL_FORMATS = {
    OutputFormat.JPEG: "JPEG",
    OutputFormat.PNG: "PNG",
}


class ValidationEngine:
    """
    Verifies formatter output and summarizes finished batches.
    """

    def verify_output(
        self,
        result: FormattedResult,
        constraint: SlotConstraint,
    ) -> list[str]:
        """
        Check a formatted result against its constraint.

        Returns:
            List of violations; empty when the output is acceptable.
        """
        problems: list[str] = []
        content = result.content

        if not content:
            return ["output is empty"]

        if len(content) > constraint.max_size_bytes:
            problems.append(
                f"size {len(content)} exceeds {constraint.max_size_bytes} bytes"
            )

        if result.format is not constraint.format:
            problems.append(
                f"format {result.format.value} != {constraint.format.value}"
            )

        if constraint.format is OutputFormat.PDF:
            try:
                pdf_page_count(content)
            except ValueError as e:
                problems.append(f"output PDF unreadable: {e}")
            return problems

        try:
            with Image.open(io.BytesIO(content)) as img:
                actual_format = img.format
                actual_size = img.size
        except (UnidentifiedImageError, OSError) as e:
            problems.append(f"output image unreadable: {e}")
            return problems

        expected_format = _PIL_FORMATS[constraint.format]
        if actual_format != expected_format:
            problems.append(
                f"encoded as {actual_format}, expected {expected_format}"
            )
        if constraint.dimensions and actual_size != constraint.dimensions:
            problems.append(
                f"dimensions {actual_size[0]}x{actual_size[1]} != "
                f"{constraint.width}x{constraint.height}"
            )

        return problems

    def validate(self, snapshot: BatchSnapshot) -> BatchReport:
        """
        Build a report for a batch snapshot.

        Args:
            snapshot: Batch state after a run.

        Returns:
            BatchReport with per-status counts and failing files.
        """
        report = BatchReport()

        if not snapshot.files:
            logger.warning("No files to validate")
            return report

        report.total_files = len(snapshot.files)
        slot_counts: Counter[str] = Counter()

        for f in snapshot.files:
            report.total_input_bytes += f.size

            if f.status is FileStatus.COMPLETED:
                report.completed += 1
                if f.output is not None:
                    report.total_output_bytes += f.output.size_bytes
            elif f.status is FileStatus.ERROR:
                report.errors += 1
                report.failed_files.append(f.name)
            elif f.status is FileStatus.NEEDS_REVIEW:
                report.needs_review += 1
                report.review_files.append(f.name)
            else:
                report.pending += 1

            if f.slot is not None:
                slot_counts[f.slot.value] += 1

        report.slot_breakdown = dict(slot_counts)

        # Log summary
        logger.info("=" * 60)
        logger.info(f"BATCH REPORT ({snapshot.exam_id.upper()})")
        logger.info("=" * 60)
        logger.info(f"Total Files: {report.total_files}")
        logger.info(
            f"Completed: {report.completed} ({report.success_rate}%)"
        )
        logger.info(f"Errors: {report.errors}")
        logger.info(f"Needs Review: {report.needs_review}")
        if report.pending:
            logger.warning(f"Still Pending: {report.pending}")
        logger.info(
            f"Bytes: {report.total_input_bytes} in -> "
            f"{report.total_output_bytes} out"
        )

        if report.slot_breakdown:
            logger.info("Slot Breakdown:")
            for slot, count in sorted(report.slot_breakdown.items()):
                logger.info(f"  • {slot}: {count}")

        logger.info("=" * 60)

        return report
