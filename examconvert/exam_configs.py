"""
Exam Constraint Table
=====================
Static submission rules per examination authority.

Each exam maps its slots (photo, signature, document) to the output the
authority accepts: pixel dimensions, encoding and a size ceiling.
"""

from __future__ import annotations

from typing import Union

from .exceptions import UnknownExamError
from .models import ExamConfig, OutputFormat, Slot, SlotFormat

_ALL_INPUTS = ("jpg", "jpeg", "png", "pdf")

EXAM_CONFIGS: dict[str, ExamConfig] = {
    "upsc": ExamConfig(
        exam_id="upsc",
        name="UPSC Civil Services",
        max_file_size_kb=40,
        formats={
            Slot.PHOTO: SlotFormat(format=OutputFormat.JPEG, width=200, height=230),
            Slot.SIGNATURE: SlotFormat(format=OutputFormat.JPEG, width=140, height=60),
            Slot.DOCUMENT: SlotFormat(format=OutputFormat.PDF, max_size_kb=300),
        },
        allowed_formats=_ALL_INPUTS,
    ),
    "neet": ExamConfig(
        exam_id="neet",
        name="NEET UG",
        max_file_size_kb=200,
        formats={
            Slot.PHOTO: SlotFormat(format=OutputFormat.JPEG, width=276, height=354),
            Slot.SIGNATURE: SlotFormat(
                format=OutputFormat.JPEG, width=276, height=118, max_size_kb=30
            ),
            Slot.DOCUMENT: SlotFormat(format=OutputFormat.PDF, max_size_kb=500),
        },
        allowed_formats=_ALL_INPUTS,
    ),
    "jee": ExamConfig(
        exam_id="jee",
        name="JEE Main",
        max_file_size_kb=100,
        formats={
            Slot.PHOTO: SlotFormat(format=OutputFormat.JPEG, width=240, height=320),
            Slot.SIGNATURE: SlotFormat(
                format=OutputFormat.JPEG, width=240, height=80, max_size_kb=30
            ),
            Slot.DOCUMENT: SlotFormat(format=OutputFormat.PDF, max_size_kb=300),
        },
        allowed_formats=_ALL_INPUTS,
    ),
    "cat": ExamConfig(
        exam_id="cat",
        name="CAT",
        max_file_size_kb=80,
        formats={
            Slot.PHOTO: SlotFormat(format=OutputFormat.JPEG, width=150, height=200),
            Slot.SIGNATURE: SlotFormat(format=OutputFormat.JPEG, width=150, height=60),
            Slot.DOCUMENT: SlotFormat(format=OutputFormat.PDF, max_size_kb=500),
        },
        allowed_formats=_ALL_INPUTS,
    ),
    "gate": ExamConfig(
        exam_id="gate",
        name="GATE",
        max_file_size_kb=200,
        formats={
            Slot.PHOTO: SlotFormat(format=OutputFormat.JPEG, width=480, height=640),
            Slot.SIGNATURE: SlotFormat(format=OutputFormat.PNG, width=480, height=160),
            Slot.DOCUMENT: SlotFormat(format=OutputFormat.PDF, max_size_kb=1024),
        },
        allowed_formats=_ALL_INPUTS,
    ),
}


def get_config(exam_id: str) -> ExamConfig:
    """
    Look up an exam by identifier (case-insensitive).

    Raises:
        UnknownExamError: If the exam is not in the table.
    """
    key = (exam_id or "").strip().lower()
    config = EXAM_CONFIGS.get(key)
    if config is None:
        raise UnknownExamError(exam_id)
    return config


def resolve_exam(exam: Union[str, ExamConfig]) -> ExamConfig:
    """Accept either an exam id or an already-loaded config."""
    if isinstance(exam, ExamConfig):
        return exam
    return get_config(exam)


def list_exams() -> list[ExamConfig]:
    return [EXAM_CONFIGS[k] for k in sorted(EXAM_CONFIGS)]
