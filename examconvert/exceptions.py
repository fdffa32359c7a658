"""
Error Taxonomy
==============
Exceptions raised by the conversion pipeline.

Hierarchy:
    ConversionError (base)
    ├── ClassificationError          – file-local, file ends in `error`
    ├── FormattingError              – file-local, carries a FormattingErrorKind
    │   ├── DecodeFailureError
    │   ├── ConstraintUnsatisfiableError
    │   └── UnsupportedCombinationError
    ├── UnknownExamError             – fatal to starting a run
    ├── InfrastructureError          – processing engine not ready, batch-fatal
    ├── PackagingError               – archive could not be produced
    ├── InvalidTransitionError       – illegal lifecycle move (programming error)
    └── RunCancelledError            – run superseded by a batch reset
"""

from __future__ import annotations

from enum import Enum


class ConversionError(Exception):
    """Base class for all pipeline errors."""


class ClassificationError(ConversionError):
    """The file could not be decoded or matched against the exam formats."""

    def __init__(self, message: str, file_name: str = ""):
        self.file_name = file_name
        super().__init__(message)


class FormattingErrorKind(str, Enum):
    """Reason a formatting stage failed."""
    DECODE_FAILURE = "decode_failure"
    CONSTRAINT_UNSATISFIABLE = "constraint_unsatisfiable"
    UNSUPPORTED_COMBINATION = "unsupported_combination"


class FormattingError(ConversionError):
    """Base formatting failure. Subclasses pin the `kind`."""

    kind: FormattingErrorKind = FormattingErrorKind.DECODE_FAILURE

    def __init__(self, message: str):
        super().__init__(message)


class DecodeFailureError(FormattingError):
    """Source bytes could not be decoded."""
    kind = FormattingErrorKind.DECODE_FAILURE


class ConstraintUnsatisfiableError(FormattingError):
    """Size ceiling cannot be met even at the minimum quality floor."""
    kind = FormattingErrorKind.CONSTRAINT_UNSATISFIABLE


class UnsupportedCombinationError(FormattingError):
    """The slot/format combination cannot be produced."""
    kind = FormattingErrorKind.UNSUPPORTED_COMBINATION


class UnknownExamError(ConversionError):
    """Exam identifier is not present in the constraint table."""

    def __init__(self, exam_id: str):
        self.exam_id = exam_id
        super().__init__(f"Unknown exam: '{exam_id}'")


class InfrastructureError(ConversionError):
    """The underlying processing engine failed to become ready."""


class PackagingError(ConversionError):
    """The archive could not be built. Completed files stay completed."""


class InvalidTransitionError(ConversionError):
    """A file was asked to move to a status its lifecycle does not allow."""

    def __init__(self, file_id: str, current: str, target: str):
        self.file_id = file_id
        self.current = current
        self.target = target
        super().__init__(
            f"File {file_id}: illegal transition {current} -> {target}"
        )


class RunCancelledError(ConversionError):
    """The run was superseded by a new file selection or exam change."""
