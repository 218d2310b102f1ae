"""Exception taxonomy for annot-pipeline.

Fatal errors (subclasses of FatalAnnotationError) abort the whole run.
Everything else is recovered locally and shows up in the run summary.
"""

from typing import Optional


class AnnotationError(Exception):
    """Base exception for annot-pipeline."""


class FatalAnnotationError(AnnotationError):
    """Errors that abort the run regardless of task policy."""


class InputError(FatalAnnotationError):
    """Raised when the input assembly is missing, unreadable or malformed."""


class LookupServiceError(FatalAnnotationError):
    """Raised when a reference database or search service is unreachable."""

    def __init__(self, service: str, message: str):
        super().__init__(f"{service}: {message}")
        self.service = service


class DetectorError(AnnotationError):
    """Raised when a single detector kind fails."""

    def __init__(self, kind: str, message: str, record_id: Optional[str] = None):
        where = f" on {record_id}" if record_id else ""
        super().__init__(f"{kind} detector failed{where}: {message}")
        self.kind = kind
        self.record_id = record_id


class LookupTimeout(AnnotationError):
    """Raised when a lookup tier exceeds its time bound."""

    def __init__(self, tier: str, timeout: Optional[float] = None):
        bound = f" after {timeout:g}s" if timeout else ""
        super().__init__(f"{tier} lookup timed out{bound}")
        self.tier = tier
        self.timeout = timeout


class AggregationConflict(AnnotationError):
    """Raised when two overlapping feature types share the same precedence."""

    def __init__(self, first: str, second: str):
        super().__init__(f"ambiguous precedence between {first} and {second}")
        self.first = first
        self.second = second
