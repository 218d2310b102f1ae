"""Reference database query services for the lookup engine."""

from abc import ABC, abstractmethod

from annot_pipeline.models import Hit


class BaseService(ABC):
    """Abstract base class for all lookup services.

    A service is a black box: given a fingerprint and its sequence it returns
    the matches it found, or an empty list. Threshold filtering is the
    lookup engine's job.
    """

    tier: str = ""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def query(self, fingerprint: str, sequence: str) -> list[Hit]:
        ...

    @abstractmethod
    def is_available(self) -> bool:
        ...

    def close(self):
        """Release any held resources."""
