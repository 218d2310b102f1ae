"""Base classes for feature detectors."""

import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from annot_pipeline.exceptions import DetectorError
from annot_pipeline.external import ExternalProgram, ExternalProgramError, write_fasta
from annot_pipeline.models import CandidateFeature, SequenceRecord

logger = logging.getLogger("annot_pipeline.detectors")


class BaseDetector(ABC):
    """Abstract base class for all feature detectors.

    Detectors are stateless: everything run-specific arrives through
    detect()'s arguments, so one instance can serve concurrent tasks.
    """

    kind: str = ""
    default_binary: str = ""

    @abstractmethod
    def detect(self, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        ...

    def binary(self, config: dict) -> str:
        return config.get("binary") or self.default_binary

    def is_available(self, config: dict) -> bool:
        if not self.binary(config):
            return True
        return ExternalProgram(self.binary(config)).available


class ToolDetector(BaseDetector):
    """Detector that runs an external program on one record.

    The record is written to a private scratch directory that is removed
    on return, whether the program succeeds or not.
    """

    min_sequence_length: int = 1

    @abstractmethod
    def arguments(self, fasta: Path, workdir: Path, record: SequenceRecord, config: dict) -> list:
        ...

    @abstractmethod
    def parse(self, stdout: str, workdir: Path, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        ...

    def detect(self, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        min_length = int(config.get("min_sequence_length", self.min_sequence_length))
        if len(record) < min_length:
            logger.debug(f"{self.kind}: {record.id} shorter than {min_length} bp, skipped")
            return []

        program = ExternalProgram(self.binary(config))
        with tempfile.TemporaryDirectory(prefix=f"annot-{self.kind}-") as tmpdir:
            workdir = Path(tmpdir)
            fasta = workdir / "sequence.fna"
            write_fasta(fasta, [(record.id, record.sequence)])
            try:
                stdout = program.run(
                    self.arguments(fasta, workdir, record, config),
                    timeout=config.get("timeout"),
                    cwd=workdir,
                )
                features = self.parse(stdout, workdir, record, config)
            except ExternalProgramError as e:
                raise DetectorError(self.kind, str(e), record.id) from e
            except (ValueError, IndexError) as e:
                raise DetectorError(self.kind, f"unparsable output: {e}", record.id) from e

        logger.debug(f"{self.kind}: {len(features)} features on {record.id}")
        return features


def model_path(config: dict, key: str = "models") -> Path:
    """Resolve a detector's model/database file against the database directory."""
    path = Path(config.get(key, ""))
    if not path.is_absolute() and config.get("database"):
        path = Path(config["database"]) / path
    return path
