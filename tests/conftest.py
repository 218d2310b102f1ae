"""Shared fixtures: fake lookup services, fake detectors and small inputs."""

import threading
import time
from collections import Counter
from typing import Callable, Optional

import pytest
from Bio.Seq import Seq

from annot_pipeline.config import load_config
from annot_pipeline.detectors.base import BaseDetector
from annot_pipeline.models import CandidateFeature, Hit, SequenceRecord
from annot_pipeline.sequences import SequenceStore, build_record
from annot_pipeline.services import BaseService

# ATG + 12 x GCT + TAA, flanked by CC: one 13 aa ORF at 3..44 on the forward strand
ORF_CONTIG = "CC" + "ATG" + "GCT" * 12 + "TAA" + "CC"
ORF_PROTEIN = "M" + "A" * 12


class FakeService(BaseService):
    """Lookup service returning canned hits and counting calls per fingerprint."""

    def __init__(
        self,
        tier: str,
        hits: Optional[dict[str, list[Hit]]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        gates: Optional[dict[str, threading.Event]] = None,
    ):
        self.tier = tier
        self.hits = hits or {}
        self.delay = delay
        self.error = error
        self.gates = gates or {}
        self.calls: Counter = Counter()
        self.closed = False
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return f"fake-{self.tier}"

    @property
    def total_calls(self) -> int:
        with self._lock:
            return sum(self.calls.values())

    def query(self, fingerprint: str, sequence: str) -> list[Hit]:
        with self._lock:
            self.calls[fingerprint] += 1
        gate = self.gates.get(fingerprint)
        if gate is not None:
            gate.wait(5)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.hits.get(fingerprint, []))

    def is_available(self) -> bool:
        return self.error is None

    def close(self):
        self.closed = True


class FakeDetector(BaseDetector):
    """Detector whose output is produced by a function of the record."""

    def __init__(
        self,
        kind: str,
        produce: Optional[Callable[[SequenceRecord], list[CandidateFeature]]] = None,
        error: Optional[Exception] = None,
    ):
        self.kind = kind
        self.produce = produce or (lambda record: [])
        self.error = error
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def detect(self, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        with self._lock:
            self.calls.append(record.id)
        if self.error is not None:
            raise self.error
        return self.produce(record)

    def is_available(self, config: dict) -> bool:
        return True


def make_store(*sequences: tuple[str, str], **kwargs) -> SequenceStore:
    """SequenceStore from (id, sequence) pairs."""
    return SequenceStore([build_record(rid, seq, **kwargs) for rid, seq in sequences])


def reverse_complement(sequence: str) -> str:
    return str(Seq(sequence).reverse_complement())


@pytest.fixture
def isolated_dirs(tmp_path, monkeypatch):
    """Point user config/cache dirs into tmp_path and clear env overrides."""
    for var in ("ANNOT_PIPELINE_DB", "ANNOT_PIPELINE_THREADS", "ANNOT_PIPELINE_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr("annot_pipeline.config.user_config_dir", lambda name: str(tmp_path / "user-config"))
    monkeypatch.setattr("annot_pipeline.config.user_cache_dir", lambda name: str(tmp_path / "user-cache"))
    return tmp_path


@pytest.fixture
def config(isolated_dirs):
    """Default configuration with small pools and quiet logging."""
    cfg = load_config()
    cfg["pipeline"]["threads"] = 2
    cfg["pipeline"]["locus_tag"] = "TEST"
    cfg["logging"]["level"] = "WARNING"
    return cfg


@pytest.fixture
def genome_fasta(tmp_path):
    path = tmp_path / "genome.fasta"
    path.write_text(
        ">contig1 test contig\n"
        f"{ORF_CONTIG}\n"
        ">contig2\n"
        "ACGTACGTNNNNNACGTACGT\n"
    )
    return path
