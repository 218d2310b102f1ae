"""Data models for annot-pipeline."""

from dataclasses import dataclass, field, asdict
from typing import Any, Optional

# Feature type tags
CDS = "cds"
TRNA = "trna"
TMRNA = "tmrna"
RRNA = "rrna"
NCRNA = "ncrna"
SORF = "sorf"
CRISPR = "crispr"
GAP = "gap"

FEATURE_TYPES = (CDS, TRNA, TMRNA, RRNA, NCRNA, SORF, CRISPR, GAP)

# Feature types whose translation goes through the lookup engine
TRANSLATED_TYPES = (CDS, SORF)

# Resolution tiers, in escalation order
TIER_EXACT = "exact"
TIER_CLUSTER = "cluster"
TIER_MODEL = "model"
TIER_UNRESOLVED = "unresolved"

TIERS = (TIER_EXACT, TIER_CLUSTER, TIER_MODEL, TIER_UNRESOLVED)

# GFF3 / INSDC feature keys used by the exporters
SO_TYPES = {
    CDS: "CDS",
    TRNA: "tRNA",
    TMRNA: "tmRNA",
    RRNA: "rRNA",
    NCRNA: "ncRNA",
    SORF: "CDS",
    CRISPR: "repeat_region",
    GAP: "gap",
}

LINEAR = "linear"
CIRCULAR = "circular"


@dataclass(frozen=True)
class SequenceRecord:
    """One replicon/contig of the input assembly.

    Immutable after load. translations holds the six reading frames in the
    order +1, +2, +3, -1, -2, -3, or is empty if not precomputed.
    """

    id: str
    sequence: str
    topology: str = LINEAR
    description: str = ""
    reverse_complement: str = ""
    translations: tuple[str, ...] = ()

    def __len__(self) -> int:
        return len(self.sequence)

    @property
    def is_circular(self) -> bool:
        return self.topology == CIRCULAR


@dataclass(frozen=True)
class CandidateFeature:
    """A detected, not yet annotated, genomic region.

    Coordinates are 1-based and inclusive with start <= stop regardless of strand.
    """

    type: str                              # one of FEATURE_TYPES
    record_id: str
    start: int
    stop: int
    strand: str = "+"                      # "+", "-" or "." for unstranded features
    product: str = ""                      # detector-provided product, e.g. "tRNA-Ala"
    score: float = 0.0
    translation: str = ""                  # amino acid sequence for CDS/sORF
    name: str = ""                         # gene symbol or model name
    source: str = ""                       # tool that produced the feature
    attributes: tuple[tuple[str, str], ...] = ()

    @property
    def length(self) -> int:
        return self.stop - self.start + 1

    @property
    def key(self) -> str:
        return f"{self.record_id}|{self.type}|{self.start}|{self.stop}|{self.strand}"

    def overlaps(self, other: "CandidateFeature") -> bool:
        return (
            self.record_id == other.record_id
            and self.start <= other.stop
            and other.start <= self.stop
        )

    def contains(self, other: "CandidateFeature") -> bool:
        return self.start <= other.start and other.stop <= self.stop


@dataclass(frozen=True)
class AnnotationResult:
    """Outcome of a tiered lookup. Cached by fingerprint, never mutated."""

    fingerprint: str
    tier: str                              # one of TIERS
    product: str = ""
    gene: str = ""
    cross_refs: tuple[str, ...] = ()       # e.g. "UniRef:UniRef90_P0A7B8"
    source_id: str = ""                    # matched exact entry, cluster or model id
    score: Optional[float] = None
    identity: Optional[float] = None
    coverage: Optional[float] = None
    evalue: Optional[float] = None

    @property
    def resolved(self) -> bool:
        return self.tier != TIER_UNRESOLVED

    def to_dict(self) -> dict:
        data = asdict(self)
        data["cross_refs"] = list(self.cross_refs)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AnnotationResult":
        values = dict(data)
        values["cross_refs"] = tuple(values.get("cross_refs") or ())
        return cls(**values)


@dataclass(frozen=True)
class AnnotatedFeature:
    """CandidateFeature merged with its lookup result and final locus tag."""

    feature: CandidateFeature
    annotation: Optional[AnnotationResult] = None
    locus_tag: str = ""

    @property
    def product(self) -> str:
        if self.annotation is not None and self.annotation.resolved and self.annotation.product:
            return self.annotation.product
        if self.feature.product:
            return self.feature.product
        if self.feature.type in TRANSLATED_TYPES:
            return "hypothetical protein"
        return ""

    @property
    def gene(self) -> str:
        if self.annotation is not None and self.annotation.gene:
            return self.annotation.gene
        return self.feature.name

    def to_dict(self) -> dict:
        """Flatten into a row for tabular export."""
        f = self.feature
        return {
            "sequence_id": f.record_id,
            "type": f.type,
            "start": f.start,
            "stop": f.stop,
            "strand": f.strand,
            "locus_tag": self.locus_tag,
            "gene": self.gene,
            "product": self.product,
            "tier": self.annotation.tier if self.annotation else "",
            "source_id": self.annotation.source_id if self.annotation else "",
            "cross_refs": ",".join(self.annotation.cross_refs) if self.annotation else "",
            "score": f.score,
            "source": f.source,
        }


@dataclass(frozen=True)
class Hit:
    """A single match returned by a lookup service."""

    source_id: str
    product: str = ""
    score: float = 0.0                     # bit-score for alignments, model score for HMMs
    identity: float = 0.0                  # percent identity, 0-100
    query_coverage: float = 0.0            # fraction, 0-1
    subject_coverage: float = 0.0          # fraction, 0-1
    evalue: float = 0.0
    gene: str = ""
    cross_refs: tuple[str, ...] = ()


@dataclass
class TaskResult:
    """Outcome slot of one scheduled task."""

    index: int
    name: str
    task_class: str
    status: str = "ok"                     # ok, failed, timed_out, cancelled, skipped
    value: Any = None
    error: Optional[BaseException] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "name": self.name,
            "task_class": self.task_class,
            "status": self.status,
            "error": str(self.error) if self.error else None,
            "duration": round(self.duration, 4),
        }


@dataclass(frozen=True)
class ConflictRecord:
    """A feature dropped by overlap resolution, with the feature that won."""

    record_id: str
    retained: CandidateFeature
    discarded: CandidateFeature
    reason: str = "priority"               # "priority" or "tie_break"

    def to_dict(self) -> dict:
        return {
            "sequence_id": self.record_id,
            "retained": self.retained.key,
            "discarded": self.discarded.key,
            "reason": self.reason,
        }


@dataclass
class AnnotationRun:
    """Everything one pipeline run hands to the exporters."""

    features: dict[str, list[AnnotatedFeature]] = field(default_factory=dict)
    conflicts: list[ConflictRecord] = field(default_factory=list)
    tasks: list[TaskResult] = field(default_factory=list)
    tier_counts: dict[str, int] = field(default_factory=dict)
    kind_counts: dict[str, int] = field(default_factory=dict)
    kind_failures: dict[str, int] = field(default_factory=dict)
    skipped_kinds: list[str] = field(default_factory=list)

    def all_features(self) -> list[AnnotatedFeature]:
        return [f for features in self.features.values() for f in features]

    def summary(self) -> dict:
        statuses: dict[str, int] = {}
        for task in self.tasks:
            statuses[task.status] = statuses.get(task.status, 0) + 1
        return {
            "features": sum(len(v) for v in self.features.values()),
            "tiers": dict(self.tier_counts),
            "kinds": dict(self.kind_counts),
            "kind_failures": dict(self.kind_failures),
            "skipped_kinds": list(self.skipped_kinds),
            "conflicts": len(self.conflicts),
            "tasks": statuses,
        }
