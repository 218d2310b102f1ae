"""Aggregation of annotated features into one ordered set per record.

Ensures that:
1. Overlapping features of incompatible types are resolved by a fixed
   precedence order; the losers are kept in a conflict log
2. Features are ordered by (start, strand, type precedence)
3. Locus tags depend only on the input, so re-runs reproduce them
"""

import bisect
import hashlib
import logging
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional

from annot_pipeline.exceptions import AggregationConflict
from annot_pipeline.models import (
    CDS, CRISPR, GAP, NCRNA, RRNA, SORF, TMRNA, TRNA,
    AnnotatedFeature, CandidateFeature, ConflictRecord,
)
from annot_pipeline.sequences import SequenceStore

logger = logging.getLogger("annot_pipeline.aggregate")

# Highest precedence first; kinds in one group share a precedence level
DEFAULT_PRIORITY = [[CRISPR], [TRNA, TMRNA, RRNA], [CDS], [SORF], [NCRNA], [GAP]]


@dataclass
class AggregationResult:
    features: dict[str, list[AnnotatedFeature]] = field(default_factory=dict)
    conflicts: list[ConflictRecord] = field(default_factory=list)


def priority_ranks(priority: Optional[Iterable] = None) -> dict[str, int]:
    """Map each kind to its precedence rank (0 = highest)."""
    ranks = {}
    for rank, group in enumerate(priority or DEFAULT_PRIORITY):
        kinds = [group] if isinstance(group, str) else group
        for kind in kinds:
            ranks.setdefault(kind, rank)
    return ranks


def derive_locus_prefix(store: SequenceStore, length: int = 6) -> str:
    """Deterministic upper-case prefix from the assembly content."""
    digest = hashlib.sha256()
    for record in store:
        digest.update(record.id.encode())
        digest.update(b"\0")
        digest.update(record.sequence.encode())
    raw = digest.digest()
    return "".join(chr(ord("A") + b % 26) for b in raw[:length])


class _Resolver:
    """Overlap bookkeeping for one record."""

    def __init__(self, ranks: dict[str, int], allowed: set[tuple[str, str]]):
        self._ranks = ranks
        self._allowed = allowed
        self._lowest = len(set(ranks.values()))
        self.accepted: list[AnnotatedFeature] = []
        self._starts: list[int] = []
        self._max_length = 0

    def rank(self, kind: str) -> int:
        return self._ranks.get(kind, self._lowest)

    def sort_key(self, item: AnnotatedFeature) -> tuple:
        f = item.feature
        return (self.rank(f.type), -f.score, -f.length, f.start, f.strand, f.type, f.stop, f.translation)

    def compatible(self, a: CandidateFeature, b: CandidateFeature) -> bool:
        if a.type == b.type:
            return True
        if (a.type, b.type) in self._allowed and b.contains(a):
            return True
        if (b.type, a.type) in self._allowed and a.contains(b):
            return True
        return False

    def precedence(self, kept: CandidateFeature, other: CandidateFeature) -> str:
        """Why *kept* beats *other*; raises when the order alone cannot tell."""
        if self.rank(kept.type) == self.rank(other.type):
            raise AggregationConflict(kept.type, other.type)
        return "priority"

    def blocking(self, feature: CandidateFeature) -> Optional[CandidateFeature]:
        """First accepted feature that overlaps *feature* with an incompatible type."""
        lo = bisect.bisect_left(self._starts, feature.start - self._max_length)
        hi = bisect.bisect_right(self._starts, feature.stop)
        for item in self.accepted[lo:hi]:
            other = item.feature
            if other.overlaps(feature) and not self.compatible(feature, other):
                return other
        return None

    def accept(self, item: AnnotatedFeature):
        index = bisect.bisect_right(self._starts, item.feature.start)
        self._starts.insert(index, item.feature.start)
        self.accepted.insert(index, item)
        self._max_length = max(self._max_length, item.feature.length)


def aggregate(
    store: SequenceStore,
    annotated: Iterable[AnnotatedFeature],
    priority: Optional[Iterable] = None,
    allowed_overlaps: Iterable[Iterable[str]] = (),
    locus_prefix: Optional[str] = None,
    increment: int = 5,
) -> AggregationResult:
    """Merge, overlap-resolve, order and tag all features.

    Features are visited from highest to lowest precedence (then by score,
    length and position) and retained unless they overlap an already
    retained feature of an incompatible type. Equal-precedence clashes are
    logged and settled by that same visiting order.

    Args:
        store: The sequence store; defines record order for locus tags.
        annotated: Features from every detector, with their annotations.
        priority: Kinds (or groups of kinds) from highest to lowest precedence.
        allowed_overlaps: (inner, outer) kind pairs allowed to nest.
        locus_prefix: Locus tag prefix; derived from the assembly if empty.
        increment: Step between consecutive locus tag numbers.

    Returns:
        AggregationResult with per-record feature lists and the conflict log.
    """
    ranks = priority_ranks(priority)
    allowed = {tuple(pair) for pair in allowed_overlaps}
    prefix = locus_prefix or derive_locus_prefix(store)

    per_record: dict[str, list[AnnotatedFeature]] = {record_id: [] for record_id in store.ids}
    for item in annotated:
        if item.feature.record_id not in per_record:
            raise ValueError(f"Feature {item.feature.key} refers to unknown sequence")
        per_record[item.feature.record_id].append(item)

    result = AggregationResult()
    counter = 0
    for record_id in store.ids:
        resolver = _Resolver(ranks, allowed)
        for item in sorted(per_record[record_id], key=resolver.sort_key):
            blocker = resolver.blocking(item.feature)
            if blocker is None:
                resolver.accept(item)
                continue
            try:
                reason = resolver.precedence(blocker, item.feature)
            except AggregationConflict as e:
                logger.info(f"{record_id}: {e}; kept {blocker.key} over {item.feature.key}")
                reason = "tie_break"
            result.conflicts.append(ConflictRecord(
                record_id=record_id, retained=blocker, discarded=item.feature, reason=reason,
            ))

        ordered = sorted(
            resolver.accepted,
            key=lambda a: (a.feature.start, a.feature.strand, resolver.rank(a.feature.type),
                           a.feature.type, a.feature.stop),
        )
        tagged = []
        for item in ordered:
            counter += increment
            tagged.append(replace(item, locus_tag=f"{prefix}_{counter:05d}"))
        result.features[record_id] = tagged

    if result.conflicts:
        logger.info(f"Overlap resolution discarded {len(result.conflicts)} features")
    return result
