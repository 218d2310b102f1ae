"""Feature detector modules for annot-pipeline."""

from annot_pipeline.detectors.base import BaseDetector, ToolDetector
from annot_pipeline.detectors.cds import ProdigalDetector
from annot_pipeline.detectors.crispr import PilerCRDetector
from annot_pipeline.detectors.gaps import GapDetector
from annot_pipeline.detectors.rna import NcRNADetector, RRNADetector
from annot_pipeline.detectors.sorf import SorfDetector
from annot_pipeline.detectors.trna import AragornDetector, TRNAscanDetector
from annot_pipeline.models import CDS, CRISPR, GAP, NCRNA, RRNA, SORF, TMRNA, TRNA

DETECTORS: dict[str, type[BaseDetector]] = {
    TRNA: TRNAscanDetector,
    TMRNA: AragornDetector,
    RRNA: RRNADetector,
    NCRNA: NcRNADetector,
    CRISPR: PilerCRDetector,
    CDS: ProdigalDetector,
    SORF: SorfDetector,
    GAP: GapDetector,
}


def build_detectors() -> dict[str, BaseDetector]:
    """One instance of every registered detector, keyed by kind."""
    return {kind: cls() for kind, cls in DETECTORS.items()}


__all__ = ["BaseDetector", "ToolDetector", "DETECTORS", "build_detectors"]
