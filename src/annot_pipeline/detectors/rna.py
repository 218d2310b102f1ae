"""rRNA and ncRNA detection with Infernal cmscan against Rfam models."""

from abc import abstractmethod
from dataclasses import replace
from pathlib import Path

from annot_pipeline.detectors.base import ToolDetector, model_path
from annot_pipeline.models import NCRNA, RRNA, CandidateFeature, SequenceRecord

# Rfam accession -> (product, gene)
RRNA_MODELS = {
    "RF00001": ("5S ribosomal RNA", "rrf"),
    "RF00177": ("16S ribosomal RNA", "rrs"),
    "RF02541": ("23S ribosomal RNA", "rrl"),
}

# Families covered by dedicated detectors
NOT_NCRNA = set(RRNA_MODELS) | {"RF00005", "RF00023"}   # tRNA, tmRNA


class CmscanDetector(ToolDetector):
    """Shared cmscan invocation; subclasses decide which families to keep."""

    default_binary = "cmscan"

    @abstractmethod
    def accept(self, accession: str) -> bool:
        """Whether hits of this Rfam family belong to the detector."""

    def arguments(self, fasta: Path, workdir: Path, record: SequenceRecord, config: dict) -> list:
        return [
            "--noali", "--cut_tc", "-g", "--nohmmonly", "--rfam",
            "--cpu", 1,
            "--tblout", workdir / "hits.tblout",
            model_path(config), fasta,
        ]

    def parse(self, stdout: str, workdir: Path, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        tblout = workdir / "hits.tblout"
        text = tblout.read_text() if tblout.exists() else ""
        features = []
        for hit in parse_cmscan_tblout(text):
            if hit["evalue"] > float(config.get("max_evalue", 1e-4)) or not self.accept(hit["accession"]):
                continue
            features.append(self.feature(record.id, hit))
        return drop_overlapping(features)

    def feature(self, record_id: str, hit: dict) -> CandidateFeature:
        return CandidateFeature(
            type=self.kind,
            record_id=record_id,
            start=hit["start"],
            stop=hit["stop"],
            strand=hit["strand"],
            product=hit["description"] or hit["target"],
            name=hit["target"],
            score=hit["score"],
            source="Infernal",
            attributes=(("rfam", hit["accession"]), ("truncated", hit["trunc"])),
        )


class RRNADetector(CmscanDetector):
    kind = RRNA

    def accept(self, accession: str) -> bool:
        return accession in RRNA_MODELS

    def feature(self, record_id: str, hit: dict) -> CandidateFeature:
        product, gene = RRNA_MODELS[hit["accession"]]
        return replace(super().feature(record_id, hit), product=product, name=gene)


class NcRNADetector(CmscanDetector):
    kind = NCRNA

    def accept(self, accession: str) -> bool:
        return accession not in NOT_NCRNA


def parse_cmscan_tblout(text: str) -> list[dict]:
    """Parse cmscan --tblout (format 1) rows."""
    hits = []
    for line in text.splitlines():
        if line.startswith("#") or not line.strip():
            continue
        fields = line.split()
        if len(fields) < 17:
            continue
        seq_from, seq_to, strand = int(fields[7]), int(fields[8]), fields[9]
        hits.append({
            "target": fields[0],
            "accession": fields[1],
            "query": fields[2],
            "start": min(seq_from, seq_to),
            "stop": max(seq_from, seq_to),
            "strand": strand,
            "trunc": fields[10],
            "score": float(fields[14]),
            "evalue": float(fields[15]),
            "description": " ".join(fields[17:]),
        })
    return hits


def drop_overlapping(features: list[CandidateFeature]) -> list[CandidateFeature]:
    """Keep the best-scoring hit among same-strand overlapping hits."""
    kept: list[CandidateFeature] = []
    for feature in sorted(features, key=lambda f: (-f.score, f.start, f.name)):
        if any(k.strand == feature.strand and k.overlaps(feature) for k in kept):
            continue
        kept.append(feature)
    return sorted(kept, key=lambda f: (f.start, f.strand))
