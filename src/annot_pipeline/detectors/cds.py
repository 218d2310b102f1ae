"""Coding sequence prediction with Prodigal."""

import logging
from pathlib import Path

from Bio.Seq import Seq

from annot_pipeline.detectors.base import ToolDetector
from annot_pipeline.models import CDS, CandidateFeature, SequenceRecord

logger = logging.getLogger("annot_pipeline.detectors.cds")


class ProdigalDetector(ToolDetector):
    """Calls CDS per record; short records fall back to metagenomic mode."""

    kind = CDS
    default_binary = "prodigal"

    def arguments(self, fasta: Path, workdir: Path, record: SequenceRecord, config: dict) -> list:
        mode = config.get("mode", "single")
        if len(record) < int(config.get("meta_below", 20000)):
            mode = "meta"
        args = ["-i", fasta, "-f", "gff", "-p", mode, "-q"]
        if mode == "single":
            args += ["-g", int(config.get("translation_table", 11))]
        if record.is_circular:
            args.append("-c")
        return args

    def parse(self, stdout: str, workdir: Path, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        table = int(config.get("translation_table", 11))
        features = []
        for line in stdout.splitlines():
            if not line.strip() or line.startswith("#"):
                continue
            cols = line.rstrip("\n").split("\t")
            if len(cols) < 9 or cols[2] != "CDS":
                continue
            start, stop, strand = int(cols[3]), int(cols[4]), cols[6]
            attributes = dict(
                part.split("=", 1) for part in cols[8].strip(";").split(";") if "=" in part
            )
            partial = attributes.get("partial", "00")
            features.append(CandidateFeature(
                type=CDS,
                record_id=record.id,
                start=start,
                stop=stop,
                strand=strand,
                score=float(attributes.get("score", cols[5] if cols[5] != "." else 0.0)),
                translation=translate_cds(record.sequence, start, stop, strand, table, partial),
                source="Prodigal",
                attributes=(
                    ("partial", partial),
                    ("start_type", attributes.get("start_type", "")),
                ),
            ))
        return features


def translate_cds(sequence: str, start: int, stop: int, strand: str, table: int = 11, partial: str = "00") -> str:
    """Translate a called gene; complete genes always start with Met."""
    nt = Seq(sequence[start - 1:stop])
    if strand == "-":
        nt = nt.reverse_complement()
    nt = nt[: len(nt) - len(nt) % 3]
    protein = str(nt.translate(table=table)).rstrip("*")
    five_prime_complete = (partial[0] if strand == "+" else partial[-1]) == "0"
    if protein and five_prime_complete:
        protein = "M" + protein[1:]
    return protein
