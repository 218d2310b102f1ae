"""tRNA detection with tRNAscan-SE and tmRNA detection with Aragorn."""

import re
from pathlib import Path

from annot_pipeline.detectors.base import ToolDetector
from annot_pipeline.models import TMRNA, TRNA, CandidateFeature, SequenceRecord

_ARAGORN_TMRNA = re.compile(r"^\s*\d+\s+tmRNA\S*\s+(c?)\[(-?\d+),(\d+)\]")


class TRNAscanDetector(ToolDetector):
    """tRNAscan-SE in bacterial mode, tabular output."""

    kind = TRNA
    default_binary = "tRNAscan-SE"

    def arguments(self, fasta: Path, workdir: Path, record: SequenceRecord, config: dict) -> list:
        return ["-B", "-q", "--brief", "--thread", 1, "-o", workdir / "trna.tsv", fasta]

    def parse(self, stdout: str, workdir: Path, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        output = workdir / "trna.tsv"
        text = output.read_text() if output.exists() else stdout
        return parse_trnascan(text, record.id)


def parse_trnascan(text: str, record_id: str) -> list[CandidateFeature]:
    """Parse tRNAscan-SE tabular output (begin > end means minus strand)."""
    features = []
    for line in text.splitlines():
        cols = [c.strip() for c in line.split("\t")]
        if len(cols) < 9 or not cols[1].isdigit():
            continue
        begin, end = int(cols[2]), int(cols[3])
        amino_acid, anticodon = cols[4], cols[5]
        strand = "+" if begin <= end else "-"
        note = cols[9] if len(cols) > 9 else ""
        if amino_acid == "Undet":
            product = "tRNA-Xxx"
        else:
            product = f"tRNA-{amino_acid}({anticodon.lower()})"
        attributes = [("anticodon", anticodon)]
        if "pseudo" in note.lower() or amino_acid == "Pseudo":
            attributes.append(("pseudo", "true"))
        features.append(CandidateFeature(
            type=TRNA,
            record_id=record_id,
            start=min(begin, end),
            stop=max(begin, end),
            strand=strand,
            product=product,
            score=float(cols[8]),
            source="tRNAscan-SE",
            attributes=tuple(attributes),
        ))
    return features


class AragornDetector(ToolDetector):
    """Aragorn restricted to tmRNA genes (-m), batch output (-w)."""

    kind = TMRNA
    default_binary = "aragorn"

    def arguments(self, fasta: Path, workdir: Path, record: SequenceRecord, config: dict) -> list:
        topology = "-c" if record.is_circular else "-l"
        return ["-m", "-gcbact", topology, "-w", "-o", workdir / "tmrna.txt", fasta]

    def parse(self, stdout: str, workdir: Path, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        output = workdir / "tmrna.txt"
        text = output.read_text() if output.exists() else stdout
        return parse_aragorn(text, record.id, len(record))


def parse_aragorn(text: str, record_id: str, length: int) -> list[CandidateFeature]:
    """Parse Aragorn -w tmRNA lines; hits wrapping the sequence end are dropped."""
    features = []
    for line in text.splitlines():
        match = _ARAGORN_TMRNA.match(line)
        if not match:
            continue
        complement, start, stop = match.group(1), int(match.group(2)), int(match.group(3))
        if start < 1 or stop > length or start > stop:
            continue
        features.append(CandidateFeature(
            type=TMRNA,
            record_id=record_id,
            start=start,
            stop=stop,
            strand="-" if complement else "+",
            product="transfer-messenger RNA, SsrA",
            name="ssrA",
            source="Aragorn",
        ))
    return features
