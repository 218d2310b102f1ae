"""CRISPR array detection with PILER-CR."""

import re
from pathlib import Path

from annot_pipeline.detectors.base import ToolDetector
from annot_pipeline.models import CRISPR, CandidateFeature, SequenceRecord

# Array  Sequence  Position  Length  #Copies  Repeat  Spacer  [Distance]  Consensus
_SUMMARY_ROW = re.compile(
    r"^\s*(\d+)\s+(\S+)\s+(\d+)\s+(\d+)\s+(\d+)\s+(\d+)\s+(\d+)\s+(?:\d+\s+)?([ACGTUN]+)\s*$"
)


class PilerCRDetector(ToolDetector):
    kind = CRISPR
    default_binary = "pilercr"
    min_sequence_length = 1000

    def arguments(self, fasta: Path, workdir: Path, record: SequenceRecord, config: dict) -> list:
        return ["-in", fasta, "-out", workdir / "crispr.txt", "-noinfo", "-quiet"]

    def parse(self, stdout: str, workdir: Path, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        output = workdir / "crispr.txt"
        text = output.read_text() if output.exists() else ""
        return parse_pilercr(text, record.id)


def parse_pilercr(text: str, record_id: str) -> list[CandidateFeature]:
    """Parse the 'SUMMARY BY POSITION' section of a PILER-CR report."""
    features = []
    in_summary = False
    for line in text.splitlines():
        if line.startswith("SUMMARY BY POSITION"):
            in_summary = True
            continue
        if line.startswith("SUMMARY BY SIMILARITY"):
            in_summary = False
            continue
        if not in_summary:
            continue
        match = _SUMMARY_ROW.match(line)
        if not match:
            continue
        position, length = int(match.group(3)), int(match.group(4))
        copies, repeat_length, spacer_length = match.group(5), match.group(6), match.group(7)
        consensus = match.group(8)
        features.append(CandidateFeature(
            type=CRISPR,
            record_id=record_id,
            start=position,
            stop=position + length - 1,
            strand=".",
            product=(
                f"CRISPR array with {copies} repeats of length {repeat_length}, "
                f"consensus sequence {consensus} and spacer length {spacer_length}"
            ),
            source="PILER-CR",
            attributes=(("rpt_unit_seq", consensus), ("repeats", copies)),
        ))
    return features
