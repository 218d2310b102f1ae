"""Small ORF (sORF) detection over the six-frame translations."""

import re

from Bio.Seq import Seq

from annot_pipeline.detectors.base import BaseDetector
from annot_pipeline.models import SORF, CandidateFeature, SequenceRecord
from annot_pipeline.sequences import six_frame_translations

# Leftmost start codon of each stop-delimited stretch, up to and including the stop
_ORF = re.compile(r"M[^*]*\*")


class SorfDetector(BaseDetector):
    """Finds complete ORFs of ``min_length``..``max_length`` amino acids."""

    kind = SORF

    def detect(self, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        min_length = int(config.get("min_length", 10))
        max_length = int(config.get("max_length", 30))
        frames = record.translations
        if not frames:
            rc = record.reverse_complement or str(Seq(record.sequence).reverse_complement())
            frames = six_frame_translations(record.sequence, rc, int(config.get("translation_table", 11)))

        length = len(record)
        features = []
        for frame_index, protein in enumerate(frames):
            offset = frame_index % 3
            strand = "+" if frame_index < 3 else "-"
            for match in _ORF.finditer(protein):
                aa_length = match.end() - match.start() - 1
                if not min_length <= aa_length <= max_length:
                    continue
                # nucleotide span in this frame's coordinates, stop codon included
                begin = offset + 3 * match.start() + 1
                end = offset + 3 * match.end()
                if strand == "+":
                    start, stop = begin, end
                else:
                    start, stop = length - end + 1, length - begin + 1
                features.append(CandidateFeature(
                    type=SORF,
                    record_id=record.id,
                    start=start,
                    stop=stop,
                    strand=strand,
                    translation=match.group()[:-1],
                    source="annot-pipeline",
                ))
        features.sort(key=lambda f: (f.start, f.strand))
        return features
