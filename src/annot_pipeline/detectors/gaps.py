"""Assembly gap detection: runs of N."""

import re

from annot_pipeline.detectors.base import BaseDetector
from annot_pipeline.models import GAP, CandidateFeature, SequenceRecord

_GAP = re.compile(r"N+")


class GapDetector(BaseDetector):
    """Reports every run of at least ``min_length`` unknown bases."""

    kind = GAP

    def detect(self, record: SequenceRecord, config: dict) -> list[CandidateFeature]:
        min_length = max(1, int(config.get("min_length", 1)))
        features = []
        for match in _GAP.finditer(record.sequence):
            length = match.end() - match.start()
            if length < min_length:
                continue
            features.append(CandidateFeature(
                type=GAP,
                record_id=record.id,
                start=match.start() + 1,
                stop=match.end(),
                strand=".",
                product="gap",
                source="annot-pipeline",
                attributes=(("estimated_length", str(length)),),
            ))
        return features
