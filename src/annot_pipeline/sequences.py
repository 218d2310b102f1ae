"""Sequence store: the validated, read-only input assembly.

Records are loaded once with Biopython, validated, and never mutated
afterwards, so detector and lookup tasks can share them without locking.
"""

import gzip
import logging
import re
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Optional

from Bio import SeqIO
from Bio.Seq import Seq

from annot_pipeline.exceptions import InputError
from annot_pipeline.models import CIRCULAR, LINEAR, SequenceRecord

logger = logging.getLogger("annot_pipeline.sequences")

_VALID_NUCLEOTIDES = re.compile(r"^[ACGTRYSWKMBDHVN]*$")
_CIRCULAR_TOKEN = re.compile(r"(\[topology=circular\]|circular=true)", re.IGNORECASE)


class SequenceStore:
    """Ordered, immutable collection of SequenceRecords keyed by id."""

    def __init__(self, records: list[SequenceRecord]):
        index: dict[str, SequenceRecord] = {}
        for record in records:
            if record.id in index:
                raise InputError(f"Duplicate sequence id '{record.id}'")
            index[record.id] = record
        self._records = MappingProxyType(index)
        self._order = tuple(index)

    def __getitem__(self, record_id: str) -> SequenceRecord:
        return self._records[record_id]

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def __iter__(self) -> Iterator[SequenceRecord]:
        return (self._records[record_id] for record_id in self._order)

    def __len__(self) -> int:
        return len(self._order)

    @property
    def ids(self) -> tuple[str, ...]:
        return self._order

    def get(self, record_id: str) -> Optional[SequenceRecord]:
        return self._records.get(record_id)

    @property
    def total_length(self) -> int:
        return sum(len(r) for r in self)


def six_frame_translations(sequence: str, reverse_complement: str, table: int = 11) -> tuple[str, ...]:
    """Translate frames +1, +2, +3, -1, -2, -3 (stops rendered as '*')."""
    frames = []
    for strand_seq in (sequence, reverse_complement):
        for offset in range(3):
            sub = strand_seq[offset:]
            sub = sub[: len(sub) - len(sub) % 3]
            frames.append(str(Seq(sub).translate(table=table)))
    return tuple(frames)


def build_record(
    record_id: str,
    sequence: str,
    description: str = "",
    topology: str = LINEAR,
    translation_table: int = 11,
    precompute: bool = True,
) -> SequenceRecord:
    """Validate one sequence and build its immutable record."""
    seq = "".join(sequence.split()).upper()
    if not seq:
        raise InputError(f"Sequence '{record_id}' is empty")
    if not _VALID_NUCLEOTIDES.match(seq):
        bad = sorted(set(re.sub(r"[ACGTRYSWKMBDHVN]", "", seq)))
        raise InputError(f"Sequence '{record_id}' contains invalid characters: {''.join(bad)}")

    reverse_complement = ""
    translations: tuple[str, ...] = ()
    if precompute:
        reverse_complement = str(Seq(seq).reverse_complement())
        translations = six_frame_translations(seq, reverse_complement, translation_table)

    return SequenceRecord(
        id=record_id,
        sequence=seq,
        topology=topology,
        description=description,
        reverse_complement=reverse_complement,
        translations=translations,
    )


def load_sequences(
    path: str | Path,
    min_contig_length: int = 1,
    complete: bool = False,
    translation_table: int = 11,
    precompute: bool = True,
) -> SequenceStore:
    """Load and validate a (optionally gzipped) FASTA assembly.

    Args:
        path: FASTA file path.
        min_contig_length: Sequences shorter than this are discarded.
        complete: Treat every sequence as a complete, circular replicon.
        translation_table: NCBI genetic code for the six-frame translations.
        precompute: Precompute reverse complements and translations.

    Returns:
        The populated SequenceStore.

    Raises:
        InputError: If the file is missing, unreadable, empty or malformed.
    """
    path = Path(path)
    if not path.is_file():
        raise InputError(f"Genome file not found: {path}")

    records: list[SequenceRecord] = []
    discarded = 0
    opener = gzip.open if path.suffix == ".gz" else open
    try:
        with opener(path, "rt") as handle:
            for raw in SeqIO.parse(handle, "fasta"):
                description = raw.description[len(raw.id):].strip()
                if len(raw.seq) < min_contig_length:
                    discarded += 1
                    continue
                topology = CIRCULAR if complete or _CIRCULAR_TOKEN.search(description) else LINEAR
                records.append(build_record(
                    raw.id,
                    str(raw.seq),
                    description=description,
                    topology=topology,
                    translation_table=translation_table,
                    precompute=precompute,
                ))
    except (OSError, UnicodeDecodeError, ValueError) as e:
        raise InputError(f"Could not parse genome file {path}: {e}") from e

    if discarded:
        logger.info(f"Discarded {discarded} sequences shorter than {min_contig_length} bp")
    if not records:
        raise InputError(f"No sequences found in {path}")

    store = SequenceStore(records)
    logger.info(f"Loaded {len(store)} sequences ({store.total_length:,} bp) from {path}")
    return store
