"""Export modules for annot-pipeline.

Handles writing annotations to TSV, GFF3, JSON and protein FASTA. Every
file is written to a temporary sibling first and moved into place only
once complete.
"""

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd

from annot_pipeline.models import SO_TYPES, TRANSLATED_TYPES, AnnotatedFeature, AnnotationRun
from annot_pipeline.sequences import SequenceStore
from annot_pipeline.utils import atomic_write

logger = logging.getLogger("annot_pipeline.exporters")

TSV_COLUMNS = [
    "sequence_id", "type", "start", "stop", "strand", "locus_tag", "gene",
    "product", "tier", "source_id", "cross_refs", "score", "source",
]

FORMATS = ("tsv", "gff3", "json", "faa")
EXTENSIONS = {"tsv": ".tsv", "gff3": ".gff3", "json": ".json", "faa": ".faa"}

# Characters with a reserved meaning in GFF3 column 9
_GFF_ESCAPES = str.maketrans({
    "%": "%25", ";": "%3B", "=": "%3D", "&": "%26", ",": "%2C", "\t": "%09", "\n": "%0A",
})


def export_tsv(run: AnnotationRun, output_path: str | Path) -> str:
    """Export all features as a tab-separated table.

    Args:
        run: Finished annotation run.
        output_path: Path to output file.

    Returns:
        Path to the written file.
    """
    path = Path(output_path)
    df = pd.DataFrame([item.to_dict() for item in run.all_features()], columns=TSV_COLUMNS)
    with atomic_write(path) as f:
        df.to_csv(f, index=False, sep="\t")
    logger.info(f"Exported {len(df)} features to {path}")
    return str(path)


def _gff_escape(value: str) -> str:
    return str(value).translate(_GFF_ESCAPES)


def gff_attributes(item: AnnotatedFeature) -> str:
    """Column 9 of the GFF3 line for one feature."""
    pairs = [("ID", item.locus_tag), ("locus_tag", item.locus_tag)]
    if item.gene:
        pairs.append(("gene", item.gene))
    if item.product:
        pairs.append(("product", item.product))
    annotation = item.annotation
    if annotation is not None:
        pairs.append(("tier", annotation.tier))
        if annotation.cross_refs:
            pairs.append(("Dbxref", ",".join(_gff_escape(x) for x in annotation.cross_refs)))
    for key, value in item.feature.attributes:
        pairs.append((key, value))
    parts = []
    for key, value in pairs:
        escaped = value if key == "Dbxref" else _gff_escape(value)
        parts.append(f"{key}={escaped}")
    return ";".join(parts)


def export_gff3(store: SequenceStore, run: AnnotationRun, output_path: str | Path) -> str:
    """Export features as GFF3 with the sequences in a trailing ##FASTA section."""
    path = Path(output_path)
    count = 0
    with atomic_write(path) as f:
        f.write("##gff-version 3\n")
        for record in store:
            f.write(f"##sequence-region {record.id} 1 {len(record)}\n")
        for record in store:
            for item in run.features.get(record.id, []):
                feature = item.feature
                phase = "0" if feature.type in TRANSLATED_TYPES else "."
                columns = [
                    record.id,
                    feature.source or "annot-pipeline",
                    SO_TYPES.get(feature.type, feature.type),
                    str(feature.start),
                    str(feature.stop),
                    f"{feature.score:g}" if feature.score else ".",
                    feature.strand,
                    phase,
                    gff_attributes(item),
                ]
                f.write("\t".join(columns) + "\n")
                count += 1
        f.write("##FASTA\n")
        for record in store:
            f.write(f">{record.id}\n")
            for i in range(0, len(record.sequence), 80):
                f.write(f"{record.sequence[i:i + 80]}\n")
    logger.info(f"Exported {count} features to {path}")
    return str(path)


def feature_to_json(item: AnnotatedFeature) -> dict:
    data = item.to_dict()
    data["cross_refs"] = list(item.annotation.cross_refs) if item.annotation else []
    data["translation"] = item.feature.translation
    data["attributes"] = dict(item.feature.attributes)
    data["annotation"] = item.annotation.to_dict() if item.annotation else None
    return data


def export_json(
    store: SequenceStore,
    run: AnnotationRun,
    output_path: str | Path,
    lookup_stats: Optional[dict] = None,
) -> str:
    """Export the complete run (sequences, features, conflicts, task log) as JSON."""
    path = Path(output_path)
    document = {
        "sequences": [
            {"id": r.id, "length": len(r), "topology": r.topology, "description": r.description}
            for r in store
        ],
        "features": [feature_to_json(item) for item in run.all_features()],
        "conflicts": [c.to_dict() for c in run.conflicts],
        "summary": run.summary(),
        "lookup": lookup_stats or {},
        "tasks": [t.to_dict() for t in run.tasks],
    }
    with atomic_write(path) as f:
        json.dump(document, f, indent=2)
    logger.info(f"Exported run document to {path}")
    return str(path)


def export_proteins(run: AnnotationRun, output_path: str | Path) -> str:
    """Export translated features to protein FASTA.

    Args:
        run: Finished annotation run.
        output_path: Path to output FASTA file.

    Returns:
        Path to the written file.
    """
    path = Path(output_path)
    count = 0
    with atomic_write(path) as f:
        for item in run.all_features():
            seq = item.feature.translation
            if item.feature.type not in TRANSLATED_TYPES or not seq:
                continue
            f.write(f">{item.locus_tag} {item.product}\n")
            # Wrap at 80 characters
            for i in range(0, len(seq), 80):
                f.write(f"{seq[i:i + 80]}\n")
            count += 1
    logger.info(f"Exported {count} protein sequences to {path}")
    return str(path)


def export_all(
    store: SequenceStore,
    run: AnnotationRun,
    output_dir: str | Path,
    prefix: str,
    formats: Optional[Iterable[str]] = None,
    lookup_stats: Optional[dict] = None,
) -> dict[str, str]:
    """Write every requested format into output_dir.

    Returns:
        Dict mapping format name to written path.

    Raises:
        ValueError: For an unknown format name.
    """
    formats = list(formats or FORMATS)
    unknown = [f for f in formats if f not in FORMATS]
    if unknown:
        raise ValueError(f"Unknown output format(s): {', '.join(unknown)}. Available: {', '.join(FORMATS)}")

    output_dir = Path(output_dir)
    paths = {}
    for fmt in formats:
        target = output_dir / f"{prefix}{EXTENSIONS[fmt]}"
        if fmt == "tsv":
            paths[fmt] = export_tsv(run, target)
        elif fmt == "gff3":
            paths[fmt] = export_gff3(store, run, target)
        elif fmt == "json":
            paths[fmt] = export_json(store, run, target, lookup_stats=lookup_stats)
        else:
            paths[fmt] = export_proteins(run, target)
    return paths


def generate_summary(store: SequenceStore, run: AnnotationRun) -> str:
    """Generate a text summary of an annotation run.

    Args:
        store: The annotated sequences.
        run: Finished annotation run.

    Returns:
        Summary string.
    """
    summary = run.summary()
    lines = [
        "=" * 60,
        "Annotation Summary",
        "=" * 60,
        f"Sequences: {len(store)} ({store.total_length} bp)",
        f"Total features: {summary['features']}",
        "",
    ]

    if summary["kinds"]:
        lines.append("Features by type:")
        for kind, count in sorted(summary["kinds"].items()):
            lines.append(f"  {kind}: {count}")
        lines.append("")

    if summary["tiers"]:
        lines.append("Proteins by resolution tier:")
        for tier, count in sorted(summary["tiers"].items()):
            lines.append(f"  {tier}: {count}")
        lines.append("")

    failures = {k: v for k, v in summary["kind_failures"].items() if v}
    if failures:
        lines.append("Detector failures:")
        for kind, count in sorted(failures.items()):
            lines.append(f"  {kind}: {count}")
        lines.append("")

    if summary["skipped_kinds"]:
        lines.append(f"Skipped detectors: {', '.join(summary['skipped_kinds'])}")
    lines.append(f"Overlap conflicts: {summary['conflicts']}")

    lines.append("=" * 60)
    return "\n".join(lines)
