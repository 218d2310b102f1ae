"""Main pipeline orchestrator for annot-pipeline.

Coordinates detection, protein lookup, aggregation and export.
"""

import logging
from collections import Counter
from pathlib import Path
from typing import Any, Optional

from annot_pipeline.aggregate import aggregate
from annot_pipeline.config import get_detector_config, load_config, priority_groups
from annot_pipeline.detectors import BaseDetector, build_detectors
from annot_pipeline.exporters import export_all, generate_summary
from annot_pipeline.lookup import LookupEngine
from annot_pipeline.models import (
    FEATURE_TYPES, SORF, TIER_UNRESOLVED, TRANSLATED_TYPES,
    AnnotatedFeature, AnnotationResult, AnnotationRun, CandidateFeature, TaskResult,
)
from annot_pipeline.scheduler import CPU, IO, SKIPPED, Task, TaskScheduler
from annot_pipeline.sequences import SequenceStore, load_sequences
from annot_pipeline.services import BaseService
from annot_pipeline.utils import PersistentResultStore, fingerprint, setup_logging

logger = logging.getLogger("annot_pipeline")

_FASTA_SUFFIXES = {".fasta", ".fna", ".fa", ".fas", ".fsa", ".seq", ".gz"}


class AnnotationPipeline:
    """Main pipeline class that orchestrates one genome annotation run."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[dict[str, Any]] = None,
        detectors: Optional[dict[str, BaseDetector]] = None,
        services: Optional[dict[str, Optional[BaseService]]] = None,
    ):
        """Initialize the pipeline.

        Args:
            config_path: Optional path to custom config file.
            config: Already loaded configuration; takes precedence over config_path.
            detectors: Detector instances keyed by kind (all registered ones by default).
            services: Lookup services keyed by tier (built from the database by default).
        """
        self.config = config if config is not None else load_config(config_path)

        # Setup logging
        log_config = self.config.get("logging", {})
        setup_logging(
            level=log_config.get("level", "INFO"),
            log_file=log_config.get("file") or None,
        )

        self._detectors = detectors if detectors is not None else build_detectors()
        self._services = services
        self.lookup_stats: dict = {}

    @property
    def persistent_cache(self) -> PersistentResultStore:
        persistent = self.config.get("cache", {}).get("persistent", {})
        return PersistentResultStore(
            cache_dir=persistent["directory"],
            ttl_days=int(persistent.get("ttl_days", 30)),
            enabled=True,
        )

    def annotate(self, store: SequenceStore) -> AnnotationRun:
        """Detect, look up and aggregate the features of every record.

        Raises:
            FatalAnnotationError: A fatal detector or lookup failure; nothing
                partial is returned.
        """
        pipeline_cfg = self.config.get("pipeline", {})
        run = AnnotationRun()

        with TaskScheduler.from_config(self.config) as scheduler:
            engine = LookupEngine.from_config(
                self.config, executor=scheduler.executor(CPU), services=self._services,
            )
            try:
                candidates = self._detect(store, scheduler, run)
                annotated = self._lookup(candidates, engine, scheduler, run)
            finally:
                self.lookup_stats = engine.stats.snapshot()
                engine.close()

        aggregation_cfg = self.config.get("aggregation", {})
        aggregation = aggregate(
            store,
            annotated,
            priority=priority_groups(self.config) or None,
            allowed_overlaps=aggregation_cfg.get("allowed_overlaps") or (),
            locus_prefix=pipeline_cfg.get("locus_tag") or None,
            increment=int(pipeline_cfg.get("locus_tag_increment", 5)),
        )
        run.features = aggregation.features
        run.conflicts = aggregation.conflicts

        final = run.all_features()
        run.kind_counts = dict(Counter(item.feature.type for item in final))
        run.tier_counts = dict(Counter(item.annotation.tier for item in final if item.annotation is not None))
        logger.info(
            f"Annotated {len(final)} features on {len(store)} sequences "
            f"({len(run.conflicts)} overlap conflicts)"
        )
        return run

    def _detect(self, store: SequenceStore, scheduler: TaskScheduler, run: AnnotationRun) -> list[CandidateFeature]:
        tasks = []
        skipped = []
        for kind in FEATURE_TYPES:
            detector_cfg = get_detector_config(self.config, kind)
            detector = self._detectors.get(kind)
            if not detector_cfg.get("enabled", True) or detector is None:
                logger.info(f"Detector '{kind}' disabled, skipping")
                run.skipped_kinds.append(kind)
                skipped.extend(f"{kind}:{record.id}" for record in store)
                continue
            run.kind_failures.setdefault(kind, 0)
            for record in store:
                tasks.append(Task(
                    name=f"{kind}:{record.id}",
                    fn=detector.detect,
                    args=(record, detector_cfg),
                    task_class=CPU,
                    fatal=bool(detector_cfg.get("fatal")),
                    metadata={"kind": kind, "record_id": record.id},
                ))

        logger.info(f"Running {len(tasks)} detector tasks on {len(store)} sequences")
        results = scheduler.schedule(tasks, desc="detect")
        run.tasks.extend(results)
        run.tasks.extend(
            TaskResult(index=len(results) + i, name=name, task_class=CPU, status=SKIPPED)
            for i, name in enumerate(skipped)
        )

        candidates = []
        for task, result in zip(tasks, results):
            kind = task.metadata["kind"]
            if not result.ok:
                run.kind_failures[kind] += 1
                logger.warning(f"No {kind} features for {task.metadata['record_id']}: {result.status}")
                continue
            for feature in result.value or []:
                if feature.record_id not in store or feature.type != kind:
                    logger.warning(f"Discarding invalid {kind} candidate {feature.key}")
                    continue
                candidates.append(feature)
        return candidates

    def _lookup(
        self,
        candidates: list[CandidateFeature],
        engine: LookupEngine,
        scheduler: TaskScheduler,
        run: AnnotationRun,
    ) -> list[AnnotatedFeature]:
        keep_unresolved = bool(get_detector_config(self.config, SORF).get("keep_unresolved"))

        proteins = [c for c in candidates if c.type in TRANSLATED_TYPES and c.translation]
        annotated = [AnnotatedFeature(c) for c in candidates if c.type not in TRANSLATED_TYPES or not c.translation]

        fingerprints = [fingerprint(c.translation) for c in proteins]
        # Lookups are bounded per tier inside the engine, not per slot
        tasks = [
            Task(name=f"lookup:{c.key}", fn=engine.resolve, args=(fp, c.translation), task_class=IO, timeout=0)
            for c, fp in zip(proteins, fingerprints)
        ]
        logger.info(f"Looking up {len(tasks)} proteins ({len(set(fingerprints))} distinct)")
        results = scheduler.schedule(tasks, desc="lookup")
        run.tasks.extend(results)

        dropped = 0
        for candidate, fp, result in zip(proteins, fingerprints, results):
            if result.ok:
                annotation = result.value
            else:
                logger.warning(f"Lookup for {candidate.key} {result.status}; leaving it unresolved")
                annotation = AnnotationResult(fingerprint=fp, tier=TIER_UNRESOLVED)
            if candidate.type == SORF and not annotation.resolved and not keep_unresolved:
                dropped += 1
                continue
            annotated.append(AnnotatedFeature(candidate, annotation))

        if dropped:
            logger.info(f"Dropped {dropped} unresolved sORFs")
        return annotated

    def run(self, genome: str, output_dir: str = "output", prefix: Optional[str] = None) -> dict[str, str]:
        """Annotate a genome FASTA file and write all configured outputs.

        Args:
            genome: Path to the (optionally gzipped) FASTA assembly.
            output_dir: Directory for the output files.
            prefix: Output file name prefix (defaults to the genome file name).

        Returns:
            Dict mapping output format to the written file path.
        """
        pipeline_cfg = self.config.get("pipeline", {})
        store = load_sequences(
            genome,
            min_contig_length=int(pipeline_cfg.get("min_contig_length", 1)),
            complete=bool(pipeline_cfg.get("complete", False)),
            translation_table=int(pipeline_cfg.get("translation_table", 11)),
        )
        result = self.annotate(store)

        paths = export_all(
            store,
            result,
            output_dir,
            prefix or genome_prefix(genome),
            formats=self.config.get("output", {}).get("formats"),
            lookup_stats=self.lookup_stats,
        )

        # Print summary
        logger.info("\n" + generate_summary(store, result))
        return paths

    def check_tools(self) -> dict[str, bool]:
        """Check availability of enabled detectors and lookup services.

        Returns:
            Dict mapping detector kind / lookup tier to availability status.
        """
        status = {}
        for kind in FEATURE_TYPES:
            detector_cfg = get_detector_config(self.config, kind)
            detector = self._detectors.get(kind)
            if detector is None or not detector_cfg.get("enabled", True):
                continue
            status[kind] = detector.is_available(detector_cfg)

        engine = LookupEngine.from_config(self.config, services=self._services)
        try:
            for tier, available in engine.is_available().items():
                status[f"lookup:{tier}"] = available
        finally:
            engine.close()
        return status


def genome_prefix(genome: str) -> str:
    """Output prefix from a genome path: file name without FASTA/gzip suffixes."""
    name = Path(genome).name
    while Path(name).suffix.lower() in _FASTA_SUFFIXES:
        name = Path(name).stem
    return name or "annotation"
