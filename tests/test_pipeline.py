"""End-to-end tests of the orchestrator with fake detectors and services."""

import pandas as pd
import pytest
from typer.testing import CliRunner

from annot_pipeline.cli import app
from annot_pipeline.detectors.gaps import GapDetector
from annot_pipeline.detectors.sorf import SorfDetector
from annot_pipeline.exceptions import DetectorError, LookupServiceError
from annot_pipeline.models import (
    CDS, GAP, NCRNA, SORF, TIER_CLUSTER, TIER_EXACT, TIER_MODEL, TIER_UNRESOLVED, TRNA, CandidateFeature, Hit,
)
from annot_pipeline.pipeline import AnnotationPipeline, genome_prefix
from annot_pipeline.sequences import load_sequences
from annot_pipeline.utils import fingerprint

from conftest import ORF_PROTEIN, FakeDetector, FakeService

DUPLICATE = "MKTAYIAKQRQISFVKSHFSRQ"


def _cds_calls(record):
    """One CDS on the ORF of contig1 and two copies of the same protein on contig2."""
    if record.id == "contig1":
        return [CandidateFeature(type=CDS, record_id=record.id, start=3, stop=44, translation=ORF_PROTEIN, score=10.0)]
    return [
        CandidateFeature(type=CDS, record_id=record.id, start=1, stop=6, translation=DUPLICATE),
        CandidateFeature(type=CDS, record_id=record.id, start=14, stop=21, strand="-", translation=DUPLICATE),
    ]


def _ncrna_calls(record):
    if record.id == "contig1":
        return [CandidateFeature(type=NCRNA, record_id=record.id, start=30, stop=46, product="FMN riboswitch")]
    return []


def _detectors(**overrides):
    detectors = {
        CDS: FakeDetector(CDS, _cds_calls),
        NCRNA: FakeDetector(NCRNA, _ncrna_calls),
        TRNA: FakeDetector(TRNA),
        SORF: SorfDetector(),
        GAP: GapDetector(),
    }
    detectors.update(overrides)
    return detectors


def _services(**overrides):
    services = {
        TIER_EXACT: FakeService(TIER_EXACT, hits={
            fingerprint(ORF_PROTEIN): [Hit(source_id="UPI1", product="Alanine-rich protein", gene="alaX",
                                           cross_refs=("UniParc:UPI1",))],
        }),
        TIER_CLUSTER: FakeService(TIER_CLUSTER),
        TIER_MODEL: FakeService(TIER_MODEL),
    }
    services.update(overrides)
    return services


@pytest.fixture
def store(genome_fasta):
    return load_sequences(genome_fasta)


class TestAnnotate:
    def test_end_to_end(self, config, store):
        services = _services()
        run = AnnotationPipeline(config=config, detectors=_detectors(), services=services).annotate(store)

        contig1 = run.features["contig1"]
        cds = next(a for a in contig1 if a.feature.type == CDS)
        assert cds.annotation.tier == TIER_EXACT
        assert cds.product == "Alanine-rich protein"
        assert cds.gene == "alaX"
        assert cds.locus_tag.startswith("TEST_")

        # ncRNA overlapping the CDS loses; the sORF on the same span loses too
        assert NCRNA not in [a.feature.type for a in contig1]
        assert any(c.discarded.type == NCRNA and c.retained.type == CDS for c in run.conflicts)

        gap = next(a for a in run.features["contig2"] if a.feature.type == GAP)
        assert (gap.feature.start, gap.feature.stop) == (9, 13)
        assert gap.annotation is None

        assert run.kind_counts[CDS] == 3
        assert run.tier_counts == {TIER_EXACT: 1, TIER_UNRESOLVED: 2}
        assert all(name in run.skipped_kinds for name in ("tmrna", "rrna", "crispr"))

    def test_identical_proteins_are_looked_up_once(self, config, store):
        services = _services()
        AnnotationPipeline(config=config, detectors=_detectors(), services=services).annotate(store)
        for service in services.values():
            assert service.calls[fingerprint(DUPLICATE)] == 1

    def test_slow_lookups_outlast_io_task_limit(self, config, store):
        config["pipeline"]["timeouts"]["io"] = 0.05
        cluster = FakeService(TIER_CLUSTER, delay=0.2, hits={fingerprint(DUPLICATE): [Hit(
            source_id="UniRef90_7", product="Transcriptional regulator", score=80.0,
            identity=95.0, query_coverage=1.0, subject_coverage=1.0,
        )]})
        services = _services(**{TIER_CLUSTER: cluster})
        run = AnnotationPipeline(config=config, detectors=_detectors(), services=services).annotate(store)

        copies = [a for a in run.features["contig2"] if a.feature.translation == DUPLICATE]
        assert [a.annotation.tier for a in copies] == [TIER_CLUSTER, TIER_CLUSTER]
        assert [a.product for a in copies] == ["Transcriptional regulator"] * 2
        assert not [t for t in run.tasks if t.status == "timed_out"]
        assert cluster.calls[fingerprint(DUPLICATE)] == 1

    def test_deterministic(self, config, store):
        first = AnnotationPipeline(config=config, detectors=_detectors(), services=_services()).annotate(store)
        config["pipeline"]["threads"] = 4
        second = AnnotationPipeline(config=config, detectors=_detectors(), services=_services()).annotate(store)
        assert first.features == second.features
        assert first.conflicts == second.conflicts

    def test_disabled_kind_is_skipped(self, config, store):
        config["detectors"]["ncrna"]["enabled"] = False
        detectors = _detectors()
        run = AnnotationPipeline(config=config, detectors=detectors, services=_services()).annotate(store)
        assert NCRNA in run.skipped_kinds
        assert NCRNA not in run.kind_failures
        assert detectors[NCRNA].calls == []
        assert not [c for c in run.conflicts if c.discarded.type == NCRNA]
        skipped = {t.name for t in run.tasks if t.status == "skipped"}
        assert {"ncrna:contig1", "ncrna:contig2"} <= skipped

    def test_soft_detector_failure_is_isolated(self, config, store):
        detectors = _detectors(**{TRNA: FakeDetector(TRNA, error=DetectorError(TRNA, "binary missing"))})
        run = AnnotationPipeline(config=config, detectors=detectors, services=_services()).annotate(store)
        assert run.kind_failures[TRNA] == 2
        assert run.kind_counts[CDS] == 3
        assert sum(1 for t in run.tasks if t.status == "failed") == 2

    def test_fatal_detector_failure_aborts(self, config, store):
        detectors = _detectors(**{CDS: FakeDetector(CDS, error=DetectorError(CDS, "prodigal crashed"))})
        with pytest.raises(DetectorError, match="prodigal crashed"):
            AnnotationPipeline(config=config, detectors=detectors, services=_services()).annotate(store)

    def test_invalid_candidates_are_discarded(self, config, store):
        stray = FakeDetector(TRNA, lambda record: [
            CandidateFeature(type=TRNA, record_id="elsewhere", start=1, stop=10),
            CandidateFeature(type=CDS, record_id=record.id, start=1, stop=10),
        ])
        run = AnnotationPipeline(config=config, detectors=_detectors(**{TRNA: stray}), services=_services()).annotate(store)
        assert TRNA not in run.kind_counts
        assert run.kind_counts[CDS] == 3

    def test_resolved_sorf_is_kept(self, config, store):
        no_cds = _detectors(**{CDS: FakeDetector(CDS), NCRNA: FakeDetector(NCRNA)})
        run = AnnotationPipeline(config=config, detectors=no_cds, services=_services()).annotate(store)
        sorfs = [a for a in run.all_features() if a.feature.type == SORF]
        assert [(a.feature.translation, a.annotation.tier) for a in sorfs] == [(ORF_PROTEIN, TIER_EXACT)]

    def test_unresolved_sorfs_dropped_unless_kept(self, config, store):
        empty = {TIER_EXACT: FakeService(TIER_EXACT)}
        no_cds = _detectors(**{CDS: FakeDetector(CDS), NCRNA: FakeDetector(NCRNA)})
        run = AnnotationPipeline(config=config, detectors=no_cds, services=_services(**empty)).annotate(store)
        assert SORF not in run.kind_counts

        config["detectors"]["sorf"]["keep_unresolved"] = True
        run = AnnotationPipeline(config=config, detectors=no_cds, services=_services(**empty)).annotate(store)
        sorfs = [a for a in run.all_features() if a.feature.type == SORF]
        assert [a.annotation.tier for a in sorfs] == [TIER_UNRESOLVED]
        assert sorfs[0].product == "hypothetical protein"

    def test_unreachable_service_aborts(self, config, store):
        services = _services(**{TIER_EXACT: FakeService(TIER_EXACT, error=LookupServiceError("fake-exact", "down"))})
        with pytest.raises(LookupServiceError):
            AnnotationPipeline(config=config, detectors=_detectors(), services=services).annotate(store)

    def test_services_closed_after_run(self, config, store):
        services = _services()
        AnnotationPipeline(config=config, detectors=_detectors(), services=services).annotate(store)
        assert all(service.closed for service in services.values())


class TestRun:
    def test_writes_outputs(self, config, genome_fasta, tmp_path):
        pipeline = AnnotationPipeline(config=config, detectors=_detectors(), services=_services())
        paths = pipeline.run(str(genome_fasta), output_dir=str(tmp_path / "out"))
        assert set(paths) == {"tsv", "gff3", "json", "faa"}
        assert paths["tsv"].endswith("genome.tsv")
        df = pd.read_csv(paths["tsv"], sep="\t")
        assert len(df) == 4
        assert set(df["type"]) >= {CDS, GAP}
        assert pipeline.lookup_stats["service_calls"][TIER_EXACT] == 2

    def test_no_outputs_after_fatal_failure(self, config, genome_fasta, tmp_path):
        services = _services(**{TIER_EXACT: FakeService(TIER_EXACT, error=LookupServiceError("fake-exact", "down"))})
        pipeline = AnnotationPipeline(config=config, detectors=_detectors(), services=services)
        out = tmp_path / "out"
        with pytest.raises(LookupServiceError):
            pipeline.run(str(genome_fasta), output_dir=str(out))
        assert not out.exists() or list(out.iterdir()) == []

    def test_check_tools(self, config):
        pipeline = AnnotationPipeline(config=config, detectors=_detectors(), services=_services())
        status = pipeline.check_tools()
        assert status[GAP] is True
        assert status["lookup:exact"] is True
        assert "tmrna" not in status

    def test_genome_prefix(self):
        assert genome_prefix("/data/ecoli.fna.gz") == "ecoli"
        assert genome_prefix("sample.v2.fasta") == "sample.v2"
        assert genome_prefix("assembly") == "assembly"


class TestCli:
    def test_missing_genome_exits_with_error(self, isolated_dirs):
        result = CliRunner().invoke(app, ["annotate", str(isolated_dirs / "missing.fasta"), "-o", str(isolated_dirs / "out")])
        assert result.exit_code == 1
        assert "Annotation failed" in result.output

    def test_unknown_skip_kind(self, isolated_dirs):
        result = CliRunner().invoke(app, ["annotate", "genome.fasta", "--skip", "operon"])
        assert result.exit_code == 2

    def test_detectors_table(self, isolated_dirs):
        result = CliRunner().invoke(app, ["detectors"])
        assert result.exit_code == 0
        assert "Feature Detectors" in result.output
