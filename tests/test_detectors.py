"""Tests for the feature detectors and their output parsers."""

import pytest

from annot_pipeline.detectors import DETECTORS, build_detectors
from annot_pipeline.detectors.cds import ProdigalDetector, translate_cds
from annot_pipeline.detectors.crispr import parse_pilercr
from annot_pipeline.detectors.gaps import GapDetector
from annot_pipeline.detectors.rna import CmscanDetector, NcRNADetector, RRNADetector, parse_cmscan_tblout
from annot_pipeline.detectors.sorf import SorfDetector
from annot_pipeline.detectors.trna import TRNAscanDetector, parse_aragorn, parse_trnascan
from annot_pipeline.exceptions import DetectorError
from annot_pipeline.models import CDS, CRISPR, FEATURE_TYPES, GAP, NCRNA, RRNA, SORF, TMRNA, TRNA
from annot_pipeline.sequences import build_record

from conftest import ORF_CONTIG, ORF_PROTEIN, reverse_complement

CMSCAN_TBLOUT = """\
#target name         accession query name           accession mdl mdl from   mdl to seq from   seq to strand trunc pass   gc  bias  score   E-value inc description of target
#------------------- --------- -------------------- --------- --- -------- -------- -------- -------- ------ ----- ---- ---- ----- ------ --------- --- ---------------------
5S_rRNA              RF00001   contig1              -         cm         1      119      200      318      +    no    1 0.52   0.0   85.3   2.1e-18 !   5S ribosomal RNA
FMN                  RF00050   contig1              -         cm         1      140     1140     1000      -    no    1 0.45   0.0   90.1   1.1e-20 !   FMN riboswitch (RFN element)
tRNA                 RF00005   contig1              -         cm         1       71     2000     2071      +    no    1 0.55   0.0   60.2   3.3e-12 !   tRNA
weak                 RF09999   contig1              -         cm         1       80     3000     3080      +    no    1 0.40   0.0   12.0   5.0e-02 ?   Weak hit
"""

PILERCR_REPORT = """\
pilercr v1.06
By Robert C. Edgar

DETAIL REPORT

SUMMARY BY SIMILARITY

Array          Sequence    Position      Length  # Copies  Repeat  Spacer  +  Consensus
-----  ----------------  ----------  ----------  --------  ------  ------  -  ---------
    9           contig1        9999         100         2      29      32  +  GTTCACTGCCGTACAGGCAGCTTAGAAA

SUMMARY BY POSITION
===================

>contig1

Array          Sequence    Position      Length  # Copies  Repeat  Spacer    Distance  Consensus
-----  ----------------  ----------  ----------  --------  ------  ------  ----------  ---------
    1           contig1        1001         423         7      29      32              GTTCACTGCCGTACAGGCAGCTTAGAAA
    2           contig1        5001         183         3      29      32        3577  GTTCACTGCCGTACAGGCAGCTTAGAAA
"""


class TestRegistry:
    def test_every_feature_type_has_a_detector(self):
        assert set(DETECTORS) == set(FEATURE_TYPES)
        detectors = build_detectors()
        for kind, detector in detectors.items():
            assert detector.kind == kind

    def test_builtin_detectors_need_no_binary(self):
        assert GapDetector().is_available({})
        assert SorfDetector().is_available({})


class TestGapDetector:
    def test_finds_n_runs(self):
        record = build_record("c1", "ACGTNNNNNACGTNACGT")
        features = GapDetector().detect(record, {"min_length": 1})
        assert [(f.start, f.stop) for f in features] == [(5, 9), (14, 14)]
        assert all(f.type == GAP and f.strand == "." for f in features)
        assert dict(features[0].attributes)["estimated_length"] == "5"

    def test_min_length(self):
        record = build_record("c1", "ACGTNNNNNACGTNACGT")
        features = GapDetector().detect(record, {"min_length": 2})
        assert [(f.start, f.stop) for f in features] == [(5, 9)]


class TestSorfDetector:
    def test_forward_orf(self):
        record = build_record("c1", ORF_CONTIG)
        features = SorfDetector().detect(record, {"min_length": 10, "max_length": 30})
        match = [f for f in features if f.translation == ORF_PROTEIN]
        assert len(match) == 1
        assert (match[0].start, match[0].stop, match[0].strand) == (3, 44, "+")
        assert match[0].type == SORF

    def test_reverse_orf(self):
        record = build_record("c1", reverse_complement(ORF_CONTIG))
        features = SorfDetector().detect(record, {"min_length": 10, "max_length": 30})
        match = [f for f in features if f.translation == ORF_PROTEIN]
        assert len(match) == 1
        assert (match[0].start, match[0].stop, match[0].strand) == (3, 44, "-")

    def test_length_window(self):
        record = build_record("c1", ORF_CONTIG)
        features = SorfDetector().detect(record, {"min_length": 14, "max_length": 30})
        assert ORF_PROTEIN not in [f.translation for f in features]

    def test_without_precomputed_frames(self):
        record = build_record("c1", ORF_CONTIG, precompute=False)
        features = SorfDetector().detect(record, {"min_length": 10, "max_length": 30})
        assert ORF_PROTEIN in [f.translation for f in features]


class TestProdigal:
    GFF = (
        "##gff-version  3\n"
        "# Sequence Data: seqnum=1;seqlen=46;seqhdr=\"c1\"\n"
        "c1\tProdigal_v2.6.3\tCDS\t3\t44\t10.5\t+\t0\t"
        "ID=1_1;partial=00;start_type=ATG;rbs_motif=None;score=10.5;\n"
    )

    def test_parse_gff(self, tmp_path):
        record = build_record("c1", ORF_CONTIG)
        features = ProdigalDetector().parse(self.GFF, tmp_path, record, {"translation_table": 11})
        assert len(features) == 1
        cds = features[0]
        assert cds.type == CDS
        assert (cds.start, cds.stop, cds.strand) == (3, 44, "+")
        assert cds.translation == ORF_PROTEIN
        assert cds.score == 10.5

    def test_meta_mode_for_short_records(self, tmp_path):
        record = build_record("c1", ORF_CONTIG, topology="circular")
        args = ProdigalDetector().arguments(tmp_path / "in.fna", tmp_path, record, {"meta_below": 20000})
        assert args[args.index("-p") + 1] == "meta"
        assert "-g" not in args
        assert "-c" in args

    def test_single_mode_sets_table(self, tmp_path):
        record = build_record("c1", ORF_CONTIG)
        args = ProdigalDetector().arguments(tmp_path / "in.fna", tmp_path, record, {"meta_below": 0, "translation_table": 4})
        assert args[args.index("-p") + 1] == "single"
        assert args[args.index("-g") + 1] == 4

    def test_alternative_start_becomes_met(self):
        sequence = "GTG" + "GCT" * 5 + "TAA"
        assert translate_cds(sequence, 1, len(sequence), "+") == "MAAAAA"
        assert translate_cds(sequence, 1, len(sequence), "+", partial="10") == "VAAAAA"

    def test_reverse_strand_translation(self):
        sequence = reverse_complement("ATG" + "GCT" * 5 + "TAA")
        assert translate_cds(sequence, 1, len(sequence), "-") == "MAAAAA"

    def test_missing_binary_raises_detector_error(self):
        record = build_record("c1", ORF_CONTIG)
        with pytest.raises(DetectorError, match="cds"):
            ProdigalDetector().detect(record, {"binary": "definitely-not-installed-prodigal"})


class TestTRNA:
    def test_parse_trnascan(self):
        text = (
            "contig1 \t1\t100\t172\tAla\tTGC\t0\t0\t65.3\t\n"
            "contig1 \t2\t500\t428\tUndet\tNNN\t0\t0\t21.0\tpseudo\n"
        )
        features = parse_trnascan(text, "contig1")
        assert [(f.start, f.stop, f.strand) for f in features] == [(100, 172, "+"), (428, 500, "-")]
        assert features[0].product == "tRNA-Ala(tgc)"
        assert features[1].product == "tRNA-Xxx"
        assert dict(features[1].attributes)["pseudo"] == "true"
        assert all(f.type == TRNA for f in features)

    def test_parse_aragorn(self):
        text = (
            ">contig1\n"
            "1 gene found\n"
            "1   tmRNA      c[1000,1363]      90,125      ANDENYALAA*\n"
            "2   tmRNA      [1900,2100]      90,125      ANDENYALAA*\n"
        )
        features = parse_aragorn(text, "contig1", length=2000)
        assert len(features) == 1
        tmrna = features[0]
        assert tmrna.type == TMRNA
        assert (tmrna.start, tmrna.stop, tmrna.strand) == (1000, 1363, "-")
        assert tmrna.name == "ssrA"

    def test_short_record_skipped_before_running(self):
        detector = TRNAscanDetector()
        detector.min_sequence_length = 100
        record = build_record("c1", "ACGT")
        assert detector.detect(record, {"binary": "definitely-not-installed"}) == []


class TestCmscan:
    def test_family_filter_must_be_provided(self):
        with pytest.raises(TypeError):
            CmscanDetector()

    def test_parse_tblout(self):
        hits = parse_cmscan_tblout(CMSCAN_TBLOUT)
        assert len(hits) == 4
        fmn = hits[1]
        assert (fmn["start"], fmn["stop"], fmn["strand"]) == (1000, 1140, "-")
        assert fmn["description"] == "FMN riboswitch (RFN element)"

    def test_rrna_keeps_only_rrna_families(self, tmp_path):
        (tmp_path / "hits.tblout").write_text(CMSCAN_TBLOUT)
        record = build_record("contig1", "ACGT" * 1000)
        features = RRNADetector().parse("", tmp_path, record, {"max_evalue": 1e-5})
        assert len(features) == 1
        assert features[0].type == RRNA
        assert features[0].product == "5S ribosomal RNA"
        assert features[0].name == "rrf"

    def test_ncrna_excludes_rrna_trna_and_weak_hits(self, tmp_path):
        (tmp_path / "hits.tblout").write_text(CMSCAN_TBLOUT)
        record = build_record("contig1", "ACGT" * 1000)
        features = NcRNADetector().parse("", tmp_path, record, {"max_evalue": 1e-4})
        assert [f.product for f in features] == ["FMN riboswitch (RFN element)"]
        assert features[0].type == NCRNA


class TestPilerCR:
    def test_parse_summary_by_position(self):
        features = parse_pilercr(PILERCR_REPORT, "contig1")
        assert [(f.start, f.stop) for f in features] == [(1001, 1423), (5001, 5183)]
        assert all(f.type == CRISPR for f in features)
        assert dict(features[0].attributes)["repeats"] == "7"
        assert "GTTCACTGCCGTACAGGCAGCTTAGAAA" in features[0].product
