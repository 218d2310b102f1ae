"""Tests for the lookup services: SQLite exact index, DIAMOND and hmmscan parsing."""

import sqlite3

import pytest

from annot_pipeline.exceptions import LookupServiceError, LookupTimeout
from annot_pipeline.lookup import LookupEngine
from annot_pipeline.models import TIER_CLUSTER, TIER_EXACT, Hit
from annot_pipeline.services.cluster import ClusterSearch, parse_diamond_output
from annot_pipeline.services.exact import ConnectionPool, ExactMatchIndex, create_index
from annot_pipeline.services.model import ModelSearch, parse_tblout
from annot_pipeline.utils import fingerprint

from conftest import FakeService

PROTEIN = "MSKGEELFTGVVPILVELDGDVNGHKFSVSGEGEGDATYGKLTLKFICTTGK"


@pytest.fixture
def exact_db(tmp_path):
    path = tmp_path / "exact_index.sqlite"
    create_index(path, [
        (fingerprint(PROTEIN), "UPI0000000001", "Green fluorescent protein", "gfp", "UniParc:UPI0000000001, RefSeq:WP_1"),
        (fingerprint("MKV"), "UPI0000000002", "", "", ""),
    ])
    return path


class TestExactMatchIndex:
    def test_hit(self, exact_db):
        index = ExactMatchIndex(exact_db, pool_size=2)
        try:
            hits = index.query(fingerprint(PROTEIN), PROTEIN)
        finally:
            index.close()
        assert len(hits) == 1
        hit = hits[0]
        assert hit.source_id == "UPI0000000001"
        assert hit.product == "Green fluorescent protein"
        assert hit.gene == "gfp"
        assert hit.cross_refs == ("UniParc:UPI0000000001", "RefSeq:WP_1")
        assert hit.identity == 100.0

    def test_miss(self, exact_db):
        index = ExactMatchIndex(exact_db)
        assert index.query(fingerprint("MAAAA"), "MAAAA") == []
        assert index.is_available()
        index.close()

    def test_missing_database_is_fatal(self, tmp_path):
        index = ExactMatchIndex(tmp_path / "missing.sqlite")
        assert not index.is_available()
        with pytest.raises(LookupServiceError):
            index.query(fingerprint(PROTEIN), PROTEIN)

    def test_busy_pool_escalates_to_next_tier(self, exact_db):
        index = ExactMatchIndex(exact_db, pool_size=1, acquire_timeout=0.05)
        cluster = FakeService(TIER_CLUSTER, hits={fingerprint(PROTEIN): [Hit(
            source_id="UniRef90_A", product="GFP-like protein", score=100.0,
            identity=99.0, query_coverage=1.0, subject_coverage=1.0,
        )]})
        engine = LookupEngine(exact=index, cluster=cluster)
        try:
            with index._pool.connection():
                result = engine.resolve(fingerprint(PROTEIN), PROTEIN)
        finally:
            engine.close()
        assert result.tier == TIER_CLUSTER
        assert engine.stats.timeouts[TIER_EXACT] == 1

    def test_connections_are_reused(self, exact_db):
        index = ExactMatchIndex(exact_db, pool_size=4)
        for _ in range(10):
            index.query(fingerprint(PROTEIN), PROTEIN)
        assert index._pool.created == 1
        index.close()


class TestConnectionPool:
    @staticmethod
    def _factory():
        return sqlite3.connect(":memory:", check_same_thread=False)

    def test_exhaustion_times_out(self):
        pool = ConnectionPool(self._factory, size=1, acquire_timeout=0.05)
        with pool.connection():
            with pytest.raises(LookupTimeout, match="timed out after 0.05s"):
                with pool.connection():
                    pass
        pool.close()

    def test_broken_connection_is_recycled(self):
        pool = ConnectionPool(self._factory, size=1)
        with pool.connection() as conn:
            first = conn
            conn.close()
        with pool.connection() as conn:
            assert conn is not first
            assert conn.execute("SELECT 1").fetchone() == (1,)
        assert pool.created == 1
        pool.close()

    def test_closed_pool_refuses_checkout(self):
        pool = ConnectionPool(self._factory, size=1)
        pool.close()
        with pytest.raises(LookupServiceError):
            with pool.connection():
                pass

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            ConnectionPool(self._factory, size=0)


class TestDiamondParsing:
    def test_parse_hits(self):
        text = (
            "fp1\tUniRef90_A\t95.5\t100\t100\t110\t1e-50\t200.0\t"
            "UniRef90_A Elongation factor Tu gene=tufA dbxref=UniRef:UniRef90_A\n"
            "fp1\tUniRef90_B\t40.0\t50\t100\t300\t1e-5\t45.0\tUniRef90_B Hypothetical protein\n"
        )
        hits = parse_diamond_output(text)
        assert len(hits) == 2
        first = hits[0]
        assert first.source_id == "UniRef90_A"
        assert first.product == "Elongation factor Tu"
        assert first.gene == "tufA"
        assert first.cross_refs == ("UniRef:UniRef90_A",)
        assert first.query_coverage == 1.0
        assert first.subject_coverage == pytest.approx(100 / 110)
        assert hits[1].query_coverage == 0.5

    def test_empty_output(self):
        assert parse_diamond_output("") == []

    def test_missing_database_is_fatal(self, tmp_path):
        search = ClusterSearch(tmp_path / "missing.dmnd")
        assert not search.is_available()
        with pytest.raises(LookupServiceError):
            search.query("fp", PROTEIN)


class TestHmmscanParsing:
    def test_parse_tblout(self):
        text = (
            "# target name  accession  query name  accession  E-value  score  bias  ...\n"
            "GTP_EFTU PF00009.30 fp1 - 1.2e-40 140.2 0.1 1.5e-40 139.9 0.1 1.0 1 0 0 1 1 1 1 "
            "Elongation factor Tu GTP binding domain\n"
            "DUF1 - fp1 - 1e-12 45.0 0.0 1e-12 45.0 0.0 1.0 1 0 0 1 1 1 1 -\n"
        )
        hits = parse_tblout(text)
        assert hits[0].source_id == "PF00009.30"
        assert hits[0].product == "Elongation factor Tu GTP binding domain"
        assert hits[0].cross_refs == ("PFAM:PF00009.30",)
        assert hits[0].evalue == 1.2e-40
        assert hits[0].score == 140.2
        assert hits[1].source_id == "DUF1"
        assert hits[1].product == "DUF1 domain-containing protein"
        assert hits[1].cross_refs == ()

    def test_missing_database_is_fatal(self, tmp_path):
        search = ModelSearch(tmp_path / "missing.hmm")
        assert not search.is_available()
        with pytest.raises(LookupServiceError):
            search.query("fp", PROTEIN)
