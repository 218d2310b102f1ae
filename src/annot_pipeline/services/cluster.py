"""Cluster-representative search with DIAMOND blastp.

Representative titles are expected as ``<cluster_id> <product>`` with
optional ``gene=<symbol>`` and ``dbxref=<db:id>`` tokens.
"""

import io
import logging
import re
import tempfile
from pathlib import Path
from typing import Optional

import pandas as pd

from annot_pipeline.exceptions import LookupServiceError, LookupTimeout
from annot_pipeline.external import ExternalProgram, ExternalProgramError, ExternalProgramTimeout, write_fasta
from annot_pipeline.models import TIER_CLUSTER, Hit
from annot_pipeline.services import BaseService

logger = logging.getLogger("annot_pipeline.services.cluster")

OUTFMT_COLUMNS = ["qseqid", "sseqid", "pident", "length", "qlen", "slen", "evalue", "bitscore", "stitle"]

_TOKEN = re.compile(r"\b(gene|dbxref)=(\S+)")


class ClusterSearch(BaseService):
    """Tier 2: align a protein against clustered representative sequences."""

    tier = TIER_CLUSTER

    def __init__(
        self,
        database: str | Path,
        binary: str = "diamond",
        timeout: Optional[float] = None,
        max_targets: int = 10,
    ):
        self.database = Path(database)
        self.timeout = timeout
        self.max_targets = max_targets
        self._program = ExternalProgram(binary)

    @property
    def name(self) -> str:
        return "cluster-search"

    def is_available(self) -> bool:
        return self._program.available and self.database.exists()

    def query(self, fingerprint: str, sequence: str) -> list[Hit]:
        if not self.database.exists():
            raise LookupServiceError(self.name, f"database not found: {self.database}")

        with tempfile.TemporaryDirectory(prefix="annot-cluster-") as tmpdir:
            query_path = Path(tmpdir) / "query.faa"
            out_path = Path(tmpdir) / "hits.tsv"
            write_fasta(query_path, [(fingerprint, sequence)])
            try:
                self._program.run(
                    [
                        "blastp",
                        "--db", self.database,
                        "--query", query_path,
                        "--out", out_path,
                        "--outfmt", "6", *OUTFMT_COLUMNS,
                        "--max-target-seqs", self.max_targets,
                        "--threads", 1,
                        "--sensitive",
                    ],
                    timeout=self.timeout,
                )
            except ExternalProgramTimeout as e:
                raise LookupTimeout(self.tier, self.timeout) from e
            except ExternalProgramError as e:
                raise LookupServiceError(self.name, str(e)) from e

            text = out_path.read_text() if out_path.exists() else ""
        return parse_diamond_output(text)


def parse_diamond_output(text: str) -> list[Hit]:
    """Parse DIAMOND tabular output (OUTFMT_COLUMNS) into hits."""
    if not text.strip():
        return []
    df = pd.read_csv(
        io.StringIO(text), sep="\t", header=None, names=OUTFMT_COLUMNS,
        dtype={"qseqid": str, "sseqid": str, "stitle": str},
    )
    hits = []
    for row in df.itertuples(index=False):
        title = row.stitle if isinstance(row.stitle, str) else ""
        product, gene, dbxrefs = _parse_title(title, row.sseqid)
        hits.append(Hit(
            source_id=row.sseqid,
            product=product,
            gene=gene,
            cross_refs=dbxrefs,
            score=float(row.bitscore),
            identity=float(row.pident),
            query_coverage=min(1.0, row.length / row.qlen) if row.qlen else 0.0,
            subject_coverage=min(1.0, row.length / row.slen) if row.slen else 0.0,
            evalue=float(row.evalue),
        ))
    return hits


def _parse_title(title: str, subject_id: str) -> tuple[str, str, tuple[str, ...]]:
    """Split a representative title into product, gene and cross-references."""
    if title.startswith(subject_id):
        title = title[len(subject_id):]
    gene = ""
    dbxrefs = []
    for key, value in _TOKEN.findall(title):
        if key == "gene":
            gene = value
        else:
            dbxrefs.append(value)
    product = _TOKEN.sub("", title).strip()
    return " ".join(product.split()), gene, tuple(dbxrefs)
