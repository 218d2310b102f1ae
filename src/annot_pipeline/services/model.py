"""Profile-model search with HMMER hmmscan."""

import logging
import tempfile
from pathlib import Path
from typing import Optional

from annot_pipeline.exceptions import LookupServiceError, LookupTimeout
from annot_pipeline.external import ExternalProgram, ExternalProgramError, ExternalProgramTimeout, write_fasta
from annot_pipeline.models import TIER_MODEL, Hit
from annot_pipeline.services import BaseService

logger = logging.getLogger("annot_pipeline.services.model")


class ModelSearch(BaseService):
    """Tier 3: score a protein against a pressed HMM library."""

    tier = TIER_MODEL

    def __init__(
        self,
        database: str | Path,
        binary: str = "hmmscan",
        timeout: Optional[float] = None,
        max_evalue: float = 10.0,
    ):
        self.database = Path(database)
        self.timeout = timeout
        self.max_evalue = max_evalue
        self._program = ExternalProgram(binary)

    @property
    def name(self) -> str:
        return "model-search"

    def is_available(self) -> bool:
        return self._program.available and self.database.exists()

    def query(self, fingerprint: str, sequence: str) -> list[Hit]:
        if not self.database.exists():
            raise LookupServiceError(self.name, f"database not found: {self.database}")

        with tempfile.TemporaryDirectory(prefix="annot-model-") as tmpdir:
            query_path = Path(tmpdir) / "query.faa"
            tblout_path = Path(tmpdir) / "results.tblout"
            write_fasta(query_path, [(fingerprint, sequence)])
            try:
                self._program.run(
                    [
                        "--tblout", tblout_path,
                        "--noali",
                        "--cpu", 1,
                        "-E", self.max_evalue,
                        self.database, query_path,
                    ],
                    timeout=self.timeout,
                )
            except ExternalProgramTimeout as e:
                raise LookupTimeout(self.tier, self.timeout) from e
            except ExternalProgramError as e:
                raise LookupServiceError(self.name, str(e)) from e

            text = tblout_path.read_text() if tblout_path.exists() else ""
        return parse_tblout(text)


def parse_tblout(text: str) -> list[Hit]:
    """Parse hmmscan --tblout output into hits (one per target model)."""
    hits = []
    for line in text.splitlines():
        if line.startswith("#") or not line.strip():
            continue
        fields = line.split()
        if len(fields) < 18:
            continue
        target, accession = fields[0], fields[1]
        description = " ".join(fields[18:])
        hits.append(Hit(
            source_id=accession if accession != "-" else target,
            product=description if description and description != "-" else f"{target} domain-containing protein",
            evalue=float(fields[4]),
            score=float(fields[5]),
            cross_refs=(f"PFAM:{accession}",) if accession.startswith("PF") else (),
        ))
    return hits
