"""
Thin wrapper for the external command-line tools the detectors and lookup
services shell out to (Prodigal, tRNAscan-SE, Infernal, DIAMOND, HMMER...).
"""
import logging
import subprocess
from functools import lru_cache
from pathlib import Path
from shutil import which
from typing import Optional

logger = logging.getLogger("annot_pipeline.external")


# Exceptions -----------------------------------------------------------------------------------------------------------
class ExternalProgramError(Exception):
    """The program is missing or exited with a non-zero status."""

    def __init__(self, program: str, message: str, returncode: Optional[int] = None):
        super().__init__(f"{program}: {message}")
        self.program = program
        self.returncode = returncode


class ExternalProgramTimeout(ExternalProgramError):
    """The program exceeded its time limit and was killed."""


# Functions ------------------------------------------------------------------------------------------------------------
@lru_cache(maxsize=None)
def find_binary(program: str) -> Optional[Path]:
    """Locates an executable in the system PATH."""
    if path := which(program):
        return Path(path)
    return None


# Classes --------------------------------------------------------------------------------------------------------------
class ExternalProgram:
    """
    An external program executed in a subprocess, never through a shell.

    Missing binaries are reported when the program is run, not at construction,
    so callers can still query availability.
    """
    def __init__(self, program: str):
        self._program = program
        self._binary = find_binary(program)

    def __repr__(self):
        return f'{self._program}({self._binary})'

    @property
    def program(self) -> str:
        return self._program

    @property
    def available(self) -> bool:
        return self._binary is not None

    def run(self, args: list[str], timeout: Optional[float] = None, cwd: Optional[Path] = None) -> str:
        """Blocking execution; returns stdout."""
        if self._binary is None:
            raise ExternalProgramError(self._program, "executable not found in PATH")
        cmd = [str(self._binary)] + [str(a) for a in args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, cwd=cwd)
        except subprocess.TimeoutExpired as e:
            raise ExternalProgramTimeout(self._program, f"timed out after {timeout}s") from e
        except OSError as e:
            raise ExternalProgramError(self._program, str(e)) from e
        if proc.returncode != 0:
            stderr = proc.stderr.strip().splitlines()
            detail = stderr[-1] if stderr else "no error output"
            raise ExternalProgramError(self._program, f"failed (code {proc.returncode}): {detail}", proc.returncode)
        return proc.stdout


def write_fasta(path: Path, entries: list[tuple[str, str]], width: int = 80):
    """Write (id, sequence) pairs as FASTA, wrapped at *width* characters."""
    with open(path, "w") as f:
        for identifier, seq in entries:
            f.write(f">{identifier}\n")
            for i in range(0, len(seq), width):
                f.write(f"{seq[i:i + width]}\n")
