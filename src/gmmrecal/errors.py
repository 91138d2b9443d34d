"""Exception types surfaced to callers.

Configuration and data-consistency problems are fatal for a run and carry a
message naming the offending option, record or allele. Numerical degeneracy
and missing annotation values never surface here; they are recovered inside
the models.
"""

from __future__ import annotations

from typing import Optional


class RecalibrationError(Exception):
    """Base class for fatal recalibration errors."""


class ConfigurationError(RecalibrationError, ValueError):
    """Raised for invalid or contradictory settings (e.g. both tranches and a flat cutoff)."""


class DataConsistencyError(RecalibrationError, ValueError):
    """Raised when inputs of two passes disagree or persisted values cannot be read back.

    Parameters
    ----------
    message:
        Human-readable diagnostic.
    locus:
        Optional ``contig:position`` (or allele) identifying the first offending record.
    """

    def __init__(self, message: str, *, locus: Optional[str] = None) -> None:
        if locus is not None:
            message = f"{message} First seen at: {locus}"
        super().__init__(message)
        self.locus = locus
