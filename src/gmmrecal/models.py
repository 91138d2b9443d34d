from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

_PURINES = frozenset("AG")
_PYRIMIDINES = frozenset("CT")

SPANNING_DELETION = "*"


class VariantType(str, enum.Enum):
    SNP = "SNP"
    INDEL = "INDEL"


class RecalMode(str, enum.Enum):
    """Which variant class a run recalibrates."""

    SNP = "SNP"
    INDEL = "INDEL"
    BOTH = "BOTH"

    def covers(self, kind: VariantType) -> bool:
        if self is RecalMode.BOTH:
            return True
        return self.value == kind.value

    def other(self) -> Optional["RecalMode"]:
        if self is RecalMode.SNP:
            return RecalMode.INDEL
        if self is RecalMode.INDEL:
            return RecalMode.SNP
        return None


def allele_type(ref: str, alt: str) -> VariantType:
    """Classify one ref/alt pair; equal-length substitutions (SNPs, MNPs) count as SNP."""
    if len(ref) == len(alt) and not alt.startswith("<"):
        return VariantType.SNP
    return VariantType.INDEL


def is_transition(ref: str, alt: str) -> bool:
    if len(ref) != 1 or len(alt) != 1:
        return False
    pair = {ref.upper(), alt.upper()}
    return pair <= _PURINES or pair <= _PYRIMIDINES


@dataclass
class AnnotationRecord:
    """One variant (or one alternate allele) presented to the recalibration models.

    Coordinates are 0-based half-open, as in pysam.

    Attributes
    ----------
    annotations:
        Annotation values in the caller's annotation order. After
        :meth:`gmmrecal.dataset.VariantDataset.normalize` these are z-scores with
        missing entries imputed.
    is_null:
        Mask of annotations that were absent in the input.
    is_aggregate:
        Supplied to aid modelling only; never counted in call-set statistics.
    lod:
        VQSLOD, ``None`` until scored.
    worst_annotation:
        Index of the annotation that most favours the negative model (culprit).
    """

    annotations: np.ndarray
    is_null: np.ndarray
    contig: str
    start: int
    end: int
    ref: str = "N"
    alt: str = "N"
    is_known: bool = False
    at_truth_site: bool = False
    at_training_site: bool = False
    at_anti_training_site: bool = False
    is_transition: bool = False
    is_snp: bool = True
    is_aggregate: bool = False
    lod: Optional[float] = None
    worst_annotation: Optional[int] = None
    worst_value: float = math.nan
    failing_std_threshold: bool = False
    positive_training: bool = False
    negative_training: bool = False

    @property
    def locus(self) -> str:
        return f"{self.contig}:{self.start + 1}"

    @property
    def all_missing(self) -> bool:
        return bool(np.all(self.is_null))


@dataclass(frozen=True)
class Tranche:
    """A named VQSLOD cutoff calibrated to retain a target fraction of truth sites.

    ``lower_sensitivity`` is the target of the next stricter tranche, so the tranche
    covers truth sensitivities in ``(lower_sensitivity, target_sensitivity]``.
    """

    name: str
    min_vqslod: float
    target_sensitivity: float
    lower_sensitivity: float = 0.0
    mode: RecalMode = RecalMode.SNP
    num_known: int = 0
    num_novel: int = 0
    known_titv: float = 0.0
    novel_titv: float = 0.0
    accessible_truth_sites: int = 0
    calls_at_truth_sites: int = 0

    @property
    def truth_sensitivity(self) -> float:
        if self.accessible_truth_sites == 0:
            return 0.0
        return self.calls_at_truth_sites / float(self.accessible_truth_sites)


@dataclass(frozen=True)
class ScoreEntry:
    """Per-record (or per-allele) row of the recalibration score table."""

    lod: float
    culprit: Optional[str] = None
    positive: bool = False
    negative: bool = False


@dataclass(frozen=True)
class AlleleCall:
    """Alternate allele of a call-set record as seen by the allele-specific filter."""

    allele: str
    kind: VariantType

    @property
    def is_spanning_deletion(self) -> bool:
        return self.allele == SPANNING_DELETION


@dataclass
class NormalizationStats:
    """Per-annotation mean and standard deviation used to z-score the dataset."""

    names: List[str]
    means: List[float] = field(default_factory=list)
    stds: List[float] = field(default_factory=list)
