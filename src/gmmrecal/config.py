"""Run settings for the two stages.

Both dataclasses validate eagerly so contradictory options fail before any
data is read.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

from .errors import ConfigurationError
from .models import RecalMode

DEFAULT_TRANCHES: Tuple[float, ...] = (100.0, 99.9, 99.0, 90.0)


@dataclass(frozen=True)
class RecalibrationConfig:
    """Settings for model training, scoring and tranche construction.

    Attributes
    ----------
    annotations:
        Ordered annotation names forming the model's feature vector.
    max_gaussians / max_negative_gaussians:
        Requested mixture sizes for the positive and negative models.
    prior_counts:
        Pseudo-count of the diagonal covariance prior. Larger values pull small
        clusters harder towards the prior.
    bad_fraction / min_num_bad:
        The negative model trains on the worst ``max(min_num_bad, bad_fraction * n)``
        records under the positive model, plus all anti-training sites.
    std_threshold:
        Records with any |z-score| above this are excluded from training.
    """

    annotations: Tuple[str, ...]
    mode: RecalMode = RecalMode.SNP
    max_gaussians: int = 8
    max_negative_gaussians: int = 2
    max_iterations: int = 150
    kmeans_iterations: int = 10
    convergence_tolerance: float = 1e-4
    prior_counts: float = 20.0
    min_weight: float = 1e-3
    min_cluster_count: float = 2.0
    refinement_iterations: int = 5
    std_threshold: float = 10.0
    bad_fraction: float = 0.03
    min_num_bad: int = 1000
    tranches: Tuple[float, ...] = DEFAULT_TRANCHES
    seed: int = 0

    def __post_init__(self) -> None:
        if not self.annotations:
            raise ConfigurationError("At least one annotation is required (-an).")
        if len(set(self.annotations)) != len(self.annotations):
            raise ConfigurationError(f"Duplicate annotations requested: {list(self.annotations)}")
        if self.max_gaussians < 1 or self.max_negative_gaussians < 1:
            raise ConfigurationError("max_gaussians and max_negative_gaussians must be >= 1")
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be >= 1")
        if self.convergence_tolerance <= 0:
            raise ConfigurationError("convergence_tolerance must be > 0")
        if self.prior_counts < 0:
            raise ConfigurationError("prior_counts must be >= 0")
        if not 0.0 <= self.bad_fraction <= 1.0:
            raise ConfigurationError("bad_fraction must be within [0, 1]")
        if not self.tranches:
            raise ConfigurationError("At least one target truth sensitivity (--tranche) is required.")
        for t in self.tranches:
            if not 0.0 < t <= 100.0:
                raise ConfigurationError(f"Tranche target must be within (0, 100]: {t}")

    @property
    def n_dims(self) -> int:
        return len(self.annotations)


@dataclass(frozen=True)
class ApplyConfig:
    """Settings for applying a recal table to a call set.

    ``ts_filter_level`` (tranche-based) and ``lod_cutoff`` (flat) are mutually
    exclusive; with neither, a flat cutoff of 0.0 is used.
    """

    mode: RecalMode = RecalMode.SNP
    ts_filter_level: Optional[float] = None
    lod_cutoff: Optional[float] = None
    use_allele_specific: bool = False
    ignore_filters: FrozenSet[str] = field(default_factory=frozenset)
    ignore_all_filters: bool = False
    exclude_filtered: bool = False

    def __post_init__(self) -> None:
        if self.ts_filter_level is not None and self.lod_cutoff is not None:
            raise ConfigurationError(
                "Arguments --ts-filter-level and --lod-cutoff are mutually exclusive. "
                "Please only specify one option."
            )
        if self.ts_filter_level is not None and not 0.0 < self.ts_filter_level <= 100.0:
            raise ConfigurationError(f"ts_filter_level must be within (0, 100]: {self.ts_filter_level}")
