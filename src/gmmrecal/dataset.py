from __future__ import annotations

import logging
from typing import List, Sequence

import numpy as np

from .errors import ConfigurationError, DataConsistencyError
from .models import AnnotationRecord, NormalizationStats

logger = logging.getLogger(__name__)

# Standard deviation of the noise used to impute missing z-scores.
IMPUTATION_SCALE = 0.1


class VariantDataset:
    """All records of one recalibration run, held in memory.

    The dataset z-scores annotations in place, imputes missing entries and picks
    the positive and negative training subsets. Records are never copied; flags
    are written straight onto the caller's :class:`AnnotationRecord` objects.
    """

    def __init__(self, records: Sequence[AnnotationRecord], annotation_names: Sequence[str]) -> None:
        self.records: List[AnnotationRecord] = list(records)
        self.annotation_names = list(annotation_names)
        d = len(self.annotation_names)
        for r in self.records:
            if len(r.annotations) != d or len(r.is_null) != d:
                raise DataConsistencyError(
                    f"Record has {len(r.annotations)} annotations but {d} were requested "
                    f"({', '.join(self.annotation_names)}).",
                    locus=r.locus,
                )
        self.stats = NormalizationStats(names=list(self.annotation_names))

    def __len__(self) -> int:
        return len(self.records)

    @property
    def n_dims(self) -> int:
        return len(self.annotation_names)

    def matrix(self, records: Sequence[AnnotationRecord] | None = None) -> np.ndarray:
        rows = self.records if records is None else records
        if not rows:
            return np.empty((0, self.n_dims))
        return np.vstack([r.annotations for r in rows]).astype(float)

    def normalize(self, rng: np.random.Generator, std_threshold: float = 10.0) -> NormalizationStats:
        """Z-score every annotation, impute missing values and flag outliers.

        Means and standard deviations come from the training sites when at least
        two carry a value, otherwise from every record. A constant annotation
        cannot be modelled and raises :class:`ConfigurationError`.
        """
        if not self.records:
            raise ConfigurationError("No variant records to recalibrate.")
        X = self.matrix()
        null = np.vstack([np.asarray(r.is_null, dtype=bool) for r in self.records])
        training = np.array([r.at_training_site for r in self.records], dtype=bool)

        means = np.empty(self.n_dims)
        stds = np.empty(self.n_dims)
        for j, name in enumerate(self.annotation_names):
            present = ~null[:, j]
            pool = present & training
            if pool.sum() < 2:
                pool = present
            values = X[pool, j]
            if values.size == 0:
                raise ConfigurationError(f"Annotation {name} is missing from every record.")
            means[j] = float(np.mean(values))
            stds[j] = float(np.std(values))
            if not np.isfinite(stds[j]) or stds[j] == 0.0:
                raise ConfigurationError(
                    f"Annotation {name} has zero variance ({values.size} values). "
                    "Remove it from the annotation list."
                )
            logger.info("Annotation %s: mean=%.3f std=%.3f", name, means[j], stds[j])

        Z = (X - means) / stds
        n_missing = int(null.sum())
        if n_missing:
            Z[null] = IMPUTATION_SCALE * rng.standard_normal(n_missing)
            logger.warning(
                "Imputed %d missing annotation values across %d records.",
                n_missing,
                int(null.any(axis=1).sum()),
            )

        outliers = np.any(np.abs(Z) > std_threshold, axis=1)
        for i, r in enumerate(self.records):
            r.annotations = Z[i].copy()
            r.failing_std_threshold = bool(outliers[i])
        if outliers.any():
            logger.info(
                "%d records exceed %.1f standard deviations and are excluded from training",
                int(outliers.sum()),
                std_threshold,
            )

        self.stats = NormalizationStats(
            names=list(self.annotation_names),
            means=means.tolist(),
            stds=stds.tolist(),
        )
        return self.stats

    def training_data(self) -> List[AnnotationRecord]:
        """Records used for the positive model; sets their ``positive_training`` flag."""
        out = [
            r
            for r in self.records
            if r.at_training_site and not r.failing_std_threshold and not r.all_missing
        ]
        for r in out:
            r.positive_training = True
        logger.info("Training with %d variants after standard deviation thresholding.", len(out))
        return out

    def select_worst(self, bad_fraction: float, min_num_bad: int) -> List[AnnotationRecord]:
        """The lowest-scoring records under the positive model plus every anti-training site.

        Requires ``lod`` to hold positive-only scores.
        """
        scored = [r for r in self.records if r.lod is not None and not r.all_missing]
        if len(scored) != len([r for r in self.records if not r.all_missing]):
            missing = next(r for r in self.records if r.lod is None and not r.all_missing)
            raise DataConsistencyError("Record was never scored by the positive model.", locus=missing.locus)

        candidates = [r for r in scored if not r.failing_std_threshold]
        n_bad = min(len(candidates), max(int(min_num_bad), int(bad_fraction * len(candidates))))
        order = sorted(range(len(candidates)), key=lambda i: (candidates[i].lod, i))
        chosen = {id(candidates[i]) for i in order[:n_bad]}
        out: List[AnnotationRecord] = []
        for r in self.records:
            if id(r) in chosen or (r.at_anti_training_site and not r.all_missing):
                r.negative_training = True
                out.append(r)
        if not out:
            raise ConfigurationError(
                "No records selected for the negative model. Lower --min-num-bad only if the call set is tiny."
            )
        logger.info(
            "Selected %d worst-scoring variants (plus %d anti-training sites) for the negative model.",
            n_bad,
            sum(1 for r in out if r.at_anti_training_site),
        )
        return out
