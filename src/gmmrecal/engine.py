from __future__ import annotations

import logging
import math
from typing import Iterable, List, Optional, Sequence

import numpy as np
from tqdm import tqdm

from .mixture import MixtureModel
from .models import AnnotationRecord
from .utils import chunked

logger = logging.getLogger(__name__)

# Floor for scores that come out non-finite (e.g. both densities underflow).
MIN_ACCEPTABLE_LOD = -20000.0


class RecalibrationEngine:
    """Scores records against a positive and a negative :class:`MixtureModel`.

    Both models are treated as read-only; one engine may score any number of
    record batches.
    """

    def __init__(
        self,
        positive: MixtureModel,
        negative: Optional[MixtureModel] = None,
        *,
        chunk_size: int = 10_000,
    ) -> None:
        self.positive = positive
        self.negative = negative
        self.chunk_size = int(chunk_size)

    @staticmethod
    def _clamp(lods: np.ndarray) -> np.ndarray:
        out = np.where(np.isfinite(lods), lods, MIN_ACCEPTABLE_LOD)
        return np.maximum(out, MIN_ACCEPTABLE_LOD)

    def evaluate(self, records: Sequence[AnnotationRecord], model: Optional[MixtureModel] = None) -> None:
        """Write ``log10 p(x | model)`` into ``lod`` (positive model by default)."""
        model = model or self.positive
        for batch in chunked(records, self.chunk_size):
            X = np.vstack([r.annotations for r in batch])
            lods = self._clamp(model.evaluate(X))
            for r, lod in zip(batch, lods):
                r.lod = float(lod)

    def score(self, records: Sequence[AnnotationRecord], *, progress: bool = False) -> None:
        """Contrastive VQSLOD plus culprit annotation for every record."""
        if self.negative is None:
            raise ValueError("score() needs a negative model")
        it: Iterable[List[AnnotationRecord]] = chunked(records, self.chunk_size)
        if progress:
            it = tqdm(it, unit="chunk", desc="Scoring variants")

        for batch in it:
            X = np.vstack([r.annotations for r in batch])
            null = np.vstack([np.asarray(r.is_null, dtype=bool) for r in batch])
            with np.errstate(invalid="ignore"):
                lods = self._clamp(self.positive.evaluate(X) - self.negative.evaluate(X))
                diff = self.positive.marginal_log10(X) - self.negative.marginal_log10(X)
            diff = np.where(null | ~np.isfinite(diff), np.inf, diff)
            for i, r in enumerate(batch):
                r.lod = float(lods[i])
                j = int(np.argmin(diff[i]))
                if math.isinf(diff[i, j]):
                    r.worst_annotation = None
                    r.worst_value = math.nan
                else:
                    r.worst_annotation = j
                    r.worst_value = float(r.annotations[j])
        logger.info("Scored %d records", len(records))

