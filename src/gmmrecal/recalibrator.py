from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

import numpy as np

from .config import RecalibrationConfig
from .dataset import VariantDataset
from .engine import RecalibrationEngine
from .mixture import MixtureModel
from .models import AnnotationRecord, NormalizationStats, Tranche
from .trainer import ModelTrainer
from .tranches import TrancheBuilder

logger = logging.getLogger(__name__)


@dataclass
class RecalibrationResult:
    """Everything the training stage produces.

    Attributes
    ----------
    records:
        The input records, now carrying ``lod``, culprit and training flags.
    tranches:
        Sorted by increasing ``min_vqslod``.
    """

    records: List[AnnotationRecord]
    positive: MixtureModel
    negative: MixtureModel
    tranches: List[Tranche]
    normalization: NormalizationStats
    annotation_names: List[str]
    counts: Dict[str, int] = field(default_factory=dict)


def run_recalibration(
    records: Sequence[AnnotationRecord],
    config: RecalibrationConfig,
    *,
    progress: bool = False,
) -> RecalibrationResult:
    """Train both models, score every record and build tranches.

    All randomness (seeding and imputation) comes from one generator seeded with
    ``config.seed``, so repeated runs over the same records are identical.
    """
    rng = np.random.default_rng(config.seed)
    dataset = VariantDataset(records, config.annotations)
    norm = dataset.normalize(rng, config.std_threshold)

    trainer = ModelTrainer(
        rng=rng,
        max_iterations=config.max_iterations,
        kmeans_iterations=config.kmeans_iterations,
        convergence_tolerance=config.convergence_tolerance,
        prior_counts=config.prior_counts,
        min_weight=config.min_weight,
        min_cluster_count=config.min_cluster_count,
        refinement_iterations=config.refinement_iterations,
    )

    positive_data = dataset.training_data()
    positive = trainer.train(positive_data, config.max_gaussians, role="positive")

    engine = RecalibrationEngine(positive)
    engine.evaluate(dataset.records)

    negative_data = dataset.select_worst(config.bad_fraction, config.min_num_bad)
    negative = trainer.train(negative_data, config.max_negative_gaussians, role="negative")

    engine.negative = negative
    engine.score(dataset.records, progress=progress)

    tranches = TrancheBuilder(config.mode).build(dataset.records, config.tranches)

    counts = {
        "records": len(dataset),
        "positive_training": len(positive_data),
        "negative_training": len(negative_data),
        "failing_std_threshold": sum(1 for r in dataset.records if r.failing_std_threshold),
        "truth_sites": sum(1 for r in dataset.records if r.at_truth_site and not r.is_aggregate),
        "known": sum(1 for r in dataset.records if r.is_known and not r.is_aggregate),
    }
    logger.info("Recalibration counts: %s", counts)

    return RecalibrationResult(
        records=dataset.records,
        positive=positive,
        negative=negative,
        tranches=tranches,
        normalization=norm,
        annotation_names=list(config.annotations),
        counts=counts,
    )
