import math

import numpy as np
import pytest

from gmmrecal.config import RecalibrationConfig
from gmmrecal.dataset import VariantDataset
from gmmrecal.engine import MIN_ACCEPTABLE_LOD, RecalibrationEngine
from gmmrecal.errors import ConfigurationError, DataConsistencyError
from gmmrecal.gaussian import GaussianCluster
from gmmrecal.mixture import MixtureModel
from gmmrecal.models import AnnotationRecord
from gmmrecal.recalibrator import run_recalibration


def _record(values, null=None, **flags) -> AnnotationRecord:
    values = np.asarray(values, dtype=float)
    null = np.zeros(values.shape, dtype=bool) if null is None else np.asarray(null, dtype=bool)
    return AnnotationRecord(annotations=values, is_null=null, contig="chr1", start=0, end=1, **flags)


def _single(mean, var) -> MixtureModel:
    return MixtureModel([GaussianCluster(np.asarray(mean, dtype=float), np.diag(var), 1.0)])


def test_culprit_is_dimension_favouring_negative():
    positive = _single([0.0, 0.0], [1.0, 1.0])
    negative = _single([0.0, 3.0], [1.0, 1.0])
    engine = RecalibrationEngine(positive, negative)
    r = _record([0.0, 3.0])
    engine.score([r])
    assert r.worst_annotation == 1
    assert r.worst_value == 3.0
    assert r.lod < 0


def test_missing_dimension_is_never_culprit():
    positive = _single([0.0, 0.0], [1.0, 1.0])
    negative = _single([0.0, 3.0], [1.0, 1.0])
    engine = RecalibrationEngine(positive, negative)
    r = _record([0.0, 3.0], null=[False, True])
    engine.score([r])
    assert r.worst_annotation == 0


def test_all_missing_has_no_culprit():
    engine = RecalibrationEngine(_single([0.0], [1.0]), _single([1.0], [1.0]))
    r = _record([0.0], null=[True])
    engine.score([r])
    assert r.worst_annotation is None
    assert math.isnan(r.worst_value)
    assert r.lod is not None


def test_lod_is_clamped():
    positive = _single([0.0], [1e-3])
    negative = _single([0.0], [1.0])
    engine = RecalibrationEngine(positive, negative)
    r = _record([1e4])
    engine.score([r])
    assert r.lod == MIN_ACCEPTABLE_LOD


def test_score_needs_negative_model():
    with pytest.raises(ValueError):
        RecalibrationEngine(_single([0.0], [1.0])).score([_record([0.0])])


def test_evaluate_writes_positive_lod():
    engine = RecalibrationEngine(_single([0.0], [1.0]))
    r = _record([0.0])
    engine.evaluate([r])
    assert r.lod == pytest.approx(-0.5 * math.log10(2 * math.pi))


# -----------------
# Dataset
# -----------------


def test_normalize_uses_training_sites_and_imputes():
    records = [
        _record([1.0, 10.0], at_training_site=True),
        _record([3.0, 30.0], at_training_site=True),
        _record([100.0, 0.0], null=[False, True]),
    ]
    ds = VariantDataset(records, ["QD", "MQ"])
    stats = ds.normalize(np.random.default_rng(0), std_threshold=5.0)
    assert stats.means == [2.0, 20.0]
    assert stats.stds == [1.0, 10.0]
    assert records[0].annotations.tolist() == [-1.0, -1.0]
    assert abs(records[2].annotations[1]) < 1.0
    assert records[2].failing_std_threshold
    assert not records[0].failing_std_threshold


def test_zero_variance_annotation_raises():
    records = [_record([1.0, float(i)], at_training_site=True) for i in range(5)]
    ds = VariantDataset(records, ["FS", "QD"])
    with pytest.raises(ConfigurationError, match="FS has zero variance"):
        ds.normalize(np.random.default_rng(0))


def test_annotation_count_mismatch():
    with pytest.raises(DataConsistencyError, match="3 were requested"):
        VariantDataset([_record([1.0, 2.0])], ["QD", "FS", "MQ"])


def test_select_worst_adds_anti_training():
    records = [_record([float(i)]) for i in range(10)]
    for i, r in enumerate(records):
        r.lod = float(i)
    records[9].at_anti_training_site = True
    records[0].failing_std_threshold = True
    ds = VariantDataset(records, ["QD"])
    worst = ds.select_worst(bad_fraction=0.0, min_num_bad=3)
    assert [r.lod for r in worst] == [1.0, 2.0, 3.0, 9.0]
    assert all(r.negative_training for r in worst)
    assert not records[0].negative_training


def test_select_worst_requires_scores():
    ds = VariantDataset([_record([0.0]), _record([1.0])], ["QD"])
    with pytest.raises(DataConsistencyError, match="never scored"):
        ds.select_worst(0.5, 1)


def test_training_data_skips_outliers():
    records = [_record([0.0], at_training_site=True), _record([0.0], at_training_site=True), _record([0.0])]
    records[1].failing_std_threshold = True
    out = VariantDataset(records, ["QD"]).training_data()
    assert out == [records[0]]
    assert records[0].positive_training and not records[1].positive_training


# -----------------
# End to end
# -----------------


def _synthetic_calls(seed: int = 0):
    rng = np.random.default_rng(seed)
    records = []
    for i in range(600):
        good = i % 3 != 0
        center = [20.0, 2.0, 60.0] if good else [6.0, 25.0, 45.0]
        values = rng.normal(center, [3.0, 2.0, 2.0])
        records.append(
            _record(
                values,
                at_training_site=good and i % 5 != 0,
                at_truth_site=good,
                is_known=good and i % 2 == 0,
                ref="A",
                alt="G" if i % 4 else "C",
                is_transition=i % 4 != 0,
            )
        )
    return records


def _config():
    return RecalibrationConfig(
        annotations=("QD", "FS", "MQ"),
        max_gaussians=3,
        max_negative_gaussians=2,
        min_num_bad=50,
        tranches=(90.0, 99.0, 100.0),
        seed=3,
    )


def test_run_recalibration_separates_good_and_bad():
    records = _synthetic_calls()
    result = run_recalibration(records, _config())
    good = np.median([r.lod for r in records if r.at_truth_site])
    bad = np.median([r.lod for r in records if not r.at_truth_site])
    assert good > bad
    assert [t.target_sensitivity for t in result.tranches] == [100.0, 99.0, 90.0]
    assert result.counts["records"] == 600
    assert result.counts["negative_training"] >= 50
    assert all(r.worst_annotation in (0, 1, 2, None) for r in records)
    assert result.annotation_names == ["QD", "FS", "MQ"]


def test_run_recalibration_is_deterministic():
    a = run_recalibration(_synthetic_calls(), _config())
    b = run_recalibration(_synthetic_calls(), _config())
    assert [r.lod for r in a.records] == [r.lod for r in b.records]
    assert [t.min_vqslod for t in a.tranches] == [t.min_vqslod for t in b.tranches]
