import logging

import numpy as np
import pytest

from gmmrecal.errors import ConfigurationError, DataConsistencyError
from gmmrecal.models import AnnotationRecord
from gmmrecal.trainer import ModelTrainer


def _record(values, null=None) -> AnnotationRecord:
    values = np.asarray(values, dtype=float)
    null = np.zeros(values.shape, dtype=bool) if null is None else np.asarray(null, dtype=bool)
    return AnnotationRecord(annotations=values, is_null=null, contig="chr1", start=0, end=1)


def _blobs(seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return np.vstack(
        [rng.normal(-5.0, 1.0, size=(1000, 1)), rng.normal(5.0, 1.0, size=(1000, 1))]
    )


@pytest.mark.parametrize("seed", [0, 1, 2])
def test_fit_recovers_separated_means(seed):
    trainer = ModelTrainer(rng=np.random.default_rng(seed), prior_counts=0.0)
    model = trainer.fit(_blobs(seed), 2)
    means = sorted(float(c.mean[0]) for c in model.clusters)
    assert model.n_clusters == 2
    assert abs(means[0] + 5.0) < 0.1
    assert abs(means[1] - 5.0) < 0.1
    assert np.allclose(model.weights, [0.5, 0.5], atol=0.02)
    assert model.converged


def test_trace_is_non_decreasing():
    trainer = ModelTrainer(rng=np.random.default_rng(4))
    rng = np.random.default_rng(5)
    X = np.vstack([rng.normal(0, 1, size=(400, 2)), rng.normal(4, 1, size=(400, 2))])
    model = trainer.fit(X, 3)
    trace = np.array(model.log_likelihood_trace)
    assert len(trace) == model.iterations
    assert np.all(np.diff(trace) >= -1e-6 * (1.0 + np.abs(trace[:-1])))


def test_fewer_distinct_points_than_clusters():
    trainer = ModelTrainer(rng=np.random.default_rng(0))
    X = np.array([[1.0], [1.0], [2.0]])
    means = trainer.initial_means(X, 3)
    assert means.tolist() == [[1.0], [2.0]]

    model = trainer.fit(X, 3)
    assert 1 <= model.n_clusters <= 2
    assert all(c.determinant > 0 for c in model.clusters)


def test_same_seed_same_model():
    X = _blobs(9)
    a = ModelTrainer(rng=np.random.default_rng(42)).fit(X, 4)
    b = ModelTrainer(rng=np.random.default_rng(42)).fit(X, 4)
    assert a.n_clusters == b.n_clusters
    for ca, cb in zip(a.clusters, b.clusters):
        assert np.array_equal(ca.mean, cb.mean)
        assert ca.weight == cb.weight


def test_train_without_records_raises():
    trainer = ModelTrainer(rng=np.random.default_rng(0))
    with pytest.raises(ConfigurationError, match="No usable negative training records"):
        trainer.train([], 2, role="negative")


def test_train_excludes_all_missing_records(caplog):
    rng = np.random.default_rng(1)
    records = [_record(v) for v in rng.normal(size=(50, 2))]
    records.append(_record([0.0, 0.0], null=[True, True]))
    trainer = ModelTrainer(rng=np.random.default_rng(0))
    with caplog.at_level(logging.WARNING, logger="gmmrecal.trainer"):
        model = trainer.train(records, 1)
    assert "Excluding 1 positive training records" in caplog.text
    assert model.n_clusters == 1


def test_hitting_iteration_cap_is_not_fatal(caplog):
    trainer = ModelTrainer(rng=np.random.default_rng(0), max_iterations=1)
    with caplog.at_level(logging.WARNING, logger="gmmrecal.trainer"):
        model = trainer.fit(_blobs(3), 2)
    assert not model.converged
    assert model.iterations == 1
    assert "did not converge" in caplog.text


def test_train_rejects_ragged_annotations():
    trainer = ModelTrainer(rng=np.random.default_rng(0))
    with pytest.raises(DataConsistencyError, match="chr1:1"):
        trainer.train([_record([1.0, 2.0]), _record([1.0])], 1)
