from pathlib import Path

import numpy as np
import pytest

from gmmrecal.errors import ConfigurationError, DataConsistencyError
from gmmrecal.models import AnnotationRecord, RecalMode
from gmmrecal.tranches import TrancheBuilder, read_tranches, tranche_name, write_tranches


def _scored(lod, *, truth=False, known=False, aggregate=False, ref="A", alt="G", ti=True) -> AnnotationRecord:
    return AnnotationRecord(
        annotations=np.zeros(1),
        is_null=np.zeros(1, dtype=bool),
        contig="chr1",
        start=0,
        end=1,
        ref=ref,
        alt=alt,
        lod=float(lod),
        at_truth_site=truth,
        is_known=known,
        is_aggregate=aggregate,
        is_transition=ti,
    )


def _truth_ladder():
    return [_scored(lod, truth=True) for lod in range(10, 0, -1)]


def test_cutoffs_for_target_sensitivities():
    cutoffs = TrancheBuilder().truth_cutoffs(_truth_ladder(), [50.0, 90.0, 100.0])
    assert cutoffs == [6.0, 2.0, 1.0]


def test_build_names_and_order():
    tranches = TrancheBuilder(RecalMode.SNP).build(_truth_ladder(), [100.0, 50.0, 90.0])
    assert [t.name for t in tranches] == [
        "VQSRTrancheSNP90.00to100.00",
        "VQSRTrancheSNP50.00to90.00",
        "VQSRTrancheSNP0.00to50.00",
    ]
    assert [t.min_vqslod for t in tranches] == [1.0, 2.0, 6.0]
    assert tranches[-1].calls_at_truth_sites == 5
    assert tranches[0].truth_sensitivity == 1.0


def test_tied_lods_are_one_block():
    records = [_scored(5.0, truth=True) for _ in range(4)] + [_scored(1.0, truth=True) for _ in range(6)]
    cutoffs = TrancheBuilder().truth_cutoffs(records, [10.0, 40.0, 41.0])
    assert cutoffs == [5.0, 5.0, 1.0]


def test_sensitivity_is_monotone_in_cutoff():
    rng = np.random.default_rng(0)
    records = [_scored(x, truth=True) for x in rng.normal(size=300)]
    targets = [10.0, 50.0, 90.0, 99.0, 99.9, 100.0]
    cutoffs = TrancheBuilder().truth_cutoffs(records, targets)
    assert all(a >= b for a, b in zip(cutoffs, cutoffs[1:]))


def test_no_truth_sites_raises():
    with pytest.raises(ConfigurationError, match="No truth sites"):
        TrancheBuilder().build([_scored(1.0), _scored(2.0)], [90.0])


def test_no_targets_raises():
    with pytest.raises(ConfigurationError):
        TrancheBuilder().build(_truth_ladder(), [])


def test_known_novel_counts_skip_aggregate_records():
    records = _truth_ladder() + [
        _scored(8.0, known=True),
        _scored(8.0, known=True, ti=False),
        _scored(8.0, known=False, ref="AT", alt="A", ti=False),
        _scored(0.5, known=True),
        _scored(9.0, known=True, aggregate=True),
    ]
    (t,) = TrancheBuilder().build(records, [50.0])
    assert t.min_vqslod == 6.0
    # 5 novel truth calls (lod 6..10) plus the indel; aggregate excluded
    assert t.num_known == 2
    assert t.num_novel == 6
    assert t.known_titv == 1.0


def test_write_then_read(tmp_path: Path):
    tranches = TrancheBuilder(RecalMode.INDEL).build(_truth_ladder(), [90.0, 99.0])
    path = tmp_path / "tranches.csv"
    write_tranches(path, tranches)

    lines = path.read_text().splitlines()
    assert lines[0].startswith("#")
    assert lines[2].startswith("targetTruthSensitivity,")

    back = read_tranches(path)
    assert [t.name for t in back] == [t.name for t in tranches]
    assert [t.min_vqslod for t in back] == [t.min_vqslod for t in tranches]
    assert all(t.mode is RecalMode.INDEL for t in back)
    assert back[0].lower_sensitivity == 90.0


def test_read_rejects_missing_columns(tmp_path: Path):
    path = tmp_path / "bad.csv"
    path.write_text("targetTruthSensitivity,filterName\n90.0,x\n")
    with pytest.raises(DataConsistencyError, match="lacks columns"):
        read_tranches(path)


def test_tranche_name_format():
    assert tranche_name(RecalMode.INDEL, 99.0, 99.9) == "VQSRTrancheINDEL99.00to99.90"
