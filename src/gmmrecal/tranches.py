from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

import numpy as np

from .errors import ConfigurationError, DataConsistencyError
from .models import AnnotationRecord, RecalMode, Tranche
from .utils import open_textmaybe_gzip

logger = logging.getLogger(__name__)

TRANCHES_FILE_VERSION = 5
_TIE_TOLERANCE = 1e-9

TRANCHE_COLUMNS = [
    "targetTruthSensitivity",
    "numKnown",
    "numNovel",
    "knownTiTv",
    "novelTiTv",
    "minVQSLod",
    "filterName",
    "model",
    "accessibleTruthSites",
    "callsAtTruthSites",
    "truthSensitivity",
    "lowerSensitivity",
]


def tranche_name(mode: RecalMode, lower: float, target: float) -> str:
    return f"VQSRTranche{mode.value}{lower:.2f}to{target:.2f}"


def _titv(ti: int, tv: int) -> float:
    return ti / float(tv) if tv > 0 else 0.0


@dataclass(frozen=True)
class CallCounts:
    """Known/novel call counts at one VQSLOD cutoff.

    Attributes
    ----------
    known_ti / known_tv / novel_ti / novel_tv:
        Transitions and transversions among retained single-base SNPs.
    """

    num_known: int = 0
    num_novel: int = 0
    known_ti: int = 0
    known_tv: int = 0
    novel_ti: int = 0
    novel_tv: int = 0

    @property
    def known_titv(self) -> float:
        return _titv(self.known_ti, self.known_tv)

    @property
    def novel_titv(self) -> float:
        return _titv(self.novel_ti, self.novel_tv)


class _CallTable:
    """Column view of the non-aggregate scored calls, for repeated cutoff queries."""

    def __init__(self, records: Sequence[AnnotationRecord]) -> None:
        calls = [r for r in records if not r.is_aggregate and r.lod is not None]
        self.lod = np.array([r.lod for r in calls], dtype=float)
        self.known = np.array([r.is_known for r in calls], dtype=bool)
        snv = np.array([r.is_snp and len(r.ref) == 1 and len(r.alt) == 1 for r in calls], dtype=bool)
        ti = np.array([r.is_transition for r in calls], dtype=bool)
        self.ti = snv & ti
        self.tv = snv & ~ti

    def at_cutoff(self, cutoff: float) -> CallCounts:
        kept = self.lod >= cutoff
        known = kept & self.known
        novel = kept & ~self.known
        return CallCounts(
            num_known=int(known.sum()),
            num_novel=int(novel.sum()),
            known_ti=int((known & self.ti).sum()),
            known_tv=int((known & self.tv).sum()),
            novel_ti=int((novel & self.ti).sum()),
            novel_tv=int((novel & self.tv).sum()),
        )


class TrancheBuilder:
    """Convert scored, labelled records into VQSLOD cutoffs for target truth sensitivities."""

    def __init__(self, mode: RecalMode = RecalMode.SNP) -> None:
        self.mode = mode

    def truth_cutoffs(self, records: Sequence[AnnotationRecord], targets: Sequence[float]) -> List[float]:
        """Highest cutoff whose truth sensitivity meets each target, in ``targets`` order.

        Truth lods are swept once in descending order; records sharing a lod form
        one block that is either wholly retained or wholly excluded.
        """
        truth = np.array(
            [r.lod for r in records if r.at_truth_site and not r.is_aggregate and r.lod is not None],
            dtype=float,
        )
        if truth.size == 0:
            raise ConfigurationError(
                "No truth sites were scored, so no tranche can be built. "
                "Check that a resource with truth=true overlaps the call set."
            )
        values, counts = np.unique(truth, return_counts=True)
        values = values[::-1]
        sensitivity = 100.0 * np.cumsum(counts[::-1]) / float(truth.size)

        out: List[float] = []
        for target in targets:
            hit = np.nonzero(sensitivity >= target - _TIE_TOLERANCE)[0]
            out.append(float(values[hit[0]]) if hit.size else float(values[-1]))
        return out

    def build(self, records: Sequence[AnnotationRecord], targets: Sequence[float]) -> List[Tranche]:
        if not targets:
            raise ConfigurationError("At least one target truth sensitivity is required.")
        ordered = sorted({float(t) for t in targets})
        cutoffs = self.truth_cutoffs(records, ordered)
        table = _CallTable(records)
        truth_lods = np.array(
            [r.lod for r in records if r.at_truth_site and not r.is_aggregate and r.lod is not None],
            dtype=float,
        )

        tranches: List[Tranche] = []
        for i, (target, cutoff) in enumerate(zip(ordered, cutoffs)):
            lower = ordered[i - 1] if i > 0 else 0.0
            counts = table.at_cutoff(cutoff)
            tranches.append(
                Tranche(
                    name=tranche_name(self.mode, lower, target),
                    min_vqslod=cutoff,
                    target_sensitivity=target,
                    lower_sensitivity=lower,
                    mode=self.mode,
                    num_known=counts.num_known,
                    num_novel=counts.num_novel,
                    known_titv=counts.known_titv,
                    novel_titv=counts.novel_titv,
                    accessible_truth_sites=int(truth_lods.size),
                    calls_at_truth_sites=int((truth_lods >= cutoff).sum()),
                )
            )
            logger.info(
                "Tranche %s: minVQSLod=%.4f known=%d novel=%d",
                tranches[-1].name,
                cutoff,
                counts.num_known,
                counts.num_novel,
            )
        tranches.sort(key=lambda t: (t.min_vqslod, -t.target_sensitivity))
        return tranches


# -----------------
# Tranche file
# -----------------


def write_tranches(path: str | Path, tranches: Sequence[Tranche]) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        f.write("# Variant quality score tranches file\n")
        f.write(f"# Version number {TRANCHES_FILE_VERSION}\n")
        f.write(",".join(TRANCHE_COLUMNS) + "\n")
        for t in sorted(tranches, key=lambda t: t.target_sensitivity):
            f.write(
                f"{t.target_sensitivity:.2f},{t.num_known},{t.num_novel},"
                f"{t.known_titv:.4f},{t.novel_titv:.4f},{t.min_vqslod:.4f},"
                f"{t.name},{t.mode.value},{t.accessible_truth_sites},"
                f"{t.calls_at_truth_sites},{t.truth_sensitivity:.4f},{t.lower_sensitivity:.2f}\n"
            )


def read_tranches(path: str | Path) -> List[Tranche]:
    """Parse a tranches file; the result is sorted by increasing ``min_vqslod``."""
    out: List[Tranche] = []
    header: List[str] = []
    with open_textmaybe_gzip(path) as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            fields = line.split(",")
            if not header:
                header = fields
                missing = {"targetTruthSensitivity", "minVQSLod", "filterName", "model"} - set(header)
                if missing:
                    raise DataConsistencyError(f"Tranches file {path} lacks columns: {sorted(missing)}")
                continue
            if len(fields) != len(header):
                raise DataConsistencyError(
                    f"Tranches file {path} line {lineno}: expected {len(header)} fields, got {len(fields)}"
                )
            row = dict(zip(header, fields))
            try:
                out.append(
                    Tranche(
                        name=row["filterName"],
                        min_vqslod=float(row["minVQSLod"]),
                        target_sensitivity=float(row["targetTruthSensitivity"]),
                        lower_sensitivity=float(row.get("lowerSensitivity", 0.0)),
                        mode=RecalMode(row["model"]),
                        num_known=int(row.get("numKnown", 0)),
                        num_novel=int(row.get("numNovel", 0)),
                        known_titv=float(row.get("knownTiTv", 0.0)),
                        novel_titv=float(row.get("novelTiTv", 0.0)),
                        accessible_truth_sites=int(row.get("accessibleTruthSites", 0)),
                        calls_at_truth_sites=int(row.get("callsAtTruthSites", 0)),
                    )
                )
            except ValueError as e:
                raise DataConsistencyError(f"Tranches file {path} line {lineno}: {e}") from e
    out.sort(key=lambda t: (t.min_vqslod, -t.target_sensitivity))
    return out
