"""Filter decisions from VQSLOD scores.

Outcomes are small tagged values (:class:`Pass`, :class:`Filtered`,
:class:`Pending`) whose sensitivity bounds are numbers; the FILTER strings
written to VCF are produced only by :attr:`FilterOutcome.label` and read back
by :func:`parse_outcome`.

Allele-specific runs persist one entry per alternate allele in three INFO
fields so a later pass for the other variant type can merge its own decisions
without losing the earlier ones.
"""

from __future__ import annotations

import abc
import logging
import math
import re
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple, Union

from .errors import ConfigurationError, DataConsistencyError
from .models import AlleleCall, RecalMode, ScoreEntry, Tranche
from .utils import format_lod

logger = logging.getLogger(__name__)

PASS_LABEL = "PASS"
PENDING_LABEL = "NA"
LOW_VQSLOD_FILTER = "LOW_VQSLOD"

AS_VQSLOD_KEY = "AS_VQSLOD"
AS_CULPRIT_KEY = "AS_culprit"
AS_FILTER_STATUS_KEY = "AS_FilterStatus"

_INTERVAL_RE = re.compile(r"(?P<lower>\d+(?:\.\d+)?)to(?P<upper>\d+(?:\.\d+)?)$")
_OPEN_RE = re.compile(r"(?P<lower>\d+(?:\.\d+)?)\+$")


class FilterOutcome(abc.ABC):
    """Base of the three filter outcomes."""

    @property
    @abc.abstractmethod
    def label(self) -> str:
        """FILTER string written to VCF."""


@dataclass(frozen=True)
class Pass(FilterOutcome):
    @property
    def label(self) -> str:
        return PASS_LABEL


@dataclass(frozen=True)
class Pending(FilterOutcome):
    """Not yet decidable: the allele (or site) waits for the other variant type's pass."""

    @property
    def label(self) -> str:
        return PENDING_LABEL


@dataclass(frozen=True)
class Filtered(FilterOutcome):
    """A named filter, with the truth-sensitivity interval it stands for when known.

    ``lower_bound`` of ``None`` (flat cutoff or custom names) ranks as the
    strictest possible filter when outcomes are merged.
    """

    name: str
    lower_bound: Optional[float] = None
    upper_bound: Optional[float] = None

    @property
    def label(self) -> str:
        return self.name

    @property
    def leniency_key(self) -> float:
        return math.inf if self.lower_bound is None else self.lower_bound


def parse_outcome(text: str) -> FilterOutcome:
    text = text.strip()
    if text == PASS_LABEL:
        return Pass()
    if text in (PENDING_LABEL, ".", ""):
        return Pending()
    if text.endswith("+"):
        # Open filter below the most permissive tranche, e.g. VQSRTrancheSNP99.00to100.00+
        m = _INTERVAL_RE.search(text[:-1])
        if m:
            return Filtered(text, float(m.group("upper")), None)
    m = _INTERVAL_RE.search(text)
    if m:
        return Filtered(text, float(m.group("lower")), float(m.group("upper")))
    m = _OPEN_RE.search(text)
    if m:
        return Filtered(text, float(m.group("lower")), None)
    return Filtered(text)


# -----------------
# Persisted per-allele state
# -----------------


@dataclass(frozen=True)
class AlleleFilterState:
    lod: Optional[float] = None
    culprit: Optional[str] = None
    status: FilterOutcome = Pending()

    @classmethod
    def sentinel(cls) -> "AlleleFilterState":
        return cls()


def _persisted_lod(lod: Optional[float]) -> Optional[float]:
    """``lod`` at the precision it is written with, so decoding reproduces it."""
    if lod is None or math.isnan(lod):
        return None
    return float(format_lod(lod))


InfoValue = Union[str, Sequence[str], None]


def _split_info(value: InfoValue) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.strip("[] ").split(",")
    else:
        parts = [str(v) for v in value]
    return [p.strip("[] ") for p in parts]


@dataclass(frozen=True)
class FilterState:
    """Ordered per-allele filter state as stored in ``AS_VQSLOD``/``AS_culprit``/``AS_FilterStatus``."""

    alleles: Tuple[AlleleFilterState, ...] = ()

    def __len__(self) -> int:
        return len(self.alleles)

    def get(self, index: int) -> Optional[AlleleFilterState]:
        if 0 <= index < len(self.alleles):
            return self.alleles[index]
        return None

    def encode(self) -> dict:
        return {
            AS_VQSLOD_KEY: ",".join(format_lod(a.lod) for a in self.alleles),
            AS_CULPRIT_KEY: ",".join(a.culprit or PENDING_LABEL for a in self.alleles),
            AS_FILTER_STATUS_KEY: ",".join(a.status.label for a in self.alleles),
        }

    @classmethod
    def decode(cls, info: Mapping[str, InfoValue], *, locus: Optional[str] = None) -> Optional["FilterState"]:
        """Parse and validate the three INFO fields; ``None`` when none is present."""
        lods = _split_info(info.get(AS_VQSLOD_KEY))
        culprits = _split_info(info.get(AS_CULPRIT_KEY))
        statuses = _split_info(info.get(AS_FILTER_STATUS_KEY))
        if not lods and not culprits and not statuses:
            return None
        if not (len(lods) == len(culprits) == len(statuses)):
            raise DataConsistencyError(
                f"Allele-specific annotations disagree in length: {AS_VQSLOD_KEY}={len(lods)}, "
                f"{AS_CULPRIT_KEY}={len(culprits)}, {AS_FILTER_STATUS_KEY}={len(statuses)}.",
                locus=locus,
            )
        alleles = []
        for lod_text, culprit, status in zip(lods, culprits, statuses):
            if lod_text in ("NaN", PENDING_LABEL, "."):
                lod = None
            else:
                try:
                    lod = float(lod_text)
                except ValueError as e:
                    raise DataConsistencyError(
                        f"Unparsable {AS_VQSLOD_KEY} value {lod_text!r}.", locus=locus
                    ) from e
            alleles.append(
                AlleleFilterState(
                    lod=lod,
                    culprit=None if culprit in (PENDING_LABEL, ".", "") else culprit,
                    status=parse_outcome(status),
                )
            )
        return cls(tuple(alleles))


# -----------------
# Decisions
# -----------------


def _open_tranche_name(t: Tranche) -> str:
    return f"{t.name}+"


class FilterApplier:
    """Maps VQSLOD scores to filter outcomes for one recalibration mode.

    Either a tranche list (optionally restricted to ``target_sensitivity >=
    ts_filter_level``) or a flat ``lod_cutoff`` drives the decision; with
    neither, a flat cutoff of 0.0 is used. A score equal to a boundary passes
    that boundary in both cases.
    """

    def __init__(
        self,
        mode: RecalMode = RecalMode.SNP,
        *,
        tranches: Optional[Sequence[Tranche]] = None,
        ts_filter_level: Optional[float] = None,
        lod_cutoff: Optional[float] = None,
    ) -> None:
        if tranches is not None and lod_cutoff is not None:
            raise ConfigurationError("A tranche list and a flat VQSLOD cutoff are mutually exclusive.")
        if ts_filter_level is not None and tranches is None:
            raise ConfigurationError("ts_filter_level needs a tranches file.")
        self.mode = mode
        self.tranches: List[Tranche] = []
        self.lod_cutoff: Optional[float] = None

        if tranches is not None:
            selected = [
                t
                for t in tranches
                if ts_filter_level is None or t.target_sensitivity >= ts_filter_level - 1e-9
            ]
            if not selected:
                raise ConfigurationError(
                    f"No tranche has a target sensitivity >= {ts_filter_level}; "
                    f"available: {sorted(t.target_sensitivity for t in tranches)}"
                )
            self.tranches = sorted(selected, key=lambda t: (t.min_vqslod, -t.target_sensitivity))
            logger.info(
                "Filtering %s with %d tranches (pass at VQSLOD >= %.4f)",
                mode.value,
                len(self.tranches),
                self.tranches[-1].min_vqslod,
            )
        else:
            self.lod_cutoff = 0.0 if lod_cutoff is None else float(lod_cutoff)
            logger.info("Filtering %s with a flat VQSLOD cutoff of %.4f", mode.value, self.lod_cutoff)

    @property
    def uses_tranches(self) -> bool:
        return bool(self.tranches)

    def filter_names(self) -> List[Tuple[str, str]]:
        """``(name, description)`` for every filter this applier can emit."""
        if not self.uses_tranches:
            return [(LOW_VQSLOD_FILTER, f"VQSLOD < {self.lod_cutoff:.4f}")]
        out = []
        first = self.tranches[0]
        out.append(
            (
                _open_tranche_name(first),
                f"Truth sensitivity tranche level for {self.mode.value} model at VQS Lod < {first.min_vqslod:.4f}",
            )
        )
        for t, nxt in zip(self.tranches, self.tranches[1:]):
            out.append(
                (
                    t.name,
                    f"Truth sensitivity tranche level for {t.mode.value} model at VQS Lod: "
                    f"{t.min_vqslod:.4f} <= x < {nxt.min_vqslod:.4f}",
                )
            )
        return out

    def evaluate(self, lod: Optional[float]) -> FilterOutcome:
        if lod is None or math.isnan(lod):
            return Pending()
        if not self.uses_tranches:
            if lod >= self.lod_cutoff:
                return Pass()
            return Filtered(LOW_VQSLOD_FILTER)

        if lod >= self.tranches[-1].min_vqslod:
            return Pass()
        for t, nxt in zip(reversed(self.tranches[:-1]), reversed(self.tranches[1:])):
            if t.min_vqslod <= lod < nxt.min_vqslod:
                return Filtered(t.name, t.lower_sensitivity, t.target_sensitivity)
        first = self.tranches[0]
        return Filtered(_open_tranche_name(first), first.target_sensitivity, None)

    def apply_site(self, entry: Optional[ScoreEntry], *, locus: Optional[str] = None) -> FilterOutcome:
        if entry is None:
            raise DataConsistencyError(
                "Encountered input variant which isn't found in the recal file. "
                "Please make sure the recal file matches the call set.",
                locus=locus,
            )
        return self.evaluate(entry.lod)

    def apply_alleles(
        self,
        alleles: Sequence[AlleleCall],
        scores: Sequence[Optional[ScoreEntry]],
        prior_state: Optional[FilterState] = None,
        *,
        other_mode_complete: bool = False,
        locus: Optional[str] = None,
    ) -> Tuple[FilterOutcome, FilterState]:
        """Per-allele decisions merged into one site outcome.

        Alleles of the other variant type keep their entry from ``prior_state``
        (or the not-yet-processed sentinel). The site passes when any allele
        passes; otherwise it stays :class:`Pending` while the other type still
        has to run, and else takes the most lenient allele filter.
        """
        if len(scores) != len(alleles):
            raise DataConsistencyError(
                f"Got {len(scores)} score entries for {len(alleles)} alternate alleles.", locus=locus
            )

        states: List[AlleleFilterState] = []
        current: List[bool] = []
        needs_other = False
        for i, (allele, entry) in enumerate(zip(alleles, scores)):
            if allele.is_spanning_deletion:
                states.append(AlleleFilterState.sentinel())
                current.append(False)
                continue
            if not self.mode.covers(allele.kind):
                needs_other = True
                prior = prior_state.get(i) if prior_state is not None else None
                states.append(prior if prior is not None else AlleleFilterState.sentinel())
                current.append(False)
                continue
            if entry is None:
                raise DataConsistencyError(
                    f"Allele {allele.allele} isn't found in the recal file. "
                    "Please make sure the recal file matches the call set.",
                    locus=locus,
                )
            states.append(
                AlleleFilterState(_persisted_lod(entry.lod), entry.culprit, self.evaluate(entry.lod))
            )
            current.append(True)

        state = FilterState(tuple(states))
        return self._site_outcome(state, current, needs_other, other_mode_complete), state

    @staticmethod
    def _site_outcome(
        state: FilterState,
        current: Sequence[bool],
        needs_other: bool,
        other_mode_complete: bool,
    ) -> FilterOutcome:
        if any(isinstance(a.status, Pass) for a in state.alleles):
            return Pass()
        if needs_other and not other_mode_complete:
            return Pending()

        candidates = [
            (a.status.leniency_key, 0 if is_current else 1, -(a.lod if a.lod is not None else -math.inf), i)
            for i, (a, is_current) in enumerate(zip(state.alleles, current))
            if isinstance(a.status, Filtered)
        ]
        if not candidates:
            return Pending()
        best = min(candidates)
        return state.alleles[best[-1]].status
