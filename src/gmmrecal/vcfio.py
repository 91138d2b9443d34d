from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

import numpy as np
import pysam

from .config import ApplyConfig
from .errors import ConfigurationError, DataConsistencyError
from .filtering import (
    AS_CULPRIT_KEY,
    AS_FILTER_STATUS_KEY,
    AS_VQSLOD_KEY,
    LOW_VQSLOD_FILTER,
    FilterApplier,
    FilterOutcome,
    FilterState,
    Filtered,
    Pass,
)
from .models import (
    SPANNING_DELETION,
    AlleleCall,
    AnnotationRecord,
    RecalMode,
    ScoreEntry,
    VariantType,
    allele_type,
    is_transition,
)
from .utils import format_lod
from .validation import check_annotations_in_header

logger = logging.getLogger(__name__)

VQSLOD_KEY = "VQSLOD"
CULPRIT_KEY = "culprit"
POSITIVE_TRAIN_KEY = "POSITIVE_TRAIN_SITE"
NEGATIVE_TRAIN_KEY = "NEGATIVE_TRAIN_SITE"
COMPLETED_MODE_KEY = "VQSRCompletedMode"
SYMBOLIC_ALT = "<VQSR>"

_TRANCHE_FILTER_RE = re.compile(r"^VQSRTranche(?P<mode>SNP|INDEL|BOTH)")

ResourceSites = Dict[Tuple[str, int], Set[VariantType]]
RecalKey = Tuple[object, ...]


# -----------------
# Training resources
# -----------------


@dataclass(frozen=True)
class TrainingResource:
    """A labelled VCF of sites, as given by ``name,known=..,training=..,truth=..:path``."""

    name: str
    path: str
    known: bool = False
    training: bool = False
    truth: bool = False
    anti_training: bool = False

    @classmethod
    def parse(cls, text: str) -> "TrainingResource":
        tags, sep, path = text.partition(":")
        if not sep or not path:
            raise ConfigurationError(
                f"Malformed resource {text!r}; expected name,known=false,training=true,truth=true:path"
            )
        parts = [p.strip() for p in tags.split(",") if p.strip()]
        if not parts or "=" in parts[0]:
            raise ConfigurationError(f"Resource {text!r} needs a name before its tags.")
        flags: Dict[str, bool] = {}
        for part in parts[1:]:
            key, eq, value = part.partition("=")
            key = key.strip().lower().replace("-", "_")
            if not eq or key not in ("known", "training", "truth", "anti_training"):
                raise ConfigurationError(f"Unknown resource tag {part!r} in {text!r}")
            if value.strip().lower() not in ("true", "false"):
                raise ConfigurationError(f"Resource tag {part!r} must be true or false")
            flags[key] = value.strip().lower() == "true"
        return cls(name=parts[0], path=path, **flags)


def _site_kind(ref: str, alts: Sequence[str]) -> Optional[VariantType]:
    kinds = {allele_type(ref, a) for a in alts if a != SPANNING_DELETION}
    if not kinds:
        return None
    if kinds == {VariantType.SNP}:
        return VariantType.SNP
    return VariantType.INDEL


def _is_input_filtered(rec: pysam.VariantRecord, ignore: FrozenSet[str], ignore_all: bool) -> bool:
    if ignore_all:
        return False
    filters = {f for f in rec.filter.keys() if f != "PASS"}
    return bool(filters - set(ignore))


def load_resource_sites(resource: TrainingResource) -> ResourceSites:
    """Unfiltered sites of a resource keyed by ``(contig, start)`` with the variant types present."""
    sites: ResourceSites = {}
    skipped = 0
    with pysam.VariantFile(resource.path) as vcf:
        for rec in vcf:
            if _is_input_filtered(rec, frozenset(), False):
                skipped += 1
                continue
            for alt in rec.alts or ():
                if alt == SPANNING_DELETION:
                    continue
                sites.setdefault((str(rec.contig), int(rec.start)), set()).add(allele_type(rec.ref, alt))
    logger.info(
        "Resource %s: %d sites (%d filtered records ignored) [known=%s training=%s truth=%s anti_training=%s]",
        resource.name,
        len(sites),
        skipped,
        resource.known,
        resource.training,
        resource.truth,
        resource.anti_training,
    )
    return sites


class ResourceLabeler:
    """Looks up training/truth/known labels for a variant across all resources."""

    def __init__(self, resources: Sequence[TrainingResource]) -> None:
        self.resources = list(resources)
        self.sites = [load_resource_sites(r) for r in self.resources]
        if self.resources and not any(r.training for r in self.resources):
            raise ConfigurationError("No training set found. Provide at least one resource with training=true.")
        if self.resources and not any(r.truth for r in self.resources):
            raise ConfigurationError("No truth set found. Provide at least one resource with truth=true.")

    def label(self, record: AnnotationRecord, kind: VariantType) -> None:
        key = (record.contig, record.start)
        for res, sites in zip(self.resources, self.sites):
            kinds = sites.get(key)
            if not kinds or kind not in kinds:
                continue
            record.is_known |= res.known
            record.at_training_site |= res.training
            record.at_truth_site |= res.truth
            record.at_anti_training_site |= res.anti_training


# -----------------
# Annotation extraction
# -----------------


def _info_value(rec: pysam.VariantRecord, name: str, number: object, alt_index: int) -> Optional[float]:
    value = rec.info.get(name)
    if value is None:
        return None
    if isinstance(value, tuple):
        idx = alt_index + 1 if number == "R" else alt_index if number == "A" else 0
        if idx >= len(value):
            return None
        value = value[idx]
    if value is None or isinstance(value, bool):
        return None
    try:
        x = float(value)
    except (TypeError, ValueError):
        return None
    return x if math.isfinite(x) else None


def load_annotation_records(
    vcf_path: str | Path,
    annotations: Sequence[str],
    *,
    labeler: Optional[ResourceLabeler] = None,
    mode: RecalMode = RecalMode.SNP,
    use_allele_specific: bool = False,
    ignore_filters: FrozenSet[str] = frozenset(),
    ignore_all_filters: bool = False,
    is_aggregate: bool = False,
) -> Tuple[List[AnnotationRecord], Dict[str, int]]:
    """Read annotation vectors from a VCF, one record per site or per alternate allele.

    Returns
    -------
    records:
        In file order.
    stats:
        Simple counters about records kept/skipped.
    """
    stats: Dict[str, int] = {
        "records_total": 0,
        "records_skipped_filter": 0,
        "records_skipped_mode": 0,
        "records_kept": 0,
        "values_missing": 0,
    }
    out: List[AnnotationRecord] = []
    d = len(annotations)

    with pysam.VariantFile(str(vcf_path)) as vcf:
        check_annotations_in_header(vcf.header, annotations)
        numbers = [vcf.header.info[a].number for a in annotations]

        for rec in vcf:
            stats["records_total"] += 1
            if _is_input_filtered(rec, ignore_filters, ignore_all_filters):
                stats["records_skipped_filter"] += 1
                continue
            alts = list(rec.alts or ())
            if use_allele_specific:
                targets = [
                    (i, alt, allele_type(rec.ref, alt))
                    for i, alt in enumerate(alts)
                    if alt != SPANNING_DELETION
                ]
            else:
                kind = _site_kind(rec.ref, alts)
                targets = [] if kind is None else [(0, alts[0], kind)]

            for alt_index, alt, kind in targets:
                if not mode.covers(kind):
                    stats["records_skipped_mode"] += 1
                    continue
                values = np.full(d, np.nan)
                for j, (name, number) in enumerate(zip(annotations, numbers)):
                    v = _info_value(rec, name, number, alt_index)
                    if v is not None:
                        values[j] = v
                null = np.isnan(values)
                stats["values_missing"] += int(null.sum())
                record = AnnotationRecord(
                    annotations=np.where(null, 0.0, values),
                    is_null=null,
                    contig=str(rec.contig),
                    start=int(rec.start),
                    end=int(rec.stop),
                    ref=rec.ref,
                    alt=alt,
                    is_transition=is_transition(rec.ref, alt),
                    is_snp=kind is VariantType.SNP,
                    is_aggregate=is_aggregate,
                )
                if labeler is not None:
                    labeler.label(record, kind)
                out.append(record)
                stats["records_kept"] += 1

    if stats["values_missing"]:
        logger.warning(
            "%d annotation values are missing in %s and will be imputed.", stats["values_missing"], vcf_path
        )
    logger.info("Loaded %d records from %s (%s)", len(out), vcf_path, stats)
    return out, stats


# -----------------
# Recal file
# -----------------


def _recal_header(contigs: Sequence[Tuple[str, Optional[int]]]) -> pysam.VariantHeader:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    for name, length in contigs:
        header.contigs.add(name, length=length)
    header.info.add("END", number=1, type="Integer", description="Stop position of the interval")
    header.info.add(VQSLOD_KEY, number=1, type="Float", description="Log odds of being a true variant versus being false under the trained gaussian mixture model")
    header.info.add(CULPRIT_KEY, number=1, type="String", description="The annotation which was the worst performing in the Gaussian mixture model, likely the reason why the variant was filtered out")
    header.info.add(POSITIVE_TRAIN_KEY, number=0, type="Flag", description="This variant was used to build the positive training set of good variants")
    header.info.add(NEGATIVE_TRAIN_KEY, number=0, type="Flag", description="This variant was used to build the negative training set of bad variants")
    return header


def write_recal_file(
    path: str | Path,
    records: Sequence[AnnotationRecord],
    *,
    annotation_names: Sequence[str],
    contigs: Sequence[Tuple[str, Optional[int]]],
    use_allele_specific: bool = False,
) -> str:
    """Write scores as a sites-only VCF, bgzip it and build a tabix index.

    ``path`` is the uncompressed name; the returned path carries ``.gz``.
    """
    known = {name for name, _ in contigs}
    extra = sorted({r.contig for r in records} - known)
    header = _recal_header(list(contigs) + [(c, None) for c in extra])
    order = {name: i for i, (name, _) in enumerate(list(contigs) + [(c, None) for c in extra])}

    vcf_path = Path(path)
    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        for r in sorted(records, key=lambda r: (order[r.contig], r.start, r.end, r.alt)):
            if r.lod is None:
                raise DataConsistencyError("Record was never scored.", locus=r.locus)
            alt = r.alt if use_allele_specific else SYMBOLIC_ALT
            rec = vcf.new_record(contig=r.contig, start=r.start, stop=r.end, alleles=(r.ref, alt))
            rec.info[VQSLOD_KEY] = float(format_lod(r.lod))
            if r.worst_annotation is not None:
                rec.info[CULPRIT_KEY] = annotation_names[r.worst_annotation]
            if r.positive_training:
                rec.info[POSITIVE_TRAIN_KEY] = True
            if r.negative_training:
                rec.info[NEGATIVE_TRAIN_KEY] = True
            vcf.write(rec)

    gz = vcf_path.with_suffix(vcf_path.suffix + ".gz")
    pysam.tabix_compress(str(vcf_path), str(gz), force=True)
    pysam.tabix_index(str(gz), preset="vcf", force=True)
    vcf_path.unlink()
    return str(gz)


def recal_key(contig: str, start: int, end: int, alt: Optional[str] = None) -> RecalKey:
    if alt is None:
        return (contig, start, end)
    return (contig, start, end, alt)


def load_recal_table(path: str | Path, *, use_allele_specific: bool = False) -> Dict[RecalKey, ScoreEntry]:
    table: Dict[RecalKey, ScoreEntry] = {}
    with pysam.VariantFile(str(path)) as vcf:
        if VQSLOD_KEY not in vcf.header.info:
            raise DataConsistencyError(f"Recal file {path} has no {VQSLOD_KEY} INFO field.")
        for rec in vcf:
            locus = f"{rec.contig}:{rec.pos}"
            lod = rec.info.get(VQSLOD_KEY)
            if lod is None:
                raise DataConsistencyError("Encountered a malformed record in the recal file: missing VQSLOD.", locus=locus)
            try:
                lod = float(lod)
            except (TypeError, ValueError) as e:
                raise DataConsistencyError(f"Unparsable VQSLOD {lod!r} in the recal file.", locus=locus) from e
            alt = (rec.alts or (SYMBOLIC_ALT,))[0]
            key = recal_key(str(rec.contig), int(rec.start), int(rec.stop), alt if use_allele_specific else None)
            table[key] = ScoreEntry(
                lod=lod,
                culprit=rec.info.get(CULPRIT_KEY),
                positive=POSITIVE_TRAIN_KEY in rec.info,
                negative=NEGATIVE_TRAIN_KEY in rec.info,
            )
    logger.info("Loaded %d recal entries from %s", len(table), path)
    return table


# -----------------
# Apply to call set
# -----------------


def completed_modes(header: pysam.VariantHeader) -> Set[RecalMode]:
    """Modes an earlier apply pass already wrote into this header."""
    done: Set[RecalMode] = set()
    for hrec in header.records:
        if hrec.key == COMPLETED_MODE_KEY and hrec.value:
            done.add(RecalMode(hrec.value.strip()))
    for name in header.filters.keys():
        m = _TRANCHE_FILTER_RE.match(name)
        if m:
            done.add(RecalMode(m.group("mode")))
    return done


def _prepare_header(header: pysam.VariantHeader, applier: FilterApplier, config: ApplyConfig) -> None:
    info_lines = [
        (VQSLOD_KEY, 1, "Float", "Log odds of being a true variant versus being false under the trained gaussian mixture model"),
        (CULPRIT_KEY, 1, "String", "The annotation which was the worst performing in the Gaussian mixture model"),
        (POSITIVE_TRAIN_KEY, 0, "Flag", "This variant was used to build the positive training set of good variants"),
        (NEGATIVE_TRAIN_KEY, 0, "Flag", "This variant was used to build the negative training set of bad variants"),
    ]
    if config.use_allele_specific:
        info_lines += [
            (AS_VQSLOD_KEY, "A", "String", "For each alt allele, the log odds of being a true variant versus being false under the trained gaussian mixture model"),
            (AS_CULPRIT_KEY, "A", "String", "For each alt allele, the annotation which was the worst performing in the Gaussian mixture model"),
            (AS_FILTER_STATUS_KEY, "A", "String", "Filter status for each allele, as assessed by ApplyVQSR. Note that the VCF filter field will reflect the most lenient/sensitive status across all alleles."),
        ]
    for key, number, typ, desc in info_lines:
        if key not in header.info:
            header.info.add(key, number=number, type=typ, description=desc)
    for name, desc in applier.filter_names():
        if name not in header.filters:
            header.filters.add(name, None, None, desc)
    recorded = {hrec.value for hrec in header.records if hrec.key == COMPLETED_MODE_KEY}
    if config.mode.value not in recorded:
        header.add_line(f"##{COMPLETED_MODE_KEY}={config.mode.value}")


def _is_own_filter(name: str) -> bool:
    return name == LOW_VQSLOD_FILTER or bool(_TRANCHE_FILTER_RE.match(name))


def _set_filter(rec: pysam.VariantRecord, outcome: FilterOutcome) -> None:
    # Pending sites end up with no FILTER value so the next pass picks them up.
    keep = [f for f in rec.filter.keys() if f != "PASS" and not _is_own_filter(f)]
    if isinstance(outcome, Filtered):
        keep.append(outcome.label)
    elif isinstance(outcome, Pass) and not keep:
        keep.append("PASS")
    rec.filter.clear()
    for f in keep:
        rec.filter.add(f)


def apply_recalibration(
    vcf_path: str | Path,
    recal_path: str | Path,
    output_path: str | Path,
    applier: FilterApplier,
    config: ApplyConfig,
) -> Dict[str, int]:
    """Stream a call set, write filters and scores for records of ``config.mode``.

    Records of the other variant type (site mode) and records filtered on input
    are written unchanged; ``exclude_filtered`` drops records that end up filtered.
    """
    table = load_recal_table(recal_path, use_allele_specific=config.use_allele_specific)
    ignore = config.ignore_filters

    counts: Dict[str, int] = {
        "records_total": 0,
        "records_scored": 0,
        "records_pass": 0,
        "records_filtered": 0,
        "records_pending": 0,
        "records_other_mode": 0,
        "records_input_filtered": 0,
        "records_excluded": 0,
    }

    out_path = str(output_path)
    write_mode = "wz" if out_path.endswith(".gz") else "w"
    with pysam.VariantFile(str(vcf_path)) as vin:
        done = completed_modes(vin.header)
        other = config.mode.other()
        other_complete = other is not None and other in done
        if done:
            logger.info("Header records completed passes: %s", sorted(m.value for m in done))
        _prepare_header(vin.header, applier, config)

        with pysam.VariantFile(out_path, write_mode, header=vin.header) as vout:
            for rec in vin:
                counts["records_total"] += 1
                locus = f"{rec.contig}:{rec.pos}"
                input_filters = frozenset(f for f in rec.filter.keys() if not _is_own_filter(f))
                if not config.ignore_all_filters and (input_filters - {"PASS"}) - ignore:
                    counts["records_input_filtered"] += 1
                    if not config.exclude_filtered:
                        vout.write(rec)
                    else:
                        counts["records_excluded"] += 1
                    continue

                alts = list(rec.alts or ())
                if not alts:
                    counts["records_other_mode"] += 1
                    vout.write(rec)
                    continue
                if config.use_allele_specific:
                    outcome = _apply_alleles(rec, alts, table, applier, other_complete, locus)
                else:
                    kind = _site_kind(rec.ref, alts)
                    if kind is None or not config.mode.covers(kind):
                        counts["records_other_mode"] += 1
                        vout.write(rec)
                        continue
                    entry = table.get(recal_key(str(rec.contig), int(rec.start), int(rec.stop)))
                    outcome = applier.apply_site(entry, locus=locus)
                    rec.info[VQSLOD_KEY] = float(format_lod(entry.lod))
                    if entry.culprit is not None:
                        rec.info[CULPRIT_KEY] = entry.culprit
                    if entry.positive:
                        rec.info[POSITIVE_TRAIN_KEY] = True
                    if entry.negative:
                        rec.info[NEGATIVE_TRAIN_KEY] = True

                counts["records_scored"] += 1
                _set_filter(rec, outcome)
                if isinstance(outcome, Pass):
                    counts["records_pass"] += 1
                elif isinstance(outcome, Filtered):
                    counts["records_filtered"] += 1
                    if config.exclude_filtered:
                        counts["records_excluded"] += 1
                        continue
                else:
                    counts["records_pending"] += 1
                vout.write(rec)

    if write_mode == "wz":
        pysam.tabix_index(out_path, preset="vcf", force=True)
    logger.info("Applied %s recalibration: %s", config.mode.value, counts)
    return counts


def _apply_alleles(
    rec: pysam.VariantRecord,
    alts: List[str],
    table: Dict[RecalKey, ScoreEntry],
    applier: FilterApplier,
    other_complete: bool,
    locus: str,
) -> FilterOutcome:
    calls = [
        AlleleCall(alt, VariantType.INDEL if alt == SPANNING_DELETION else allele_type(rec.ref, alt))
        for alt in alts
    ]
    contig, start, stop = str(rec.contig), int(rec.start), int(rec.stop)
    scores = [
        None
        if call.is_spanning_deletion or not applier.mode.covers(call.kind)
        else table.get(recal_key(contig, start, stop, call.allele))
        for call in calls
    ]
    if any(e is not None and e.positive for e in scores):
        rec.info[POSITIVE_TRAIN_KEY] = True
    if any(e is not None and e.negative for e in scores):
        rec.info[NEGATIVE_TRAIN_KEY] = True
    prior = FilterState.decode(
        {k: rec.info.get(k) for k in (AS_VQSLOD_KEY, AS_CULPRIT_KEY, AS_FILTER_STATUS_KEY)},
        locus=locus,
    )
    if prior is not None and len(prior) != len(calls):
        raise DataConsistencyError(
            f"Stored allele-specific state has {len(prior)} entries for {len(calls)} alleles.", locus=locus
        )
    outcome, state = applier.apply_alleles(
        calls, scores, prior, other_mode_complete=other_complete, locus=locus
    )
    for key, value in state.encode().items():
        rec.info[key] = tuple(value.split(","))
    return outcome

