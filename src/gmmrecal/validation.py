from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Sequence

import pysam

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def check_vcf_index(vcf_path: str | Path) -> None:
    """Ensure a bgzipped VCF has a tabix index; raise ConfigurationError with fix instructions."""
    vcf = Path(vcf_path)
    if vcf.suffixes[-2:] == [".vcf", ".gz"]:
        tbi = vcf.with_suffix(vcf.suffix + ".tbi")
        csi = vcf.with_suffix(vcf.suffix + ".csi")
        if not tbi.exists() and not csi.exists():
            raise ConfigurationError(
                "VCF is not bgzip/tabix indexed. Run: bgzip -c "
                + str(vcf.with_suffix(""))
                + " > "
                + str(vcf)
                + "; tabix -p vcf "
                + str(vcf)
            )
    elif vcf.suffix == ".vcf":
        logger.info(
            "VCF is uncompressed (.vcf). This is supported but slower; "
            "consider bgzip+tabix for large files."
        )


def check_annotations_in_header(header: pysam.VariantHeader, annotations: Iterable[str]) -> None:
    """Every requested annotation must be a numeric INFO field of the VCF."""
    missing = [a for a in annotations if a not in header.info]
    if missing:
        raise ConfigurationError(
            f"Annotations not defined in the VCF header: {missing}. "
            f"Available INFO fields: {sorted(header.info.keys())}"
        )
    non_numeric = [a for a in annotations if header.info[a].type not in ("Float", "Integer")]
    if non_numeric:
        raise ConfigurationError(f"Annotations must be Float or Integer INFO fields: {non_numeric}")


def check_vcf_contigs(vcf_paths: Sequence[str | Path]) -> None:
    """Warn when resources and the call set share no contig names (e.g. chr1 vs 1)."""
    contig_sets = []
    for p in vcf_paths:
        with pysam.VariantFile(str(p)) as vcf:
            contig_sets.append(set(vcf.header.contigs))
    if len(contig_sets) < 2 or not all(contig_sets):
        return
    calls, rest = contig_sets[0], contig_sets[1:]
    for p, contigs in zip(vcf_paths[1:], rest):
        if not calls & contigs:
            logger.warning(
                "No shared contigs between %s and %s (e.g. chr1 vs 1); no sites will be labelled.",
                vcf_paths[0],
                p,
            )
