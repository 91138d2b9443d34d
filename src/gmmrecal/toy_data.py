from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pysam

from .utils import ensure_outdir, write_json

_BASES = "ACGT"


def _other_base(rng: random.Random, base: str) -> str:
    return rng.choice([b for b in _BASES if b != base])


def _make_alleles(rng: random.Random, is_snp: bool, multiallelic: bool) -> Tuple[str, List[str]]:
    base = rng.choice(_BASES)
    if is_snp:
        ref = base
        alts = [_other_base(rng, base)]
    elif rng.random() < 0.5:
        ref = base + "".join(rng.choice(_BASES) for _ in range(rng.randint(1, 4)))
        alts = [base]
    else:
        ref = base
        alts = [base + "".join(rng.choice(_BASES) for _ in range(rng.randint(1, 4)))]
    if multiallelic:
        # One extra allele of the other type so the site mixes SNP and indel alleles.
        if is_snp:
            alts.append(ref + "T")
        else:
            alts.append(_other_base(rng, ref[0]) + ref[1:])
    return ref, alts


def _annotations(rng: random.Random, good: bool) -> Dict[str, Optional[float]]:
    if good:
        qd = rng.gauss(20.0, 4.0)
        fs = abs(rng.gauss(2.0, 2.0))
        mq = rng.gauss(60.0, 1.5)
    else:
        qd = max(0.1, rng.gauss(6.0, 3.0))
        fs = abs(rng.gauss(25.0, 10.0))
        mq = rng.gauss(45.0, 6.0)
    return {
        "QD": round(qd, 2),
        "FS": None if rng.random() < 0.05 else round(fs, 3),
        "MQ": round(mq, 2),
    }


def _sites_header(contig: str, length: int) -> pysam.VariantHeader:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add(contig, length=length)
    return header


def _write_gz(vcf_path: Path) -> Path:
    vcf_gz = vcf_path.with_suffix(vcf_path.suffix + ".gz")
    pysam.tabix_compress(str(vcf_path), str(vcf_gz), force=True)
    pysam.tabix_index(str(vcf_gz), preset="vcf", force=True)
    return vcf_gz


def make_toy_data(*, outdir: str | Path, n_sites: int = 1200, seed: int = 7) -> Dict[str, str]:
    """Create a small annotated call set and matching resources for quick demos/tests.

    The outputs include:
    - calls.vcf.gz (+ .tbi): QD/FS/MQ INFO annotations, ~70% good calls
    - truth.vcf.gz (+ .tbi): most good calls (use as training + truth resource)
    - dbsnp.vcf.gz (+ .tbi): a known-sites resource

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    rng = random.Random(seed)

    contig = "chr1"
    length = 5_000_000
    positions = sorted(rng.sample(range(1000, length - 1000, 10), n_sites))

    calls_header = _sites_header(contig, length)
    calls_header.add_sample("SAMPLE")
    calls_header.info.add("QD", number=1, type="Float", description="Variant Confidence/Quality by Depth")
    calls_header.info.add("FS", number=1, type="Float", description="Phred-scaled p-value using Fisher's exact test to detect strand bias")
    calls_header.info.add("MQ", number=1, type="Float", description="RMS Mapping Quality")
    calls_header.formats.add("GT", number=1, type="String", description="Genotype")

    truth: List[Tuple[int, str, List[str]]] = []
    known: List[Tuple[int, str, List[str]]] = []
    n_good = 0

    calls_path = outdir_p / "calls.vcf"
    with pysam.VariantFile(str(calls_path), "w", header=calls_header) as vcf:
        for i, pos1 in enumerate(positions):
            is_snp = rng.random() < 0.8
            good = rng.random() < 0.7
            multiallelic = rng.random() < 0.03
            ref, alts = _make_alleles(rng, is_snp, multiallelic)
            rec = vcf.new_record(
                contig=contig,
                start=pos1 - 1,
                stop=pos1 - 1 + len(ref),
                alleles=(ref, *alts),
                id=f"site{i}",
                qual=60 if good else 20,
                filter="PASS",
            )
            for key, value in _annotations(rng, good).items():
                if value is not None:
                    rec.info[key] = value
            rec.samples[0]["GT"] = (0, 1)
            vcf.write(rec)

            if good:
                n_good += 1
                if rng.random() < 0.9:
                    truth.append((pos1, ref, alts))
            if rng.random() < (0.6 if good else 0.2):
                known.append((pos1, ref, alts))

    resources = {}
    for name, sites in (("truth", truth), ("dbsnp", known)):
        path = outdir_p / f"{name}.vcf"
        with pysam.VariantFile(str(path), "w", header=_sites_header(contig, length)) as vcf:
            for pos1, ref, alts in sites:
                vcf.write(
                    vcf.new_record(
                        contig=contig,
                        start=pos1 - 1,
                        stop=pos1 - 1 + len(ref),
                        alleles=(ref, *alts),
                        filter="PASS",
                    )
                )
        resources[name] = _write_gz(path)

    summary = {
        "calls_vcf": str(_write_gz(calls_path)),
        "truth_vcf": str(resources["truth"]),
        "dbsnp_vcf": str(resources["dbsnp"]),
        "n_sites": n_sites,
        "n_good": n_good,
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
