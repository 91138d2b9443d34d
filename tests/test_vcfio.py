from pathlib import Path

import pysam
import pytest

from gmmrecal.config import ApplyConfig
from gmmrecal.errors import ConfigurationError, DataConsistencyError
from gmmrecal.filtering import AS_FILTER_STATUS_KEY, AS_VQSLOD_KEY, LOW_VQSLOD_FILTER, FilterApplier
from gmmrecal.models import RecalMode
from gmmrecal.vcfio import (
    ResourceLabeler,
    TrainingResource,
    apply_recalibration,
    completed_modes,
    load_annotation_records,
    load_recal_table,
    recal_key,
    write_recal_file,
)

CONTIGS = [("chr1", 10_000)]

# (pos1, alleles, filter, info)
CALLS = [
    (100, ("A", "G"), "PASS", {"QD": 20.0, "FS": 1.0, "AS_QD": (20.0,)}),
    (200, ("AT", "A"), "PASS", {"QD": 5.0, "FS": 30.0, "AS_QD": (5.0,)}),
    (300, ("A", "G", "AT"), "PASS", {"QD": 10.0, "FS": 5.0, "AS_QD": (18.0, 2.0)}),
    (400, ("C", "T"), "LowQual", {"QD": 3.0, "FS": 40.0, "AS_QD": (3.0,)}),
    (500, ("G", "C"), "PASS", {"QD": 1.0, "AS_QD": (1.0,)}),
]


def _write_calls(path: Path) -> Path:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add("chr1", length=10_000)
    header.filters.add("LowQual", None, None, "Low quality")
    header.info.add("QD", number=1, type="Float", description="Quality by depth")
    header.info.add("FS", number=1, type="Float", description="Fisher strand")
    header.info.add("AS_QD", number="A", type="Float", description="Allele-specific QD")
    vcf_path = path / "calls.vcf"
    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        for pos1, alleles, filt, info in CALLS:
            rec = vcf.new_record(
                contig="chr1",
                start=pos1 - 1,
                stop=pos1 - 1 + len(alleles[0]),
                alleles=alleles,
                filter=filt,
            )
            for key, value in info.items():
                rec.info[key] = value
            vcf.write(rec)
    return vcf_path


def _write_resource(path: Path, sites) -> Path:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.contigs.add("chr1", length=10_000)
    with pysam.VariantFile(str(path), "w", header=header) as vcf:
        for pos1, alleles in sites:
            vcf.write(
                vcf.new_record(
                    contig="chr1", start=pos1 - 1, stop=pos1 - 1 + len(alleles[0]), alleles=alleles
                )
            )
    return path


def _read(path: Path):
    with pysam.VariantFile(str(path)) as vcf:
        return {rec.pos: rec for rec in vcf}, vcf.header.copy()


def _score(records, lods, culprit="QD"):
    for r in records:
        r.lod = lods[(r.start + 1, r.alt)]
        r.worst_annotation = 0 if culprit == "QD" else None
    return records


def test_resource_parse():
    res = TrainingResource.parse("hapmap,known=false,training=true,truth=true:/data/hapmap.vcf.gz")
    assert res.name == "hapmap"
    assert res.path == "/data/hapmap.vcf.gz"
    assert res.training and res.truth and not res.known and not res.anti_training


@pytest.mark.parametrize(
    "text",
    ["hapmap,training=true", "known=true:/x.vcf", "hapmap,prior=10:/x.vcf", "hapmap,truth=yes:/x.vcf"],
)
def test_resource_parse_rejects(text):
    with pytest.raises(ConfigurationError):
        TrainingResource.parse(text)


def test_site_mode_records(tmp_path: Path):
    calls = _write_calls(tmp_path)
    records, stats = load_annotation_records(calls, ["QD", "FS"], mode=RecalMode.SNP)
    assert [r.start + 1 for r in records] == [100, 500]
    assert stats["records_skipped_filter"] == 1
    assert stats["records_skipped_mode"] == 2
    assert records[1].is_null.tolist() == [False, True]
    assert records[0].is_transition

    records, _ = load_annotation_records(
        calls, ["QD"], mode=RecalMode.SNP, ignore_filters=frozenset({"LowQual"})
    )
    assert [r.start + 1 for r in records] == [100, 400, 500]

    records, _ = load_annotation_records(calls, ["QD"], mode=RecalMode.INDEL)
    assert [r.start + 1 for r in records] == [200, 300]


def test_allele_specific_records_take_per_allele_values(tmp_path: Path):
    calls = _write_calls(tmp_path)
    snps, _ = load_annotation_records(calls, ["AS_QD"], mode=RecalMode.SNP, use_allele_specific=True)
    assert [(r.start + 1, r.alt, r.annotations[0]) for r in snps] == [
        (100, "G", 20.0),
        (300, "G", 18.0),
        (500, "C", 1.0),
    ]
    indels, _ = load_annotation_records(calls, ["AS_QD"], mode=RecalMode.INDEL, use_allele_specific=True)
    assert [(r.start + 1, r.alt, r.annotations[0]) for r in indels] == [(200, "A", 5.0), (300, "AT", 2.0)]


def test_unknown_annotation_rejected(tmp_path: Path):
    calls = _write_calls(tmp_path)
    with pytest.raises(ConfigurationError, match="not defined"):
        load_annotation_records(calls, ["MQRankSum"])


def test_resource_labels_match_variant_type(tmp_path: Path):
    calls = _write_calls(tmp_path)
    truth = _write_resource(tmp_path / "truth.vcf", [(100, ("A", "G")), (300, ("A", "G"))])
    known = _write_resource(tmp_path / "known.vcf", [(500, ("G", "C"))])
    labeler = ResourceLabeler(
        [
            TrainingResource("truth", str(truth), training=True, truth=True),
            TrainingResource("dbsnp", str(known), known=True),
        ]
    )
    records, _ = load_annotation_records(calls, ["QD"], labeler=labeler, mode=RecalMode.BOTH)
    by_pos = {r.start + 1: r for r in records}
    assert by_pos[100].at_truth_site and by_pos[100].at_training_site
    # site 300 is an indel site in site mode; the resource only has the SNP there
    assert not by_pos[300].at_truth_site
    assert by_pos[500].is_known and not by_pos[500].at_truth_site


def test_labeler_requires_truth(tmp_path: Path):
    res = _write_resource(tmp_path / "r.vcf", [(100, ("A", "G"))])
    with pytest.raises(ConfigurationError, match="No truth set"):
        ResourceLabeler([TrainingResource("r", str(res), training=True)])


def test_recal_file_roundtrip(tmp_path: Path):
    calls = _write_calls(tmp_path)
    records, _ = load_annotation_records(calls, ["QD"], mode=RecalMode.BOTH)
    _score(records, {(100, "G"): 1.5, (200, "A"): -2.25, (300, "G"): 0.125, (500, "C"): -7.0})
    records[0].positive_training = True
    gz = write_recal_file(
        tmp_path / "recal.vcf", records, annotation_names=["QD"], contigs=CONTIGS
    )
    assert gz.endswith("recal.vcf.gz")
    assert Path(gz + ".tbi").exists()

    table = load_recal_table(gz)
    assert len(table) == 4
    entry = table[recal_key("chr1", 199, 201)]
    assert entry.lod == pytest.approx(-2.25)
    assert entry.culprit == "QD"
    assert table[recal_key("chr1", 99, 100)].positive


def _site_recal(tmp_path: Path, calls: Path, lods) -> str:
    records, _ = load_annotation_records(calls, ["QD"], mode=RecalMode.SNP)
    _score(records, lods)
    return write_recal_file(tmp_path / "recal.vcf", records, annotation_names=["QD"], contigs=CONTIGS)


def test_site_mode_flat_cutoff(tmp_path: Path):
    calls = _write_calls(tmp_path)
    recal = _site_recal(tmp_path, calls, {(100, "G"): 2.0, (500, "C"): -1.0})
    config = ApplyConfig(mode=RecalMode.SNP)
    out = tmp_path / "filtered.vcf"
    counts = apply_recalibration(calls, recal, out, FilterApplier(RecalMode.SNP), config)

    recs, header = _read(out)
    assert list(recs[100].filter.keys()) == ["PASS"]
    assert recs[100].info["VQSLOD"] == pytest.approx(2.0)
    assert recs[100].info["culprit"] == "QD"
    assert list(recs[500].filter.keys()) == [LOW_VQSLOD_FILTER]
    assert list(recs[200].filter.keys()) == ["PASS"]
    assert "VQSLOD" not in recs[200].info
    assert list(recs[400].filter.keys()) == ["LowQual"]
    assert completed_modes(header) == {RecalMode.SNP}
    assert LOW_VQSLOD_FILTER in header.filters
    assert counts["records_pass"] == 1
    assert counts["records_filtered"] == 1
    assert counts["records_other_mode"] == 2
    assert counts["records_input_filtered"] == 1


def test_exclude_filtered_drops_records(tmp_path: Path):
    calls = _write_calls(tmp_path)
    recal = _site_recal(tmp_path, calls, {(100, "G"): 2.0, (500, "C"): -1.0})
    config = ApplyConfig(mode=RecalMode.SNP, exclude_filtered=True)
    out = tmp_path / "filtered.vcf.gz"
    apply_recalibration(calls, recal, out, FilterApplier(RecalMode.SNP), config)
    recs, _ = _read(out)
    assert sorted(recs) == [100, 200, 300]
    assert Path(str(out) + ".tbi").exists()


def test_missing_recal_entry_names_locus(tmp_path: Path):
    calls = _write_calls(tmp_path)
    records, _ = load_annotation_records(calls, ["QD"], mode=RecalMode.SNP)
    _score(records[:1], {(100, "G"): 2.0})
    recal = write_recal_file(tmp_path / "recal.vcf", records[:1], annotation_names=["QD"], contigs=CONTIGS)
    with pytest.raises(DataConsistencyError, match="chr1:500"):
        apply_recalibration(
            calls, recal, tmp_path / "out.vcf", FilterApplier(RecalMode.SNP), ApplyConfig(mode=RecalMode.SNP)
        )


def _as_recal(tmp_path: Path, calls: Path, mode: RecalMode, lods) -> str:
    records, _ = load_annotation_records(calls, ["AS_QD"], mode=mode, use_allele_specific=True)
    _score(records, lods)
    return write_recal_file(
        tmp_path / f"recal_{mode.value}.vcf",
        records,
        annotation_names=["AS_QD"],
        contigs=CONTIGS,
        use_allele_specific=True,
    )


def test_allele_specific_two_passes(tmp_path: Path):
    calls = _write_calls(tmp_path)
    snp_recal = _as_recal(tmp_path, calls, RecalMode.SNP, {(100, "G"): 2.0, (300, "G"): -1.0, (500, "C"): 1.0})
    indel_recal = _as_recal(tmp_path, calls, RecalMode.INDEL, {(200, "A"): -5.0, (300, "AT"): 0.5})

    first = tmp_path / "snp.vcf"
    apply_recalibration(
        calls,
        snp_recal,
        first,
        FilterApplier(RecalMode.SNP),
        ApplyConfig(mode=RecalMode.SNP, use_allele_specific=True),
    )
    recs, header = _read(first)
    assert recs[300].info[AS_FILTER_STATUS_KEY] == ("LOW_VQSLOD", "NA")
    assert list(recs[300].filter.keys()) == []
    assert recs[300].info[AS_VQSLOD_KEY] == ("-1.0000", "NaN")
    assert list(recs[100].filter.keys()) == ["PASS"]
    assert completed_modes(header) == {RecalMode.SNP}

    second = tmp_path / "both.vcf"
    apply_recalibration(
        first,
        indel_recal,
        second,
        FilterApplier(RecalMode.INDEL),
        ApplyConfig(mode=RecalMode.INDEL, use_allele_specific=True),
    )
    recs, header = _read(second)
    assert recs[300].info[AS_FILTER_STATUS_KEY] == ("LOW_VQSLOD", "PASS")
    assert list(recs[300].filter.keys()) == ["PASS"]
    assert list(recs[200].filter.keys()) == [LOW_VQSLOD_FILTER]
    assert list(recs[100].filter.keys()) == ["PASS"]
    assert list(recs[400].filter.keys()) == ["LowQual"]
    assert completed_modes(header) == {RecalMode.SNP, RecalMode.INDEL}


def test_allele_specific_apply_carries_training_flags(tmp_path: Path):
    calls = _write_calls(tmp_path)
    records, _ = load_annotation_records(calls, ["AS_QD"], mode=RecalMode.SNP, use_allele_specific=True)
    _score(records, {(100, "G"): 2.0, (300, "G"): -1.0, (500, "C"): 1.0})
    for r in records:
        r.positive_training = (r.start + 1, r.alt) == (100, "G")
        r.negative_training = (r.start + 1, r.alt) == (300, "G")
    recal = write_recal_file(
        tmp_path / "recal.vcf", records, annotation_names=["AS_QD"], contigs=CONTIGS, use_allele_specific=True
    )

    out = tmp_path / "out.vcf"
    apply_recalibration(
        calls,
        recal,
        out,
        FilterApplier(RecalMode.SNP),
        ApplyConfig(mode=RecalMode.SNP, use_allele_specific=True),
    )
    recs, _ = _read(out)
    assert "POSITIVE_TRAIN_SITE" in recs[100].info
    assert "NEGATIVE_TRAIN_SITE" not in recs[100].info
    assert "NEGATIVE_TRAIN_SITE" in recs[300].info
    assert "POSITIVE_TRAIN_SITE" not in recs[500].info
    assert "NEGATIVE_TRAIN_SITE" not in recs[500].info
