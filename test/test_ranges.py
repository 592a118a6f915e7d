#!/usr/bin/env python3
"""
Tests for genomic range shaping.
"""

import pandas as pd
import pytest

from genomic_workflows.core import ranges


def test_read_gtf_converts_to_zero_based(gtf_file):
    gtf = ranges.read_gtf(gtf_file)

    gene_a = gtf[(gtf["feature"] == "gene") & (gtf["gene_name"] == "GeneA")].iloc[0]
    assert gene_a["start"] == 1000
    assert gene_a["end"] == 5000
    assert gene_a["chrom"] == "1"
    assert pd.isna(gene_a["transcript_id"])
    assert "attribute" not in gtf.columns


def test_load_gene_model(gtf_file):
    model = ranges.load_gene_model(gtf_file)

    assert set(model) == {"genes", "transcripts", "exons", "cds", "introns", "promoters"}
    assert len(model["genes"]) == 2
    assert len(model["exons"]) == 4

    introns = model["introns"].set_index("transcript_id")
    assert (introns.loc["TA", "start"], introns.loc["TA", "end"]) == (2000, 3000)
    assert (introns.loc["TB", "start"], introns.loc["TB", "end"]) == (10500, 11000)


def test_load_gene_model_without_gene_records(tmp_path):
    gtf = tmp_path / "exons_only.gtf"
    gtf.write_text(
        '1\tt\texon\t101\t200\t.\t+\t.\tgene_id "G1"; transcript_id "T1";\n'
        '1\tt\texon\t301\t400\t.\t+\t.\tgene_id "G1"; transcript_id "T1";\n'
    )
    model = ranges.load_gene_model(gtf)

    gene = model["genes"].iloc[0]
    assert (gene["start"], gene["end"]) == (100, 400)
    # gene_name falls back to gene_id
    assert gene["gene_name"] == "G1"


def test_promoters_are_strand_aware_and_clipped():
    transcripts = pd.DataFrame({
        "chrom": ["1", "1"],
        "start": [1000, 10000],
        "end": [5000, 12000],
        "strand": ["+", "-"],
    })
    proms = ranges.promoters(transcripts, upstream=2000, downstream=200)

    assert (proms.loc[0, "start"], proms.loc[0, "end"]) == (0, 1200)
    assert (proms.loc[1, "start"], proms.loc[1, "end"]) == (11800, 14000)


def test_read_bed_ignores_extra_columns(tmp_path):
    bed = tmp_path / "blacklist.bed"
    bed.write_text("#comment\nchr2\t50\t60\tname\t0\nchr1\t10\t20\tother\t0\n")
    frame = ranges.read_bed(bed)

    assert list(frame.columns) == ["chrom", "start", "end"]
    assert frame["chrom"].tolist() == ["chr1", "chr2"]


def test_seqlevels_style():
    assert ranges.seqlevels_style(["chr1", "chr2", "chrX"]) == ranges.UCSC
    assert ranges.seqlevels_style(["1", "2", "MT"]) == ranges.ENSEMBL
    with pytest.raises(ValueError):
        ranges.seqlevels_style([])


def test_harmonize_seqlevels_handles_mitochondria():
    df = pd.DataFrame({"chrom": ["1", "MT", "X"], "start": [0, 0, 0], "end": [1, 1, 1]})

    ucsc = ranges.harmonize_seqlevels(df, ranges.UCSC)
    assert ucsc["chrom"].tolist() == ["chr1", "chrM", "chrX"]

    back = ranges.harmonize_seqlevels(ucsc, ranges.ENSEMBL)
    assert back["chrom"].tolist() == ["1", "MT", "X"]

    with pytest.raises(ValueError):
        ranges.harmonize_seqlevels(df, "NCBI")


def test_check_shared_seqlevels():
    subject = pd.DataFrame({"chrom": ["1"], "start": [0], "end": [10]})
    query = pd.DataFrame({"chrom": ["chr1"], "start": [5], "end": [6]})

    harmonized = ranges.check_shared_seqlevels(query, subject)
    assert harmonized["chrom"].tolist() == ["1"]

    unrelated = pd.DataFrame({"chrom": ["chr2"], "start": [5], "end": [6]})
    with pytest.raises(ValueError, match="No shared chromosomes"):
        ranges.check_shared_seqlevels(unrelated, subject)


def test_nearest_features():
    features = pd.DataFrame({
        "chrom": ["1", "1"],
        "start": [1000, 10000],
        "end": [5000, 12000],
        "gene_name": ["GeneA", "GeneB"],
    })
    query = pd.DataFrame({
        "chrom": ["1", "1", "1", "2"],
        "start": [500, 8000, 11000, 10],
        "end": [501, 8001, 11001, 11],
    })
    nearest = ranges.nearest_features(query, features)

    assert nearest["nearest"].tolist()[:3] == ["GeneA", "GeneB", "GeneB"]
    assert nearest["distance"].tolist()[:3] == [499, 1999, 0]
    assert pd.isna(nearest.loc[3, "nearest"])
    assert pd.isna(nearest.loc[3, "distance"])
