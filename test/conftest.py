"""
Shared fixtures: small GTF/VCF/BAM inputs written into temporary directories.
"""

import sys
from pathlib import Path

import pysam
import pytest
import structlog

# Add src to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


# Two genes on chromosome "1" (Ensembl naming), 1-based GTF coordinates.
# GeneA (+): exons 1001-2000, 3001-5000; CDS 1501-2000, 3001-4000
# GeneB (-): exons 10001-10500, 11001-12000; CDS 10201-10500, 11001-11500
GTF_RECORDS = [
    ("gene", 1001, 5000, "+", 'gene_id "GA"; gene_name "GeneA";'),
    ("transcript", 1001, 5000, "+", 'gene_id "GA"; gene_name "GeneA"; transcript_id "TA";'),
    ("exon", 1001, 2000, "+", 'gene_id "GA"; gene_name "GeneA"; transcript_id "TA";'),
    ("CDS", 1501, 2000, "+", 'gene_id "GA"; gene_name "GeneA"; transcript_id "TA";'),
    ("exon", 3001, 5000, "+", 'gene_id "GA"; gene_name "GeneA"; transcript_id "TA";'),
    ("CDS", 3001, 4000, "+", 'gene_id "GA"; gene_name "GeneA"; transcript_id "TA";'),
    ("gene", 10001, 12000, "-", 'gene_id "GB"; gene_name "GeneB";'),
    ("transcript", 10001, 12000, "-", 'gene_id "GB"; gene_name "GeneB"; transcript_id "TB";'),
    ("exon", 10001, 10500, "-", 'gene_id "GB"; gene_name "GeneB"; transcript_id "TB";'),
    ("CDS", 10201, 10500, "-", 'gene_id "GB"; gene_name "GeneB"; transcript_id "TB";'),
    ("exon", 11001, 12000, "-", 'gene_id "GB"; gene_name "GeneB"; transcript_id "TB";'),
    ("CDS", 11001, 11500, "-", 'gene_id "GB"; gene_name "GeneB"; transcript_id "TB";'),
]

# 1-based VCF positions and the location each one falls in
VCF_POSITIONS = {
    501: "promoter+intergenic",
    1201: "fiveUTR",
    1700: "coding",
    2001: "intron+spliceSite",
    2501: "intron",
    4501: "threeUTR",
    8001: "intergenic",
    10101: "threeUTR",
    11901: "fiveUTR+promoter",
}


@pytest.fixture
def logger():
    return structlog.get_logger("test")


@pytest.fixture
def gtf_file(tmp_path):
    path = tmp_path / "genes.gtf"
    lines = ["#!genome-build test"]
    for feature, start, end, strand, attributes in GTF_RECORDS:
        lines.append("\t".join(["1", "test", feature, str(start), str(end), ".", strand, ".", attributes]))
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def vcf_file(tmp_path):
    """Uncompressed VCF using UCSC chromosome names."""
    path = tmp_path / "variants.vcf"
    lines = [
        "##fileformat=VCFv4.2",
        "##contig=<ID=chr1,length=20000>",
        '##FILTER=<ID=LowQual,Description="Low quality">',
        "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO",
    ]
    for i, pos in enumerate(sorted(VCF_POSITIONS)):
        filt = "LowQual" if pos == 8001 else "PASS"
        lines.append(f"chr1\t{pos}\trs{i}\tA\tG\t50\t{filt}\t.")
    path.write_text("\n".join(lines) + "\n")
    return path


def write_bam(path: Path, reads, chrom_lengths=None):
    """
    Write a coordinate-sorted, indexed BAM.

    ``reads`` holds (chrom, start, is_reverse, mapq, flag_bits) tuples of 50 bp reads.
    """
    chrom_lengths = chrom_lengths or {"chr1": 1000}
    names = list(chrom_lengths)
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": name, "LN": length} for name, length in chrom_lengths.items()],
    }
    ordered = sorted(reads, key=lambda r: (names.index(r[0]), r[1]))
    with pysam.AlignmentFile(str(path), "wb", header=header) as out:
        for i, (chrom, start, is_reverse, mapq, flag_bits) in enumerate(ordered):
            seg = pysam.AlignedSegment(out.header)
            seg.query_name = f"read{i}"
            seg.query_sequence = "A" * 50
            seg.flag = (16 if is_reverse else 0) | flag_bits
            seg.reference_id = names.index(chrom)
            seg.reference_start = start
            seg.mapping_quality = mapq
            seg.cigartuples = [(0, 50)]
            seg.query_qualities = pysam.qualitystring_to_array("I" * 50)
            out.write(seg)
    pysam.index(str(path))
    return path


@pytest.fixture
def bam_writer():
    return write_bam
