"""
VCF loading and variant location against gene models.
"""

from pathlib import Path
from typing import Dict, List, Optional

import bioframe as bf
import numpy as np
import pandas as pd
import pysam
import structlog

from ..models.reports import LOCATION_CATEGORIES
from .ranges import nearest_features


VARIANT_COLUMNS = ["chrom", "start", "end", "variant_id", "ref", "alt", "qual", "filter"]


def read_vcf(
    vcf_file: Path,
    logger: structlog.BoundLogger,
    region: Optional[str] = None
) -> pd.DataFrame:
    """
    Load VCF records into a range frame.

    Args:
        vcf_file: VCF or bgzipped VCF file
        logger: Logger instance
        region: Optional region string (e.g. "22:16050000-16100000"); needs an index

    Returns:
        DataFrame with one row per record
    """
    logger.info("Reading VCF", vcf_file=str(vcf_file), region=region)

    rows = []
    with pysam.VariantFile(str(vcf_file)) as vcf:
        records = vcf.fetch(region=region) if region else vcf
        for rec in records:
            rows.append((
                rec.chrom,
                rec.start,
                rec.stop,
                rec.id,
                rec.ref,
                ",".join(rec.alts) if rec.alts else None,
                rec.qual,
                ";".join(rec.filter.keys()) or None,
            ))

    variants = pd.DataFrame(rows, columns=VARIANT_COLUMNS)
    variants["chrom"] = variants["chrom"].astype(str)
    variants["start"] = variants["start"].astype(np.int64)
    variants["end"] = variants["end"].astype(np.int64)

    logger.info("VCF loaded", vcf_file=str(vcf_file), n_variants=len(variants))
    return variants


def utr_ranges(exons: pd.DataFrame, cds: pd.DataFrame) -> Dict[str, pd.DataFrame]:
    """Split exon parts outside the coding span of each transcript into 5' and 3' UTRs."""
    span = (
        cds.groupby("transcript_id")
        .agg(cds_start=("start", "min"), cds_end=("end", "max"))
        .reset_index()
    )
    coding_exons = exons.merge(span, on="transcript_id", how="inner")

    left = coding_exons[coding_exons["start"] < coding_exons["cds_start"]].copy()
    left["end"] = np.minimum(left["end"], left["cds_start"])

    right = coding_exons[coding_exons["end"] > coding_exons["cds_end"]].copy()
    right["start"] = np.maximum(right["start"], right["cds_end"])

    columns = list(exons.columns)
    left, right = left[columns], right[columns]
    minus_left = left["strand"] == "-"
    minus_right = right["strand"] == "-"
    return {
        "fiveUTR": pd.concat([left[~minus_left], right[minus_right]], ignore_index=True),
        "threeUTR": pd.concat([right[~minus_right], left[minus_left]], ignore_index=True),
    }


def splice_site_ranges(introns: pd.DataFrame, width: int = 2) -> pd.DataFrame:
    """The first and last bases of each intron."""
    if width <= 0 or introns.empty:
        return introns.iloc[0:0]
    donor = introns.copy()
    donor["end"] = np.minimum(donor["start"] + width, donor["end"])
    acceptor = introns.copy()
    acceptor["start"] = np.maximum(acceptor["end"] - width, acceptor["start"])
    return pd.concat([donor, acceptor], ignore_index=True)


def _hits(variants: pd.DataFrame, ranges: pd.DataFrame, location: str) -> pd.DataFrame:
    """Variant/feature pairs overlapping in a given location category."""
    columns = ["variant_idx", "location", "gene_id", "gene_name"]
    if variants.empty or ranges.empty:
        return pd.DataFrame(columns=columns)

    overlaps = bf.overlap(
        variants[["chrom", "start", "end", "variant_idx"]],
        ranges[["chrom", "start", "end", "gene_id", "gene_name"]],
        how="inner",
        suffixes=("", "_feature"),
    )
    return pd.DataFrame({
        "variant_idx": overlaps["variant_idx"].to_numpy(),
        "location": location,
        "gene_id": overlaps["gene_id_feature"].to_numpy(),
        "gene_name": overlaps["gene_name_feature"].to_numpy(),
    })


def locate_variants(
    variants: pd.DataFrame,
    gene_model: Dict[str, pd.DataFrame],
    logger: structlog.BoundLogger,
    splice_site_width: int = 2
) -> pd.DataFrame:
    """
    Assign variants to location categories of a gene model.

    A variant can fall in several categories and genes; the result has one row
    per (variant, location, gene). Variants outside every transcript are
    ``intergenic`` and carry the nearest gene with its distance.

    Args:
        variants: Range frame from read_vcf
        gene_model: Range frames from ranges.load_gene_model
        logger: Logger instance
        splice_site_width: Intron bases at each end reported as spliceSite

    Returns:
        Long-form DataFrame of variant locations
    """
    logger.info("Locating variants", n_variants=len(variants))

    variants = variants.reset_index(drop=True).copy()
    variants["variant_idx"] = np.arange(len(variants))

    utrs = utr_ranges(gene_model["exons"], gene_model["cds"])
    located = [
        _hits(variants, gene_model["cds"], "coding"),
        _hits(variants, utrs["fiveUTR"], "fiveUTR"),
        _hits(variants, utrs["threeUTR"], "threeUTR"),
        _hits(variants, gene_model["introns"], "intron"),
        _hits(variants, splice_site_ranges(gene_model["introns"], splice_site_width), "spliceSite"),
        _hits(variants, gene_model["promoters"], "promoter"),
    ]

    in_transcript = _hits(variants, gene_model["transcripts"], "transcript")["variant_idx"].unique()
    intergenic = variants[~variants["variant_idx"].isin(in_transcript)]
    if not intergenic.empty:
        nearest = nearest_features(intergenic, gene_model["genes"], name_col="gene_name")
        located.append(pd.DataFrame({
            "variant_idx": nearest["variant_idx"].to_numpy(),
            "location": "intergenic",
            "gene_id": pd.NA,
            "gene_name": nearest["nearest"].to_numpy(),
            "distance": nearest["distance"].to_numpy(),
        }))

    located = [h for h in located if not h.empty]
    if located:
        hits = pd.concat(located, ignore_index=True)
    else:
        hits = pd.DataFrame(columns=["variant_idx", "location", "gene_id", "gene_name"])
    if "distance" not in hits.columns:
        hits["distance"] = pd.NA

    hits = hits.drop_duplicates(["variant_idx", "location", "gene_id", "gene_name"])
    hits["variant_idx"] = hits["variant_idx"].astype(np.int64)
    hits["distance"] = hits["distance"].astype("Int64")
    hits["location"] = pd.Categorical(hits["location"], categories=list(LOCATION_CATEGORIES))

    result = variants.merge(hits, on="variant_idx", how="inner")
    result = result.sort_values(["variant_idx", "location"]).reset_index(drop=True)

    logger.info("Variants located",
                n_rows=len(result),
                n_variants_annotated=int(result["variant_idx"].nunique()))
    return result


def summarize_locations(located: pd.DataFrame) -> Dict[str, int]:
    """Unique variants per location category, in category order."""
    counts = located.groupby("location", observed=False)["variant_idx"].nunique()
    return {location: int(counts.get(location, 0)) for location in LOCATION_CATEGORIES}


def variants_per_gene(located: pd.DataFrame) -> pd.DataFrame:
    """Unique variants per gene and location, excluding intergenic calls."""
    genic = located[located["location"] != "intergenic"]
    if genic.empty:
        return pd.DataFrame(columns=["total"], index=pd.Index([], name="gene_name"), dtype=np.int64)
    genic = genic.assign(location=genic["location"].astype(str))
    table = (
        genic.groupby(["gene_name", "location"])["variant_idx"]
        .nunique()
        .unstack("location", fill_value=0)
    )
    columns: List[str] = [c for c in LOCATION_CATEGORIES if c in table.columns]
    table = table[columns]
    table["total"] = genic.groupby("gene_name")["variant_idx"].nunique()
    return table.sort_values("total", ascending=False)
