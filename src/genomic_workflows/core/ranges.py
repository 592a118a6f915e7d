"""
Genomic range shaping on top of bioframe.

Ranges are pandas DataFrames with ``chrom``, ``start`` and ``end`` columns in
0-based half-open coordinates.
"""

from pathlib import Path
from typing import Dict, Iterable, List

import bioframe as bf
import numpy as np
import pandas as pd


GTF_COLUMNS = [
    "chrom", "source", "feature", "start", "end",
    "score", "strand", "frame", "attribute"
]

RANGE_COLUMNS = ["chrom", "start", "end", "strand", "gene_id", "gene_name"]
TX_COLUMNS = RANGE_COLUMNS + ["transcript_id"]

UCSC = "UCSC"
ENSEMBL = "Ensembl"


def read_bed(path: Path) -> pd.DataFrame:
    """Read a BED3+ file into a range frame."""
    bed = bf.read_table(
        str(path),
        names=["chrom", "start", "end"],
        usecols=[0, 1, 2],
        comment="#",
        dtype={"chrom": str},
    )
    return bf.sort_bedframe(bed)


def _extract_attribute(attributes: pd.Series, key: str) -> pd.Series:
    return attributes.str.extract(rf'(?:^|;)\s*{key} "([^"]*)"', expand=False)


def read_gtf(path: Path) -> pd.DataFrame:
    """Read a GTF file, converting to 0-based half-open coordinates."""
    gtf = bf.read_table(
        str(path),
        names=GTF_COLUMNS,
        sep="\t",
        comment="#",
        dtype={"chrom": str},
    )
    gtf["start"] = gtf["start"].astype(np.int64) - 1
    gtf["end"] = gtf["end"].astype(np.int64)

    attributes = gtf["attribute"].fillna("").astype(str)
    gtf["gene_id"] = _extract_attribute(attributes, "gene_id")
    gtf["gene_name"] = _extract_attribute(attributes, "gene_name").fillna(gtf["gene_id"])
    gtf["transcript_id"] = _extract_attribute(attributes, "transcript_id")
    return gtf.drop(columns=["attribute"])


def _span(df: pd.DataFrame, by: List[str]) -> pd.DataFrame:
    """Collapse features into one range per group."""
    return (
        df.groupby(by, sort=False, dropna=True)
        .agg(start=("start", "min"), end=("end", "max"))
        .reset_index()
    )


def _introns(exons: pd.DataFrame) -> pd.DataFrame:
    """Gaps between consecutive exons of each transcript."""
    ordered = exons.sort_values(["transcript_id", "start"])
    next_start = ordered.groupby("transcript_id")["start"].shift(-1)
    introns = ordered.assign(start=ordered["end"], end=next_start)
    introns = introns[introns["end"].notna()]
    introns["end"] = introns["end"].astype(np.int64)
    return introns[introns["end"] > introns["start"]][TX_COLUMNS].reset_index(drop=True)


def promoters(
    transcripts: pd.DataFrame,
    upstream: int = 2000,
    downstream: int = 200
) -> pd.DataFrame:
    """Strand-aware promoter ranges around each transcript start."""
    minus = transcripts["strand"] == "-"
    tss = np.where(minus, transcripts["end"], transcripts["start"])
    start = np.where(minus, tss - downstream, tss - upstream)
    end = np.where(minus, tss + upstream, tss + downstream)

    proms = transcripts.copy()
    proms["start"] = np.clip(start, 0, None)
    proms["end"] = end
    return proms[proms["end"] > proms["start"]].reset_index(drop=True)


def load_gene_model(
    gtf_path: Path,
    promoter_upstream: int = 2000,
    promoter_downstream: int = 200
) -> Dict[str, pd.DataFrame]:
    """
    Build gene, transcript, exon, CDS, intron and promoter ranges from a GTF.

    Genes and transcripts fall back to the span of their exons when the GTF
    has no explicit ``gene``/``transcript`` records.
    """
    gtf = read_gtf(gtf_path)

    exons = gtf.loc[gtf["feature"] == "exon", TX_COLUMNS].reset_index(drop=True)
    cds = gtf.loc[gtf["feature"] == "CDS", TX_COLUMNS].reset_index(drop=True)

    transcripts = gtf.loc[gtf["feature"] == "transcript", TX_COLUMNS]
    if transcripts.empty:
        transcripts = _span(exons, ["chrom", "strand", "gene_id", "gene_name", "transcript_id"])
    transcripts = transcripts[TX_COLUMNS].reset_index(drop=True)

    genes = gtf.loc[gtf["feature"] == "gene", RANGE_COLUMNS]
    if genes.empty:
        genes = _span(transcripts, ["chrom", "strand", "gene_id", "gene_name"])
    genes = genes[RANGE_COLUMNS].reset_index(drop=True)

    return {
        "genes": bf.sort_bedframe(genes),
        "transcripts": bf.sort_bedframe(transcripts),
        "exons": bf.sort_bedframe(exons),
        "cds": bf.sort_bedframe(cds),
        "introns": bf.sort_bedframe(_introns(exons)),
        "promoters": bf.sort_bedframe(
            promoters(transcripts, promoter_upstream, promoter_downstream)
        ),
    }


def seqlevels_style(names: Iterable[str]) -> str:
    """Classify chromosome naming as UCSC ('chr1') or Ensembl ('1')."""
    names = [str(n) for n in names]
    if not names:
        raise ValueError("Cannot infer naming style without chromosome names")
    prefixed = sum(n.startswith("chr") for n in names)
    return UCSC if prefixed * 2 >= len(names) else ENSEMBL


def _rename_seqlevel(name: str, style: str) -> str:
    if style == UCSC:
        if name.startswith("chr"):
            return name
        return "chrM" if name == "MT" else f"chr{name}"
    if style == ENSEMBL:
        if not name.startswith("chr"):
            return name
        return "MT" if name == "chrM" else name[3:]
    raise ValueError(f"Unknown seqlevels style: {style}")


def harmonize_seqlevels(df: pd.DataFrame, style: str) -> pd.DataFrame:
    """Rename the chrom column to the given naming style."""
    renamed = df.copy()
    mapping = {c: _rename_seqlevel(c, style) for c in renamed["chrom"].astype(str).unique()}
    renamed["chrom"] = renamed["chrom"].astype(str).map(mapping)
    return renamed


def check_shared_seqlevels(query: pd.DataFrame, subject: pd.DataFrame) -> pd.DataFrame:
    """
    Harmonize query chromosome names to the subject's style.

    Raises:
        ValueError: If the two datasets share no chromosome after harmonization
    """
    if query.empty:
        return query
    style = seqlevels_style(subject["chrom"].unique())
    harmonized = harmonize_seqlevels(query, style)
    shared = set(harmonized["chrom"]) & set(subject["chrom"].astype(str))
    if not shared:
        raise ValueError(
            "No shared chromosomes between datasets: "
            f"{sorted(set(query['chrom']))[:5]} vs {sorted(set(subject['chrom']))[:5]}"
        )
    return harmonized


def nearest_features(
    query: pd.DataFrame,
    features: pd.DataFrame,
    name_col: str = "gene_name"
) -> pd.DataFrame:
    """
    Closest feature per query range.

    Returns the query with ``nearest`` and ``distance`` columns. Both are
    missing for ranges on chromosomes without features.
    """
    closest = bf.closest(
        query.reset_index(drop=True),
        features[["chrom", "start", "end", name_col]],
        k=1,
        suffixes=("", "_feature"),
        return_index=True,
    )
    closest = (
        closest.dropna(subset=["distance"])
        .drop_duplicates("index")
        .astype({"index": np.int64})
        .set_index("index")
    )
    out = query.reset_index(drop=True).copy()
    out["nearest"] = closest[f"{name_col}_feature"].reindex(out.index)
    out["distance"] = closest["distance"].reindex(out.index).astype("Int64")
    return out
