"""
Sliding-window differential binding for ChIP-seq libraries.

Reads are counted into overlapping windows, windows are filtered against the
global background, a negative binomial GLM is fitted per window with pydeseq2,
and adjacent windows are merged into regions whose p-values are combined with
Simes' method.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import anndata as ad
import bioframe as bf
import numpy as np
import pandas as pd
import pysam
import structlog
from pydantic import BaseModel, Field
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats
from pydeseq2.preprocessing import deseq2_norm
from scipy.stats import false_discovery_control

from .ranges import harmonize_seqlevels, nearest_features, seqlevels_style


class ChipSample(BaseModel):
    """A ChIP-seq library and its experimental condition."""

    name: str = Field(description="Library name")
    bam: Path = Field(description="Sorted and indexed BAM file")
    condition: str = Field(description="Experimental condition")


def read_sample_sheet(path: Path) -> List[ChipSample]:
    """
    Load a tab-separated sample sheet with ``name``, ``bam`` and ``condition`` columns.

    Relative BAM paths are resolved against the sheet's directory.
    """
    sheet = pd.read_csv(path, sep="\t", dtype=str, comment="#")
    missing = {"name", "bam", "condition"} - set(sheet.columns)
    if missing:
        raise ValueError(f"Sample sheet {path} is missing columns: {', '.join(sorted(missing))}")
    if sheet["name"].duplicated().any():
        raise ValueError(f"Sample sheet {path} has duplicated library names")

    samples = []
    for row in sheet.itertuples(index=False):
        bam = Path(row.bam)
        if not bam.is_absolute():
            bam = Path(path).parent / bam
        samples.append(ChipSample(name=row.name, bam=bam, condition=row.condition))
    return samples


def _keep_read(read: pysam.AlignedSegment, min_mapq: int, dedup: bool) -> bool:
    if read.is_unmapped or read.is_secondary or read.is_supplementary:
        return False
    if read.mapping_quality < min_mapq:
        return False
    if dedup and read.is_duplicate:
        return False
    return True


def _fragments(
    bam: pysam.AlignmentFile,
    chrom: str,
    chrom_length: int,
    fragment_length: int,
    min_mapq: int,
    dedup: bool
) -> Tuple[np.ndarray, np.ndarray]:
    """Fragment intervals of reads extended in their own direction."""
    starts, ends = [], []
    for read in bam.fetch(chrom):
        if not _keep_read(read, min_mapq, dedup):
            continue
        if read.is_reverse:
            end = read.reference_end
            starts.append(end - fragment_length)
            ends.append(end)
        else:
            start = read.reference_start
            starts.append(start)
            ends.append(start + fragment_length)

    starts = np.clip(np.asarray(starts, dtype=np.int64), 0, chrom_length)
    ends = np.clip(np.asarray(ends, dtype=np.int64), 0, chrom_length)
    return starts, ends


def _count_into_windows(
    starts: np.ndarray,
    ends: np.ndarray,
    n_windows: int,
    width: int,
    spacing: int
) -> np.ndarray:
    """Number of fragments overlapping each window [i*spacing, i*spacing + width)."""
    first = (starts - width) // spacing + 1
    last = (ends - 1) // spacing
    first = np.clip(first, 0, None)
    last = np.clip(last, None, n_windows - 1)
    valid = (first <= last) & (ends > starts)

    delta = np.bincount(first[valid], minlength=n_windows + 1)
    delta -= np.bincount(last[valid] + 1, minlength=n_windows + 1)
    return np.cumsum(delta)[:n_windows]


def window_counts(
    samples: Sequence[ChipSample],
    logger: structlog.BoundLogger,
    width: int = 10,
    spacing: int = 50,
    fragment_length: int = 110,
    min_mapq: int = 20,
    dedup: bool = False,
    chroms: Optional[Sequence[str]] = None,
    min_count: int = 1
) -> ad.AnnData:
    """
    Count extended reads into sliding windows across all libraries.

    Args:
        samples: Libraries to count
        logger: Logger instance
        width: Window width
        spacing: Distance between consecutive window starts
        fragment_length: Length reads are extended to
        min_mapq: Minimum mapping quality
        dedup: Skip reads flagged as duplicates
        chroms: Restrict counting to these chromosomes
        min_count: Keep windows whose total count across libraries reaches this

    Returns:
        AnnData of libraries x windows with library sizes in ``obs['total']``
        and window coordinates in ``var``
    """
    if not samples:
        raise ValueError("At least one library is required")

    handles = [pysam.AlignmentFile(str(s.bam), "rb") for s in samples]
    try:
        lengths = dict(zip(handles[0].references, handles[0].lengths))
        for sample, handle in zip(samples[1:], handles[1:]):
            if dict(zip(handle.references, handle.lengths)) != lengths:
                raise ValueError(f"BAM header of {sample.name} does not match {samples[0].name}")

        targets = list(chroms) if chroms is not None else list(lengths)
        unknown = [c for c in targets if c not in lengths]
        if unknown:
            raise ValueError(f"Chromosomes not in BAM header: {', '.join(unknown)}")

        library_sizes = np.zeros(len(samples), dtype=np.int64)
        blocks, coords = [], []
        for chrom in targets:
            chrom_length = lengths[chrom]
            n_windows = -(-chrom_length // spacing)
            counts = np.zeros((len(samples), n_windows), dtype=np.int64)
            for i, handle in enumerate(handles):
                starts, ends = _fragments(handle, chrom, chrom_length, fragment_length, min_mapq, dedup)
                library_sizes[i] += len(starts)
                counts[i] = _count_into_windows(starts, ends, n_windows, width, spacing)

            keep = np.flatnonzero(counts.sum(axis=0) >= min_count)
            window_starts = keep * spacing
            blocks.append(counts[:, keep])
            coords.append(pd.DataFrame({
                "chrom": chrom,
                "start": window_starts,
                "end": np.minimum(window_starts + width, chrom_length),
            }))
            logger.debug("Chromosome counted", chrom=chrom, n_windows=len(keep))
    finally:
        for handle in handles:
            handle.close()

    var = pd.concat(coords, ignore_index=True) if coords else pd.DataFrame(columns=["chrom", "start", "end"])
    var.index = (var["chrom"] + ":" + var["start"].astype(str) + "-" + var["end"].astype(str)).to_numpy()
    obs = pd.DataFrame({
        "condition": [s.condition for s in samples],
        "bam": [str(s.bam) for s in samples],
        "total": library_sizes,
    }, index=[s.name for s in samples])

    X = np.concatenate(blocks, axis=1) if blocks else np.zeros((len(samples), 0), dtype=np.int64)
    windows = ad.AnnData(X=X, obs=obs, var=var)
    windows.uns["width"] = width
    windows.uns["spacing"] = spacing
    windows.uns["effective_width"] = width + fragment_length - 1

    logger.info("Windows counted",
                n_libraries=len(samples),
                n_windows=windows.n_vars,
                width=width,
                spacing=spacing,
                library_sizes=library_sizes.tolist())
    return windows


def discard_blacklisted(
    windows: ad.AnnData,
    blacklist: pd.DataFrame,
    logger: structlog.BoundLogger
) -> ad.AnnData:
    """Drop windows overlapping blacklisted regions."""
    if blacklist.empty or windows.n_vars == 0:
        return windows

    blacklist = harmonize_seqlevels(blacklist, seqlevels_style(windows.var["chrom"].unique()))
    counted = bf.count_overlaps(
        windows.var[["chrom", "start", "end"]].reset_index(drop=True),
        blacklist[["chrom", "start", "end"]],
    )
    keep = (counted["count"] == 0).to_numpy()

    logger.info("Blacklisted windows discarded", n_discarded=int((~keep).sum()))
    return windows[:, keep].copy()


def abundance(counts: np.ndarray, library_sizes: np.ndarray, prior_count: float = 2.0) -> np.ndarray:
    """Average log2 counts per million of each column of a libraries x features matrix."""
    counts = np.asarray(counts, dtype=float)
    libs = np.asarray(library_sizes, dtype=float)[:, None]
    cpm = (counts + prior_count) / (libs + 2 * prior_count) * 1e6
    return np.log2(cpm.mean(axis=0))


def filter_windows(
    windows: ad.AnnData,
    background: ad.AnnData,
    logger: structlog.BoundLogger,
    min_fold: float = 3.0,
    prior_count: float = 2.0
) -> ad.AnnData:
    """
    Keep windows enriched over the global background.

    The background is the median abundance of large bins, rescaled from the bin
    width to the effective window width.
    """
    libs = windows.obs["total"].to_numpy()
    window_ab = abundance(windows.X, libs, prior_count)
    bin_ab = abundance(background.X, libs, prior_count)

    scale = np.log2(windows.uns["effective_width"] / background.uns["effective_width"])
    global_bg = float(np.median(bin_ab)) + scale
    enrichment = window_ab - global_bg
    keep = enrichment >= np.log2(min_fold)

    filtered = windows[:, keep].copy()
    filtered.var["abundance"] = window_ab[keep]
    filtered.var["enrichment"] = enrichment[keep]
    filtered.uns["global_background"] = global_bg

    logger.info("Windows filtered against global background",
                n_windows=windows.n_vars,
                n_kept=filtered.n_vars,
                global_background=global_bg,
                min_fold=min_fold)
    return filtered


def composition_factors(background: ad.AnnData, logger: structlog.BoundLogger) -> Dict[str, float]:
    """Median-of-ratios normalization factors from background bin counts."""
    counts = np.asarray(background.X)
    informative = (counts > 0).all(axis=0)
    if not informative.any():
        logger.warning("No background bin is covered in every library; using unit factors")
        return {name: 1.0 for name in background.obs_names}

    _, size_factors = deseq2_norm(counts[:, informative])
    factors = {name: float(f) for name, f in zip(background.obs_names, np.asarray(size_factors))}
    logger.info("Composition factors estimated", factors=factors)
    return factors


def default_contrast(samples: Sequence[ChipSample]) -> List[str]:
    """Compare the second condition to the first one listed in the sample sheet."""
    conditions = list(dict.fromkeys(s.condition for s in samples))
    if len(conditions) != 2:
        raise ValueError(
            f"Default contrast needs exactly two conditions, found {len(conditions)}: {conditions}"
        )
    return ["condition", conditions[1], conditions[0]]


def compare_windows(
    windows: ad.AnnData,
    contrast: Sequence[str],
    logger: structlog.BoundLogger,
    size_factors: Optional[Dict[str, float]] = None,
    threads: int = 1
) -> pd.DataFrame:
    """
    Fit a negative binomial GLM per window and test the contrast.

    With ``size_factors`` from composition_factors the libraries are
    normalized on the background bins; without them pydeseq2 fits
    median-of-ratios factors on the windows themselves.

    Args:
        windows: Filtered window counts
        contrast: (factor, tested level, reference level)
        logger: Logger instance
        size_factors: Normalization factor per library name
        threads: CPUs for pydeseq2

    Returns:
        Window coordinates with ``log_fc``, ``pvalue`` and ``fdr``
    """
    factor, tested, reference = contrast
    levels = set(windows.obs[factor])
    if tested not in levels or reference not in levels:
        raise ValueError(f"Contrast levels {tested!r}/{reference!r} not found in {sorted(levels)}")
    if size_factors is not None:
        missing = set(windows.obs_names) - set(size_factors)
        if missing:
            raise ValueError(f"No size factor for libraries: {', '.join(sorted(missing))}")

    counts = pd.DataFrame(
        np.asarray(windows.X, dtype=np.int64),
        index=windows.obs_names,
        columns=windows.var_names,
    )
    metadata = windows.obs[[factor]].astype(str)

    inference = DefaultInference(n_cpus=threads)
    dds = DeseqDataSet(
        counts=counts,
        metadata=metadata,
        design=f"~{factor}",
        refit_cooks=True,
        inference=inference,
        quiet=True,
    )
    if size_factors is None:
        dds.deseq2()
    else:
        factors = np.array([size_factors[name] for name in windows.obs_names], dtype=float)
        dds.obs["size_factors"] = factors
        dds.layers["normed_counts"] = counts.to_numpy() / factors[:, None]
        # same steps as deseq2() after size factor fitting
        dds.fit_genewise_dispersions()
        dds.fit_dispersion_trend()
        dds.fit_dispersion_prior()
        dds.fit_MAP_dispersions()
        dds.fit_LFC()
        dds.calculate_cooks()
        if dds.refit_cooks:
            dds.refit()

    stats = DeseqStats(dds, contrast=[factor, tested, reference], inference=inference, quiet=True)
    stats.summary()
    results = stats.results_df.reindex(windows.var_names)

    tested_windows = windows.var[["chrom", "start", "end"]].copy()
    tested_windows["abundance"] = windows.var["abundance"] if "abundance" in windows.var else np.nan
    tested_windows["log_fc"] = results["log2FoldChange"].to_numpy()
    tested_windows["pvalue"] = results["pvalue"].fillna(1.0).to_numpy()
    tested_windows["fdr"] = results["padj"].fillna(1.0).to_numpy()

    logger.info("Windows tested",
                n_windows=len(tested_windows),
                size_factors="background bins" if size_factors is not None else "windows",
                contrast=list(contrast),
                n_significant=int((tested_windows["fdr"] <= 0.05).sum()))
    return tested_windows


def merge_windows(
    windows: pd.DataFrame,
    tolerance: int = 100,
    max_width: int = 5000
) -> Tuple[np.ndarray, pd.DataFrame]:
    """
    Cluster adjacent windows into regions.

    Windows no more than ``tolerance`` apart join the same region. Regions
    wider than ``max_width`` are split into equal-width parts.

    Returns:
        Region id per window, and the regions table indexed by id
    """
    frame = windows[["chrom", "start", "end"]].reset_index(drop=True)
    clustered = bf.cluster(frame, min_dist=tolerance)

    span = (clustered["cluster_end"] - clustered["cluster_start"]).to_numpy()
    n_parts = np.maximum(1, -(-span // max_width))
    part_width = span / n_parts
    offset = (clustered["start"] - clustered["cluster_start"]).to_numpy()
    part = np.minimum((offset // np.where(part_width > 0, part_width, 1)).astype(np.int64), n_parts - 1)

    keys = clustered["cluster"].to_numpy(dtype=np.int64) * int(n_parts.max()) + part
    _, region_ids = np.unique(keys, return_inverse=True)

    regions = (
        frame.assign(region=region_ids)
        .groupby("region")
        .agg(chrom=("chrom", "first"), start=("start", "min"), end=("end", "max"), n_windows=("start", "size"))
    )
    return region_ids, regions


def combine_tests(
    tested: pd.DataFrame,
    region_ids: np.ndarray,
    regions: pd.DataFrame,
    fdr: float = 0.05
) -> pd.DataFrame:
    """
    Combine window p-values per region with Simes' method.

    Region FDRs come from Benjamini-Hochberg across regions. ``n_up`` and
    ``n_down`` count windows significant at the window-level FDR.
    """
    frame = tested.reset_index(drop=True).assign(region=region_ids)
    frame = frame.sort_values(["region", "pvalue"], kind="stable")

    rank = frame.groupby("region").cumcount() + 1
    size = frame.groupby("region")["pvalue"].transform("size")
    frame["simes"] = frame["pvalue"] * size / rank

    significant = frame["fdr"] <= fdr
    frame["up"] = significant & (frame["log_fc"] > 0)
    frame["down"] = significant & (frame["log_fc"] < 0)

    grouped = frame.groupby("region")
    # best window: smallest p-value among windows with a fold change
    best = frame.dropna(subset=["log_fc"]).groupby("region").head(1).set_index("region")

    combined = regions.copy()
    combined["pvalue"] = grouped["simes"].min().clip(upper=1.0)
    combined["n_up"] = grouped["up"].sum().astype(int)
    combined["n_down"] = grouped["down"].sum().astype(int)
    combined["best_log_fc"] = best["log_fc"].reindex(combined.index)
    combined["fdr"] = false_discovery_control(combined["pvalue"].to_numpy(), method="bh")

    best_log_fc = combined["best_log_fc"].to_numpy(dtype=float)
    direction = np.where(np.isnan(best_log_fc), "mixed", np.where(best_log_fc >= 0, "up", "down"))
    direction = np.where((combined["n_up"] > 0) & (combined["n_down"] == 0), "up", direction)
    direction = np.where((combined["n_down"] > 0) & (combined["n_up"] == 0), "down", direction)
    direction = np.where((combined["n_up"] > 0) & (combined["n_down"] > 0), "mixed", direction)
    combined["direction"] = direction

    return combined.sort_values("pvalue")


def annotate_regions(regions: pd.DataFrame, gene_model: Dict[str, pd.DataFrame]) -> pd.DataFrame:
    """Add overlapping genes, promoter overlap and the nearest gene to each region."""
    genes = gene_model["genes"]
    style = seqlevels_style(genes["chrom"].unique())

    query = harmonize_seqlevels(regions[["chrom", "start", "end"]].reset_index(), style)
    query = query.rename(columns={query.columns[0]: "region"})

    overlaps = bf.overlap(query, genes[["chrom", "start", "end", "gene_name"]], how="inner", suffixes=("", "_gene"))
    overlapping = overlaps.groupby("region")["gene_name_gene"].agg(lambda g: sorted(set(g)))

    in_promoter = bf.overlap(query, gene_model["promoters"][["chrom", "start", "end"]], how="inner",
                             suffixes=("", "_promoter"))["region"].unique()

    nearest = nearest_features(query, genes, name_col="gene_name").set_index("region")

    annotated = regions.copy()
    annotated["overlapping_genes"] = [overlapping.get(r, []) for r in annotated.index]
    annotated["promoter"] = annotated.index.isin(in_promoter)
    annotated["nearest_gene"] = nearest["nearest"].reindex(annotated.index)
    annotated["distance_to_gene"] = nearest["distance"].reindex(annotated.index)
    return annotated
