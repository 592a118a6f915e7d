"""
Droplet single-cell RNA-seq processing with scanpy.

The sequence follows the usual droplet workflow: rank barcodes, separate cells
from empty droplets, flag low-quality cells, normalize, pick highly variable
genes, reduce dimensions, cluster and rank marker genes.
"""

import tempfile
from pathlib import Path
from typing import Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.io
import scipy.sparse
import structlog
from scipy.interpolate import make_smoothing_spline
from scipy.stats import median_abs_deviation


def _find_matrix_dir(path: Path) -> Path:
    """Locate the directory holding matrix.mtx(.gz) below a 10x output folder."""
    for name in ("matrix.mtx", "matrix.mtx.gz"):
        if (path / name).exists():
            return path
        found = sorted(path.rglob(name))
        if found:
            return found[0].parent
    raise FileNotFoundError(f"No 10x matrix found under {path}")


def load_10x_counts(path: Path, logger: structlog.BoundLogger) -> ad.AnnData:
    """
    Read a 10x count matrix (directory or .h5) into AnnData.

    Args:
        path: 10x matrix directory, an archive extraction folder, or an .h5 file
        logger: Logger instance

    Returns:
        AnnData with barcodes as observations and unique gene symbols as variables
    """
    path = Path(path)
    if path.suffix == ".h5":
        adata = sc.read_10x_h5(str(path))
    else:
        matrix_dir = _find_matrix_dir(path)
        adata = sc.read_10x_mtx(str(matrix_dir), var_names="gene_symbols", make_unique=True)
    adata.var_names_make_unique()
    if not scipy.sparse.issparse(adata.X):
        adata.X = scipy.sparse.csr_matrix(adata.X)

    logger.info("10x counts loaded",
                path=str(path),
                n_barcodes=adata.n_obs,
                n_genes=adata.n_vars)
    return adata


def _totals(adata: ad.AnnData) -> np.ndarray:
    return np.asarray(adata.X.sum(axis=1)).ravel()


def barcode_ranks(
    adata: ad.AnnData,
    lower: int = 100,
    exclude_from: int = 50
) -> Tuple[pd.DataFrame, float, float]:
    """
    Rank barcodes by total count and locate the knee and inflection points.

    Ties share their average rank. The inflection is the point of steepest
    descent on the log-log curve; the knee is the point of minimum signed
    curvature of a smoothing spline fitted between the curve's plateau and the
    inflection.

    Returns:
        Table of rank and total per barcode, knee total, inflection total

    Raises:
        ValueError: If fewer than three distinct totals lie above ``lower``
    """
    totals = _totals(adata)
    order = np.argsort(-totals, kind="stable")
    sorted_totals = totals[order]

    ranks = np.empty(len(totals), dtype=float)
    ranks[order] = pd.Series(-sorted_totals).rank(method="average").to_numpy()
    table = pd.DataFrame({"rank": ranks, "total": totals}, index=adata.obs_names)

    change = np.r_[True, sorted_totals[1:] != sorted_totals[:-1]]
    run_starts = np.flatnonzero(change)
    run_lengths = np.diff(np.r_[run_starts, len(sorted_totals)])
    run_totals = sorted_totals[run_starts]
    run_ranks = np.cumsum(run_lengths) - (run_lengths - 1) / 2

    keep = run_totals > lower
    if keep.sum() < 3:
        raise ValueError("Insufficient unique points above the ambient threshold to find knee/inflection")

    y = np.log10(run_totals[keep])
    x = np.log10(run_ranks[keep])

    slopes = np.diff(y) / np.diff(x)
    skip = min(len(slopes) - 1, int(np.sum(x <= np.log10(exclude_from))))
    slopes = slopes[skip:]
    right = int(np.argmin(slopes))
    left = int(np.argmax(slopes[:right + 1]))
    left += skip
    right += skip

    inflection = float(10 ** y[right])

    xs, ys = x[left:right + 1], y[left:right + 1]
    if len(xs) >= 5:
        spline = make_smoothing_spline(xs, ys)
        d1 = spline.derivative(1)(xs)
        d2 = spline.derivative(2)(xs)
        curvature = d2 / (1 + d1 ** 2) ** 1.5
        knee = float(10 ** ys[int(np.argmin(curvature))])
    else:
        knee = float(10 ** ys[0])

    return table, knee, inflection


def _emptydrops_r(
    counts: scipy.sparse.spmatrix,
    lower: int,
    niters: int,
    random_state: int
) -> pd.DataFrame:
    """Run DropletUtils::emptyDrops on a genes x barcodes matrix through rpy2."""
    try:
        import rpy2.robjects as ro
        from rpy2.robjects import pandas2ri
        from rpy2.robjects.conversion import localconverter
    except ImportError as e:
        raise RuntimeError(
            "emptyDrops requires rpy2 and the R package DropletUtils "
            "(pip install 'genomic-workflows[r]')"
        ) from e

    run_emptydrops = ro.r("""
        function(path, lower, niters, seed) {
            set.seed(seed)
            m <- as(Matrix::readMM(path), "CsparseMatrix")
            out <- DropletUtils::emptyDrops(m, lower = lower, niters = niters)
            as.data.frame(out)
        }
    """)

    with tempfile.TemporaryDirectory() as tmpdir:
        mtx = Path(tmpdir) / "counts.mtx"
        scipy.io.mmwrite(str(mtx), scipy.sparse.csc_matrix(counts))
        result = run_emptydrops(str(mtx), lower, niters, random_state)

    with localconverter(ro.default_converter + pandas2ri.converter):
        return ro.conversion.rpy2py(result)


def call_cells(
    adata: ad.AnnData,
    logger: structlog.BoundLogger,
    method: str = "knee",
    lower: int = 100,
    fdr: float = 0.001,
    niters: int = 10000,
    random_state: int = 0,
    knee: Optional[float] = None
) -> pd.DataFrame:
    """
    Distinguish cell-containing droplets from empty ones.

    ``knee`` keeps barcodes whose total reaches the knee of the barcode-rank
    curve. ``emptydrops`` tests each barcode against the ambient profile built
    from barcodes at or below ``lower`` (DropletUtils, through rpy2); those
    ambient barcodes get a missing FDR and are never cells.

    Returns:
        DataFrame indexed by barcode with ``total``, ``fdr`` and ``is_cell``
    """
    totals = _totals(adata)
    calls = pd.DataFrame({"total": totals, "fdr": np.nan}, index=adata.obs_names)

    if method == "knee":
        if knee is None:
            _, knee, _ = barcode_ranks(adata, lower=lower)
        calls["is_cell"] = (calls["total"] >= knee) & (calls["total"] > lower)
    elif method == "emptydrops":
        result = _emptydrops_r(adata.X.T, lower=lower, niters=niters, random_state=random_state)
        calls["fdr"] = result["FDR"].to_numpy(dtype=float)
        calls.loc[calls["total"] <= lower, "fdr"] = np.nan
        calls["is_cell"] = calls["fdr"].le(fdr)

        limited = result["Limited"].to_numpy(dtype=bool) & ~calls["is_cell"].to_numpy()
        if limited.any():
            logger.warning("Some non-significant barcodes hit the iteration limit; consider raising niters",
                           n_limited=int(limited.sum()), niters=niters)
    else:
        raise ValueError(f"Unknown cell calling method: {method}")

    logger.info("Cells called",
                method=method,
                n_barcodes=len(calls),
                n_cells=int(calls["is_cell"].sum()))
    return calls


def is_outlier(values: np.ndarray, nmads: float = 3.0, direction: str = "higher") -> np.ndarray:
    """Flag values more than ``nmads`` scaled MADs from the median."""
    values = np.asarray(values, dtype=float)
    median = np.nanmedian(values)
    mad = median_abs_deviation(values, scale="normal", nan_policy="omit")
    upper = values > median + nmads * mad
    lower = values < median - nmads * mad
    if direction == "higher":
        return upper
    if direction == "lower":
        return lower
    if direction == "both":
        return upper | lower
    raise ValueError(f"Unknown outlier direction: {direction}")


def quality_control(
    adata: ad.AnnData,
    logger: structlog.BoundLogger,
    mito_prefix: str = "MT-",
    nmads: float = 3.0
) -> ad.AnnData:
    """
    Compute QC metrics and drop cells with outlying mitochondrial content.

    Metrics and the ``discard`` flag are written into ``adata.obs``. Genes not
    detected in any retained cell are dropped from the returned copy.
    """
    adata.var["mt"] = adata.var_names.str.startswith(mito_prefix)
    sc.pp.calculate_qc_metrics(adata, qc_vars=["mt"], percent_top=None, log1p=False, inplace=True)

    adata.obs["discard"] = is_outlier(adata.obs["pct_counts_mt"].to_numpy(), nmads=nmads, direction="higher")
    filtered = adata[~adata.obs["discard"].to_numpy()].copy()
    sc.pp.filter_genes(filtered, min_cells=1)

    logger.info("Quality control applied",
                n_mito_genes=int(adata.var["mt"].sum()),
                n_discarded=int(adata.obs["discard"].sum()),
                n_cells_kept=filtered.n_obs,
                n_genes_kept=filtered.n_vars)
    return filtered


def normalize(adata: ad.AnnData, logger: structlog.BoundLogger) -> None:
    """Library size normalization followed by a log transform."""
    adata.layers["counts"] = adata.X.copy()
    library_sizes = _totals(adata)
    adata.obs["size_factor"] = library_sizes / library_sizes.mean()

    sc.pp.normalize_total(adata, target_sum=float(library_sizes.mean()))
    sc.pp.log1p(adata)

    logger.info("Counts normalized",
                min_size_factor=float(adata.obs["size_factor"].min()),
                max_size_factor=float(adata.obs["size_factor"].max()))


def model_variance(adata: ad.AnnData, logger: structlog.BoundLogger, top_fraction: float = 0.1) -> int:
    """Mark the top fraction of genes by normalized dispersion as highly variable."""
    n_top = max(2, int(round(top_fraction * adata.n_vars)))
    sc.pp.highly_variable_genes(adata, n_top_genes=min(n_top, adata.n_vars), flavor="seurat")
    n_hvgs = int(adata.var["highly_variable"].sum())
    logger.info("Highly variable genes selected", n_hvgs=n_hvgs)
    return n_hvgs


def reduce_dimensions(
    adata: ad.AnnData,
    logger: structlog.BoundLogger,
    n_pcs: int = 25,
    n_neighbors: int = 15,
    random_state: int = 0
) -> int:
    """PCA on highly variable genes, kNN graph and UMAP embedding. Returns the PCs used."""
    n_hvgs = int(adata.var["highly_variable"].sum())
    n_comps = max(1, min(n_pcs, n_hvgs - 1, adata.n_obs - 1))

    sc.tl.pca(adata, n_comps=n_comps, mask_var="highly_variable", random_state=random_state)
    sc.pp.neighbors(
        adata,
        n_neighbors=min(n_neighbors, adata.n_obs - 1),
        n_pcs=n_comps,
        random_state=random_state,
    )
    sc.tl.umap(adata, random_state=random_state)

    logger.info("Dimensions reduced", n_pcs=n_comps, n_neighbors=n_neighbors)
    return n_comps


def cluster_cells(
    adata: ad.AnnData,
    logger: structlog.BoundLogger,
    resolution: float = 1.0,
    random_state: int = 0
) -> pd.Series:
    """Leiden clustering on the kNN graph into ``obs['cluster']``. Returns cluster sizes."""
    sc.tl.leiden(
        adata,
        resolution=resolution,
        random_state=random_state,
        key_added="cluster",
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )
    sizes = adata.obs["cluster"].value_counts().sort_index()
    logger.info("Cells clustered", n_clusters=len(sizes), resolution=resolution)
    return sizes


def find_markers(
    adata: ad.AnnData,
    logger: structlog.BoundLogger,
    method: str = "wilcoxon",
    n_markers: int = 10
) -> pd.DataFrame:
    """
    Rank marker genes of each cluster against all other cells.

    Returns:
        Long table with ``cluster``, ``rank``, ``gene``, ``score``, ``log_fc``, ``pval_adj``
    """
    columns = ["cluster", "rank", "gene", "score", "log_fc", "pval_adj"]
    if adata.obs["cluster"].nunique() < 2:
        logger.warning("Marker detection needs at least two clusters")
        return pd.DataFrame(columns=columns)

    sc.tl.rank_genes_groups(adata, groupby="cluster", method=method, use_raw=False)
    ranked = sc.get.rank_genes_groups_df(adata, group=None)
    if "group" not in ranked.columns:
        ranked.insert(0, "group", adata.obs["cluster"].cat.categories[0])

    ranked = ranked.groupby("group", observed=True, sort=True).head(n_markers)
    markers = pd.DataFrame({
        "cluster": ranked["group"].astype(str).to_numpy(),
        "gene": ranked["names"].to_numpy(),
        "score": ranked["scores"].to_numpy(),
        "log_fc": ranked["logfoldchanges"].to_numpy() if "logfoldchanges" in ranked else np.nan,
        "pval_adj": ranked["pvals_adj"].to_numpy() if "pvals_adj" in ranked else np.nan,
    })
    markers.insert(1, "rank", markers.groupby("cluster").cumcount() + 1)

    logger.info("Markers ranked", method=method, n_clusters=markers["cluster"].nunique())
    return markers[columns]
