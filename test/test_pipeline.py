#!/usr/bin/env python3
"""
Tests for the workflow classes.
"""

import json
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest
import scipy.io
import scipy.sparse

from genomic_workflows.config.settings import WorkflowConfig
from genomic_workflows.utils import PerformanceMonitor
from genomic_workflows.core.pipeline import (
    Workflow,
    VariantAnnotationWorkflow,
    SingleCellWorkflow,
    DifferentialBindingWorkflow,
    _run_id,
)


@pytest.fixture
def config(tmp_path):
    return WorkflowConfig(base_dir=tmp_path / "base", output_dir=tmp_path / "out")


def test_run_id():
    assert _run_id("data/variants.vcf.gz") == "variants"
    assert _run_id(Path("raw_gene_bc_matrices/")) == "raw_gene_bc_matrices"


def test_setup_errors_raise(config, logger):
    with patch.object(WorkflowConfig, "validate_setup", return_value=["Required library not found: pysam"]):
        with pytest.raises(RuntimeError, match="setup validation failed"):
            Workflow(config, logger)


def test_workflow_logs_host_resources(config, logger):
    config.threads = 3
    with patch.object(PerformanceMonitor, "log_resources") as mock_resources:
        Workflow(config, logger)
    mock_resources.assert_called_once_with(3)


def test_resolve_input(config, logger, tmp_path):
    workflow = Workflow(config, logger)

    with patch("genomic_workflows.core.download.fetch_dataset", return_value=tmp_path / "pbmc") as mock_dataset:
        assert workflow._resolve_input("pbmc4k_raw") == tmp_path / "pbmc"
    assert mock_dataset.call_args.kwargs["cache_dir"] == config.get_cache_dir()

    with patch("genomic_workflows.core.download.fetch_resource", return_value=tmp_path / "g.gtf") as mock_fetch:
        assert workflow._resolve_input("https://example.org/g.gtf") == tmp_path / "g.gtf"
    mock_fetch.assert_called_once()

    with pytest.raises(FileNotFoundError):
        workflow._resolve_input(tmp_path / "absent.vcf")


def test_variant_annotation_workflow(config, logger, vcf_file, gtf_file):
    workflow = VariantAnnotationWorkflow(config, logger)

    report = workflow.run(vcf_file, gtf=gtf_file)

    assert report.n_variants == 9
    assert report.n_annotated == 9
    assert report.genes_hit == 2
    assert report.seqlevels_style == "Ensembl"
    assert report.location_counts["intergenic"] == 2
    assert report.location_counts["spliceSite"] == 1

    run_dir = config.output_dir / "variants"
    assert json.loads((run_dir / "report.json").read_text())["n_variants"] == 9
    for name in ["variant_locations.csv", "variants_per_gene.csv", "summary.txt", "performance.csv"]:
        assert (run_dir / name).exists()
    assert (run_dir / "plots" / "variant_locations.png").exists()

    sections = pd.read_csv(run_dir / "performance.csv")["section"].tolist()
    assert "locate_variants" in sections


def test_variant_annotation_requires_gtf(config, logger, vcf_file):
    workflow = VariantAnnotationWorkflow(config, logger)
    with pytest.raises(ValueError, match="gene annotation"):
        workflow.run(vcf_file)


def write_10x(matrix_dir: Path, n_cells=150, n_empty=1000, n_genes=200, seed=0):
    """Raw 10x (v2 layout) matrix with two cell populations and empty droplets."""
    rng = np.random.default_rng(seed)
    rates = np.full((2, n_genes), 2.0)
    rates[0, 2:12] = 30.0
    rates[1, 12:22] = 30.0
    half = n_cells // 2
    cells = np.vstack([
        rng.poisson(rates[0], size=(half, n_genes)),
        rng.poisson(rates[1], size=(n_cells - half, n_genes)),
    ])
    empty = rng.poisson(0.05, size=(n_empty, n_genes))
    counts = scipy.sparse.csr_matrix(np.vstack([cells, empty]).T.astype(np.int64))

    matrix_dir.mkdir(parents=True)
    scipy.io.mmwrite(str(matrix_dir / "matrix.mtx"), counts)
    genes = ["MT-CO1", "MT-ND1"] + [f"GENE{j}" for j in range(2, n_genes)]
    (matrix_dir / "genes.tsv").write_text("".join(f"ENSG{j:05d}\t{g}\n" for j, g in enumerate(genes)))
    (matrix_dir / "barcodes.tsv").write_text(
        "".join(f"BC{i:05d}-1\n" for i in range(n_cells + n_empty))
    )
    return matrix_dir


def fixed_ranks(adata, lower=100):
    totals = np.asarray(adata.X.sum(axis=1)).ravel()
    table = pd.DataFrame({
        "rank": pd.Series(-totals).rank(method="average").to_numpy(),
        "total": totals,
    }, index=adata.obs_names)
    return table, 500.0, 200.0


def test_single_cell_workflow(config, logger, tmp_path):
    matrix_dir = write_10x(tmp_path / "pbmc" / "raw_gene_bc_matrices" / "GRCh38")
    config.n_pcs = 10

    workflow = SingleCellWorkflow(config, logger)
    with patch("genomic_workflows.core.single_cell.barcode_ranks", side_effect=fixed_ranks):
        report = workflow.run(tmp_path / "pbmc", sample="pbmc")

    assert report.cell_calling.n_barcodes == 1150
    assert report.cell_calling.n_cells == 150
    assert report.cell_calling.knee == 500.0
    assert 140 <= report.n_cells_after_qc <= 150
    assert report.n_pcs == 10
    assert sum(c.n_cells for c in report.clusters) == report.n_cells_after_qc

    run_dir = config.output_dir / "pbmc"
    assert Path(report.h5ad_path) == run_dir / "pbmc.h5ad"
    assert Path(report.h5ad_path).exists()
    calls = pd.read_csv(run_dir / "barcode_calls.csv", index_col=0)
    assert calls["is_cell"].sum() == 150
    assert (run_dir / "markers.csv").exists()
    assert (run_dir / "plots" / "barcode_ranks.png").exists()
    assert (run_dir / "plots" / "umap_clusters.png").exists()


def fake_compare(windows, contrast, logger, size_factors=None, threads=1):
    tested = windows.var[["chrom", "start", "end"]].copy()
    tested["abundance"] = windows.var["abundance"]
    peak = (windows.var["start"] >= 2800).to_numpy()
    tested["log_fc"] = np.where(peak, 2.0, 0.1)
    tested["pvalue"] = np.where(peak, 0.001, 0.5)
    tested["fdr"] = np.where(peak, 0.01, 0.6)
    return tested


@pytest.fixture
def sample_sheet(tmp_path, bam_writer):
    rows = ["name\tbam\tcondition"]
    for name, condition in [("A", "ctrl"), ("B", "ctrl"), ("C", "trt"), ("D", "trt")]:
        n_peak = 10 if condition == "trt" else 2
        reads = [("chr1", 1000, False, 30, 0)] * 20 + [("chr1", 3000, False, 30, 0)] * n_peak
        bam_writer(tmp_path / f"{name}.bam", reads, chrom_lengths={"chr1": 5000})
        rows.append(f"{name}\t{name}.bam\t{condition}")
    sheet = tmp_path / "samples.tsv"
    sheet.write_text("\n".join(rows) + "\n")
    return sheet


def test_differential_binding_workflow(config, logger, sample_sheet, gtf_file):
    config.background_bin_width = 1000
    workflow = DifferentialBindingWorkflow(config, logger)

    with patch("genomic_workflows.core.chipseq.compare_windows", side_effect=fake_compare) as mock_compare:
        report = workflow.run(sample_sheet, gtf=gtf_file)

    assert mock_compare.call_args.args[1] == ["condition", "trt", "ctrl"]
    assert mock_compare.call_args.kwargs["size_factors"] == report.composition_factors
    assert set(report.composition_factors) == {"A", "B", "C", "D"}
    assert report.contrast == ["condition", "trt", "ctrl"]
    assert report.samples == ["A", "B", "C", "D"]
    assert report.n_windows_total == 6
    assert report.n_windows_kept == 6
    assert len(report.regions) == 2

    best = report.regions[0]
    assert (best.start, best.end) == (3000, 3110)
    assert best.direction == "up"
    assert best.n_up == 3
    assert best.overlapping_genes == ["GeneA"]
    assert [r.start for r in report.significant_regions()] == [3000]

    run_dir = config.output_dir / "samples"
    regions = pd.read_csv(run_dir / "regions.csv")
    assert regions["overlapping_genes"].tolist() == ["GeneA", "GeneA"]
    assert (run_dir / "windows.csv").exists()
    assert (run_dir / "plots" / "ma_plot.png").exists()


def test_differential_binding_without_enriched_windows(config, logger, sample_sheet):
    config.background_bin_width = 1000
    config.filter_min_fold = 1e9
    workflow = DifferentialBindingWorkflow(config, logger)

    with patch("genomic_workflows.core.chipseq.compare_windows") as mock_compare:
        report = workflow.run(sample_sheet)

    mock_compare.assert_not_called()
    assert report.n_windows_kept == 0
    assert report.regions == []
    assert (config.output_dir / "samples" / "report.json").exists()
