"""
Workflow classes chaining the analysis steps of each vignette.
"""

import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
import pandas as pd
import structlog
from pydantic import BaseModel

from .. import __version__
from ..config.settings import WorkflowConfig
from ..models.reports import (
    AnnotationReport,
    CellCallingSummary,
    ClusterSummary,
    SingleCellReport,
    DBRegion,
    DBReport,
)
from ..utils import PipelineLogger, PerformanceMonitor, log_error
from . import download, ranges, variants, single_cell, chipseq, plotting


def _run_id(path: Union[str, Path]) -> str:
    """Derive a run name from an input file, dropping all extensions."""
    return Path(str(path).rstrip("/")).name.split(".")[0]


def _optional(value: Any) -> Any:
    """Map pandas missing values to None."""
    if value is None or (not isinstance(value, (list, tuple)) and pd.isna(value)):
        return None
    return value


class Workflow:
    """Shared setup, step logging and result saving for all workflows."""

    name = "workflow"

    def __init__(self, config: WorkflowConfig, logger: structlog.BoundLogger):
        """
        Initialize the workflow.

        Args:
            config: Workflow configuration
            logger: Structured logger instance
        """
        # Load config data
        self.config = config

        # Initialize logger and performance monitor
        self.logger = logger
        self.monitor: PerformanceMonitor = PerformanceMonitor(
            logger
        )

        self.monitor.log_resources(self.config.threads)

        # Ensure directories exist
        self.config.ensure_directories()

        # Validate setup
        errors = self.config.validate_setup()
        if errors:
            error_msg = "Workflow setup validation failed:\n" + \
                "\n".join(f"  - {e}" for e in errors)
            raise RuntimeError(error_msg)

        self.logger.info("Workflow initialized successfully",
                         workflow=self.name,
                         config_summary=self._get_config_summary())

    def _step(self, operation: str, func: Callable, *args, **kwargs):
        """Run one analysis step with timing, memory tracking and error context."""
        with PipelineLogger(self.logger, operation):
            try:
                return self.monitor.section(operation, func, *args, **kwargs)
            except Exception as e:
                log_error(self.logger, e, context={"workflow": self.name, "operation": operation})
                raise

    def _resolve_input(self, source: Union[str, Path]) -> Path:
        """Return a local path for a file, a URL or a named dataset."""
        source = str(source)
        if source in download.DATASETS:
            return download.fetch_dataset(
                source,
                cache_dir=self.config.get_cache_dir(),
                logger=self.logger,
                max_retries=self.config.download_retries,
                timeout=self.config.timeout_seconds,
            )
        if source.startswith(("http://", "https://", "ftp://")):
            return download.fetch_resource(
                source,
                cache_dir=self.config.get_cache_dir(),
                logger=self.logger,
                max_retries=self.config.download_retries,
                timeout=self.config.timeout_seconds,
            )

        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"Input not found: {path}")
        return path

    def _gene_model(self, gtf: Optional[Union[str, Path]]) -> Dict[str, pd.DataFrame]:
        gtf = gtf or self.config.gene_annotation
        if gtf is None:
            raise ValueError("A gene annotation (GTF) is required")
        gtf_path = self._resolve_input(gtf)
        return ranges.load_gene_model(
            gtf_path,
            promoter_upstream=self.config.promoter_upstream,
            promoter_downstream=self.config.promoter_downstream,
        )

    def _save_results(self, run_id: str, report: BaseModel, tables: Dict[str, pd.DataFrame]) -> Path:
        """Save the report, its tables, a text summary and section timings."""
        with PipelineLogger(self.logger, f"save_results_{run_id}") as plog:
            plog.add_context(run_id=run_id)

            try:
                # Create output directory for this run
                run_output_dir = self.config.output_dir / run_id
                run_output_dir.mkdir(parents=True, exist_ok=True)

                # Save report as JSON
                report_file = run_output_dir / "report.json"
                with open(report_file, "w") as f:
                    f.write(report.to_json())

                for table_name, table in tables.items():
                    table.to_csv(run_output_dir / f"{table_name}.csv")

                # Save summary statistics
                summary_file = run_output_dir / "summary.txt"
                summary = report.get_summary_stats()
                with open(summary_file, "w") as f:
                    f.write(f"Genomic Workflows Summary: {self.name}\n")
                    f.write("=" * 40 + "\n\n")
                    for key, value in summary.items():
                        f.write(f"{key}: {value}\n")

                self.monitor.write_csv(run_output_dir / "performance.csv")
                self.monitor.report_peaks()

                plog.log_progress(f"Results saved to {run_output_dir}")
                return run_output_dir

            except Exception as e:
                log_error(self.logger, e, context={"run_id": run_id, "operation": "save_results"})
                raise

    def _get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of the configuration for logging."""
        return {
            "base_dir": str(self.config.base_dir),
            "output_dir": str(self.config.output_dir),
            "threads": self.config.threads,
            "random_state": self.config.random_state,
        }


class VariantAnnotationWorkflow(Workflow):
    """Locate VCF variants relative to the genes of a GTF annotation."""

    name = "variant_annotation"

    def run(
        self,
        vcf: Union[str, Path],
        gtf: Optional[Union[str, Path]] = None,
        region: Optional[str] = None
    ) -> AnnotationReport:
        """
        Run the annotation workflow.

        Args:
            vcf: VCF file, URL or dataset name
            gtf: GTF file, URL or dataset name; defaults to the configured annotation
            region: Optional region to restrict the VCF to

        Returns:
            AnnotationReport with location counts
        """
        run_id = _run_id(vcf)
        start_time = time.time()

        with PipelineLogger(self.logger, f"variant_annotation_{run_id}") as plog:
            plog.add_context(vcf=str(vcf), gtf=str(gtf), region=region)

            vcf_path = self._step("fetch_vcf", self._resolve_input, vcf)
            gene_model = self._step("load_gene_model", self._gene_model, gtf)

            loaded = self._step("read_vcf", variants.read_vcf, vcf_path, self.logger, region=region)
            loaded = self._step("check_seqlevels", ranges.check_shared_seqlevels, loaded, gene_model["genes"])
            style = ranges.seqlevels_style(gene_model["genes"]["chrom"].unique())
            plog.log_progress("Variants loaded", n_variants=len(loaded), seqlevels_style=style)

            located = self._step(
                "locate_variants", variants.locate_variants,
                loaded, gene_model, self.logger,
                splice_site_width=self.config.splice_site_width,
            )
            location_counts = variants.summarize_locations(located)
            per_gene = variants.variants_per_gene(located)

            self._step(
                "plot_locations", plotting.plot_location_counts,
                location_counts, self.config.get_plot_dir(run_id) / "variant_locations.png",
            )

            report = AnnotationReport(
                vcf=str(vcf),
                annotation=str(gtf or self.config.gene_annotation),
                seqlevels_style=style,
                n_variants=len(loaded),
                n_annotated=int(located["variant_idx"].nunique()),
                genes_hit=len(per_gene),
                location_counts=location_counts,
                processing_time=time.time() - start_time,
                workflow_version=__version__,
            )

            self._step(
                "save_results", self._save_results, run_id, report,
                {
                    "variant_locations": located.drop(columns=["variant_idx"]),
                    "variants_per_gene": per_gene,
                },
            )
            return report


class SingleCellWorkflow(Workflow):
    """Droplet scRNA-seq processing from raw counts to cluster markers."""

    name = "single_cell"

    def run(self, matrix: Union[str, Path], sample: Optional[str] = None) -> SingleCellReport:
        """
        Run the single-cell workflow.

        Args:
            matrix: 10x matrix directory, .h5 file, archive URL or dataset name
            sample: Sample name used for outputs; derived from ``matrix`` if omitted

        Returns:
            SingleCellReport with cell calling and cluster summaries
        """
        sample = sample or _run_id(matrix)
        start_time = time.time()
        cfg = self.config

        with PipelineLogger(self.logger, f"single_cell_{sample}") as plog:
            plog.add_context(matrix=str(matrix), sample=sample)

            matrix_path = self._step("fetch_matrix", self._resolve_input, matrix)
            raw = self._step("load_counts", single_cell.load_10x_counts, matrix_path, self.logger)

            rank_table, knee, inflection = self._step(
                "barcode_ranks", single_cell.barcode_ranks, raw, lower=cfg.ambient_lower
            )
            plog.log_progress("Barcode ranks computed", knee=knee, inflection=inflection)

            calls = self._step(
                "call_cells", single_cell.call_cells, raw, self.logger,
                method=cfg.cell_calling_method,
                lower=cfg.ambient_lower,
                fdr=cfg.cell_fdr,
                niters=cfg.emptydrops_niters,
                random_state=cfg.random_state,
                knee=knee,
            )
            n_cells = int(calls["is_cell"].sum())
            if n_cells < 3:
                raise ValueError(f"Only {n_cells} barcodes were called as cells")

            plot_dir = cfg.get_plot_dir(sample)
            plotting.plot_barcode_ranks(rank_table, knee, inflection, plot_dir / "barcode_ranks.png",
                                        is_cell=calls["is_cell"])

            cells = raw[calls["is_cell"].to_numpy()].copy()
            cells = self._step(
                "quality_control", single_cell.quality_control, cells, self.logger,
                mito_prefix=cfg.mito_prefix, nmads=cfg.qc_nmads,
            )
            self._step("normalize", single_cell.normalize, cells, self.logger)
            n_hvgs = self._step(
                "model_variance", single_cell.model_variance, cells, self.logger,
                top_fraction=cfg.hvg_top_fraction,
            )
            n_pcs = self._step(
                "reduce_dimensions", single_cell.reduce_dimensions, cells, self.logger,
                n_pcs=cfg.n_pcs, n_neighbors=cfg.n_neighbors, random_state=cfg.random_state,
            )
            sizes = self._step(
                "cluster_cells", single_cell.cluster_cells, cells, self.logger,
                resolution=cfg.cluster_resolution, random_state=cfg.random_state,
            )
            markers = self._step(
                "find_markers", single_cell.find_markers, cells, self.logger,
                method=cfg.marker_method, n_markers=cfg.n_markers,
            )

            plotting.plot_umap(cells.obsm["X_umap"], cells.obs["cluster"], plot_dir / "umap_clusters.png")

            run_output_dir = cfg.output_dir / sample
            run_output_dir.mkdir(parents=True, exist_ok=True)
            h5ad_path = run_output_dir / f"{sample}.h5ad"
            self._step("write_h5ad", cells.write_h5ad, h5ad_path)

            clusters = [
                ClusterSummary(
                    cluster=str(label),
                    n_cells=int(size),
                    top_markers=markers.loc[markers["cluster"] == str(label), "gene"].tolist(),
                )
                for label, size in sizes.items()
                if size > 0
            ]

            report = SingleCellReport(
                sample=sample,
                cell_calling=CellCallingSummary(
                    method=cfg.cell_calling_method,
                    n_barcodes=raw.n_obs,
                    lower=cfg.ambient_lower,
                    knee=knee,
                    inflection=inflection,
                    n_cells=n_cells,
                    fdr_threshold=cfg.cell_fdr if cfg.cell_calling_method == "emptydrops" else None,
                ),
                n_genes=raw.n_vars,
                n_cells_after_qc=cells.n_obs,
                n_hvgs=n_hvgs,
                n_pcs=n_pcs,
                clusters=clusters,
                h5ad_path=str(h5ad_path),
                processing_time=time.time() - start_time,
                workflow_version=__version__,
            )

            self._step(
                "save_results", self._save_results, sample, report,
                {
                    "barcode_calls": rank_table.join(calls[["fdr", "is_cell"]]),
                    "markers": markers,
                    "cell_metadata": cells.obs,
                },
            )
            return report


class DifferentialBindingWorkflow(Workflow):
    """Sliding-window differential binding between two ChIP-seq conditions."""

    name = "differential_binding"

    def run(
        self,
        samples: Union[str, Path, Sequence[chipseq.ChipSample]],
        gtf: Optional[Union[str, Path]] = None,
        blacklist: Optional[Union[str, Path]] = None,
        contrast: Optional[Sequence[str]] = None,
        run_id: Optional[str] = None
    ) -> DBReport:
        """
        Run the differential binding workflow.

        Args:
            samples: Sample sheet path or list of ChipSample
            gtf: Optional gene annotation used to label regions
            blacklist: Optional BED file of regions to ignore
            contrast: (factor, tested, reference); defaults to the second
                condition against the first
            run_id: Output name; defaults to the sample sheet name

        Returns:
            DBReport with merged regions
        """
        if isinstance(samples, (str, Path)):
            run_id = run_id or _run_id(samples)
            samples = chipseq.read_sample_sheet(Path(samples))
        run_id = run_id or "differential_binding"
        samples = list(samples)
        contrast = list(contrast) if contrast else chipseq.default_contrast(samples)
        blacklist = blacklist or self.config.blacklist
        start_time = time.time()
        cfg = self.config

        with PipelineLogger(self.logger, f"differential_binding_{run_id}") as plog:
            plog.add_context(samples=[s.name for s in samples], contrast=contrast)

            windows = self._step(
                "count_windows", chipseq.window_counts, samples, self.logger,
                width=cfg.window_width,
                spacing=cfg.window_spacing,
                fragment_length=cfg.fragment_length,
                min_mapq=cfg.min_mapq,
                dedup=cfg.dedup,
            )
            n_windows_total = windows.n_vars
            background = self._step(
                "count_background", chipseq.window_counts, samples, self.logger,
                width=cfg.background_bin_width,
                spacing=cfg.background_bin_width,
                fragment_length=1,
                min_mapq=cfg.min_mapq,
                dedup=cfg.dedup,
                min_count=0,
            )

            if blacklist is not None:
                blacklisted = ranges.read_bed(self._resolve_input(blacklist))
                windows = self._step("discard_blacklisted", chipseq.discard_blacklisted,
                                     windows, blacklisted, self.logger)

            filtered = self._step(
                "filter_windows", chipseq.filter_windows, windows, background, self.logger,
                min_fold=cfg.filter_min_fold,
            )
            factors = self._step("composition_factors", chipseq.composition_factors, background, self.logger)

            tables: Dict[str, pd.DataFrame] = {}
            regions: List[DBRegion] = []
            if filtered.n_vars == 0:
                plog.log_progress("No window passed the abundance filter")
            else:
                tested = self._step(
                    "compare_windows", chipseq.compare_windows, filtered, contrast, self.logger,
                    size_factors=factors, threads=cfg.threads,
                )
                region_ids, merged = self._step(
                    "merge_windows", chipseq.merge_windows, tested,
                    tolerance=cfg.merge_tolerance, max_width=cfg.max_merged_width,
                )
                combined = self._step(
                    "combine_tests", chipseq.combine_tests, tested, region_ids, merged, fdr=cfg.db_fdr,
                )
                if gtf or cfg.gene_annotation:
                    gene_model = self._step("load_gene_model", self._gene_model, gtf)
                    combined = self._step("annotate_regions", chipseq.annotate_regions, combined, gene_model)

                plotting.plot_ma(tested, cfg.get_plot_dir(run_id) / "ma_plot.png", fdr=cfg.db_fdr)

                regions = [self._to_region(row) for row in combined.to_dict("records")]
                tables["windows"] = tested.assign(region=region_ids)
                region_table = combined.copy()
                if "overlapping_genes" in region_table:
                    region_table["overlapping_genes"] = region_table["overlapping_genes"].map(";".join)
                tables["regions"] = region_table

            report = DBReport(
                samples=[s.name for s in samples],
                contrast=contrast,
                n_windows_total=n_windows_total,
                n_windows_kept=filtered.n_vars,
                composition_factors=factors,
                fdr_threshold=cfg.db_fdr,
                regions=regions,
                processing_time=time.time() - start_time,
                workflow_version=__version__,
            )
            plog.log_progress("Regions combined",
                              n_regions=len(regions),
                              n_significant=len(report.significant_regions()))

            self._step("save_results", self._save_results, run_id, report, tables)
            return report

    @staticmethod
    def _to_region(row: Dict[str, Any]) -> DBRegion:
        distance = _optional(row.get("distance_to_gene"))
        best_log_fc = _optional(row["best_log_fc"])
        return DBRegion(
            chrom=str(row["chrom"]),
            start=int(row["start"]),
            end=int(row["end"]),
            n_windows=int(row["n_windows"]),
            n_up=int(row["n_up"]),
            n_down=int(row["n_down"]),
            pvalue=float(row["pvalue"]),
            fdr=float(row["fdr"]),
            best_log_fc=float(best_log_fc) if best_log_fc is not None else 0.0,
            direction=str(row["direction"]),
            overlapping_genes=list(row.get("overlapping_genes", [])),
            nearest_gene=_optional(row.get("nearest_gene")),
            distance_to_gene=int(distance) if distance is not None else None,
        )
