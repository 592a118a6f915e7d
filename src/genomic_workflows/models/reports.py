"""
Report models produced by the genomic workflows.
"""

from typing import Dict, List, Optional, Union
from pydantic import BaseModel, Field, ValidationInfo, field_validator
import numpy as np


LOCATION_CATEGORIES = (
    "coding",
    "fiveUTR",
    "threeUTR",
    "intron",
    "spliceSite",
    "promoter",
    "intergenic",
)


class AnnotationReport(BaseModel):
    """Summary of a variant location annotation run."""

    vcf: str = Field(description="Annotated VCF file")
    annotation: str = Field(description="Gene model used for annotation")
    seqlevels_style: str = Field(description="Chromosome naming style after harmonization")
    n_variants: int = Field(description="Number of variants loaded")
    n_annotated: int = Field(description="Number of variants hitting at least one category")
    genes_hit: int = Field(description="Number of genes with at least one variant")
    location_counts: Dict[str, int] = Field(
        default_factory=dict,
        description="Unique variants per location category"
    )
    processing_time: float = Field(description="Total processing time in seconds")
    workflow_version: str = Field(description="Workflow version used")

    @field_validator('n_variants', 'n_annotated', 'genes_hit', 'processing_time')
    @classmethod
    def validate_non_negative(cls, v):
        """Validate that counts and durations are non-negative."""
        if v < 0:
            raise ValueError("Counts must be non-negative")
        return v

    @field_validator('location_counts')
    @classmethod
    def validate_locations(cls, v):
        """Validate location categories and their counts."""
        for location, count in v.items():
            if location not in LOCATION_CATEGORIES:
                raise ValueError(f"Unknown location category: {location}")
            if count < 0:
                raise ValueError("Location counts must be non-negative")
        return v

    def to_json(self) -> str:
        """Convert report to JSON string."""
        return self.model_dump_json(indent=2)

    def get_summary_stats(self) -> Dict[str, Union[int, float, str]]:
        """Get summary statistics for the report."""
        return {
            "total_variants": self.n_variants,
            "annotated_variants": self.n_annotated,
            "genes_hit": self.genes_hit,
            "coding_variants": self.location_counts.get("coding", 0),
            "intergenic_variants": self.location_counts.get("intergenic", 0),
            "seqlevels_style": self.seqlevels_style,
        }


class CellCallingSummary(BaseModel):
    """Outcome of distinguishing cells from empty droplets."""

    method: str = Field(description="Cell calling method")
    n_barcodes: int = Field(description="Number of barcodes in the raw matrix")
    lower: int = Field(description="Ambient UMI threshold")
    knee: float = Field(description="Total count at the knee point")
    inflection: float = Field(description="Total count at the inflection point")
    n_cells: int = Field(description="Number of barcodes called as cells")
    fdr_threshold: Optional[float] = Field(default=None, description="FDR threshold for emptyDrops calls")

    @field_validator('n_barcodes', 'lower', 'n_cells')
    @classmethod
    def validate_counts(cls, v):
        """Validate that counts are non-negative."""
        if v < 0:
            raise ValueError("Counts must be non-negative")
        return v

    @field_validator('n_cells')
    @classmethod
    def validate_cells_within_barcodes(cls, v, info: ValidationInfo):
        """Validate that cells are a subset of barcodes."""
        if 'n_barcodes' in info.data and v > info.data['n_barcodes']:
            raise ValueError("Cannot call more cells than barcodes")
        return v

    @field_validator('fdr_threshold')
    @classmethod
    def validate_fdr(cls, v):
        """Validate the FDR threshold is a probability."""
        if v is not None and not 0 < v <= 1:
            raise ValueError("FDR threshold must be in (0, 1]")
        return v


class ClusterSummary(BaseModel):
    """A cluster and its top marker genes."""

    cluster: str = Field(description="Cluster label")
    n_cells: int = Field(description="Number of cells in the cluster")
    top_markers: List[str] = Field(default_factory=list, description="Top ranked marker genes")

    @field_validator('n_cells')
    @classmethod
    def validate_n_cells(cls, v):
        """Validate that clusters are non-empty."""
        if v <= 0:
            raise ValueError("Clusters must contain at least one cell")
        return v


class SingleCellReport(BaseModel):
    """Summary of a droplet scRNA-seq processing run."""

    sample: str = Field(description="Sample name")
    cell_calling: CellCallingSummary = Field(description="Cell calling outcome")
    n_genes: int = Field(description="Number of genes in the matrix")
    n_cells_after_qc: int = Field(description="Cells retained after QC")
    n_hvgs: int = Field(description="Number of highly variable genes")
    n_pcs: int = Field(description="Number of principal components")
    clusters: List[ClusterSummary] = Field(default_factory=list, description="Cluster summaries")
    h5ad_path: Optional[str] = Field(default=None, description="Serialized AnnData output")
    processing_time: float = Field(description="Total processing time in seconds")
    workflow_version: str = Field(description="Workflow version used")

    @field_validator('n_genes', 'n_cells_after_qc', 'n_hvgs', 'n_pcs', 'processing_time')
    @classmethod
    def validate_non_negative(cls, v):
        """Validate that counts and durations are non-negative."""
        if v < 0:
            raise ValueError("Counts must be non-negative")
        return v

    def to_json(self) -> str:
        """Convert report to JSON string."""
        return self.model_dump_json(indent=2)

    def get_summary_stats(self) -> Dict[str, Union[int, float]]:
        """Get summary statistics for the report."""
        sizes = [c.n_cells for c in self.clusters]
        return {
            "barcodes": self.cell_calling.n_barcodes,
            "called_cells": self.cell_calling.n_cells,
            "cells_after_qc": self.n_cells_after_qc,
            "highly_variable_genes": self.n_hvgs,
            "clusters": len(self.clusters),
            "median_cluster_size": float(np.median(sizes)) if sizes else 0,
        }


class DBRegion(BaseModel):
    """A merged region tested for differential binding."""

    chrom: str = Field(description="Chromosome name")
    start: int = Field(description="Start position (0-based)")
    end: int = Field(description="End position (exclusive)")
    n_windows: int = Field(description="Windows merged into the region")
    n_up: int = Field(description="Significant windows with positive log fold change")
    n_down: int = Field(description="Significant windows with negative log fold change")
    pvalue: float = Field(description="Combined p-value (Simes)")
    fdr: float = Field(description="Region-level FDR")
    best_log_fc: float = Field(description="Log fold change of the best window")
    direction: str = Field(description="up, down or mixed")
    overlapping_genes: List[str] = Field(default_factory=list, description="Genes overlapping the region")
    nearest_gene: Optional[str] = Field(default=None, description="Nearest gene")
    distance_to_gene: Optional[int] = Field(default=None, description="Distance to the nearest gene")

    @field_validator('start', 'end')
    @classmethod
    def validate_positions(cls, v):
        """Validate that positions are non-negative."""
        if v < 0:
            raise ValueError("Genomic positions must be non-negative")
        return v

    @field_validator('end')
    @classmethod
    def validate_end_after_start(cls, v, info: ValidationInfo):
        """Validate that end position is after start position."""
        if 'start' in info.data and v <= info.data['start']:
            raise ValueError("End position must be after start position")
        return v

    @field_validator('n_windows', 'n_up', 'n_down')
    @classmethod
    def validate_window_counts(cls, v):
        """Validate that window counts are non-negative."""
        if v < 0:
            raise ValueError("Window counts must be non-negative")
        return v

    @field_validator('pvalue', 'fdr')
    @classmethod
    def validate_probability(cls, v):
        """Validate that probabilities are between 0 and 1."""
        if not 0 <= v <= 1:
            raise ValueError("Probabilities must be between 0 and 1")
        return v

    @field_validator('direction')
    @classmethod
    def validate_direction(cls, v):
        """Validate that the direction is known."""
        if v not in ('up', 'down', 'mixed'):
            raise ValueError("Direction must be 'up', 'down' or 'mixed'")
        return v


class DBReport(BaseModel):
    """Summary of a ChIP-seq differential binding run."""

    samples: List[str] = Field(description="Library names")
    contrast: List[str] = Field(description="Condition contrast (factor, tested, reference)")
    n_windows_total: int = Field(description="Windows with at least one read")
    n_windows_kept: int = Field(description="Windows passing the abundance filter")
    composition_factors: Dict[str, float] = Field(
        default_factory=dict,
        description="Normalization factors estimated from background bins"
    )
    fdr_threshold: float = Field(description="FDR threshold for DB regions")
    regions: List[DBRegion] = Field(default_factory=list, description="Merged regions")
    processing_time: float = Field(description="Total processing time in seconds")
    workflow_version: str = Field(description="Workflow version used")

    @field_validator('n_windows_total', 'n_windows_kept', 'processing_time')
    @classmethod
    def validate_non_negative(cls, v):
        """Validate that counts and durations are non-negative."""
        if v < 0:
            raise ValueError("Counts must be non-negative")
        return v

    @field_validator('n_windows_kept')
    @classmethod
    def validate_kept_within_total(cls, v, info: ValidationInfo):
        """Validate that the filter only removes windows."""
        if 'n_windows_total' in info.data and v > info.data['n_windows_total']:
            raise ValueError("Kept windows cannot exceed total windows")
        return v

    @field_validator('composition_factors')
    @classmethod
    def validate_factors(cls, v):
        """Validate that normalization factors are positive."""
        if any(f <= 0 for f in v.values()):
            raise ValueError("Normalization factors must be positive")
        return v

    def significant_regions(self) -> List[DBRegion]:
        """Regions passing the FDR threshold."""
        return [r for r in self.regions if r.fdr <= self.fdr_threshold]

    def to_json(self) -> str:
        """Convert report to JSON string."""
        return self.model_dump_json(indent=2)

    def get_summary_stats(self) -> Dict[str, Union[int, float]]:
        """Get summary statistics for the report."""
        significant = self.significant_regions()
        return {
            "windows_total": self.n_windows_total,
            "windows_kept": self.n_windows_kept,
            "regions": len(self.regions),
            "significant_regions": len(significant),
            "up_regions": sum(1 for r in significant if r.direction == "up"),
            "down_regions": sum(1 for r in significant if r.direction == "down"),
        }
