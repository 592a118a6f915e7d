"""
Configuration settings for genomic workflows.
"""

import configparser
import importlib.util
from pathlib import Path
from typing import Optional, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class WorkflowConfig(BaseSettings):
    """Configuration shared by the annotation, single-cell and ChIP-seq workflows."""

    # Base paths
    base_dir: Path = Field(default=Path("./workflows"), description="Base directory for workflows")
    output_dir: Path = Field(default=Path("./output"), description="Output directory")
    cache_dir: Optional[Path] = Field(default=None, description="Download cache directory")

    # Reference files
    gene_annotation: Optional[Path] = Field(default=None, description="GTF file with gene models")
    blacklist: Optional[Path] = Field(default=None, description="BED file with blacklisted regions")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[Path] = Field(default=None, description="Log file path")

    # Execution
    threads: int = Field(default=1, description="Number of threads passed to libraries")
    random_state: int = Field(default=0, description="Seed for stochastic steps")
    download_retries: int = Field(default=5, description="Maximum download attempts")
    timeout_seconds: int = Field(default=60, description="Timeout for HTTP requests in seconds")

    # Range annotation
    promoter_upstream: int = Field(default=2000, description="Promoter bases upstream of the TSS")
    promoter_downstream: int = Field(default=200, description="Promoter bases downstream of the TSS")
    splice_site_width: int = Field(default=2, description="Intron bases at each end counted as splice site")

    # Single-cell
    ambient_lower: int = Field(default=100, description="UMI total at or below which barcodes are ambient")
    emptydrops_niters: int = Field(default=10000, description="Monte Carlo iterations for emptyDrops")
    cell_fdr: float = Field(default=0.001, description="FDR threshold for calling cells")
    cell_calling_method: str = Field(default="knee", description="Cell calling method (knee or emptydrops)")
    mito_prefix: str = Field(default="MT-", description="Gene symbol prefix of mitochondrial genes")
    qc_nmads: float = Field(default=3.0, description="MADs above the median for mitochondrial outliers")
    hvg_top_fraction: float = Field(default=0.1, description="Fraction of genes kept as highly variable")
    n_pcs: int = Field(default=25, description="Number of principal components")
    n_neighbors: int = Field(default=15, description="Neighbours in the kNN graph")
    cluster_resolution: float = Field(default=1.0, description="Leiden resolution")
    marker_method: str = Field(default="wilcoxon", description="Marker ranking method")
    n_markers: int = Field(default=10, description="Markers reported per cluster")

    # ChIP-seq
    window_width: int = Field(default=10, description="Sliding window width")
    window_spacing: int = Field(default=50, description="Distance between window starts")
    fragment_length: int = Field(default=110, description="Read extension length")
    min_mapq: int = Field(default=20, description="Minimum mapping quality")
    dedup: bool = Field(default=False, description="Skip reads marked as duplicates")
    background_bin_width: int = Field(default=10000, description="Width of background bins")
    filter_min_fold: float = Field(default=3.0, description="Minimum fold enrichment over background")
    merge_tolerance: int = Field(default=100, description="Maximum gap between merged windows")
    max_merged_width: int = Field(default=5000, description="Maximum width of a merged region")
    db_fdr: float = Field(default=0.05, description="FDR threshold for DB regions")

    @field_validator('base_dir', 'output_dir', 'cache_dir', 'gene_annotation', 'blacklist', 'log_file')
    @classmethod
    def validate_paths(cls, v):
        """Coerce string paths into Path objects."""
        if isinstance(v, str):
            v = Path(v)
        return v

    @field_validator('threads', 'download_retries', 'timeout_seconds', 'emptydrops_niters', 'n_pcs',
                     'n_neighbors', 'n_markers')
    @classmethod
    def validate_positive_counts(cls, v):
        """Validate counts are positive."""
        if v <= 0:
            raise ValueError("Counts must be positive")
        return v

    @field_validator('window_width', 'window_spacing', 'fragment_length', 'background_bin_width',
                     'max_merged_width')
    @classmethod
    def validate_widths(cls, v):
        """Validate widths are positive."""
        if v <= 0:
            raise ValueError("Widths must be positive")
        return v

    @field_validator('promoter_upstream', 'promoter_downstream', 'splice_site_width', 'ambient_lower',
                     'min_mapq', 'merge_tolerance')
    @classmethod
    def validate_non_negative(cls, v):
        """Validate distances and thresholds are non-negative."""
        if v < 0:
            raise ValueError("Value must be non-negative")
        return v

    @field_validator('cell_fdr', 'db_fdr', 'hvg_top_fraction')
    @classmethod
    def validate_fraction(cls, v):
        """Validate probabilities and fractions lie in (0, 1]."""
        if not 0 < v <= 1:
            raise ValueError("Value must be in (0, 1]")
        return v

    @field_validator('filter_min_fold', 'qc_nmads', 'cluster_resolution')
    @classmethod
    def validate_positive_float(cls, v):
        """Validate float parameters are positive."""
        if v <= 0:
            raise ValueError("Value must be positive")
        return v

    @field_validator('cell_calling_method')
    @classmethod
    def validate_cell_calling_method(cls, v):
        """Validate the cell calling method."""
        if v not in ("knee", "emptydrops"):
            raise ValueError("Cell calling method must be 'knee' or 'emptydrops'")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate the logging level name."""
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown logging level: {v}")
        return v.upper()

    model_config = {
        "env_prefix": "GENOMIC_WORKFLOWS_",
        "case_sensitive": False,
        "env_file": ".env",
        "validate_assignment": True,
    }

    def get_cache_dir(self) -> Path:
        """Get the download cache directory path."""
        return self.cache_dir if self.cache_dir is not None else self.base_dir / "cache"

    def get_log_dir(self) -> Path:
        """Get the log directory path."""
        return self.output_dir / "logs"

    def get_plot_dir(self, run_id: str) -> Path:
        """Get the plot directory of a run."""
        return self.output_dir / run_id / "plots"

    def ensure_directories(self) -> None:
        """Ensure all required directories exist."""
        directories = [
            self.base_dir,
            self.get_cache_dir(),
            self.get_log_dir(),
            self.output_dir,
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    def validate_setup(self) -> List[str]:
        """Validate that configured inputs and required libraries are available."""
        errors = []

        for file_path in (self.gene_annotation, self.blacklist):
            if file_path is not None and not file_path.exists():
                errors.append(f"Required file not found: {file_path}")

        required_modules = ["pysam", "bioframe", "scanpy", "leidenalg", "pydeseq2"]
        if self.cell_calling_method == "emptydrops":
            required_modules.append("rpy2")

        for module in required_modules:
            if not self._check_module_available(module):
                errors.append(f"Required library not found: {module}")

        return errors

    def _check_module_available(self, module: str) -> bool:
        """Check if a Python module can be imported."""
        return importlib.util.find_spec(module) is not None


def load_workflow_config(config_file_path: Path) -> WorkflowConfig:
    """
    Load workflow settings from an INI file with [Paths] and [Parameters] sections.

    Keys are matched case-insensitively against WorkflowConfig fields; unknown
    keys are ignored. Values are validated by the model.
    """
    config_elem = configparser.ConfigParser()
    config_read = config_elem.read(config_file_path)
    # Raise an error if the file was specified but not found/readable
    if not config_read:
        raise FileNotFoundError(
            f"Configuration file not found or empty: {config_file_path}"
        )

    values = {}
    for section in ("Paths", "Parameters"):
        if not config_elem.has_section(section):
            continue
        for key, value in config_elem[section].items():
            field = key.lower()
            if field in WorkflowConfig.model_fields:
                values[field] = value

    return WorkflowConfig(**values)
