"""
Main command-line interface for genomic workflows.
"""

import sys
from pathlib import Path
from typing import Optional, Tuple
import click
import configparser
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn

from ..config.settings import WorkflowConfig, load_workflow_config
from ..utils import setup_logging
from .. import __version__


console = Console()


def common_options(func):
    """Options shared by every workflow command."""
    options = [
        click.option(
            "--config",
            help="Configuration file path (INI with [Paths] and [Parameters])",
            default=None,
            type=click.Path(exists=True, path_type=Path),
        ),
        click.option(
            "--output-dir",
            help="Output directory for results",
            type=click.Path(path_type=Path),
        ),
        click.option(
            "--threads",
            default=0,
            help="Number of threads to use",
            type=int,
        ),
        click.option(
            "--log-level",
            default=None,
            type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
            help="Logging level (defaults to the configuration, INFO)",
        ),
        click.option(
            "--log-file",
            help="Log file path",
            type=click.Path(path_type=Path),
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_config(
    config: Optional[Path],
    output_dir: Optional[Path],
    threads: int,
    log_level: Optional[str],
    log_file: Optional[Path],
    **overrides
) -> WorkflowConfig:
    """Load configuration and apply command-line overrides."""
    try:
        if config:
            workflow_config = load_workflow_config(config)
        else:
            workflow_config = WorkflowConfig()

        # Override config with CLI options
        if output_dir:
            workflow_config.output_dir = output_dir
        if threads:
            workflow_config.threads = threads
        if log_level:
            workflow_config.log_level = log_level
        if log_file:
            workflow_config.log_file = log_file
        for key, value in overrides.items():
            if value is not None:
                setattr(workflow_config, key, value)

    except configparser.Error as e:
        console.print(f"[red]Error reading configuration file {config}: {e}[/red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)

    return workflow_config


def run_workflow(workflow_cls, workflow_config: WorkflowConfig, description: str, **run_kwargs):
    """Initialize a workflow, run it under a spinner and return its report."""
    logger = setup_logging(
        log_level=workflow_config.log_level,
        log_file=workflow_config.log_file,
        log_format="console"
    )

    console.print(f"[bold blue]Genomic Workflows v{__version__}[/bold blue]")
    console.print(f"Output directory: {workflow_config.output_dir}")
    console.print(f"Threads: {workflow_config.threads}")

    # Initialize workflow
    try:
        workflow = workflow_cls(workflow_config, logger)
    except Exception as e:
        console.print(f"[red]Error initializing workflow: {e}[/red]")
        logger.error("Workflow initialization failed", error=str(e))
        sys.exit(1)

    # Run workflow
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task(f"Running {description}...", total=None)
            report = workflow.run(**run_kwargs)
            progress.update(task, description=f"{description.capitalize()} completed successfully!")

    except Exception as e:
        console.print(f"[red]Workflow failed: {e}[/red]")
        logger.error("Workflow execution failed", error=str(e))
        sys.exit(1)

    return report


@click.group()
@click.version_option(version=__version__, prog_name="Genomic Workflows")
def cli():
    """Genomic Workflows - range annotation, droplet scRNA-seq and ChIP-seq differential binding."""
    pass


@cli.command("annotate-variants")
@click.option(
    "--vcf",
    required=True,
    help="VCF file, URL or dataset name",
    type=str,
)
@click.option(
    "--gtf",
    help="GTF annotation file, URL or dataset name (defaults to the configured annotation)",
    type=str,
)
@click.option(
    "--region",
    help="Restrict to a region, e.g. 22:16050000-16100000 (requires an indexed VCF)",
    type=str,
)
@common_options
def annotate_variants(
    vcf: str,
    gtf: Optional[str],
    region: Optional[str],
    config: Optional[Path],
    output_dir: Optional[Path],
    threads: int,
    log_level: Optional[str],
    log_file: Optional[Path]
):
    """Locate variants relative to genes (coding, UTR, intron, splice site, promoter, intergenic)."""
    from ..core.pipeline import VariantAnnotationWorkflow

    workflow_config = build_config(config, output_dir, threads, log_level, log_file)
    if not gtf and workflow_config.gene_annotation is None:
        console.print("[red]Error: Must provide --gtf or set gene_annotation in the configuration[/red]")
        sys.exit(1)

    report = run_workflow(
        VariantAnnotationWorkflow, workflow_config, "variant annotation",
        vcf=vcf, gtf=gtf, region=region,
    )

    display_summary("Variant Annotation Summary", report.get_summary_stats())

    table = Table(title="Variants per Location")
    table.add_column("Location", style="cyan")
    table.add_column("Variants", style="magenta")
    for location, count in report.location_counts.items():
        table.add_row(location, str(count))
    console.print(table)


@cli.command("single-cell")
@click.option(
    "--matrix",
    required=True,
    help="10x matrix directory, .h5 file, archive URL or dataset name",
    type=str,
)
@click.option(
    "--sample",
    help="Sample name used for outputs",
    type=str,
)
@click.option(
    "--method",
    type=click.Choice(["knee", "emptydrops"]),
    help="Cell calling method",
)
@common_options
def single_cell(
    matrix: str,
    sample: Optional[str],
    method: Optional[str],
    config: Optional[Path],
    output_dir: Optional[Path],
    threads: int,
    log_level: Optional[str],
    log_file: Optional[Path]
):
    """Call cells, run QC, normalize, cluster and rank marker genes."""
    from ..core.pipeline import SingleCellWorkflow

    workflow_config = build_config(config, output_dir, threads, log_level, log_file,
                                   cell_calling_method=method)
    report = run_workflow(
        SingleCellWorkflow, workflow_config, "single-cell workflow",
        matrix=matrix, sample=sample,
    )

    display_summary("Single-Cell Summary", report.get_summary_stats())

    table = Table(title="Clusters")
    table.add_column("Cluster", style="cyan")
    table.add_column("Cells", style="magenta")
    table.add_column("Top markers", style="green")
    for cluster in report.clusters:
        table.add_row(cluster.cluster, str(cluster.n_cells), ", ".join(cluster.top_markers[:5]))
    console.print(table)
    console.print(f"AnnData written to: {report.h5ad_path}")


@cli.command("differential-binding")
@click.option(
    "--samples",
    required=True,
    help="Tab-separated sample sheet with name, bam and condition columns",
    type=click.Path(exists=True, path_type=Path),
)
@click.option(
    "--gtf",
    help="GTF annotation used to label regions",
    type=str,
)
@click.option(
    "--blacklist",
    help="BED file of regions to ignore",
    type=str,
)
@click.option(
    "--contrast",
    nargs=2,
    default=None,
    help="Tested and reference condition (default: second condition vs first)",
    type=str,
)
@common_options
def differential_binding(
    samples: Path,
    gtf: Optional[str],
    blacklist: Optional[str],
    contrast: Optional[Tuple[str, str]],
    config: Optional[Path],
    output_dir: Optional[Path],
    threads: int,
    log_level: Optional[str],
    log_file: Optional[Path]
):
    """Detect differentially bound regions with sliding windows."""
    from ..core.pipeline import DifferentialBindingWorkflow

    workflow_config = build_config(config, output_dir, threads, log_level, log_file)
    report = run_workflow(
        DifferentialBindingWorkflow, workflow_config, "differential binding",
        samples=samples,
        gtf=gtf,
        blacklist=blacklist,
        contrast=["condition", *contrast] if contrast else None,
    )

    display_summary("Differential Binding Summary", report.get_summary_stats())

    table = Table(title="Top Regions")
    table.add_column("Region", style="cyan")
    table.add_column("Windows", style="magenta")
    table.add_column("Direction", style="green")
    table.add_column("FDR", style="magenta")
    table.add_column("Nearest gene", style="green")
    for region in report.regions[:10]:
        table.add_row(
            f"{region.chrom}:{region.start}-{region.end}",
            str(region.n_windows),
            region.direction,
            f"{region.fdr:.2e}",
            region.nearest_gene or "",
        )
    console.print(table)


@cli.command()
@click.argument("dataset", required=False)
@click.option(
    "--list",
    "list_datasets",
    is_flag=True,
    help="List the known datasets",
)
@common_options
def fetch(
    dataset: Optional[str],
    list_datasets: bool,
    config: Optional[Path],
    output_dir: Optional[Path],
    threads: int,
    log_level: Optional[str],
    log_file: Optional[Path]
):
    """Download a named public dataset into the cache."""
    from ..core.download import DATASETS, fetch_dataset

    if list_datasets or not dataset:
        table = Table(title="Datasets")
        table.add_column("Name", style="cyan")
        table.add_column("Build", style="green")
        table.add_column("Description", style="magenta")
        for name, entry in DATASETS.items():
            table.add_row(name, entry["build"], entry["description"])
        console.print(table)
        return

    workflow_config = build_config(config, output_dir, threads, log_level, log_file)
    logger = setup_logging(
        log_level=workflow_config.log_level,
        log_file=workflow_config.log_file,
        log_format="console"
    )

    try:
        path = fetch_dataset(
            dataset,
            cache_dir=workflow_config.get_cache_dir(),
            logger=logger,
            max_retries=workflow_config.download_retries,
            timeout=workflow_config.timeout_seconds,
        )
    except Exception as e:
        console.print(f"[red]Download failed: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✓ {dataset} available at: {path}[/green]")


@cli.command()
@click.option(
    "--config",
    help="Configuration file path",
    default=None,
    type=click.Path(exists=True, path_type=Path),
)
def validate(config: Optional[Path]):
    """Validate workflow configuration and dependencies."""

    try:
        if config:
            workflow_config = load_workflow_config(config)
        else:
            workflow_config = WorkflowConfig()

        console.print("[bold blue]Validating workflow configuration...[/bold blue]")

        # Check configuration
        errors = workflow_config.validate_setup()

    except Exception as e:
        console.print(f"[red]Validation failed: {e}[/red]")
        sys.exit(1)

    if errors:
        console.print("[red]Configuration validation failed:[/red]")
        for error in errors:
            console.print(f"  [red]• {error}[/red]")
        sys.exit(1)

    console.print("[green]✓ Configuration validation passed[/green]")

    # Display configuration summary
    display_config_summary(workflow_config)


def display_summary(title: str, summary: dict):
    """Display report summary statistics in a formatted table."""
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")

    for key, value in summary.items():
        label = key.replace("_", " ").capitalize()
        table.add_row(label, f"{value:.2f}" if isinstance(value, float) else str(value))

    console.print(table)


def display_config_summary(config: WorkflowConfig):
    """Display configuration summary."""

    table = Table(title="Configuration Summary")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")

    table.add_row("Base Directory", str(config.base_dir))
    table.add_row("Output Directory", str(config.output_dir))
    table.add_row("Cache Directory", str(config.get_cache_dir()))
    table.add_row("Gene Annotation", str(config.gene_annotation) if config.gene_annotation else "Not set")
    table.add_row("Blacklist", str(config.blacklist) if config.blacklist else "Not set")
    table.add_row("Threads", str(config.threads))
    table.add_row("Cell Calling", config.cell_calling_method)
    table.add_row("Window Width / Spacing", f"{config.window_width} / {config.window_spacing}")

    console.print(table)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
