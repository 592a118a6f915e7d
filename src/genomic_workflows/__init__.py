"""
Genomic Workflows

Workflows that annotate genomic ranges, process droplet single-cell RNA-seq
data and detect differential binding in ChIP-seq experiments.
"""

__version__ = "1.0.0"
__author__ = "Bioinformatics Team"
__email__ = "team@example.com"

# Lazy imports to avoid pulling in the analysis stack on import
def get_workflows():
    """Get the workflow classes."""
    from .core.pipeline import (
        VariantAnnotationWorkflow,
        SingleCellWorkflow,
        DifferentialBindingWorkflow,
    )
    return VariantAnnotationWorkflow, SingleCellWorkflow, DifferentialBindingWorkflow

def get_workflow_config():
    """Get the WorkflowConfig class."""
    from .config.settings import WorkflowConfig
    return WorkflowConfig

__all__ = ["get_workflows", "get_workflow_config"]
