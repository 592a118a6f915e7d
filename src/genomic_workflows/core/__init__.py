"""
Core workflow modules for genomic workflows.
"""

from .pipeline import (
    Workflow,
    VariantAnnotationWorkflow,
    SingleCellWorkflow,
    DifferentialBindingWorkflow,
)

# Import submodules
from . import download
from . import ranges
from . import variants
from . import single_cell
from . import chipseq
from . import plotting

__all__ = [
    "Workflow",
    "VariantAnnotationWorkflow",
    "SingleCellWorkflow",
    "DifferentialBindingWorkflow",
    "download",
    "ranges",
    "variants",
    "single_cell",
    "chipseq",
    "plotting",
]
