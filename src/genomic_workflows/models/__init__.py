"""
Data models for genomic workflow reports.
"""

from .reports import (
    LOCATION_CATEGORIES,
    AnnotationReport,
    CellCallingSummary,
    ClusterSummary,
    SingleCellReport,
    DBRegion,
    DBReport,
)

__all__ = [
    "LOCATION_CATEGORIES",
    "AnnotationReport",
    "CellCallingSummary",
    "ClusterSummary",
    "SingleCellReport",
    "DBRegion",
    "DBReport",
]
