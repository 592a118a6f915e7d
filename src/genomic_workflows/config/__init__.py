"""
Configuration management for genomic workflows.
"""

# Lazy import to avoid dependency issues
def get_workflow_config():
    """Get the WorkflowConfig class."""
    from .settings import WorkflowConfig
    return WorkflowConfig

__all__ = ["get_workflow_config"]
