"""
Command-line interface for genomic workflows.
"""
