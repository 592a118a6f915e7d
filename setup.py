#!/usr/bin/env python3
"""
Setup script for genomic-workflows.
"""

from setuptools import setup, find_packages

if __name__ == "__main__":
    setup(
        name="genomic-workflows",
        version="1.0.0",
        description="Workflows for genomic range annotation, droplet scRNA-seq processing and ChIP-seq differential binding",
        author="Bioinformatics Team",
        author_email="team@example.com",
        packages=find_packages(where="src"),
        package_dir={"": "src"},
        python_requires=">=3.9",
        install_requires=[
            "numpy>=1.26.0",
            "pandas>=2.1.0",
            "scipy>=1.11.0",
            "requests>=2.31.0",
            "pydantic>=2.5.0",
            "pydantic-settings>=2.1.0",
            "structlog>=23.2.0",
            "psutil>=5.9.0",
            "click>=8.0.0",
            "rich>=13.0.0",
            "pysam>=0.22.0",
            "bioframe>=0.7.0",
            "anndata>=0.10.0",
            "scanpy>=1.10.0",
            "igraph>=0.11.0",
            "leidenalg>=0.10.0",
            "pydeseq2>=0.5.0",
            "matplotlib>=3.7.0",
        ],
        extras_require={
            "r": [
                "rpy2>=3.5.0",
            ],
            "dev": [
                "pytest>=7.4.0",
                "pytest-cov>=4.1.0",
                "pytest-mock>=3.12.0",
                "black>=23.11.0",
                "flake8>=6.1.0",
                "mypy>=1.7.0",
            ],
        },
        entry_points={
            "console_scripts": [
                "genomic-workflows=genomic_workflows.cli.main:main",
            ],
        },
        classifiers=[
            "Development Status :: 4 - Beta",
            "Intended Audience :: Science/Research",
            "License :: OSI Approved :: MIT License",
            "Programming Language :: Python :: 3",
            "Programming Language :: Python :: 3.9",
            "Programming Language :: Python :: 3.10",
            "Programming Language :: Python :: 3.11",
            "Topic :: Scientific/Engineering :: Bio-Informatics",
        ],
    )
