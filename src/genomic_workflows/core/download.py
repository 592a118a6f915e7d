"""
Remote data acquisition with a local download cache.
"""

import random
import shutil
import socket
import tarfile
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlparse

import requests
import structlog

from ..utils import log_file_operation


SUPPORTED_SCHEMES = ("http", "https", "ftp")

# Set on Python releases that ship tarfile extraction filters
HAS_DATA_FILTER = hasattr(tarfile, "data_filter")

DATASETS: Dict[str, Dict[str, str]] = {
    "pbmc4k_raw": {
        "url": "https://cf.10xgenomics.com/samples/cell-exp/2.1.0/pbmc4k/pbmc4k_raw_gene_bc_matrices.tar.gz",
        "description": "10x Genomics PBMC 4k raw gene-barcode matrices (GRCh38)",
        "build": "GRCh38",
    },
    "grch37_ensembl75_gtf": {
        "url": "https://ftp.ensembl.org/pub/release-75/gtf/homo_sapiens/Homo_sapiens.GRCh37.75.gtf.gz",
        "description": "Ensembl release 75 whole-genome gene annotation",
        "build": "GRCh37",
    },
    "1kg_grch37_chr22_vcf": {
        "url": "https://ftp.1000genomes.ebi.ac.uk/vol1/ftp/release/20130502/ALL.chr22.phase3_shapeit2_mvncall_integrated_v5b.20130502.genotypes.vcf.gz",
        "description": "1000 Genomes phase 3 chromosome 22 genotypes (GRCh37)",
        "build": "GRCh37",
    },
}


def fetch_resource(
    url: str,
    cache_dir: Path,
    logger: structlog.BoundLogger,
    max_retries: int = 5,
    timeout: int = 60,
    filename: Optional[str] = None
) -> Path:
    """
    Download a remote file into the cache, reusing a previous download.

    Args:
        url: HTTP(S) or FTP URL
        cache_dir: Directory holding cached downloads
        logger: Logger instance
        max_retries: Maximum number of attempts
        timeout: Timeout for each request in seconds
        filename: Name for the cached file, defaults to the URL basename

    Returns:
        Path to the cached file

    Raises:
        ValueError: If the URL scheme is not supported
        RuntimeError: If the download fails after all retries
    """
    scheme = urlparse(url).scheme.lower()
    if scheme not in SUPPORTED_SCHEMES:
        raise ValueError(
            f"Unsupported URL scheme '{scheme}' in {url}; expected one of {', '.join(SUPPORTED_SCHEMES)}"
        )

    cache_dir.mkdir(parents=True, exist_ok=True)
    filename = filename or Path(urlparse(url).path).name
    if not filename:
        raise ValueError(f"Cannot derive a file name from URL: {url}")

    target = cache_dir / filename
    if target.exists():
        logger.info("Using cached resource", url=url, file_path=str(target))
        return target

    partial = target.with_name(target.name + ".part")

    for attempt in range(max_retries):
        try:
            logger.info(f"Starting download attempt {attempt+1}.",
                        url=url, attempt=attempt+1)

            if scheme == "ftp":
                _download_ftp(url, partial, timeout)
            else:
                _download(url, partial, timeout)
            partial.rename(target)
            break

        except (requests.exceptions.RequestException, urllib.error.URLError, socket.timeout) as e:
            partial.unlink(missing_ok=True)
            logger.warning(f"Download attempt {attempt+1} failed",
                           url=url, error=str(e))

            if attempt < max_retries - 1:
                # Wait before retry with exponential backoff
                wait_time = (2 ** attempt) + random.uniform(0, 1)
                logger.info(
                    f"Waiting {wait_time:.1f} seconds before retry"
                )
                time.sleep(wait_time)
            else:
                raise RuntimeError(f"Failed to download {url} after {max_retries} attempts") from e

    log_file_operation(logger, "downloaded", target, url=url)
    return target


def _download(url: str, destination: Path, timeout: int) -> None:
    """Stream a URL to a file."""
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(destination, "wb") as f:
            for chunk in response.iter_content(chunk_size=1024 * 1024):
                if chunk:
                    f.write(chunk)


def _download_ftp(url: str, destination: Path, timeout: int) -> None:
    """Stream an FTP URL to a file."""
    with urllib.request.urlopen(url, timeout=timeout) as response:
        with open(destination, "wb") as f:
            shutil.copyfileobj(response, f, length=1024 * 1024)


def _check_members(tar: tarfile.TarFile, dest: Path) -> None:
    """Reject members that are links or would land outside the destination."""
    root = dest.resolve()
    for member in tar.getmembers():
        if member.issym() or member.islnk() or member.isdev():
            raise ValueError(f"Refusing to extract link or device member: {member.name}")
        target = (root / member.name).resolve()
        if target != root and root not in target.parents:
            raise ValueError(f"Refusing to extract member outside {dest}: {member.name}")


def extract_archive(archive: Path, dest: Path, logger: structlog.BoundLogger) -> Path:
    """
    Unpack a tar archive once and return the extraction directory.
    """
    name = archive.name
    for suffix in (".tar.gz", ".tgz", ".tar"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    else:
        raise ValueError(f"Not a tar archive: {archive}")

    out_dir = dest / name
    if out_dir.exists():
        logger.info("Using extracted archive", archive=str(archive), directory=str(out_dir))
        return out_dir

    logger.info("Extracting archive", archive=str(archive), directory=str(out_dir))
    tmp_dir = dest / (name + ".extracting")
    with tarfile.open(archive, "r:*") as tar:
        if HAS_DATA_FILTER:
            tar.extractall(tmp_dir, filter="data")
        else:
            _check_members(tar, tmp_dir)
            tar.extractall(tmp_dir)
    tmp_dir.rename(out_dir)
    return out_dir


def fetch_dataset(
    name: str,
    cache_dir: Path,
    logger: structlog.BoundLogger,
    max_retries: int = 5,
    timeout: int = 60
) -> Path:
    """
    Fetch a named public dataset, extracting archives.

    Raises:
        KeyError: If the dataset name is unknown
    """
    if name not in DATASETS:
        raise KeyError(f"Unknown dataset '{name}'. Available: {', '.join(sorted(DATASETS))}")

    path = fetch_resource(
        url=DATASETS[name]["url"],
        cache_dir=cache_dir,
        logger=logger,
        max_retries=max_retries,
        timeout=timeout,
    )
    if path.name.endswith((".tar.gz", ".tgz", ".tar")):
        return extract_archive(path, cache_dir, logger)
    return path
