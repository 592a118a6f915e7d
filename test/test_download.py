#!/usr/bin/env python3
"""
Tests for remote data acquisition.
"""

import io
import tarfile
import unittest
import urllib.error
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import MagicMock, patch

import requests
import structlog

from genomic_workflows.core.download import (
    DATASETS,
    extract_archive,
    fetch_dataset,
    fetch_resource,
)


def mock_response(chunks):
    response = MagicMock()
    response.iter_content.return_value = chunks
    response.__enter__.return_value = response
    return response


class TestFetchResource(unittest.TestCase):
    """
    Unit tests for the fetch_resource function.
    """

    def setUp(self):
        self.tmp = TemporaryDirectory()
        self.cache_dir = Path(self.tmp.name) / "cache"
        self.logger = structlog.get_logger("test")
        self.mock_get = patch("genomic_workflows.core.download.requests.get").start()
        self.mock_sleep = patch("genomic_workflows.core.download.time.sleep").start()
        self.url = "https://example.org/data/genes.gtf.gz"

    def tearDown(self):
        patch.stopall()
        self.tmp.cleanup()

    def test_downloads_into_cache(self):
        self.mock_get.return_value = mock_response([b"abc", b"", b"def"])

        path = fetch_resource(self.url, self.cache_dir, self.logger)

        self.assertEqual(path, self.cache_dir / "genes.gtf.gz")
        self.assertEqual(path.read_bytes(), b"abcdef")
        self.assertFalse((self.cache_dir / "genes.gtf.gz.part").exists())
        self.mock_get.assert_called_once_with(self.url, stream=True, timeout=60)

    def test_reuses_cached_file(self):
        self.cache_dir.mkdir(parents=True)
        (self.cache_dir / "genes.gtf.gz").write_bytes(b"cached")

        path = fetch_resource(self.url, self.cache_dir, self.logger)

        self.assertEqual(path.read_bytes(), b"cached")
        self.mock_get.assert_not_called()

    def test_retries_then_succeeds(self):
        self.mock_get.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            mock_response([b"ok"]),
        ]

        path = fetch_resource(self.url, self.cache_dir, self.logger, max_retries=3)

        self.assertEqual(path.read_bytes(), b"ok")
        self.assertEqual(self.mock_get.call_count, 2)
        self.mock_sleep.assert_called_once()

    def test_raises_after_all_retries(self):
        self.mock_get.side_effect = requests.exceptions.Timeout("slow")

        with self.assertRaises(RuntimeError):
            fetch_resource(self.url, self.cache_dir, self.logger, max_retries=2)

        self.assertEqual(self.mock_get.call_count, 2)
        self.assertFalse((self.cache_dir / "genes.gtf.gz").exists())

    def test_downloads_over_ftp(self):
        url = "ftp://ftp.example.org/pub/variants.vcf.gz"
        with patch("genomic_workflows.core.download.urllib.request.urlopen") as mock_open:
            mock_open.return_value.__enter__.return_value = io.BytesIO(b"##fileformat=VCFv4.2\n")

            path = fetch_resource(url, self.cache_dir, self.logger)

        self.assertEqual(path.read_bytes(), b"##fileformat=VCFv4.2\n")
        mock_open.assert_called_once_with(url, timeout=60)
        self.mock_get.assert_not_called()

    def test_ftp_failures_are_retried(self):
        url = "ftp://ftp.example.org/pub/variants.vcf.gz"
        with patch("genomic_workflows.core.download.urllib.request.urlopen",
                   side_effect=urllib.error.URLError("550 No such file")) as mock_open:
            with self.assertRaises(RuntimeError):
                fetch_resource(url, self.cache_dir, self.logger, max_retries=2)

        self.assertEqual(mock_open.call_count, 2)
        self.assertFalse((self.cache_dir / "variants.vcf.gz.part").exists())

    def test_rejects_unsupported_scheme(self):
        with self.assertRaises(ValueError):
            fetch_resource("s3://bucket/genes.gtf.gz", self.cache_dir, self.logger)

        self.mock_get.assert_not_called()
        self.mock_sleep.assert_not_called()

    def test_custom_filename(self):
        self.mock_get.return_value = mock_response([b"x"])

        path = fetch_resource(self.url, self.cache_dir, self.logger, filename="annotation.gtf.gz")

        self.assertEqual(path.name, "annotation.gtf.gz")


class TestArchives(unittest.TestCase):
    """
    Unit tests for archive extraction and named datasets.
    """

    def setUp(self):
        self.tmp = TemporaryDirectory()
        self.root = Path(self.tmp.name)
        self.logger = structlog.get_logger("test")

    def tearDown(self):
        patch.stopall()
        self.tmp.cleanup()

    def _make_archive(self, name):
        archive = self.root / name
        payload = b"AAACCTGAGAAACCAT-1\n"
        with tarfile.open(archive, "w:gz") as tar:
            info = tarfile.TarInfo("raw_gene_bc_matrices/GRCh38/barcodes.tsv")
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))
        return archive

    def test_extract_archive(self):
        archive = self._make_archive("pbmc.tar.gz")

        out_dir = extract_archive(archive, self.root, self.logger)

        self.assertEqual(out_dir, self.root / "pbmc")
        self.assertTrue((out_dir / "raw_gene_bc_matrices" / "GRCh38" / "barcodes.tsv").exists())
        # second call reuses the extraction
        self.assertEqual(extract_archive(archive, self.root, self.logger), out_dir)

    def test_extract_without_data_filter(self):
        archive = self._make_archive("pbmc.tar.gz")
        patch("genomic_workflows.core.download.HAS_DATA_FILTER", False).start()

        out_dir = extract_archive(archive, self.root, self.logger)

        self.assertTrue((out_dir / "raw_gene_bc_matrices" / "GRCh38" / "barcodes.tsv").exists())

    def test_extract_without_data_filter_rejects_escaping_members(self):
        archive = self.root / "evil.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            info = tarfile.TarInfo("../outside.txt")
            info.size = 1
            tar.addfile(info, io.BytesIO(b"x"))
        patch("genomic_workflows.core.download.HAS_DATA_FILTER", False).start()

        with self.assertRaises(ValueError):
            extract_archive(archive, self.root / "cache", self.logger)
        self.assertFalse((self.root / "outside.txt").exists())

    def test_annotation_datasets_share_a_build(self):
        builds = {name: entry["build"] for name, entry in DATASETS.items()}

        self.assertEqual(builds["grch37_ensembl75_gtf"], builds["1kg_grch37_chr22_vcf"])
        self.assertIn("release-75", DATASETS["grch37_ensembl75_gtf"]["url"])

    def test_extract_rejects_non_tar(self):
        with self.assertRaises(ValueError):
            extract_archive(self.root / "genes.gtf.gz", self.root, self.logger)

    def test_fetch_dataset_unknown(self):
        with self.assertRaises(KeyError):
            fetch_dataset("not_a_dataset", self.root, self.logger)

    def test_fetch_dataset_extracts_archives(self):
        archive = self._make_archive("pbmc4k_raw_gene_bc_matrices.tar.gz")
        mock_fetch = patch("genomic_workflows.core.download.fetch_resource", return_value=archive).start()

        out_dir = fetch_dataset("pbmc4k_raw", self.root, self.logger)

        self.assertEqual(out_dir, self.root / "pbmc4k_raw_gene_bc_matrices")
        self.assertEqual(mock_fetch.call_args.kwargs["url"], DATASETS["pbmc4k_raw"]["url"])


if __name__ == "__main__":
    unittest.main()
