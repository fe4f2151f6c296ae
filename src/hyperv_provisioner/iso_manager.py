import hashlib
import logging
import os
from typing import Optional

import requests

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
DOWNLOAD_TIMEOUT = 60


class DownloadError(RuntimeError):
    """The installer image could not be downloaded or failed verification."""


class IsoManager:
    """Handles downloading the Ubuntu installer image."""

    @staticmethod
    def sha256(path: str) -> str:
        """Hex SHA-256 digest of a file."""
        digest = hashlib.sha256()
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(1024 * 1024), b""):
                digest.update(block)
        return digest.hexdigest()

    @staticmethod
    def download_iso(url: str, dest: str, expected_sha256: Optional[str] = None) -> str:
        """
        Download the ISO to dest unless a matching copy is already there.

        Args:
            url: Installer download URL
            dest: Local file path
            expected_sha256: Optional hex checksum the file must match

        Returns:
            The local path of the ISO

        Raises:
            DownloadError: On HTTP/network failure or checksum mismatch
        """
        expected = expected_sha256.lower() if expected_sha256 else None

        if os.path.isfile(dest):
            if expected is None or IsoManager.sha256(dest) == expected:
                print(f"✅ ISO {os.path.basename(dest)} already exists locally. Skipping download.")
                return dest
            print(f"⚠️  Existing {os.path.basename(dest)} does not match checksum, downloading again")
            os.remove(dest)

        print(f"⬇️  Downloading {os.path.basename(dest)} from {url}...")
        partial = dest + ".part"
        try:
            response = requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT)
            response.raise_for_status()
            with open(partial, "wb") as iso_file:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        iso_file.write(chunk)
        except (requests.RequestException, OSError) as e:
            if os.path.exists(partial):
                os.remove(partial)
            logger.error(f"Download of {url} failed: {e}")
            raise DownloadError(str(e)) from e

        if expected is not None:
            actual = IsoManager.sha256(partial)
            if actual != expected:
                os.remove(partial)
                raise DownloadError(f"Checksum mismatch for {os.path.basename(dest)}: expected {expected}, got {actual}")

        os.replace(partial, dest)
        print(f"✅ Downloaded {os.path.basename(dest)}.")
        return dest
