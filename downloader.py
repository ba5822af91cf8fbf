"""
Model file discovery and download.
Checks the model directory for required files and fetches missing ones over HTTP.
"""

import os
import json
import logging
import tempfile
from typing import List, Optional

import requests

from config.model_config import REQUIRED_FILES
from exceptions import DownloadError, ModelDataMissingError, ModelDataCorruptError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def missing_files(model_path: Optional[str]) -> List[str]:
    """
    List required model files absent from the directory.

    Args:
        model_path: Model directory

    Returns:
        Missing file names (all of them if the directory does not exist)
    """
    if not model_path or not os.path.isdir(model_path):
        return list(REQUIRED_FILES)
    return [f for f in REQUIRED_FILES if not os.path.exists(os.path.join(model_path, f))]


def model_exists(model_path: Optional[str]) -> bool:
    """Check if all required model files exist."""
    return not missing_files(model_path)


def read_json(path: str):
    """
    Read a JSON model file.

    Raises:
        ModelDataMissingError: File does not exist
        ModelDataCorruptError: File is not valid JSON
    """
    if not os.path.exists(path):
        raise ModelDataMissingError(
            f"Model file not found: {path}",
            missing_files=[os.path.basename(path)]
        )
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ModelDataCorruptError(f"Could not parse {path}: {e}") from e


def download_file(url: str, dest_path: str, timeout: int = 30) -> int:
    """
    Stream a single file to disk.

    The payload is written to a temporary file in the destination directory
    and renamed on success, so a failed download never leaves a partial file.

    Args:
        url: Source URL
        dest_path: Destination file path
        timeout: Connect/read timeout in seconds

    Returns:
        Number of bytes written
    """
    dest_dir = os.path.dirname(os.path.abspath(dest_path))
    fd, tmp_path = tempfile.mkstemp(dir=dest_dir, suffix=".part")
    bytes_written = 0

    try:
        with os.fdopen(fd, 'wb') as f:
            with requests.get(
                url,
                stream=True,
                timeout=timeout,
                headers={'User-Agent': 'RequestBouncer/1.0'}
            ) as response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
                        bytes_written += len(chunk)
        os.replace(tmp_path, dest_path)
    except requests.RequestException as e:
        os.unlink(tmp_path)
        raise DownloadError(f"Download failed for {url}: {e}") from e
    except OSError:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise

    return bytes_written


def download_model(
    model_path: str,
    base_url: str,
    timeout: int = 30,
    verbose: bool = True
) -> List[str]:
    """
    Download every missing model file into the model directory.

    Args:
        model_path: Destination directory (created if needed)
        base_url: URL prefix the file names are appended to
        timeout: Per-request timeout in seconds
        verbose: Log progress at INFO level

    Returns:
        Names of the files that were downloaded
    """
    os.makedirs(model_path, exist_ok=True)
    log = logger.info if verbose else logger.debug

    log(f"Downloading model files from {base_url} to {model_path}")

    downloaded = []
    for filename in missing_files(model_path):
        url = f"{base_url.rstrip('/')}/{filename}"
        log(f"  Downloading {filename}...")
        size = download_file(url, os.path.join(model_path, filename), timeout=timeout)
        log(f"  {filename}: {size:,} bytes")
        downloaded.append(filename)

    still_missing = missing_files(model_path)
    if still_missing:
        raise DownloadError(f"Download incomplete. Missing files: {', '.join(still_missing)}")

    log("Model download complete")
    return downloaded


def ensure_model(
    model_path: str,
    auto_download: bool = False,
    base_url: Optional[str] = None,
    timeout: int = 30,
    verbose: bool = True
) -> None:
    """
    Make sure the model directory is complete, downloading if allowed.

    Raises:
        ModelDataMissingError: Files are missing and cannot be downloaded
        DownloadError: Download was attempted and failed
    """
    missing = missing_files(model_path)
    if not missing:
        return

    if auto_download and base_url:
        logger.info(f"Model not found at {model_path}")
        download_model(model_path, base_url, timeout=timeout, verbose=verbose)
        return

    if not os.path.isdir(model_path):
        message = f"Model directory not found: {model_path}"
    else:
        message = f"Missing model files in {model_path}: {', '.join(missing)}"
    if auto_download and not base_url:
        message += " (auto_download is enabled but model_base_url is not set)"
    raise ModelDataMissingError(message, missing_files=missing)
