"""
Dataset downloads

Public FCS files and zipped workspaces are fetched once and cached under the
data directory; a file that is already on disk is never downloaded again
unless ``overwrite`` is set.
"""

import logging
import os
import zipfile
from urllib.parse import unquote, urlparse

import requests

from ..config import CONFIG, resolve_path

logger = logging.getLogger(__name__)


def filename_from_url(url):
    """Last path component of a URL, without query string."""
    name = os.path.basename(unquote(urlparse(url).path))
    if not name:
        raise ValueError(f"Cannot derive a file name from URL: {url}")
    return name


def download_file(url, dest_dir, filename=None, overwrite=False,
                  chunk_size=1024 * 1024, timeout=60, session=None):
    """
    Stream `url` into `dest_dir` and return the local path.

    The body is written to ``<name>.part`` and renamed once complete.
    HTTP errors are raised as requests.HTTPError.
    """
    os.makedirs(dest_dir, exist_ok=True)
    filename = filename or filename_from_url(url)
    target = os.path.join(dest_dir, filename)

    if os.path.exists(target) and not overwrite:
        logger.info(f"Using cached file {target}")
        return target

    partial = target + '.part'
    http = session or requests
    logger.info(f"Downloading {url} -> {target}")
    try:
        with http.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            n_bytes = 0
            with open(partial, 'wb') as handle:
                for chunk in response.iter_content(chunk_size=chunk_size):
                    if chunk:
                        handle.write(chunk)
                        n_bytes += len(chunk)
    except Exception as e:
        logger.error(f"Error downloading {url}: {e}")
        if os.path.exists(partial):
            os.remove(partial)
        raise

    os.replace(partial, target)
    logger.info(f"Downloaded {n_bytes} bytes to {target}")
    return target


def extract_zip(archive_path, dest_dir):
    """Extract a zip archive into dest_dir and return the extracted file paths."""
    root = os.path.realpath(dest_dir)
    os.makedirs(root, exist_ok=True)
    extracted = []
    with zipfile.ZipFile(archive_path) as archive:
        for member in archive.infolist():
            member_path = os.path.realpath(os.path.join(root, member.filename))
            if os.path.commonpath([root, member_path]) != root:
                raise ValueError(f"Archive member escapes target directory: {member.filename}")
            archive.extract(member, root)
            if not member.is_dir():
                extracted.append(member_path)
    logger.info(f"Extracted {len(extracted)} files from {archive_path} into {root}")
    return extracted


def download_and_extract(url, dest_dir, filename=None, overwrite=False, **kwargs):
    """Download a zip archive (cached) and extract it next to itself."""
    archive_path = download_file(url, dest_dir, filename=filename, overwrite=overwrite, **kwargs)
    extract_dir = os.path.join(dest_dir, os.path.splitext(os.path.basename(archive_path))[0])
    return extract_zip(archive_path, extract_dir)


def fetch_dataset(name, config=None):
    """
    Download every file registered for dataset `name`.

    Returns a dict with 'files' (downloaded paths) and 'archive' (extracted
    paths) entries. Unknown dataset names raise KeyError.
    """
    config = config or CONFIG
    datasets = config.get('datasets', {})
    if name not in datasets:
        raise KeyError(f"Unknown dataset '{name}'. Registered: {sorted(datasets)}")

    entry = datasets[name]
    dest_dir = os.path.join(resolve_path(config, 'data_dir'), name)
    options = config.get('download', {})
    kwargs = {
        'timeout': options.get('timeout', 60),
        'chunk_size': options.get('chunk_size', 1024 * 1024),
    }

    result = {'files': [], 'archive': []}
    with requests.Session() as session:
        for item in entry.get('files', []):
            result['files'].append(
                download_file(item['url'], dest_dir, filename=item.get('filename'),
                              session=session, **kwargs)
            )
        archive = entry.get('archive')
        if archive:
            result['archive'] = download_and_extract(
                archive['url'], dest_dir, filename=archive.get('filename'),
                session=session, **kwargs
            )
    logger.info(f"Dataset '{name}': {len(result['files'])} files, "
                f"{len(result['archive'])} extracted from archive")
    return result


def dataset_fcs_dir(name, config=None):
    """
    Directory holding the FCS files of dataset `name`.

    For datasets shipped as an archive this is the extraction directory,
    descending into the archive's single top-level folder when it has one.
    """
    config = config or CONFIG
    path = os.path.join(resolve_path(config, 'data_dir'), name)
    archive = config.get('datasets', {}).get(name, {}).get('archive')
    if not archive:
        return path

    filename = archive.get('filename') or filename_from_url(archive['url'])
    path = os.path.join(path, os.path.splitext(filename)[0])
    while os.path.isdir(path):
        entries = os.listdir(path)
        if len(entries) != 1 or not os.path.isdir(os.path.join(path, entries[0])):
            break
        path = os.path.join(path, entries[0])
    return path
