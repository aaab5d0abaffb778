"""
Data Processing module for flow cytometry inputs.

This package provides utilities for:
- Downloading and caching public FCS files and zipped workspaces
- Reading FCS files with FlowKit, compensating and transforming them
- Turning samples into per-cell events tables
"""

from .download import dataset_fcs_dir, download_file, download_and_extract, extract_zip, fetch_dataset
from .fcs_loader import (
    find_fcs_files,
    load_sample,
    load_samples,
    compensate_sample,
    transform_sample,
    channel_names,
    sample_to_dataframe,
    pool_samples
)
