"""
Shared Functions Module
Common I/O helpers used across the analysis sections
"""

import logging
import os
import re

import matplotlib.pyplot as plt
import pandas as pd

logger = logging.getLogger(__name__)


def load_csv(path: str) -> pd.DataFrame:
    """Read a CSV file, handling UTF-8 BOM if present."""
    return pd.read_csv(path, encoding='utf-8-sig')


def load_csv_with_logging(file_path, required_columns=None):
    """
    Load a CSV file and log the process. Optionally check for required columns.

    Args:
        file_path (str): Path to the CSV file.
        required_columns (list, optional): Column names that must be present.

    Returns:
        pd.DataFrame: Loaded DataFrame.

    Raises:
        ValueError: If required columns are missing.
    """
    try:
        df = load_csv(file_path)
        logger.info(f"Loaded {file_path} with shape {df.shape}")
        if required_columns:
            missing_cols = [col for col in required_columns if col not in df.columns]
            if missing_cols:
                raise ValueError(f"Missing required columns: {missing_cols}")
        return df
    except Exception as e:
        logger.error(f"Error loading {file_path}: {e}")
        raise


def save_results(df, filename, output_dir, index=False):
    """Save a DataFrame as CSV in output_dir and return the file path."""
    os.makedirs(output_dir, exist_ok=True)
    output_file = os.path.join(output_dir, filename)
    df.to_csv(output_file, index=index)
    logger.info(f"Saved results to {output_file}")
    return output_file


def save_plot(fig, filename, output_dir, dpi=300):
    """
    Save a matplotlib figure to the specified output directory

    Parameters:
    -----------
    fig : matplotlib.figure.Figure
        Figure to save
    filename : str
        Name of the file (without extension)
    output_dir : str
        Directory to save the plot

    Returns:
    --------
    str
        Path of the written PNG
    """
    os.makedirs(output_dir, exist_ok=True)
    plot_path = os.path.join(output_dir, f"{filename}.png")
    fig.savefig(plot_path, dpi=dpi, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Saved plot: {plot_path}")
    return plot_path


def sanitize_name(name: str) -> str:
    """'CD4+/CD8-' -> 'CD4pos_CD8neg'; safe for file names."""
    name = str(name).replace('+', 'pos')
    # only a trailing minus is a negative sign, 'FL1-A' keeps its hyphen meaning
    name = re.sub(r'-(?=$|[^A-Za-z0-9])', 'neg', name)
    name = re.sub(r'[^A-Za-z0-9_.]+', '_', name)
    return name.strip('_') or 'unnamed'
