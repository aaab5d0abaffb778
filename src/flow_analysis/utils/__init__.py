"""
Utils package initialization
"""

from .shared_functions import (
    load_csv,
    load_csv_with_logging,
    save_results,
    save_plot,
    sanitize_name
)
