"""
Reporting package initialization
"""

from .summary import population_frequency_table, channel_summary, compare_groups
