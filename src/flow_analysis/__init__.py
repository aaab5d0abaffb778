"""
Source code for flow cytometry analysis.

This package contains modules for downloading, gating, labelling and
visualizing flow cytometry data from public datasets.
"""

__version__ = "1.0.0"
