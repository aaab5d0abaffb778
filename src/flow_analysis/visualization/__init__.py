"""
Visualization package initialization
"""

from .plots import (
    plot_gate_scatter,
    plot_population_scatter,
    plot_umap,
    plot_som_mst,
    plot_marker_heatmap,
    plot_population_frequencies
)
