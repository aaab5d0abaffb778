"""
Plotting functions for gates, labelled populations, UMAP and SOM trees.

Every function returns a matplotlib Figure; saving is left to
utils.save_plot so callers choose names and directories.
"""

import logging

import matplotlib.pyplot as plt
import networkx as nx
import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.patches import Polygon, Rectangle, Wedge

logger = logging.getLogger(__name__)


def _point_density(x, y, bins=128):
    """Per-point count of its 2D histogram bin, for density colouring."""
    counts, x_edges, y_edges = np.histogram2d(x, y, bins=bins)
    xi = np.clip(np.searchsorted(x_edges, x, side='right') - 1, 0, counts.shape[0] - 1)
    yi = np.clip(np.searchsorted(y_edges, y, side='right') - 1, 0, counts.shape[1] - 1)
    return counts[xi, yi]


def _limit(events, max_events, seed):
    if max_events is not None and len(events) > max_events:
        return events.sample(n=max_events, random_state=seed)
    return events


def _draw_gate(ax, geometry, x, y):
    thresholds = geometry.get('thresholds', {})
    if x in thresholds:
        ax.axvline(thresholds[x], color='red', linestyle='--', linewidth=1)
    if y is not None and y in thresholds:
        ax.axhline(thresholds[y], color='red', linestyle='--', linewidth=1)

    bounds = geometry.get('bounds', {})
    if x in bounds:
        x_lo, x_hi = bounds[x]
        x_min, x_max = ax.get_xlim()
        x_lo, x_hi = max(x_lo, x_min), min(x_hi, x_max)
        if y is not None and y in bounds:
            y_lo, y_hi = bounds[y]
            y_min, y_max = ax.get_ylim()
            y_lo, y_hi = max(y_lo, y_min), min(y_hi, y_max)
            ax.add_patch(Rectangle((x_lo, y_lo), x_hi - x_lo, y_hi - y_lo,
                                   fill=False, edgecolor='red', linewidth=1.5))
        else:
            ax.axvspan(x_lo, x_hi, color='red', alpha=0.1)

    if 'vertices' in geometry and y is not None:
        ax.add_patch(Polygon(geometry['vertices'], closed=True, fill=False,
                             edgecolor='red', linewidth=1.5))


def plot_gate_scatter(events, x, y=None, geometry=None, parent_mask=None,
                      max_events=20000, seed=42, title=None):
    """
    Density-coloured scatter (or histogram when `y` is None) of the parent
    population, with the gate drawn on top.
    """
    data = events if parent_mask is None else events.loc[np.asarray(parent_mask, dtype=bool)]
    data = _limit(data, max_events, seed)

    fig, ax = plt.subplots(figsize=(6, 5))
    if len(data) == 0:
        ax.text(0.5, 0.5, 'No events', transform=ax.transAxes, ha='center', va='center')
    elif y is None:
        sns.histplot(data[x], bins=128, element='step', ax=ax)
    else:
        density = _point_density(data[x].to_numpy(), data[y].to_numpy())
        order = np.argsort(density)
        ax.scatter(data[x].to_numpy()[order], data[y].to_numpy()[order], c=density[order],
                   s=2, cmap='jet', linewidths=0, rasterized=True)
        ax.set_ylabel(y)
    ax.set_xlabel(x)
    if geometry:
        _draw_gate(ax, geometry, x, y)
    ax.set_title(title or (f"{x} vs {y}" if y else x))
    fig.tight_layout()
    return fig


def plot_population_scatter(events, x, y, hue='cell_type', max_events=20000, seed=42, title=None):
    """Scatter of two channels coloured by a label column."""
    data = _limit(events, max_events, seed)
    fig, ax = plt.subplots(figsize=(7, 5))
    sns.scatterplot(data=data, x=x, y=y, hue=hue, s=4, linewidth=0, alpha=0.7, ax=ax,
                    hue_order=sorted(data[hue].unique()))
    ax.legend(title=hue, bbox_to_anchor=(1.02, 1), loc='upper left', markerscale=3, frameon=False)
    ax.set_title(title or f"{x} vs {y} by {hue}")
    fig.tight_layout()
    return fig


def plot_umap(embedding, colour_by, title=None, categorical=None, cmap='viridis'):
    """
    UMAP scatter coloured by a Series aligned with the embedding.

    Categorical values get a legend, continuous ones a colour bar.
    """
    colour_by = pd.Series(colour_by, index=embedding.index) if not isinstance(colour_by, pd.Series) \
        else colour_by.reindex(embedding.index)
    if categorical is None:
        categorical = not pd.api.types.is_float_dtype(colour_by)

    fig, ax = plt.subplots(figsize=(7, 6))
    if categorical:
        data = embedding.assign(group=colour_by.astype(str).to_numpy())
        sns.scatterplot(data=data, x='UMAP1', y='UMAP2', hue='group', s=3, linewidth=0,
                        hue_order=sorted(data['group'].unique()), ax=ax)
        ax.legend(title=colour_by.name, bbox_to_anchor=(1.02, 1), loc='upper left',
                  markerscale=4, frameon=False)
    else:
        points = ax.scatter(embedding['UMAP1'], embedding['UMAP2'], c=colour_by.to_numpy(),
                            s=3, cmap=cmap, linewidths=0, rasterized=True)
        fig.colorbar(points, ax=ax, label=colour_by.name)
    ax.set_xticks([])
    ax.set_yticks([])
    ax.set_title(title or f"UMAP coloured by {colour_by.name}")
    fig.tight_layout()
    return fig


def plot_som_mst(tree, layout, node_sizes, node_colours=None, composition=None,
                 title='SOM minimum spanning tree'):
    """
    Draw the SOM tree: node area follows the number of cells per node.

    With `composition` (node x label fractions) each node is a pie of its
    label mix; otherwise nodes are coloured by `node_colours` (e.g.
    metacluster per node).
    """
    fig, ax = plt.subplots(figsize=(9, 8))
    nx.draw_networkx_edges(tree, layout, ax=ax, edge_color='lightgrey', width=1.5)

    nodes = list(tree.nodes)
    sizes = pd.Series(node_sizes).reindex(nodes, fill_value=0).to_numpy(dtype=float)
    scaled = np.sqrt(sizes / sizes.max()) if sizes.max() > 0 else np.zeros_like(sizes)

    if composition is not None:
        coords = np.array([layout[n] for n in nodes])
        extent = np.ptp(coords, axis=0).max() if len(coords) > 1 else 1.0
        max_radius = 0.04 * extent
        labels = list(composition.columns)
        palette = dict(zip(labels, sns.color_palette('tab20', len(labels))))
        for node, fraction in zip(nodes, scaled):
            radius = max(max_radius * fraction, max_radius * 0.2)
            shares = composition.loc[node] if node in composition.index else None
            if shares is None or shares.sum() == 0:
                ax.add_patch(Wedge(layout[node], radius, 0, 360, facecolor='white', edgecolor='grey'))
                continue
            start = 0.0
            for label, share in (shares / shares.sum()).items():
                if share > 0:
                    ax.add_patch(Wedge(layout[node], radius, start, start + 360 * share,
                                       facecolor=palette[label], edgecolor='none'))
                    start += 360 * share
        handles = [Rectangle((0, 0), 1, 1, facecolor=palette[l]) for l in labels]
        ax.legend(handles, labels, bbox_to_anchor=(1.02, 1), loc='upper left', frameon=False)
        ax.set_aspect('equal')
        ax.autoscale_view()
    else:
        colours = None
        if node_colours is not None:
            node_colours = pd.Series(node_colours).reindex(nodes)
            categories = sorted(node_colours.dropna().unique())
            palette = dict(zip(categories, sns.color_palette('tab20', len(categories))))
            colours = [palette.get(c, (0.8, 0.8, 0.8)) for c in node_colours]
            handles = [Rectangle((0, 0), 1, 1, facecolor=palette[c]) for c in categories]
            ax.legend(handles, [str(c) for c in categories], title=node_colours.name,
                      bbox_to_anchor=(1.02, 1), loc='upper left', frameon=False)
        nx.draw_networkx_nodes(tree, layout, nodelist=nodes, ax=ax,
                               node_size=20 + 400 * scaled,
                               node_color=colours if colours is not None else 'steelblue',
                               edgecolors='black', linewidths=0.5)
    ax.set_title(title)
    ax.axis('off')
    fig.tight_layout()
    return fig


def plot_marker_heatmap(medians, title='Median marker intensity per cluster'):
    fig, ax = plt.subplots(figsize=(max(6, 0.6 * medians.shape[1]), max(4, 0.35 * medians.shape[0])))
    sns.heatmap(medians, cmap='viridis', ax=ax, cbar_kws={'label': 'median'})
    ax.set_xlabel('Channel')
    ax.set_ylabel('Cluster')
    ax.set_title(title)
    fig.tight_layout()
    return fig


def plot_population_frequencies(summary, x='cell_type', y='percent', hue=None, title=None):
    """Bar chart of label frequencies, one bar group per `x`."""
    fig, ax = plt.subplots(figsize=(10, 6))
    sns.barplot(data=summary, x=x, y=y, hue=hue, ax=ax)
    ax.set_xlabel(x.replace('_', ' ').title())
    ax.set_ylabel('Percent of events' if y == 'percent' else y)
    ax.set_title(title or f"{y.title()} by {x.replace('_', ' ')}")
    plt.setp(ax.get_xticklabels(), rotation=45, ha='right')
    fig.tight_layout()
    return fig
