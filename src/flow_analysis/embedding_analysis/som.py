"""
Self-organizing map clustering and the minimum spanning tree over SOM nodes.

The SOM and its consensus metaclustering come from the FlowSOM package; the
tree drawn over the nodes is rebuilt here with networkx so it can be laid out
and coloured freely.
"""

import logging

import anndata as ad
import networkx as nx
import numpy as np
import pandas as pd
import flowsom as fs
from scipy.spatial.distance import pdist, squareform

from .projection import select_channels

logger = logging.getLogger(__name__)


class SOMResult:
    """Per-cell assignments and per-node codes of a trained FlowSOM model."""

    def __init__(self, model, clusters, metaclusters, codes, node_metaclusters):
        self.model = model
        self.clusters = clusters
        self.metaclusters = metaclusters
        self.codes = codes
        self.node_metaclusters = node_metaclusters

    @property
    def node_sizes(self):
        """Number of cells mapped to each SOM node (empty nodes included)."""
        return self.clusters.value_counts().reindex(self.codes.index, fill_value=0)

    def __repr__(self):
        return (f"SOMResult(nodes={len(self.codes)}, "
                f"metaclusters={self.node_metaclusters.nunique()}, cells={len(self.clusters)})")


def run_flowsom(events, channels=None, xdim=10, ydim=10, n_clusters=10, seed=42,
                exclude_patterns=None):
    """
    Train a FlowSOM model on the selected channels.

    Returns:
    --------
    SOMResult
        clusters / metaclusters are Series indexed like `events`; codes is a
        nodes x channels DataFrame.
    """
    channels = select_channels(events, channels, exclude_patterns)
    n_nodes = xdim * ydim
    if n_clusters > n_nodes:
        raise ValueError(f"n_clusters={n_clusters} exceeds the {n_nodes} SOM nodes")
    if len(events) < n_nodes:
        raise ValueError(f"{len(events)} events are too few for a {xdim}x{ydim} SOM")

    adata = ad.AnnData(
        X=events[channels].to_numpy(dtype=np.float32),
        var=pd.DataFrame(index=[str(c) for c in channels])
    )
    logger.info(f"Training {xdim}x{ydim} SOM on {adata.n_obs} events, {len(channels)} channels, "
                f"{n_clusters} metaclusters")
    model = fs.FlowSOM(
        adata,
        cols_to_use=list(range(len(channels))),
        xdim=xdim,
        ydim=ydim,
        n_clusters=n_clusters,
        seed=seed
    )

    cell_data = model.get_cell_data()
    cluster_data = model.get_cluster_data()
    codes_array = cluster_data.obsm['codes'] if 'codes' in cluster_data.obsm else cluster_data.X
    codes = pd.DataFrame(np.asarray(codes_array), columns=channels)
    codes.index.name = 'node'

    clusters = pd.Series(cell_data.obs['clustering'].to_numpy().astype(int),
                         index=events.index, name='som_cluster')
    metaclusters = pd.Series(cell_data.obs['metaclustering'].to_numpy().astype(int),
                             index=events.index, name='metacluster')
    node_metaclusters = pd.Series(cluster_data.obs['metaclustering'].to_numpy().astype(int),
                                  index=codes.index, name='metacluster')
    result = SOMResult(model, clusters, metaclusters, codes, node_metaclusters)
    logger.info(f"{result}")
    return result


def build_mst(codes):
    """
    Minimum spanning tree over SOM nodes, weighted by the Euclidean distance
    between node codes.
    """
    distances = squareform(pdist(codes.to_numpy(dtype=float)))
    # identical codes still need an edge, from_numpy_array drops zeros
    distances[distances == 0] = np.finfo(float).eps
    np.fill_diagonal(distances, 0.0)
    complete = nx.from_numpy_array(distances)
    complete = nx.relabel_nodes(complete, dict(enumerate(codes.index)))
    tree = nx.minimum_spanning_tree(complete, weight='weight')
    logger.info(f"MST over {tree.number_of_nodes()} nodes, total length "
                f"{tree.size(weight='weight'):.3f}")
    return tree


def mst_layout(tree):
    """Kamada-Kawai positions for the tree, using edge lengths as distances."""
    return nx.kamada_kawai_layout(tree, weight='weight')


def cluster_composition(clusters, labels, normalize=True):
    """SOM node x label table; row fractions when normalize."""
    return pd.crosstab(clusters, labels, normalize='index' if normalize else False)


def cluster_marker_medians(events, clusters, channels=None, exclude_patterns=None):
    """Median of each channel per cluster."""
    channels = select_channels(events, channels, exclude_patterns)
    return events[channels].groupby(clusters.to_numpy()).median()
