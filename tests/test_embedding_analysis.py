import networkx as nx
import numpy as np
import pandas as pd
import pytest

from flow_analysis.embedding_analysis import run_umap, select_channels, subsample_events
from flow_analysis.embedding_analysis.som import (
    build_mst,
    cluster_composition,
    cluster_marker_medians,
    mst_layout,
    run_flowsom
)


def test_select_channels_excludes_scatter_and_labels(events):
    labelled = events.assign(cell_type="x")
    assert select_channels(labelled) == ["CD3", "CD4", "CD8", "CCR7", "CD45RA"]
    assert select_channels(labelled, channels=["CD4"]) == ["CD4"]
    with pytest.raises(ValueError):
        select_channels(labelled, channels=["CD19"])
    with pytest.raises(ValueError):
        select_channels(labelled[["FSC-A", "SSC-A"]])


def test_subsample_events_stratified(pooled_events):
    sub = subsample_events(pooled_events, 500, seed=1, stratify="sample_id")
    assert sub["sample_id"].value_counts().to_dict() == {"S1": 250, "S2": 250}
    assert subsample_events(pooled_events, None) is pooled_events
    assert len(subsample_events(pooled_events, 100, seed=1)) == 100


def test_run_umap_shape_and_index(events):
    sub = subsample_events(events, 200, seed=0)
    embedding = run_umap(sub, n_neighbors=10, random_state=0)
    assert list(embedding.columns) == ["UMAP1", "UMAP2"]
    assert embedding.index.equals(sub.index)
    assert np.isfinite(embedding.to_numpy()).all()


def test_run_umap_too_few_events(events):
    with pytest.raises(ValueError, match="n_neighbors"):
        run_umap(events.head(5), n_neighbors=15)


def test_build_mst_is_spanning_tree():
    codes = pd.DataFrame({"a": [0.0, 1.0, 2.0, 10.0, 11.0], "b": [0.0, 0.0, 0.0, 0.0, 0.0]})
    tree = build_mst(codes)
    assert nx.is_tree(tree)
    assert tree.number_of_nodes() == 5
    assert tree.has_edge(0, 1) and tree.has_edge(1, 2) and tree.has_edge(2, 3)
    assert tree.has_edge(3, 4)
    layout = mst_layout(tree)
    assert set(layout) == set(range(5))


def test_cluster_composition_and_medians(events):
    clusters = pd.Series(np.where(events["CD4"] > 1.5, 1, 0), index=events.index)
    composition = cluster_composition(clusters, events["truth"])
    assert np.allclose(composition.sum(axis=1), 1.0)
    assert composition.loc[1, "CD4"] > 0.9
    medians = cluster_marker_medians(events, clusters)
    assert medians.loc[1, "CD4"] > medians.loc[0, "CD4"]


def test_run_flowsom_small(events):
    sub = subsample_events(events, 400, seed=0)
    result = run_flowsom(sub, xdim=3, ydim=3, n_clusters=3, seed=1)
    assert len(result.codes) == 9
    assert list(result.codes.columns) == ["CD3", "CD4", "CD8", "CCR7", "CD45RA"]
    assert result.clusters.index.equals(sub.index)
    assert result.node_sizes.sum() == len(sub)
    assert result.metaclusters.nunique() <= 3
    with pytest.raises(ValueError):
        run_flowsom(sub, xdim=2, ydim=2, n_clusters=5)
