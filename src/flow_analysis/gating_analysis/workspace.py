"""
FlowJo workspace gating through FlowKit.

The workspace carries compensation, transforms and the gate tree for each
sample; FlowKit re-applies them. This module reshapes the results into the
same membership tables and trees the template gating produces.
"""

import logging
import os

import numpy as np
import pandas as pd
import flowkit as fk

from ..data_processing.fcs_loader import sample_to_dataframe, transform_sample
from .hierarchy import build_gating_tree
from .template import ROOT

logger = logging.getLogger(__name__)


def load_workspace(wsp_path, fcs_dir):
    """Open a FlowJo .wsp file together with the FCS files it references."""
    if not os.path.exists(wsp_path):
        raise FileNotFoundError(f"Workspace file not found: {wsp_path}")
    if not os.path.isdir(fcs_dir):
        raise FileNotFoundError(f"FCS directory not found: {fcs_dir}")
    try:
        workspace = fk.Workspace(wsp_path, fcs_samples=fcs_dir)
    except Exception as e:
        logger.error(f"Error loading workspace {wsp_path}: {e}")
        raise
    logger.info(f"Loaded workspace {wsp_path}: groups {workspace.get_sample_groups()}, "
                f"{len(workspace.get_sample_ids())} samples")
    return workspace


def analyze_workspace(workspace, group_name=None, sample_id=None):
    """Run the workspace gating and return the population report."""
    workspace.analyze_samples(group_name=group_name, sample_id=sample_id, use_mp=False)
    report = workspace.get_analysis_report(group_name=group_name)
    if sample_id is not None and 'sample' in report.columns:
        report = report[report['sample'] == sample_id]
    logger.info(f"Workspace analysis report: {len(report)} rows")
    return report.reset_index(drop=True)


def gate_path_string(gate_name, gate_path):
    """('root', 'Lymphocytes'), 'Tcells' -> 'root/Lymphocytes/Tcells'"""
    parts = list(gate_path or (ROOT,))
    if parts[0] != ROOT:
        parts = [ROOT] + parts
    return '/'.join(parts + [gate_name])


def workspace_gate_membership(workspace, sample_id):
    """Boolean events x gate-path table for an analyzed workspace sample."""
    gate_ids = workspace.get_gate_ids(sample_id)
    columns = {}
    for gate_name, gate_path in gate_ids:
        membership = workspace.get_gate_membership(sample_id, gate_name, gate_path=gate_path)
        columns[gate_path_string(gate_name, gate_path)] = np.asarray(membership, dtype=bool)
    if not columns:
        raise ValueError(f"Sample {sample_id} has no gates in the workspace")

    n_events = len(next(iter(columns.values())))
    table = pd.DataFrame({ROOT: np.ones(n_events, dtype=bool)})
    ordered = sorted(columns, key=lambda p: p.count('/'))
    table = pd.concat([table, pd.DataFrame({p: columns[p] for p in ordered})], axis=1)
    logger.info(f"Sample {sample_id}: membership for {len(ordered)} gates over {n_events} events")
    return table


def workspace_gate_tree(workspace, sample_id):
    paths = [gate_path_string(name, path) for name, path in workspace.get_gate_ids(sample_id)]
    return build_gating_tree(paths)


def get_compensation_matrix(workspace, sample_id):
    """Spillover matrix of a workspace sample as a DataFrame, or None."""
    matrix = workspace.get_comp_matrix(sample_id)
    if matrix is None:
        return None
    return matrix.as_dataframe(fluoro_labels=False)


def workspace_events(workspace, sample_id, transform='logicle', use_markers=True, **params):
    """
    Events of a workspace sample, compensated with the workspace matrix.

    Fluorescence channels are transformed with `transform` ('logicle' or
    'asinh'); None returns compensated linear values.
    """
    sample = workspace.get_sample(sample_id)
    matrix = workspace.get_comp_matrix(sample_id)
    if matrix is not None:
        sample.apply_compensation(matrix)
        source = 'comp'
    else:
        source = 'raw'
    if transform is not None:
        transform_sample(sample, method=transform, **params)
        source = 'xform'
    return sample_to_dataframe(sample, source=source, use_markers=use_markers)
