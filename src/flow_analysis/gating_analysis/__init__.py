"""
Gating Analysis package initialization

Template gating, gating hierarchies and per-cell labels load eagerly; the
FlowJo workspace helpers (which pull in FlowKit) load on first use.
"""

from importlib import import_module
from types import ModuleType
from typing import Any, Final

from .template import (
    GatingTemplateError,
    load_gating_template,
    normalize_template,
    apply_gating_template,
    gate_samples,
    population_statistics,
    find_density_threshold
)
from .hierarchy import build_gating_tree, tree_from_template, render_text_tree, plot_gating_tree
from .labels import assign_cell_types, memory_state_from_markers, label_events, label_summary

_WORKSPACE_NAMES: Final = (
    "load_workspace",
    "analyze_workspace",
    "workspace_gate_membership",
    "workspace_gate_tree",
    "workspace_events",
    "get_compensation_matrix",
)


def __getattr__(name: str) -> Any:  # PEP 562
    if name in _WORKSPACE_NAMES:
        mod: ModuleType = import_module(".workspace", __name__)
        attr = getattr(mod, name)
        globals()[name] = attr          # cache for future look-ups
        return attr
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
