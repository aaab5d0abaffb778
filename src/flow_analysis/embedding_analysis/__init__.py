"""
Embedding Analysis package initialization

UMAP projections load eagerly; the FlowSOM clustering (which pulls in
flowsom and anndata) loads on first use.
"""

from importlib import import_module
from types import ModuleType
from typing import Any, Final

from .projection import select_channels, subsample_events, run_umap

_SOM_NAMES: Final = (
    "SOMResult",
    "run_flowsom",
    "build_mst",
    "mst_layout",
    "cluster_composition",
    "cluster_marker_medians",
)


def __getattr__(name: str) -> Any:  # PEP 562
    if name in _SOM_NAMES:
        mod: ModuleType = import_module(".som", __name__)
        attr = getattr(mod, name)
        globals()[name] = attr          # cache for future look-ups
        return attr
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
