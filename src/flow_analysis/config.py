"""
Configuration for the flow cytometry analysis workflow.

Everything the notebook sections need to know lives in ``CONFIG``. A JSON
file can override any key (nested dicts are merged, everything else replaced).
"""

import copy
import json
import logging
import os

logger = logging.getLogger(__name__)

CONFIG = {
    'base_path': os.getcwd(),
    'data_dir': 'data',
    'output_dir': 'output',

    # name -> {'files': [{'url': ..., 'filename': ...}], 'archive': {'url': ..., 'filename': ...}}
    # URLs are supplied by the JSON config or --url on the command line.
    'datasets': {},

    'download': {
        'timeout': 60,
        'chunk_size': 1024 * 1024,
    },

    'compensation': 'spill',
    'transform': {
        'method': 'logicle',
        'logicle': {'param_t': 262144.0, 'param_w': 0.5, 'param_m': 4.5, 'param_a': 0.0},
        'asinh': {'param_t': 262144.0, 'param_m': 4.0, 'param_a': 0.0},
    },

    # columns matching these (case-insensitive substrings) never go into an embedding
    'exclude_patterns': ['FSC', 'SSC', 'Time', 'sample_id', 'cell_type', 'memory_state'],

    # population (path or alias) -> cell type; deepest matching population wins
    'cell_type_rules': {
        'CD4': 'CD4 T cell',
        'CD8': 'CD8 T cell',
        'Tcells': 'T cell',
        'Bcells': 'B cell',
        'NK': 'NK cell',
        'Monocytes': 'Monocyte',
    },
    'memory_markers': {'ccr7': 'CCR7', 'cd45ra': 'CD45RA'},
    'memory_cell_types': ['CD4 T cell', 'CD8 T cell'],

    # channel pairs for labelled-population scatter plots; empty uses the 2D gates
    'scatter_pairs': [],
    'plot': {
        'max_events': 20000,
        'dpi': 300,
    },
    'umap': {
        'max_events': 20000,
        'n_neighbors': 15,
        'min_dist': 0.1,
        'scale': True,
    },
    'som': {
        'xdim': 10,
        'ydim': 10,
        'n_clusters': 10,
        'max_events': 100000,
    },
    'seed': 42,
}


def _merge(base, override):
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path=None):
    """
    Return a copy of CONFIG, with the JSON file at `path` merged on top.

    Raises FileNotFoundError when `path` is given but missing.
    """
    config = copy.deepcopy(CONFIG)
    if path is None:
        return config
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, 'r', encoding='utf-8') as handle:
        overrides = json.load(handle)
    logger.info(f"Loaded config overrides from {path}: {sorted(overrides)}")
    return _merge(config, overrides)


def resolve_path(config, key):
    """Absolute path for a directory entry of the config, relative to base_path."""
    path = config[key]
    if os.path.isabs(path):
        return path
    return os.path.join(config['base_path'], path)


def get_output_dirs(config):
    """Create the output sub-directories and return them by name."""
    output_dir = resolve_path(config, 'output_dir')
    dirs = {
        'output': output_dir,
        'tables': os.path.join(output_dir, 'tables'),
        'plots': os.path.join(output_dir, 'plots'),
    }
    for path in dirs.values():
        os.makedirs(path, exist_ok=True)
    return dirs
