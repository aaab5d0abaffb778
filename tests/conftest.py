import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest


def make_events(n=2000, seed=0, sample_id="S1"):
    """Synthetic transformed events: debris, non-T cells, CD4 and CD8 T cells."""
    rng = np.random.default_rng(seed)
    n_debris = n // 20
    n_cells = n - n_debris
    is_t = rng.random(n_cells) < 0.6
    is_cd4 = is_t & (rng.random(n_cells) < 0.5)
    is_cd8 = is_t & ~is_cd4

    cells = pd.DataFrame({
        "FSC-A": rng.normal(60000, 8000, n_cells),
        "SSC-A": rng.normal(40000, 8000, n_cells),
        "CD3": np.where(is_t, rng.normal(3.0, 0.3, n_cells), rng.normal(0.5, 0.3, n_cells)),
        "CD4": np.where(is_cd4, rng.normal(3.0, 0.3, n_cells), rng.normal(0.5, 0.3, n_cells)),
        "CD8": np.where(is_cd8, rng.normal(3.0, 0.3, n_cells), rng.normal(0.5, 0.3, n_cells)),
        "CCR7": np.where(rng.random(n_cells) < 0.5, rng.normal(3.0, 0.3, n_cells), rng.normal(0.5, 0.3, n_cells)),
        "CD45RA": np.where(rng.random(n_cells) < 0.5, rng.normal(3.0, 0.3, n_cells), rng.normal(0.5, 0.3, n_cells)),
        "truth": np.where(is_cd4, "CD4", np.where(is_cd8, "CD8", "other")),
    })
    debris = pd.DataFrame({
        "FSC-A": rng.normal(8000, 2000, n_debris),
        "SSC-A": rng.normal(40000, 8000, n_debris),
        "CD3": rng.normal(0.5, 0.3, n_debris),
        "CD4": rng.normal(0.5, 0.3, n_debris),
        "CD8": rng.normal(0.5, 0.3, n_debris),
        "CCR7": rng.normal(0.5, 0.3, n_debris),
        "CD45RA": rng.normal(0.5, 0.3, n_debris),
        "truth": "debris",
    })
    events = pd.concat([cells, debris], ignore_index=True)
    events["sample_id"] = sample_id
    return events


TEMPLATE_CSV = (
    "alias,pop,parent,dims,gating_method,gating_args\n"
    'Lymphocytes,+,root,"FSC-A,SSC-A",boundary,min_FSC-A=20000;max_SSC-A=100000\n'
    "Tcells,+,Lymphocytes,CD3,mindensity,\n"
    'CD4,+-,Tcells,"CD4,CD8",mindensity,\n'
    'CD8,-+,Tcells,"CD4,CD8",mindensity,\n'
)


@pytest.fixture
def events():
    return make_events()


@pytest.fixture
def pooled_events():
    return pd.concat(
        [make_events(seed=1, sample_id="S1"), make_events(seed=2, sample_id="S2")],
        ignore_index=True,
    )


@pytest.fixture
def template_file(tmp_path):
    path = tmp_path / "template.csv"
    path.write_text(TEMPLATE_CSV)
    return path
