import io
import json
import os
import zipfile

import numpy as np
import pandas as pd
import pytest
import requests

from flow_analysis.config import CONFIG, get_output_dirs, load_config
from flow_analysis.data_processing.download import (
    dataset_fcs_dir,
    download_and_extract,
    download_file,
    extract_zip,
    fetch_dataset,
    filename_from_url
)
from flow_analysis.data_processing.fcs_loader import (
    build_transform,
    channel_names,
    compensate_sample,
    find_fcs_files,
    load_sample,
    pool_samples,
    sample_to_dataframe,
    transform_sample
)
from flow_analysis.utils.shared_functions import (
    load_csv,
    load_csv_with_logging,
    sanitize_name,
    save_results
)


class FakeResponse:
    def __init__(self, content, status=200):
        self.content = content
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]


class FakeSample:
    def __init__(self, pnn, pns, events, sample_id="fake"):
        self.pnn_labels = pnn
        self.pns_labels = pns
        self._events = np.asarray(events, dtype=float)
        self.id = sample_id

    def get_events(self, source="xform"):
        return self._events


@pytest.fixture
def fake_get(monkeypatch):
    calls = []

    def _get(url, stream=False, timeout=None):
        calls.append(url)
        if "missing" in url:
            return FakeResponse(b"", status=404)
        if url.endswith(".zip"):
            buffer = io.BytesIO()
            with zipfile.ZipFile(buffer, "w") as archive:
                archive.writestr("exp/a.fcs", b"FCS3.1 a")
                archive.writestr("exp/b.FCS", b"FCS3.1 b")
            return FakeResponse(buffer.getvalue())
        return FakeResponse(b"FCS3.1" + b"x" * 100)

    monkeypatch.setattr(requests, "get", _get)
    monkeypatch.setattr(requests.Session, "get", lambda self, url, **kwargs: _get(url, **kwargs))
    return calls


def test_filename_from_url():
    assert filename_from_url("https://host/path/sample%201.fcs?dl=1") == "sample 1.fcs"
    with pytest.raises(ValueError):
        filename_from_url("https://host/")


def test_download_file_writes_and_caches(tmp_path, fake_get):
    path = download_file("https://host/data/s1.fcs", str(tmp_path), chunk_size=16)
    assert os.path.basename(path) == "s1.fcs"
    assert open(path, "rb").read().startswith(b"FCS3.1")
    assert not os.path.exists(path + ".part")

    again = download_file("https://host/data/s1.fcs", str(tmp_path))
    assert again == path
    assert len(fake_get) == 1


def test_download_file_http_error_leaves_nothing(tmp_path, fake_get):
    with pytest.raises(requests.HTTPError):
        download_file("https://host/missing.fcs", str(tmp_path))
    assert os.listdir(tmp_path) == []


def test_download_and_extract(tmp_path, fake_get):
    files = download_and_extract("https://bucket/experiment.zip", str(tmp_path))
    assert sorted(os.path.basename(f) for f in files) == ["a.fcs", "b.FCS"]
    found = find_fcs_files(str(tmp_path / "experiment"))
    assert [os.path.basename(f) for f in found] == ["a.fcs", "b.FCS"]


def test_extract_zip_rejects_escaping_members(tmp_path):
    archive_path = tmp_path / "bad.zip"
    with zipfile.ZipFile(archive_path, "w") as archive:
        archive.writestr("../evil.txt", "x")
    with pytest.raises(ValueError):
        extract_zip(str(archive_path), str(tmp_path / "out"))


def test_fetch_dataset(tmp_path, fake_get):
    config = load_config()
    config["base_path"] = str(tmp_path)
    config["datasets"] = {
        "demo": {
            "files": [{"url": "https://repo/fcs/1", "filename": "one.fcs"}],
            "archive": {"url": "https://bucket/demo.zip"},
        }
    }
    result = fetch_dataset("demo", config)
    assert [os.path.basename(p) for p in result["files"]] == ["one.fcs"]
    assert len(result["archive"]) == 2
    with pytest.raises(KeyError):
        fetch_dataset("nope", config)


def test_find_fcs_files_missing_dir(tmp_path):
    with pytest.raises(FileNotFoundError):
        find_fcs_files(str(tmp_path / "absent"))


def test_channel_names_prefers_unique_markers():
    sample = FakeSample(
        ["FSC-A", "FL1-A", "FL2-A", "FL3-A"],
        ["", "CD4", "CD4", " CD8 "],
        np.zeros((2, 4)),
    )
    assert channel_names(sample) == ["FSC-A", "CD4", "FL2-A", "CD8"]
    assert channel_names(sample, use_markers=False) == ["FSC-A", "FL1-A", "FL2-A", "FL3-A"]


def test_sample_to_dataframe_subsample():
    events = np.arange(40, dtype=float).reshape(20, 2)
    sample = FakeSample(["FL1-A", "FL2-A"], ["CD3", ""], events, sample_id="S9")
    df = sample_to_dataframe(sample, subsample=5, seed=1)
    assert list(df.columns) == ["CD3", "FL2-A", "sample_id"]
    assert len(df) == 5
    assert (df["sample_id"] == "S9").all()
    assert df.index.is_monotonic_increasing


def test_load_config_merges_overrides(tmp_path):
    override = tmp_path / "config.json"
    override.write_text(json.dumps({"umap": {"n_neighbors": 5}, "seed": 7}))
    config = load_config(str(override))
    assert config["umap"]["n_neighbors"] == 5
    assert config["umap"]["min_dist"] == CONFIG["umap"]["min_dist"]
    assert config["seed"] == 7
    assert CONFIG["seed"] == 42
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "absent.json"))


def test_get_output_dirs(tmp_path):
    config = load_config()
    config["base_path"] = str(tmp_path)
    dirs = get_output_dirs(config)
    assert os.path.isdir(dirs["tables"])
    assert os.path.isdir(dirs["plots"])


def test_load_csv_encoding(tmp_path):
    file = tmp_path / "bom.csv"
    file.write_text("\ufeffcol1,col2\n1,2\n", encoding="utf-8")
    df = load_csv(str(file))
    assert list(df.columns) == ["col1", "col2"]
    assert df.loc[0, "col1"] == 1


def test_load_csv_with_logging_required_columns(tmp_path):
    file = tmp_path / "groups.csv"
    pd.DataFrame({"sample_id": ["S1"]}).to_csv(file, index=False)
    with pytest.raises(ValueError, match="group"):
        load_csv_with_logging(str(file), required_columns=["sample_id", "group"])


def test_save_results(tmp_path):
    path = save_results(pd.DataFrame({"a": [1]}), "out.csv", str(tmp_path / "tables"))
    assert pd.read_csv(path)["a"].tolist() == [1]


def test_sanitize_name():
    assert sanitize_name("root/Tcells/CD4+") == "root_Tcells_CD4pos"
    assert sanitize_name("CD4+/CD8-") == "CD4pos_CD8neg"
    assert sanitize_name("FL1-A") == "FL1_A"


LABELS = ["FSC-A", "SSC-A", "FL1-A", "FL2-A", "Time"]


def make_array(n=200, seed=0):
    rng = np.random.default_rng(seed)
    return np.column_stack([
        rng.uniform(20000, 80000, n),
        rng.uniform(10000, 50000, n),
        np.full(n, 100.0),
        np.full(n, 50.0),
        np.arange(n, dtype=float),
    ])


def test_load_sample_from_array():
    sample = load_sample(make_array(), sample_id="s1", channel_labels=LABELS, compensation=None)
    assert sample.id == "s1"
    assert sample.event_count == 200
    assert list(sample.pnn_labels) == LABELS


def test_load_sample_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_sample(str(tmp_path / "absent.fcs"))


def test_compensate_sample_without_embedded_spill(caplog):
    sample = load_sample(make_array(), sample_id="s1", channel_labels=LABELS, compensation=None)
    with caplog.at_level("WARNING"):
        result = compensate_sample(sample, "spill")
    assert result is sample
    assert "no embedded spillover" in caplog.text
    assert compensate_sample(sample, None) is sample


def test_compensate_sample_with_spill_string():
    sample = load_sample(make_array(), sample_id="s1", channel_labels=LABELS,
                         compensation="2,FL1-A,FL2-A,1,0.1,0,1")
    events = pd.DataFrame(sample.get_events(source="comp"), columns=LABELS)
    assert events["FL1-A"].to_numpy() == pytest.approx(100.0)
    assert events["FL2-A"].to_numpy() == pytest.approx(40.0)


@pytest.mark.parametrize("method", ["logicle", "asinh"])
def test_transform_sample_only_fluorescence(method):
    sample = load_sample(make_array(), sample_id="s1", channel_labels=LABELS, compensation=None)
    transform_sample(sample, method=method)
    raw = pd.DataFrame(sample.get_events(source="raw"), columns=LABELS)
    xform = sample_to_dataframe(sample, source="xform", sample_id_column=False)
    assert np.allclose(xform["FSC-A"], raw["FSC-A"])
    assert np.allclose(xform["Time"], raw["Time"])
    assert not np.allclose(xform["FL1-A"], raw["FL1-A"])
    assert xform["FL1-A"].max() < 10


def test_build_transform_unknown_method():
    with pytest.raises(ValueError, match="Unknown transform"):
        build_transform("log10")
    sample = load_sample(make_array(), sample_id="s1", channel_labels=LABELS, compensation=None)
    with pytest.raises(ValueError):
        transform_sample(sample, method="hyperlog")


def test_pool_samples_real_samples():
    samples = [
        load_sample(make_array(150, seed=1), sample_id="s1", channel_labels=LABELS, compensation=None),
        load_sample(make_array(80, seed=2), sample_id="s2", channel_labels=LABELS, compensation=None),
    ]
    pooled = pool_samples(samples, source="raw")
    assert len(pooled) == 230
    assert pooled["sample_id"].value_counts().to_dict() == {"s1": 150, "s2": 80}
    assert list(pooled.columns) == LABELS + ["sample_id"]
    with pytest.raises(ValueError):
        pool_samples([])


def test_dataset_fcs_dir_points_into_extracted_archive(tmp_path, fake_get):
    config = load_config()
    config["base_path"] = str(tmp_path)
    config["datasets"] = {
        "plain": {"files": [{"url": "https://example.org/a.fcs"}]},
        "zipped": {"archive": {"url": "https://example.org/files/experiment.zip"}},
    }
    data_dir = tmp_path / "data"
    assert dataset_fcs_dir("plain", config) == str(data_dir / "plain")
    assert dataset_fcs_dir("zipped", config) == str(data_dir / "zipped" / "experiment")

    fetch_dataset("zipped", config)
    fcs_dir = dataset_fcs_dir("zipped", config)
    assert fcs_dir == str(data_dir / "zipped" / "experiment" / "exp")
    assert sorted(os.listdir(fcs_dir)) == ["a.fcs", "b.FCS"]
