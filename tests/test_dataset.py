import numpy as np
import pandas as pd
import pytest

from model import dataset as dataset_module
from model.dataset import (
    EmptyDatasetError,
    build_file_table,
    build_label_mapping,
    extract_features,
    load_label_mapping,
    load_split,
    save_label_mapping,
    save_splits,
    split_dataset,
)

CATEGORIES = ["absent", "irregular", "regular"]


def _make_tree(root, counts):
    for category, count in counts.items():
        folder = root / category
        folder.mkdir(parents=True)
        for i in range(count):
            (folder / f"{category}_{i:03d}.wav").write_bytes(b"")


def _table(counts):
    rows = [
        {"file_path": f"{label}/{i}.wav", "label": label}
        for label, count in counts.items()
        for i in range(count)
    ]
    return pd.DataFrame(rows)


def test_build_file_table(tmp_path):
    _make_tree(tmp_path, {"absent": 3, "irregular": 2, "regular": 4})
    (tmp_path / "regular" / "notes.txt").write_text("skip me")
    (tmp_path / "regular" / "LOUD.WAV").write_bytes(b"")

    df = build_file_table(str(tmp_path), CATEGORIES, ".wav")

    assert list(df.columns) == ["file_path", "label"]
    assert df["label"].value_counts().to_dict() == {"regular": 5, "absent": 3, "irregular": 2}
    assert not df["file_path"].str.endswith(".txt").any()


def test_build_file_table_missing_root(tmp_path):
    with pytest.raises(EmptyDatasetError):
        build_file_table(str(tmp_path / "nope"), CATEGORIES, ".wav")


def test_build_file_table_missing_category(tmp_path):
    _make_tree(tmp_path, {"absent": 2, "regular": 2})
    with pytest.raises(EmptyDatasetError, match="irregular"):
        build_file_table(str(tmp_path), CATEGORIES, ".wav")


def test_build_file_table_empty_category(tmp_path):
    _make_tree(tmp_path, {"absent": 2, "irregular": 0, "regular": 2})
    with pytest.raises(EmptyDatasetError, match="no '.wav' files"):
        build_file_table(str(tmp_path), CATEGORIES, ".wav")


def test_split_80_10_10():
    df = _table({"absent": 34, "irregular": 33, "regular": 33})

    train_df, val_df, test_df = split_dataset(df, seed=0)

    assert (len(train_df), len(val_df), len(test_df)) == (80, 10, 10)
    for label, count in df["label"].value_counts().items():
        assert abs((train_df["label"] == label).sum() - 0.8 * count) <= 1
        assert (val_df["label"] == label).sum() >= 3
        assert (test_df["label"] == label).sum() >= 3


def test_split_keeps_every_file_once():
    df = _table({"absent": 20, "irregular": 41, "regular": 13})

    splits = split_dataset(df, seed=3)
    paths = pd.concat([s["file_path"] for s in splits])

    assert sum(len(s) for s in splits) == len(df)
    assert not paths.duplicated().any()
    assert set(paths) == set(df["file_path"])


@pytest.mark.parametrize(
    "counts",
    [
        {"absent": 7, "irregular": 7, "regular": 7},
        {"absent": 40, "irregular": 40, "regular": 1},
        {"absent": 90, "irregular": 5, "regular": 2},
    ],
)
def test_split_small_and_imbalanced_tables(counts):
    df = _table(counts)
    total = len(df)

    train_df, val_df, test_df = split_dataset(df, seed=0)

    assert len(train_df) == int(0.8 * total + 0.5)
    assert len(train_df) + len(val_df) + len(test_df) == total
    assert not val_df.empty
    assert not test_df.empty
    for label, count in counts.items():
        in_train = (train_df["label"] == label).sum()
        assert abs(in_train - 0.8 * count) <= 1
        assert in_train + (val_df["label"] == label).sum() + (test_df["label"] == label).sum() == count


def test_split_seed_repeats():
    df = _table({"absent": 12, "irregular": 9, "regular": 15})

    first = split_dataset(df, seed=11)
    second = split_dataset(df, seed=11)

    for a, b in zip(first, second):
        assert a["file_path"].tolist() == b["file_path"].tolist()


def test_split_too_few_files():
    df = _table({"absent": 1, "irregular": 1})
    with pytest.raises(EmptyDatasetError, match="split is empty"):
        split_dataset(df, seed=0)


def test_split_rejects_bad_fraction():
    df = _table({"absent": 10, "irregular": 10, "regular": 10})
    with pytest.raises(ValueError):
        split_dataset(df, train_fraction=1.0)


def test_split_rejects_empty_table():
    with pytest.raises(EmptyDatasetError):
        split_dataset(pd.DataFrame(columns=["file_path", "label"]))


def test_save_and_load_splits(tmp_path):
    df = _table({"absent": 10, "irregular": 10, "regular": 10})
    train_df, val_df, test_df = split_dataset(df, seed=1)
    path = tmp_path / "splits.csv"

    save_splits(str(path), train_df, val_df, test_df)
    loaded = load_split(str(path), "test")

    assert list(loaded.columns) == ["file_path", "label"]
    assert sorted(loaded["file_path"]) == sorted(test_df["file_path"])
    with pytest.raises(ValueError):
        load_split(str(path), "holdout")


def test_label_mapping_roundtrip(tmp_path):
    mapping = build_label_mapping(["regular", "absent", "irregular", "absent"])
    assert mapping == {"absent": 0, "irregular": 1, "regular": 2}

    path = tmp_path / "labels.json"
    save_label_mapping(str(path), mapping)
    assert load_label_mapping(str(path)) == mapping


def test_extract_features_shapes(monkeypatch):
    seen = []

    def fake_audio_to_image(path, image_size):
        seen.append(path)
        return np.ones((3, *image_size), dtype=np.float32)

    monkeypatch.setattr(dataset_module, "audio_to_image", fake_audio_to_image)
    df = _table({"absent": 2, "irregular": 1, "regular": 1})
    mapping = build_label_mapping(CATEGORIES)

    X, y = extract_features(df, mapping, (32, 48))

    assert X.shape == (4, 3, 32, 48)
    assert y.dtype == np.int64
    assert y.tolist() == [0, 0, 1, 2]
    assert seen == df["file_path"].tolist()
