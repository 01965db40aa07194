import json
import logging
import os
from functools import lru_cache

import numpy as np
import pandas as pd
from tqdm import tqdm

from config import SEED, TRAIN_FRACTION, VALIDATION_FRACTION
from preprocessing.audio_features import audio_to_image

logger = logging.getLogger(__name__)

SPLIT_NAMES = ("train", "validation", "test")


class EmptyDatasetError(RuntimeError):
    """No audio files were found for the dataset (or one of its categories)."""


def build_file_table(root, categories, extension):
    # One folder per category; every matching file gets the folder's label
    if not os.path.isdir(root):
        raise EmptyDatasetError(
            f"dataset root not found: {root}. "
            f"Expected one sub-folder per category: {', '.join(categories)}."
        )

    rows = []
    for category in categories:
        category_dir = os.path.join(root, category)
        if not os.path.isdir(category_dir):
            raise EmptyDatasetError(f"category folder not found: {category_dir}")
        files = sorted(
            name
            for name in os.listdir(category_dir)
            if name.lower().endswith(extension.lower())
        )
        if not files:
            raise EmptyDatasetError(
                f"no '{extension}' files in category folder: {category_dir}"
            )
        logger.info("Found %d files for category '%s'.", len(files), category)
        rows.extend(
            {"file_path": os.path.join(category_dir, name), "label": category}
            for name in files
        )

    return pd.DataFrame(rows, columns=["file_path", "label"])


def split_dataset(
    df,
    train_fraction=TRAIN_FRACTION,
    validation_fraction=VALIDATION_FRACTION,
    seed=SEED,
):
    """Shuffle and split a file table by label proportion.

    ``train_fraction`` of every label goes to the training split; what is left
    is divided ``validation_fraction`` / rest into validation and test. Every
    row ends up in exactly one of the three splits. Split totals are
    round(fraction * n), shared out between labels by largest remainder, so
    100 files give exactly 80/10/10. ``seed=None`` gives a different shuffle
    on every run.
    """
    for name, value in (
        ("train_fraction", train_fraction),
        ("validation_fraction", validation_fraction),
    ):
        if not 0.0 < value < 1.0:
            raise ValueError(f"{name} must be in (0, 1), got {value}")
    if df.empty:
        raise EmptyDatasetError("cannot split an empty file table")

    rng = np.random.default_rng(seed)
    counts = df["label"].value_counts().sort_index()
    n_train = _allocate(counts.to_numpy(), train_fraction)
    n_val = _allocate(counts.to_numpy() - n_train, validation_fraction)

    parts = {name: [] for name in SPLIT_NAMES}
    for (_, group), train_count, val_count in zip(
        df.groupby("label", sort=True), n_train, n_val
    ):
        shuffled = group.iloc[rng.permutation(len(group))]
        parts["train"].append(shuffled.iloc[:train_count])
        parts["validation"].append(shuffled.iloc[train_count : train_count + val_count])
        parts["test"].append(shuffled.iloc[train_count + val_count :])

    train_df, val_df, test_df = (
        _shuffle_rows(pd.concat(parts[name]), rng) for name in SPLIT_NAMES
    )
    for name, split_df in zip(SPLIT_NAMES, (train_df, val_df, test_df)):
        if split_df.empty:
            raise EmptyDatasetError(
                f"{name} split is empty; {len(df)} files "
                f"({', '.join(f'{k}={v}' for k, v in counts.items())}) are too few "
                "to split into train/validation/test"
            )
    logger.info(
        "Split sizes: train=%d validation=%d test=%d",
        len(train_df),
        len(val_df),
        len(test_df),
    )
    return train_df, val_df, test_df


def _allocate(counts, fraction):
    # Per-label share of round(fraction * total), largest remainders first
    exact = counts * fraction
    base = np.floor(exact + 1e-9).astype(int)
    target = int(np.floor(fraction * counts.sum() + 0.5))
    short = max(0, target - int(base.sum()))
    order = np.argsort(-(exact - base), kind="stable")
    base[order[:short]] += 1
    return np.minimum(base, counts)


def _shuffle_rows(df, rng):
    return df.iloc[rng.permutation(len(df))].reset_index(drop=True)


def save_splits(path, train_df, val_df, test_df):
    # Keep the split assignment so the test set can be evaluated again later
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    frames = [
        split_df.assign(split=name)
        for name, split_df in zip(SPLIT_NAMES, (train_df, val_df, test_df))
    ]
    pd.concat(frames, ignore_index=True).to_csv(path, index=False)


def load_split(path, name):
    if name not in SPLIT_NAMES:
        raise ValueError(f"unknown split '{name}', expected one of {SPLIT_NAMES}")
    df = pd.read_csv(path)
    return df[df["split"] == name].drop(columns="split").reset_index(drop=True)


def build_label_mapping(labels):
    # Map string labels to stable integer indices
    unique = sorted(set(labels))
    return {label: idx for idx, label in enumerate(unique)}


def extract_features(df, label_to_index, image_size, desc="features"):
    """Convert every file of a split into a pseudo-RGB spectrogram image.

    Returns ``X`` with shape (N, 3, height, width) and the matching int64
    label indices ``y``. The whole split is held in memory.
    """
    height, width = image_size
    X = np.zeros((len(df), 3, height, width), dtype=np.float32)
    y = np.zeros(len(df), dtype=np.int64)
    for i, row in enumerate(
        tqdm(df.itertuples(index=False), total=len(df), desc=desc, leave=False)
    ):
        X[i] = audio_to_image(row.file_path, image_size)
        y[i] = label_to_index[row.label]
    return X, y


def save_label_mapping(path, label_to_index):
    # Persist label mapping alongside the model weights
    with open(path, "w", encoding="utf-8") as f:
        json.dump(label_to_index, f, indent=2, sort_keys=True)


@lru_cache(maxsize=4)
def load_label_mapping(path):
    # Load label mapping for inference/evaluation
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return {k: int(v) for k, v in data.items()}
