import json
import logging
import os

import torch

import config
from model.dataset import save_label_mapping

logger = logging.getLogger(__name__)


def save_model(model, model_path, labels_path, label_to_index):
    # Save weights and label mapping together
    os.makedirs(os.path.dirname(model_path) or ".", exist_ok=True)
    torch.save(model.state_dict(), model_path)
    save_label_mapping(labels_path, label_to_index)


def choose_output_dir(initial_dir=None):
    """Folder for figures and metrics.

    ``config.OUTPUT_DIR`` wins when set. Otherwise a folder picker is shown;
    cancelling it (or having no display to show it on) returns None.
    """
    if config.OUTPUT_DIR:
        return config.OUTPUT_DIR

    try:
        import tkinter as tk
        from tkinter import filedialog
    except ImportError as exc:
        logger.warning("Folder picker unavailable: %s", exc)
        return None

    try:
        root = tk.Tk()
    except tk.TclError as exc:
        logger.warning("Folder picker unavailable: %s", exc)
        return None
    root.withdraw()
    try:
        selected = filedialog.askdirectory(
            title="Select folder for results",
            initialdir=initial_dir or os.getcwd(),
        )
    finally:
        root.destroy()
    return selected or None


def save_metrics(metrics, output_dir, filename="metrics.json"):
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, filename)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(metrics, f, indent=2)
    return path
