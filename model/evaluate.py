import logging
import os
import sys
import numpy as np
import torch
from matplotlib.figure import Figure
from sklearn.metrics import ConfusionMatrixDisplay, confusion_matrix
from torch.utils.data import DataLoader, TensorDataset
from tqdm import tqdm

# Ensure repo root is on sys.path for local imports
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from model.artifacts import choose_output_dir, save_metrics
from model.dataset import extract_features, load_label_mapping, load_split
from model.load_model import load_model
from config import BATCH_SIZE, LABELS_PATH, SPLIT_CSV_PATH

logger = logging.getLogger(__name__)


def evaluate(model, loader, device):
    # Run inference on all batches and collect predictions/labels
    model.eval()
    correct = 0
    total = 0
    all_preds = []
    all_labels = []
    with torch.no_grad():
        for x, y in tqdm(loader, desc="eval", leave=False):
            x = x.to(device)
            y = y.to(device)
            logits = model(x)
            preds = torch.argmax(logits, dim=1)
            correct += (preds == y).sum().item()
            total += x.size(0)
            all_preds.extend(preds.cpu().numpy().tolist())
            all_labels.extend(y.cpu().numpy().tolist())
    acc = correct / total if total else 0.0
    return acc, np.array(all_labels), np.array(all_preds)


def compute_metrics(y_true, y_pred, labels):
    """Accuracy plus per-category precision, recall and F1.

    ``labels`` lists category names in index order. Counts come from the
    confusion matrix (rows = true, columns = predicted). A ratio whose
    denominator is zero is reported as 0.0 and the category is listed under
    ``undefined``.
    """
    cm = confusion_matrix(y_true, y_pred, labels=list(range(len(labels))))
    total = cm.sum()
    accuracy = float(np.trace(cm) / total) if total else 0.0

    tp = cm.diagonal()
    fp = cm.sum(axis=0) - tp
    fn = cm.sum(axis=1) - tp

    precision = _safe_divide(tp, tp + fp)
    recall = _safe_divide(tp, tp + fn)
    f1 = _safe_divide(2 * precision * recall, precision + recall)

    per_class = {}
    undefined = []
    for i, label in enumerate(labels):
        if tp[i] + fp[i] == 0 or tp[i] + fn[i] == 0:
            undefined.append(label)
        per_class[label] = {
            "tp": int(tp[i]),
            "fp": int(fp[i]),
            "fn": int(fn[i]),
            "support": int(tp[i] + fn[i]),
            "precision": float(precision[i]),
            "recall": float(recall[i]),
            "f1": float(f1[i]),
        }
    if undefined:
        logger.warning(
            "Precision/recall undefined (no predicted or no actual instances) for: %s",
            ", ".join(undefined),
        )

    return {
        "accuracy": accuracy,
        "per_class": per_class,
        "confusion_matrix": cm.tolist(),
        "undefined": undefined,
    }


def _safe_divide(num, denom):
    num = np.asarray(num, dtype=float)
    denom = np.asarray(denom, dtype=float)
    return np.divide(num, denom, out=np.zeros_like(denom), where=denom != 0)


def format_metrics(metrics, title="test set"):
    lines = [f"\n{title}: accuracy = {metrics['accuracy']:.3f}"]
    lines.append(f"{'class':<12}{'precision':>10}{'recall':>10}{'f1':>10}{'support':>10}")
    for label, values in metrics["per_class"].items():
        lines.append(
            f"{label:<12}{values['precision']:>10.3f}{values['recall']:>10.3f}"
            f"{values['f1']:>10.3f}{values['support']:>10d}"
        )
    return "\n".join(lines)


def plot_confusion_matrix(cm, labels, title="Confusion matrix"):
    fig = Figure(figsize=(6, 5))
    ax = fig.add_subplot(111)
    display = ConfusionMatrixDisplay(np.asarray(cm), display_labels=labels)
    display.plot(ax=ax, cmap="Blues", colorbar=True, values_format="d")
    ax.set_title(title)
    fig.tight_layout()
    return fig


def save_confusion_matrix(cm, labels, title, output_dir, filename="confusion_matrix.png"):
    os.makedirs(output_dir, exist_ok=True)
    path = os.path.join(output_dir, filename)
    fig = plot_confusion_matrix(cm, labels, title=title)
    fig.savefig(path, dpi=150)
    return path


def main():
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    label_to_index = load_label_mapping(LABELS_PATH)
    labels_sorted = [label for label, _ in sorted(label_to_index.items(), key=lambda x: x[1])]

    # Same test files the training run held out
    test_df = load_split(SPLIT_CSV_PATH, "test")
    model, device = load_model(num_classes=len(label_to_index))
    X_test, y_test = extract_features(test_df, label_to_index, model.input_size, desc="test features")
    test_loader = DataLoader(
        TensorDataset(torch.from_numpy(X_test), torch.from_numpy(y_test)),
        batch_size=BATCH_SIZE,
        shuffle=False,
    )

    _, y_true, y_pred = evaluate(model, test_loader, device)
    metrics = compute_metrics(y_true, y_pred, labels_sorted)
    print(format_metrics(metrics))
    print("\nconfusion_matrix =")
    print(np.array(metrics["confusion_matrix"]))

    output_dir = choose_output_dir()
    if output_dir is None:
        logger.warning("No output folder selected; confusion matrix not saved.")
        return
    path = save_confusion_matrix(
        metrics["confusion_matrix"],
        labels_sorted,
        title="Confusion matrix (test)",
        output_dir=output_dir,
        filename="confusion_matrix_test.png",
    )
    logger.info("Saved %s", path)
    save_metrics({"test": metrics}, output_dir)


if __name__ == "__main__":
    main()
