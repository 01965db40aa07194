import copy
import logging
import os
import random
import sys
import numpy as np
import torch
from torch.utils.data import DataLoader, TensorDataset
from tqdm import tqdm

# Ensure repo root is on sys.path for local imports
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from model.artifacts import choose_output_dir, save_metrics, save_model
from model.dataset import (
    build_file_table,
    build_label_mapping,
    extract_features,
    save_splits,
    split_dataset,
)
from model.evaluate import compute_metrics, evaluate, format_metrics, save_confusion_matrix
from model.network import FhrTransferNet, parameter_groups
from config import (
    AUDIO_EXTENSION,
    BACKBONE,
    BACKBONE_LR_FACTOR,
    BATCH_SIZE,
    CATEGORIES,
    DATASET_ROOT,
    EARLY_STOPPING_PATIENCE,
    EPOCHS,
    FREEZE_BACKBONE,
    HEAD_LR_FACTOR,
    LABELS_PATH,
    LEARNING_RATE,
    MODEL_PATH,
    MOMENTUM,
    PRETRAINED,
    SEED,
    SPLIT_CSV_PATH,
    TRAIN_FRACTION,
    VALIDATION_FRACTION,
    WEIGHT_DECAY,
)

logger = logging.getLogger(__name__)


def set_seed(seed):
    # Make results more reproducible across runs
    if seed is None:
        return
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    torch.cuda.manual_seed_all(seed)


def build_optimizer(
    model,
    lr=LEARNING_RATE,
    momentum=MOMENTUM,
    weight_decay=WEIGHT_DECAY,
    head_lr_factor=HEAD_LR_FACTOR,
    backbone_lr_factor=BACKBONE_LR_FACTOR,
):
    # SGD with momentum; the replaced head gets a larger learning rate
    groups = parameter_groups(
        model,
        lr,
        head_lr_factor=head_lr_factor,
        backbone_lr_factor=backbone_lr_factor,
    )
    return torch.optim.SGD(groups, lr=lr, momentum=momentum, weight_decay=weight_decay)


def make_loader(X, y, batch_size=BATCH_SIZE, shuffle=False):
    dataset = TensorDataset(torch.from_numpy(X), torch.from_numpy(y))
    return DataLoader(dataset, batch_size=batch_size, shuffle=shuffle)


def train_epoch(model, loader, optimizer, criterion, device):
    # One full pass over the training data
    model.train()
    total_loss = 0.0
    correct = 0
    total = 0
    for x, y in tqdm(loader, desc="train", leave=False):
        x = x.to(device)
        y = y.to(device)
        optimizer.zero_grad()
        logits = model(x)
        loss = criterion(logits, y)
        loss.backward()
        optimizer.step()

        total_loss += loss.item() * x.size(0)
        preds = torch.argmax(logits, dim=1)
        correct += (preds == y).sum().item()
        total += x.size(0)
    return total_loss / total, correct / total


def eval_epoch(model, loader, criterion, device):
    # One full pass over the validation data
    model.eval()
    total_loss = 0.0
    correct = 0
    total = 0
    with torch.no_grad():
        for x, y in tqdm(loader, desc="val", leave=False):
            x = x.to(device)
            y = y.to(device)
            logits = model(x)
            loss = criterion(logits, y)
            total_loss += loss.item() * x.size(0)
            preds = torch.argmax(logits, dim=1)
            correct += (preds == y).sum().item()
            total += x.size(0)
    return total_loss / total, correct / total


def fit(
    model,
    train_loader,
    val_loader,
    optimizer,
    criterion,
    device,
    epochs=EPOCHS,
    early_stopping_patience=EARLY_STOPPING_PATIENCE,
):
    """Train for ``epochs`` passes, checking the validation split after each.

    The weights with the best validation accuracy are loaded back into
    ``model`` before returning. Returns the per-epoch history.
    """
    history = {"train_loss": [], "train_acc": [], "val_loss": [], "val_acc": []}
    best_acc = -1.0
    best_state = None
    best_loss = float("inf")
    patience = 0
    for epoch in range(1, epochs + 1):
        train_loss, train_acc = train_epoch(
            model, train_loader, optimizer, criterion, device
        )
        val_loss, val_acc = eval_epoch(model, val_loader, criterion, device)
        history["train_loss"].append(train_loss)
        history["train_acc"].append(train_acc)
        history["val_loss"].append(val_loss)
        history["val_acc"].append(val_acc)
        logger.info(
            "epoch=%d/%d train_loss=%.4f train_acc=%.3f val_loss=%.4f val_acc=%.3f",
            epoch,
            epochs,
            train_loss,
            train_acc,
            val_loss,
            val_acc,
        )
        if val_acc > best_acc:
            best_acc = val_acc
            best_state = copy.deepcopy(model.state_dict())

        if early_stopping_patience is None:
            continue
        if val_loss < best_loss - 1e-4:
            best_loss = val_loss
            patience = 0
        else:
            patience += 1
            if patience >= early_stopping_patience:
                logger.info("early stopping triggered after epoch %d", epoch)
                break

    if best_state is not None:
        model.load_state_dict(best_state)
    history["best_val_acc"] = best_acc
    return history


def main():
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    set_seed(SEED)

    # Labelled file list from one folder per category, then 80/10/10 split
    df = build_file_table(DATASET_ROOT, CATEGORIES, AUDIO_EXTENSION)
    train_df, val_df, test_df = split_dataset(
        df,
        train_fraction=TRAIN_FRACTION,
        validation_fraction=VALIDATION_FRACTION,
        seed=SEED,
    )
    save_splits(SPLIT_CSV_PATH, train_df, val_df, test_df)
    label_to_index = build_label_mapping(CATEGORIES)
    labels_sorted = [label for label, _ in sorted(label_to_index.items(), key=lambda x: x[1])]

    # Model and device setup
    device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    model = FhrTransferNet(
        num_classes=len(label_to_index),
        backbone=BACKBONE,
        pretrained=PRETRAINED,
        freeze_backbone=FREEZE_BACKBONE,
    ).to(device)

    # Spectrogram images for every split, all held in memory
    X_train, y_train = extract_features(train_df, label_to_index, model.input_size, desc="train features")
    X_val, y_val = extract_features(val_df, label_to_index, model.input_size, desc="val features")
    X_test, y_test = extract_features(test_df, label_to_index, model.input_size, desc="test features")

    train_loader = make_loader(X_train, y_train, shuffle=True)
    val_loader = make_loader(X_val, y_val)
    test_loader = make_loader(X_test, y_test)

    criterion = torch.nn.CrossEntropyLoss()
    optimizer = build_optimizer(model)
    history = fit(
        model,
        train_loader,
        val_loader,
        optimizer,
        criterion,
        device,
        epochs=EPOCHS,
        early_stopping_patience=EARLY_STOPPING_PATIENCE,
    )
    logger.info("best_val_acc=%.3f", history["best_val_acc"])

    save_model(model, MODEL_PATH, LABELS_PATH, label_to_index)
    logger.info("Saved model to %s", MODEL_PATH)

    results = {}
    for split_name, loader in (("validation", val_loader), ("test", test_loader)):
        _, y_true, y_pred = evaluate(model, loader, device)
        metrics = compute_metrics(y_true, y_pred, labels_sorted)
        print(format_metrics(metrics, title=f"{split_name} set"))
        results[split_name] = metrics

    output_dir = choose_output_dir()
    if output_dir is None:
        logger.warning("No output folder selected; confusion matrices not saved.")
        return
    for split_name, metrics in results.items():
        path = save_confusion_matrix(
            metrics["confusion_matrix"],
            labels_sorted,
            title=f"Confusion matrix ({split_name})",
            output_dir=output_dir,
            filename=f"confusion_matrix_{split_name}.png",
        )
        logger.info("Saved %s", path)
    save_metrics({**results, "history": history}, output_dir)


if __name__ == "__main__":
    main()
