import logging
import os
import sys
import numpy as np
import torch

# Make local modules importable when running from the repo root
ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from model.load_model import load_model
from model.dataset import load_label_mapping
from preprocessing.audio_features import audio_to_image
from config import LABELS_PATH

logger = logging.getLogger(__name__)


def labels():
    # Load label mapping to translate indices -> class names
    label_to_index = load_label_mapping(LABELS_PATH)
    index_to_label = {v: k for k, v in label_to_index.items()}
    return label_to_index, index_to_label


def predict(audio_path, top_k=3):
    label_to_index, index_to_label = labels()
    model, device = load_model(num_classes=len(label_to_index))

    # Same spectrogram image the network was trained on
    image = audio_to_image(audio_path, model.input_size)
    x = torch.from_numpy(image).unsqueeze(0).to(device)
    probs = model.predict_proba(x).cpu().numpy()[0]
    logger.info("Predicted %s from %s", index_to_label[int(np.argmax(probs))], audio_path)

    # Get the top k predictions
    top_k = max(1, min(top_k, len(probs)))
    top_indices = np.argsort(probs)[-top_k:][::-1]
    top_predictions = [
        {"label": index_to_label[int(i)], "confidence": float(probs[i])}
        for i in top_indices
    ]
    return {
        "top_prediction": top_predictions[0],
        "top_k": top_predictions,
    }


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    for path in sys.argv[1:]:
        result = predict(path)
        print(f"\n{path}")
        for prediction in result["top_k"]:
            print(f'• Prediction: {prediction["label"]} ({prediction["confidence"]*100:.1f}%)')
