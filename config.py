import os

import numpy as np

MODEL_PATH = "artifacts/fhr_net.pt"
LABELS_PATH = MODEL_PATH + ".labels.json"
SPLIT_CSV_PATH = "artifacts/splits.csv"
DATASET_ROOT = os.getenv("FHR_DATASET_ROOT", "data/fhr")

# Folder for confusion matrices; unset -> ask with a folder picker
OUTPUT_DIR = os.getenv("FHR_OUTPUT_DIR")

# One sub-folder per category under DATASET_ROOT
CATEGORIES = ["absent", "irregular", "regular"]
AUDIO_EXTENSION = ".wav"

# Mel spectrogram analysis
WINDOW_LENGTH = 256
OVERLAP_LENGTH = 128
N_FFT = 512
N_MELS = 96
LOG_EPSILON = float(np.finfo(np.float64).eps)
# Standardise each image to zero mean, unit variance before the network
NORMALIZE_INPUT = True

# 80% train, remaining 20% halved into validation/test
TRAIN_FRACTION = 0.8
VALIDATION_FRACTION = 0.5
SEED = 67

# Transfer learning
BACKBONE = "googlenet"
PRETRAINED = True
FREEZE_BACKBONE = False
HEAD_LR_FACTOR = 10.0
BACKBONE_LR_FACTOR = 1.0

BATCH_SIZE = 32
LEARNING_RATE = 1e-3
MOMENTUM = 0.9
WEIGHT_DECAY = 1e-4
EPOCHS = 10
EARLY_STOPPING_PATIENCE = None
