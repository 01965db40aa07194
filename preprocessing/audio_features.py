import logging
import os

import librosa
import numpy as np
import soundfile as sf
from PIL import Image

from config import (
    LOG_EPSILON,
    N_FFT,
    N_MELS,
    NORMALIZE_INPUT,
    OVERLAP_LENGTH,
    WINDOW_LENGTH,
)

logger = logging.getLogger(__name__)


# Read a recording at its native sample rate, mixed down to mono
def load_audio(audio_path):
    loader_pref = os.getenv("AUDIO_LOADER", "soundfile").lower()
    if loader_pref == "librosa":
        return _load_with_librosa(audio_path)
    try:
        y, sr = sf.read(audio_path, dtype="float32", always_2d=False)
    except sf.LibsndfileError:
        # Fall back to librosa's loader if soundfile can't read the file
        logger.info("Audio load fallback to librosa for %s", audio_path)
        return _load_with_librosa(audio_path)
    if y.ndim > 1:
        y = np.mean(y, axis=1)
    logger.debug("Audio loaded via soundfile (samples=%d, sr=%d).", y.size, sr)
    return y.astype(np.float32), int(sr)


def _load_with_librosa(audio_path):
    y, sr = librosa.load(audio_path, sr=None, mono=True)
    logger.debug("Audio loaded via librosa (samples=%d, sr=%d).", y.size, sr)
    return y.astype(np.float32), int(sr)


# Log-compressed mel spectrogram: (n_mels, frames)
def compute_log_mel(
    y,
    sr,
    window_length=WINDOW_LENGTH,
    overlap_length=OVERLAP_LENGTH,
    n_fft=N_FFT,
    n_mels=N_MELS,
    eps=LOG_EPSILON,
):
    y = np.ascontiguousarray(y, dtype=np.float32)
    # Frames are not centre-padded, so short clips need at least one full frame
    if y.size < n_fft:
        y = np.pad(y, (0, n_fft - y.size), mode="constant")

    mel_spec = librosa.feature.melspectrogram(
        y=y,
        sr=sr,
        n_fft=n_fft,
        win_length=window_length,
        hop_length=window_length - overlap_length,
        window="hann",
        center=False,
        power=2.0,
        n_mels=n_mels,
        fmin=0.0,
        fmax=sr / 2,
    )
    return np.log10(mel_spec.astype(np.float64) + eps).astype(np.float32)


def spectrogram_to_image(spec, image_size, normalize=NORMALIZE_INPUT):
    """Resize a 2-D spectrogram to ``image_size`` (height, width) and stack it
    into a 3-channel, channel-first float32 array the pretrained network accepts.

    With ``normalize`` the image is shifted to zero mean and scaled to unit
    variance; a constant image (silence) becomes all zeros.
    """
    height, width = image_size
    image = Image.fromarray(np.asarray(spec, dtype=np.float32))
    image = image.resize((width, height), Image.Resampling.BILINEAR)
    resized = np.asarray(image, dtype=np.float32)
    if normalize:
        std = float(resized.std())
        if std < 1e-6:
            std = 1.0
        resized = (resized - resized.mean()) / std
    return np.stack([resized, resized, resized], axis=0)


def audio_to_image(audio_path, image_size):
    y, sr = load_audio(audio_path)
    spec = compute_log_mel(y, sr)
    return spectrogram_to_image(spec, image_size)
