"""Encoders that turn PCM samples into stored audio chunk payloads."""

from __future__ import annotations

import io
import wave
from abc import ABC, abstractmethod

import numpy as np

from convorec.constants import DEFAULT_BITRATE, VALID_AUDIO_FORMATS


class Encoder(ABC):
    """Encodes interleaved int16 samples into a container."""

    content_type: str = "application/octet-stream"
    extension: str = "bin"

    @abstractmethod
    def encode(self, samples: np.ndarray, sample_rate: int, channels: int) -> bytes:
        ...


class WavEncoder(Encoder):
    """16-bit PCM WAV."""

    content_type = "audio/wav"
    extension = "wav"

    def encode(self, samples: np.ndarray, sample_rate: int, channels: int) -> bytes:
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(channels)
            wf.setsampwidth(2)  # 16-bit = 2 bytes
            wf.setframerate(sample_rate)
            wf.writeframes(samples.astype(np.int16).tobytes())
        return buf.getvalue()


class OggEncoder(Encoder):
    """Ogg/Vorbis via libsndfile, quality derived from a target bitrate."""

    content_type = "audio/ogg"
    extension = "ogg"

    def __init__(self, bitrate: int = DEFAULT_BITRATE):
        if bitrate <= 0:
            raise ValueError(f"bitrate must be positive, got {bitrate}")
        self.bitrate = bitrate

    @property
    def compression_level(self) -> float:
        """Map bitrate onto libsndfile's 0 (best) .. 1 (smallest) scale."""
        # Vorbis spans roughly 32 kbps (q0) to 320 kbps (q10).
        clamped = min(max(self.bitrate, 32000), 320000)
        return round(1.0 - (clamped - 32000) / (320000 - 32000), 3)

    def encode(self, samples: np.ndarray, sample_rate: int, channels: int) -> bytes:
        import soundfile as sf

        data = samples.astype(np.int16)
        if channels > 1:
            data = data.reshape(-1, channels)

        buf = io.BytesIO()
        with sf.SoundFile(
            buf,
            mode="w",
            samplerate=sample_rate,
            channels=channels,
            format="OGG",
            subtype="VORBIS",
            compression_level=self.compression_level,
        ) as f:
            f.write(data)
        return buf.getvalue()


def get_encoder(name: str, bitrate: int = DEFAULT_BITRATE) -> Encoder:
    if name == "wav":
        return WavEncoder()
    if name == "ogg":
        return OggEncoder(bitrate)
    raise ValueError(f"Invalid audio format: {name!r}. Choose from: {', '.join(VALID_AUDIO_FORMATS)}")
