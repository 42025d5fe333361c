# sources/audio_chunk.py
from dataclasses import dataclass
import io

import numpy as np
import soundfile as sf


@dataclass
class AudioWindow:
    samples: np.ndarray      # int16, shape (frames, channels)
    sample_rate: int
    offset_ms: int           # offset of the window inside the source
    duration_ms: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1]) if self.samples.ndim == 2 else 1

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    def to_wav_bytes(self) -> bytes:
        buf = io.BytesIO()
        sf.write(buf, self.samples, self.sample_rate, format="WAV", subtype="PCM_16")
        return buf.getvalue()

    @classmethod
    def silence(cls, sample_rate: int, channels: int, offset_ms: int, duration_ms: int) -> "AudioWindow":
        frames = int(sample_rate * duration_ms / 1000)
        return cls(
            samples=np.zeros((frames, channels), dtype=np.int16),
            sample_rate=sample_rate,
            offset_ms=offset_ms,
            duration_ms=duration_ms,
        )
