import asyncio
import os

import numpy as np
import soundfile as sf

from sources.audio_chunk import AudioWindow
from sources.audio_source import AudioSource, SourceUnavailable


class WavFileSource(AudioSource):
    """
    Serves windows of a WAV file as if it were the live stream.

    source_ref is the path to the file. Windows that run past the end of the
    file are padded with silence so every chunk carries exactly its nominal
    duration.
    """

    def __init__(self, default_path: str | None = None):
        self.default_path = default_path

    async def read_window(self, source_ref: str | None, start_ms: int, duration_ms: int) -> AudioWindow:
        path = source_ref or self.default_path
        if not path:
            raise SourceUnavailable("No audio source configured for session")
        return await asyncio.to_thread(self._read, path, int(start_ms), int(duration_ms))

    def _read(self, path: str, start_ms: int, duration_ms: int) -> AudioWindow:
        if duration_ms <= 0:
            raise SourceUnavailable("duration_ms must be positive")
        if start_ms < 0:
            raise SourceUnavailable("start_ms must not be negative")
        if not os.path.exists(path):
            raise SourceUnavailable(f"Audio file not found: {path}")

        try:
            with sf.SoundFile(path) as f:
                sr = f.samplerate
                total_frames = f.frames
                start_frame = int(start_ms * sr / 1000)
                target_frames = int(duration_ms * sr / 1000)

                if start_frame >= total_frames:
                    raise SourceUnavailable(
                        f"Window at {start_ms}ms starts past end of {path}"
                    )

                f.seek(start_frame)
                audio = f.read(target_frames, dtype="int16", always_2d=True)
        except sf.LibsndfileError as exc:
            raise SourceUnavailable(f"Failed to read {path}: {exc}") from exc

        if len(audio) < target_frames:
            audio = np.pad(audio, ((0, target_frames - len(audio)), (0, 0)))

        return AudioWindow(
            samples=audio,
            sample_rate=sr,
            offset_ms=start_ms,
            duration_ms=duration_ms,
        )
