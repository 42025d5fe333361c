import os
import tempfile
import unittest
from pathlib import Path
import sys

import numpy as np
import soundfile as sf

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from sources.audio_source import SourceUnavailable
from sources.wav_file_source import WavFileSource


class TestWavFileSource(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self._tmp.name, "stream.wav")
        # 3 seconds of mono 8kHz where each sample holds its second index.
        samples = np.repeat(np.arange(3, dtype=np.int16), 8000)
        sf.write(self.path, samples, 8000, subtype="PCM_16")
        self.source = WavFileSource(default_path=self.path)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    async def test_reads_requested_window(self) -> None:
        window = await self.source.read_window(None, 1000, 1000)

        self.assertEqual(window.sample_rate, 8000)
        self.assertEqual(window.frames, 8000)
        self.assertEqual(window.channels, 1)
        self.assertEqual(window.offset_ms, 1000)
        self.assertTrue(np.all(window.samples == 1))

    async def test_pads_window_past_end_of_file(self) -> None:
        window = await self.source.read_window(self.path, 2500, 1000)

        self.assertEqual(window.frames, 8000)
        self.assertEqual(window.duration_ms, 1000)
        self.assertTrue(np.all(window.samples[:4000] == 2))
        self.assertTrue(np.all(window.samples[4000:] == 0))

    async def test_window_bytes_are_wav(self) -> None:
        window = await self.source.read_window(None, 0, 500)
        self.assertTrue(window.to_wav_bytes().startswith(b"RIFF"))

    async def test_unavailable_windows(self) -> None:
        with self.assertRaises(SourceUnavailable):
            await self.source.read_window(None, 5000, 1000)
        with self.assertRaises(SourceUnavailable):
            await self.source.read_window(os.path.join(self._tmp.name, "missing.wav"), 0, 1000)
        with self.assertRaises(SourceUnavailable):
            await self.source.read_window(None, 0, 0)
        with self.assertRaises(SourceUnavailable):
            await WavFileSource().read_window(None, 0, 1000)


if __name__ == "__main__":
    unittest.main()
