# sources/audio_source.py
from abc import ABC, abstractmethod

from sources.audio_chunk import AudioWindow


class SourceUnavailable(Exception):
    pass


class AudioSource(ABC):
    @abstractmethod
    async def read_window(self, source_ref: str | None, start_ms: int, duration_ms: int) -> AudioWindow:
        """
        Return the raw samples for [start_ms, start_ms + duration_ms) of the
        referenced stream. start_ms is relative to the start of the source.
        Raise SourceUnavailable if the window cannot be produced.
        """
        pass

    async def aclose(self) -> None:
        """Release any handles held by the source"""
        return None
