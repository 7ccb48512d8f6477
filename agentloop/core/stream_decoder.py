"""
Incremental UTF-8 decoding for provider chunk streams.
"""

import codecs
from typing import Union


class StreamDecoder:
    """
    Reassembles multi-byte characters split across chunk boundaries.

    A trailing partial sequence is held back until the next chunk completes
    it. Invalid bytes become U+FFFD instead of raising, and whatever is still
    pending at ``flush()`` is emitted as U+FFFD rather than dropped.
    """

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    def decode(self, chunk: Union[bytes, str]) -> str:
        if isinstance(chunk, str):
            if not self.has_pending():
                return chunk
            # Bytes followed by text: the dangling bytes will never complete
            return self._decoder.decode(b"", final=True) + chunk
        return self._decoder.decode(chunk)

    def flush(self) -> str:
        text = self._decoder.decode(b"", final=True)
        self._decoder.reset()
        return text

    def has_pending(self) -> bool:
        buffered, _ = self._decoder.getstate()
        return bool(buffered)

    def reset(self) -> None:
        self._decoder.reset()
