"""
Tests for incremental UTF-8 decoding.
"""

from agentloop.core.stream_decoder import StreamDecoder


class TestStreamDecoder:
    """Tests for StreamDecoder."""

    def test_str_passes_through(self):
        decoder = StreamDecoder()
        assert decoder.decode("plain text") == "plain text"

    def test_multibyte_split_across_chunks(self):
        decoder = StreamDecoder()
        data = "é".encode("utf-8")

        assert decoder.decode(data[:1]) == ""
        assert decoder.has_pending()
        assert decoder.decode(data[1:]) == "é"
        assert not decoder.has_pending()

    def test_four_byte_emoji_split_every_byte(self):
        decoder = StreamDecoder()
        data = "👋".encode("utf-8")

        out = "".join(decoder.decode(data[i:i + 1]) for i in range(len(data)))
        assert out == "👋"

    def test_dangling_sequence_flushes_as_replacement(self):
        decoder = StreamDecoder()
        decoder.decode("ok ".encode("utf-8") + "€".encode("utf-8")[:2])

        assert decoder.flush() == "�"
        assert not decoder.has_pending()

    def test_invalid_bytes_do_not_raise(self):
        decoder = StreamDecoder()
        assert decoder.decode(b"a\xffb") == "a�b"

    def test_text_after_dangling_bytes(self):
        decoder = StreamDecoder()
        decoder.decode("é".encode("utf-8")[:1])
        assert decoder.decode("next") == "�next"

    def test_reset_drops_pending(self):
        decoder = StreamDecoder()
        decoder.decode("é".encode("utf-8")[:1])
        decoder.reset()
        assert decoder.flush() == ""
