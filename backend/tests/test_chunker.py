import pytest

from relaydigest.text.chunker import chunk_code_safe, chunk_text


def sentences(n: int) -> str:
    # 100 characters per sentence, no paragraph breaks
    return "".join("w" * 98 + ". " for _ in range(n))


class TestChunkText:
    def test_short_text_is_one_chunk(self):
        """Short text is one chunk"""
        text = "a" * 5_000
        assert chunk_text(text, 15_000) == [text]

    def test_forty_thousand_chars_make_three_chunks(self):
        """Forty thousand chars make three chunks"""
        text = sentences(400)
        assert len(text) == 40_000
        chunks = chunk_text(text, 15_000)
        assert len(chunks) == 3
        assert "".join(chunks) == text
        assert all(len(c) <= 15_000 for c in chunks)

    def test_prefers_paragraph_break(self):
        """Prefers paragraph break"""
        text = "a" * 750 + "\n\n" + "b" * 148 + ". " + "c" * 500
        chunks = chunk_text(text, 1_000)
        assert chunks[0] == "a" * 750 + "\n\n"
        assert "".join(chunks) == text

    def test_falls_back_to_sentence_break(self):
        """Falls back to sentence break"""
        text = "a" * 750 + ". " + "b" * 600
        chunks = chunk_text(text, 1_000)
        assert chunks[0] == "a" * 750 + ". "

    def test_hard_cut_when_break_too_early(self):
        """Hard cut when break too early"""
        text = "a" * 100 + "\n\n" + "b" * 2_000
        chunks = chunk_text(text, 1_000)
        assert len(chunks[0]) == 1_000
        assert "".join(chunks) == text

    def test_empty_and_invalid(self):
        """Test empty text and a non-positive size"""
        assert chunk_text("", 10) == [""]
        with pytest.raises(ValueError):
            chunk_text("abc", 0)

    def test_every_chunk_bounded(self):
        """Test that no chunk exceeds the size limit"""
        text = ("Lorem ipsum dolor sit amet. " * 37 + "\n\n") * 40
        chunks = chunk_text(text, 777)
        assert all(0 < len(c) <= 777 for c in chunks)
        assert "".join(chunks) == text


class TestChunkCodeSafe:
    def test_short_text_untouched(self):
        """Short text untouched"""
        assert chunk_code_safe("graph TD\nA-->B", 2_000) == ["graph TD\nA-->B"]

    def test_blocks_respect_limit_and_padding(self):
        """Blocks respect limit and padding"""
        text = "".join(f"node{i:04d} --> node{i + 1:04d} : some label text here\n" for i in range(200))
        blocks = chunk_code_safe(text, 2_000)
        assert len(blocks) > 1
        assert all(len(b) <= 2_000 for b in blocks)
        assert all(b.endswith("\n") for b in blocks[:-1])
        assert all(b.startswith("\n") for b in blocks[1:])

        lines = [ln for ln in "".join(blocks).split("\n") if ln]
        assert lines == [ln for ln in text.split("\n") if ln]

    def test_single_long_line_is_sliced(self):
        """Single long line is sliced"""
        blocks = chunk_code_safe("x" * 5_000, 2_000)
        assert all(len(b) <= 2_000 for b in blocks)
        assert "".join(blocks).replace("\n", "") == "x" * 5_000

    def test_crlf_normalized(self):
        """Test that CRLF line endings are normalized"""
        assert chunk_code_safe("a\r\nb", 2_000) == ["a\nb"]
