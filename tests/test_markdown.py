"""Tests for sluice.markdown: safe split points in streamed markdown."""

from sluice.markdown import code_blocks, find_last_safe_split_point


class TestCodeBlocks:
    def test_closed_block(self):
        text = "a\n```py\nx = 1\n```\nb"
        assert code_blocks(text) == [(2, text.index("```\nb") + 3)]

    def test_unterminated_block_runs_to_end(self):
        text = "intro\n```\ncode"
        assert code_blocks(text) == [(6, len(text))]

    def test_longer_fence_closes_shorter(self):
        text = "```\na\n````"
        assert code_blocks(text) == [(0, len(text))]

    def test_tilde_fences(self):
        text = "~~~\na\n~~~"
        assert code_blocks(text) == [(0, len(text))]

    def test_no_blocks(self):
        assert code_blocks("plain text") == []


class TestFindLastSafeSplitPoint:
    def test_no_paragraph_break(self):
        assert find_last_safe_split_point("hello world") == len("hello world")

    def test_after_last_paragraph_break(self):
        text = "one\n\ntwo\n\nthree"
        assert find_last_safe_split_point(text) == text.rindex("\n\n") + 2

    def test_break_at_end(self):
        text = "para\n\n"
        assert find_last_safe_split_point(text) == len(text)

    def test_inside_open_block_splits_before_it(self):
        text = "intro\n\n```py\nx = 1\n\ny = 2"
        assert find_last_safe_split_point(text) == text.index("```")

    def test_ending_right_after_block_splits_before_it(self):
        text = "intro\n```\ncode\n```"
        assert find_last_safe_split_point(text) == text.index("```")

    def test_block_at_start_means_no_split(self):
        text = "```\nx\n\ny"
        assert find_last_safe_split_point(text) == len(text)

    def test_break_inside_closed_block_skipped(self):
        text = "start\n\n```\na\n\nb\n```\nafter"
        assert find_last_safe_split_point(text) == text.index("```")

    def test_empty(self):
        assert find_last_safe_split_point("") == 0
