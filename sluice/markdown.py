"""Finding places where streamed markdown can be cut without breaking it."""

import re

_FENCE_RE = re.compile(r"`{3,}|~{3,}")


def code_blocks(content: str) -> list[tuple[int, int]]:
    """Return (start, end) spans of fenced code blocks.

    A fence closes the most recent open fence when it starts with the same
    characters (so ```` closes ```). A fence still open at the end of the
    text is treated as a block running to the end.
    """
    blocks: list[tuple[int, int]] = []
    open_fences: list[tuple[int, str]] = []
    for match in _FENCE_RE.finditer(content):
        fence = match.group()
        if open_fences and fence.startswith(open_fences[-1][1]):
            start, _ = open_fences.pop()
            blocks.append((start, match.end()))
        else:
            open_fences.append((match.start(), fence))
    if open_fences:
        blocks.append((open_fences[0][0], len(content)))
    return blocks


def find_last_safe_split_point(content: str) -> int:
    """Return the index of the last point where ``content`` may be split.

    ``len(content)`` means "do not split". If the text ends inside (or right
    after) a code block, the split goes just before that block, unless the
    block starts at 0. Otherwise the split goes after the last paragraph
    break (``\\n\\n``) that is not inside a code block.
    """
    n = len(content)
    blocks = code_blocks(content)

    for start, end in blocks:
        if start <= n <= end:
            return n if start == 0 else start

    search = n
    while search > 0:
        idx = content.rfind("\n\n", 0, search + 2)
        if idx == -1:
            break
        point = idx + 2
        if not any(start < point < end for start, end in blocks):
            return point
        search = idx - 1
    return n
