"""Extraction of diff suggestions from review comment markdown.

A suggestion is a fenced code block whose info string starts with ``diff``::

    ```diff
    --- a/src/app.py
    +++ b/src/app.py
    @@ -1,3 +1,3 @@
     context
    -old
    +new
    ```

The first two block lines must be the ``--- a/<path>`` and ``+++ b/<path>``
file headers. Everything after them, minus leading and trailing blank lines,
is the diff body. Blocks with any other info string, malformed headers, an
empty body, or no closing fence produce nothing.
"""

from __future__ import annotations

import re

from suggestmerge.models import SuggestionEdit


_FENCE_OPEN_PATTERN = re.compile(r"^(?P<indent>[ \t]*)(?P<fence>`{3,})(?P<info>[^`]*)$")
_FENCE_CLOSE_PATTERN = re.compile(r"`{3,}")
_OLD_FILE_HEADER_PATTERN = re.compile(r"^--- a/(?P<path>.+)$")
_NEW_FILE_HEADER_PATTERN = re.compile(r"^\+\+\+ b/.+$")
_DIFF_LANGUAGE = "diff"
_HUNK_HEADER_PATTERN = re.compile(r"^@@ ", re.MULTILINE)
# Only a placement hint; the patch primitive locates hunks by their content.
_PLACEHOLDER_HUNK_HEADER = "@@ -1 +1 @@"


def parse_suggestions(comment_text: str) -> tuple[SuggestionEdit, ...]:
    lines = comment_text.replace("\r\n", "\n").split("\n")
    edits: list[SuggestionEdit] = []
    index = 0
    while index < len(lines):
        opening = _FENCE_OPEN_PATTERN.match(lines[index])
        if opening is None:
            index += 1
            continue

        block, index = _collect_block(
            lines,
            start=index + 1,
            fence_len=len(opening.group("fence")),
            indent=len(opening.group("indent")),
        )
        if block is None:
            break
        if _info_language(opening.group("info")) != _DIFF_LANGUAGE:
            continue
        edit = _edit_from_block(block)
        if edit is not None:
            edits.append(edit)
    return tuple(edits)


def render_patch(edit: SuggestionEdit) -> str:
    """Rebuild a complete single-file unified diff from an extracted edit.

    Bodies written as bare `-`/`+` lines get a placeholder hunk header.
    """
    body = edit.diff_body
    if _HUNK_HEADER_PATTERN.search(body) is None:
        body = f"{_PLACEHOLDER_HUNK_HEADER}\n{body}"
    return f"--- a/{edit.file_path}\n+++ b/{edit.file_path}\n{body}\n"


def _collect_block(
    lines: list[str], *, start: int, fence_len: int, indent: int
) -> tuple[list[str] | None, int]:
    block: list[str] = []
    for index in range(start, len(lines)):
        line = lines[index]
        stripped = line.strip()
        if _FENCE_CLOSE_PATTERN.fullmatch(stripped) and len(stripped) >= fence_len:
            return block, index + 1
        block.append(_dedent(line, indent))
    return None, len(lines)


def _dedent(line: str, indent: int) -> str:
    removable = 0
    while removable < indent and removable < len(line) and line[removable] in " \t":
        removable += 1
    return line[removable:]


def _info_language(info: str) -> str:
    words = info.strip().split()
    if not words:
        return ""
    return words[0].lower()


def _edit_from_block(block: list[str]) -> SuggestionEdit | None:
    if len(block) < 2:
        return None
    old_header = _OLD_FILE_HEADER_PATTERN.match(block[0].rstrip())
    if old_header is None or _NEW_FILE_HEADER_PATTERN.match(block[1].rstrip()) is None:
        return None
    # Headers written by `diff -u` may carry a tab-separated timestamp.
    file_path = old_header.group("path").split("\t", 1)[0].strip()
    if not file_path:
        return None

    body = block[2:]
    while body and not body[0].strip():
        body.pop(0)
    while body and not body[-1].strip():
        body.pop()
    if not body:
        return None
    return SuggestionEdit(file_path=file_path, diff_body="\n".join(body))
