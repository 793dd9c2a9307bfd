"""
Literal search/replace editing for ``apply_diff``.

Either one explicit search/replace pair, or a diff made of blocks:

    <<<<<<< SEARCH
    old text
    =======
    new text
    >>>>>>> REPLACE

Each search text must occur exactly once in the file (as it stands after
the previous blocks). Any failing block leaves the file untouched.
"""

from __future__ import annotations

import re

from taskloop.errors import DiffApplyError, ValidationError

_BLOCK = re.compile(
    r"^<{7} SEARCH[ \t]*\r?\n(.*?)^={7}[ \t]*\r?\n(.*?)^>{7} REPLACE[ \t]*$",
    re.DOTALL | re.MULTILINE,
)


def _drop_trailing_newline(text: str) -> str:
    if text.endswith("\r\n"):
        return text[:-2]
    if text.endswith("\n"):
        return text[:-1]
    return text


def parse_blocks(diff: str) -> list[tuple[str, str]]:
    blocks = [
        (_drop_trailing_newline(m.group(1)), _drop_trailing_newline(m.group(2)))
        for m in _BLOCK.finditer(diff or "")
    ]
    if not blocks:
        raise ValidationError("diff contains no SEARCH/REPLACE blocks")
    return blocks


def apply_search_replace(content: str, search: str, replace: str) -> str:
    if not search:
        raise ValidationError("search text must not be empty")
    occurrences = content.count(search)
    if occurrences == 0:
        raise DiffApplyError("Search text not found in file")
    if occurrences > 1:
        raise DiffApplyError(f"Search text is ambiguous ({occurrences} matches)")
    return content.replace(search, replace, 1)


def apply_blocks(content: str, blocks: list[tuple[str, str]]) -> str:
    updated = content
    for index, (search, replace) in enumerate(blocks, start=1):
        try:
            updated = apply_search_replace(updated, search, replace)
        except DiffApplyError as e:
            raise DiffApplyError(f"Block {index}/{len(blocks)}: {e}") from e
    return updated
