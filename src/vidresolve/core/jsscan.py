"""Minimal JavaScript source scanning: balanced cuts, expression ends and identifiers.

These helpers never interpret JavaScript. They only know enough lexical
structure (strings, template literals, comments and regex literals) to avoid
counting brackets or identifiers that sit inside them.
"""

from typing import Iterator, Optional, Tuple

OPENERS = "{[("
CLOSERS = "}])"
QUOTES = "\"'`"

# A "/" after one of these starts a regex literal rather than a division.
_REGEX_PRECEDERS = set("(,=:[!&|?{};+-*%<>~^")


def _skip_quoted(text: str, index: int) -> int:
    quote = text[index]
    index += 1
    while index < len(text):
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if char == quote:
            return index + 1
        index += 1
    return len(text)


def _skip_regex(text: str, index: int) -> int:
    index += 1
    in_class = False
    while index < len(text):
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if char == "\n":
            return len(text)
        if in_class:
            if char == "]":
                in_class = False
        elif char == "[":
            in_class = True
        elif char == "/":
            index += 1
            while index < len(text) and (text[index].isalpha()):
                index += 1
            return index
        index += 1
    return len(text)


def _skip_literal(text: str, index: int, last: Optional[str]) -> Optional[Tuple[int, bool]]:
    """Return (end index, is_comment) if a literal or comment starts at `index`."""
    char = text[index]
    following = text[index + 1] if index + 1 < len(text) else ""
    if char in QUOTES:
        return _skip_quoted(text, index), False
    if char != "/":
        return None
    if following == "*":
        end = text.find("*/", index + 2)
        return (len(text) if end < 0 else end + 2), True
    if following == "/":
        end = text.find("\n", index + 2)
        return (len(text) if end < 0 else end + 1), True
    if last is None or last in _REGEX_PRECEDERS:
        return _skip_regex(text, index), False
    return None


def cut_after_js(text: str) -> Optional[str]:
    """Return the shortest prefix of `text` that closes the bracket it starts with.

    `text` must begin with `{`, `[` or `(`. Returns None if the text does not
    start with an opener or the bracket is never closed.
    """
    if not text or text[0] not in OPENERS:
        return None
    depth = 0
    index = 0
    last = None
    while index < len(text):
        skipped = _skip_literal(text, index, last)
        if skipped is not None:
            index, is_comment = skipped
            if not is_comment:
                last = '"'
            continue
        char = text[index]
        if char in OPENERS:
            depth += 1
        elif char in CLOSERS:
            depth -= 1
            if depth == 0:
                return text[:index + 1]
        if not char.isspace():
            last = char
        index += 1
    return None


def read_expression(text: str, start: int) -> str:
    """Read one expression starting at `start`, up to a top-level `;`, `,` or closer."""
    depth = 0
    index = start
    last = "="
    while index < len(text):
        skipped = _skip_literal(text, index, last)
        if skipped is not None:
            index, is_comment = skipped
            if not is_comment:
                last = '"'
            continue
        char = text[index]
        if char in OPENERS:
            depth += 1
        elif char in CLOSERS:
            if depth == 0:
                break
            depth -= 1
        elif char in ";," and depth == 0:
            break
        if not char.isspace():
            last = char
        index += 1
    return text[start:index].strip()


def iter_identifiers(source: str) -> Iterator[Tuple[str, bool]]:
    """Yield (identifier, is_property) for every identifier outside literals.

    `is_property` is True for member accesses (`x.name`) and object literal keys
    (`{name: ...}`), which never refer to a variable in scope.
    """
    index = 0
    last = None
    length = len(source)
    while index < length:
        skipped = _skip_literal(source, index, last)
        if skipped is not None:
            index, is_comment = skipped
            if not is_comment:
                last = '"'
            continue
        char = source[index]
        if char.isdigit():
            while index < length and (source[index].isalnum() or source[index] in "._"):
                index += 1
            last = "0"
            continue
        if char.isalpha() or char in "_$":
            end = index
            while end < length and (source[end].isalnum() or source[end] in "_$"):
                end += 1
            following = end
            while following < length and source[following].isspace():
                following += 1
            is_key = following < length and source[following] == ":" and last in ("{", ",")
            yield source[index:end], last == "." or is_key
            last = "a"
            index = end
            continue
        if not char.isspace():
            last = char
        index += 1
