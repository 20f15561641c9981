"""Minimal POSIX-style shell lexing for static command inspection.

This is not a shell: nothing is expanded or globbed. It exists so the
guardrails can find path arguments inside an arbitrary command line.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

_DOUBLE_QUOTE_ESCAPES = frozenset({'"', "\\", "$"})


def tokenize(command: str) -> list[str]:
    """Split a command line into arguments.

    Whitespace outside quotes separates arguments. Single-quoted text is copied
    verbatim. Inside double quotes only `\\"`, `\\\\` and `\\$` are unescaped;
    any other backslash sequence is kept as written. An unterminated quote
    runs to the end of the input.
    """
    tokens: list[str] = []
    current: list[str] = []
    in_token = False
    quote: str | None = None
    i = 0
    length = len(command)

    while i < length:
        ch = command[i]
        if quote == "'":
            if ch == "'":
                quote = None
            else:
                current.append(ch)
        elif quote == '"':
            if ch == "\\" and i + 1 < length and command[i + 1] in _DOUBLE_QUOTE_ESCAPES:
                current.append(command[i + 1])
                i += 1
            elif ch == '"':
                quote = None
            else:
                current.append(ch)
        elif ch in ("'", '"'):
            quote = ch
            in_token = True
        elif ch.isspace():
            if in_token:
                tokens.append("".join(current))
                current = []
                in_token = False
        else:
            current.append(ch)
            in_token = True
        i += 1

    if in_token:
        tokens.append("".join(current))
    return tokens


def strip_quotes(value: str) -> str:
    """Remove one pair of matching surrounding quotes, if present."""
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def has_shell_expansion(value: str) -> bool:
    """True when the text contains `$` or a backtick, so its value is unknowable statically."""
    return "$" in value or "`" in value


def resolve_path(path: str, base_dir: str | Path) -> Path:
    """Resolve a shell path argument to a normalized absolute path.

    Symlinks are not followed; callers that need the real path resolve it
    themselves once they know the path exists.
    """
    raw = strip_quotes(path)
    if raw == "~" or raw.startswith("~/"):
        raw = os.path.expanduser(raw)
    candidate = Path(raw)
    if not candidate.is_absolute():
        candidate = Path(base_dir) / candidate
    return Path(os.path.normpath(str(candidate)))


def is_within(path: Path, root: Path) -> bool:
    """True when `path` equals `root` or lies beneath it."""
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


_SEGMENT_SPLIT_RE = re.compile(r"&&|\|\||[;&|\n]")
_COMMAND_WRAPPERS = frozenset({"sudo", "command", "env", "exec", "nohup", "time"})


def _is_env_assignment(token: str) -> bool:
    name, sep, _ = token.partition("=")
    return bool(sep) and name.isidentifier()


def split_commands(command: str) -> list[list[str]]:
    """Tokenize each simple command of a command line.

    Segments are separated by `;`, `&&`, `||`, `|`, `&` and newlines. Output
    redirections are cut off, and leading environment assignments and
    wrappers such as `sudo` are dropped so the first token is the program.
    """
    segments: list[list[str]] = []
    for segment in _SEGMENT_SPLIT_RE.split(command):
        tokens = tokenize(segment.split(">", 1)[0])
        while tokens and (_is_env_assignment(tokens[0]) or tokens[0] in _COMMAND_WRAPPERS):
            tokens = tokens[1:]
        if tokens:
            segments.append(tokens)
    return segments


def program_name(token: str) -> str:
    """`/usr/bin/rm` -> `rm`."""
    return token.rsplit("/", 1)[-1]


def redirect_targets(command: str) -> list[str]:
    """Raw (still quoted) targets of unquoted `>`, `>>` and `&>` redirections.

    File-descriptor duplications such as `2>&1` are not targets.
    """
    targets: list[str] = []
    quote: str | None = None
    i = 0
    length = len(command)
    while i < length:
        ch = command[i]
        if quote:
            if ch == "\\" and quote == '"' and i + 1 < length:
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            i += 1
            continue
        if ch == "\\" and i + 1 < length:
            i += 2
            continue
        if ch != ">":
            i += 1
            continue

        i += 1
        if i < length and command[i] in (">", "|"):
            i += 1
        while i < length and command[i] in (" ", "\t"):
            i += 1
        if i < length and command[i] == "&":
            i += 1
            continue

        start = i
        word_quote: str | None = None
        while i < length:
            c = command[i]
            if word_quote:
                if c == "\\" and word_quote == '"' and i + 1 < length:
                    i += 2
                    continue
                if c == word_quote:
                    word_quote = None
            elif c in ("'", '"'):
                word_quote = c
            elif c.isspace() or c in ";&|<>()":
                break
            i += 1
        if i > start:
            targets.append(command[start:i])
    return targets
