from __future__ import annotations

import fnmatch
import posixpath
import re
from functools import lru_cache

from stagegate.errors import ConfigurationError

WILDCARD_CHARS = "*?["


def literal_prefix(pattern: str) -> str:
    for index, char in enumerate(pattern):
        if char in WILDCARD_CHARS:
            return pattern[:index]
    return pattern


def specificity(pattern: str) -> int:
    """Length of the fixed prefix; a fully literal pattern ranks above any wildcard."""
    prefix = literal_prefix(pattern)
    if prefix == pattern:
        return len(pattern) + 1
    return len(prefix)


def validate_glob(pattern: str, *, path: bool = False) -> None:
    if not isinstance(pattern, str) or not pattern.strip():
        raise ConfigurationError("Glob pattern must be a non-empty string.")
    if "***" in pattern:
        raise ConfigurationError(f"Malformed glob '{pattern}': '***' is not a valid wildcard.")
    index = 0
    while index < len(pattern):
        if pattern[index] == "[":
            closing = pattern.find("]", index + 2)
            if closing == -1:
                raise ConfigurationError(f"Malformed glob '{pattern}': unclosed '['.")
            index = closing
        index += 1
    if path:
        if pattern.startswith("/") or re.match(r"^[A-Za-z]:[\\/]", pattern):
            raise ConfigurationError(f"Path glob '{pattern}' must be workspace-relative.")
        if ".." in pattern.replace("\\", "/").split("/"):
            raise ConfigurationError(f"Path glob '{pattern}' must not contain '..' segments.")


def normalize_path(path: str) -> str | None:
    """Return a workspace-relative posix path, or None when it escapes the workspace."""
    candidate = path.replace("\\", "/").strip()
    if not candidate or candidate.startswith("/") or re.match(r"^[A-Za-z]:/", candidate):
        return None
    normalized = posixpath.normpath(candidate)
    if normalized == ".." or normalized.startswith("../"):
        return None
    return normalized


def normalize_command(command: str) -> str:
    return " ".join(command.split())


@lru_cache(maxsize=512)
def _compile_path_glob(pattern: str) -> re.Pattern[str]:
    parts: list[str] = []
    index = 0
    length = len(pattern)
    while index < length:
        char = pattern[index]
        if pattern.startswith("**/", index):
            parts.append("(?:.*/)?")
            index += 3
            continue
        if pattern.startswith("**", index):
            parts.append(".*")
            index += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char == "?":
            parts.append("[^/]")
        elif char == "[":
            closing = pattern.find("]", index + 2)
            body = pattern[index + 1 : closing]
            if body.startswith("!"):
                body = "^" + body[1:]
            parts.append(f"[{body.replace(chr(92), chr(92) * 2)}]")
            index = closing
        else:
            parts.append(re.escape(char))
        index += 1
    return re.compile("".join(parts) + r"\Z")


def match_path(pattern: str, path: str) -> bool:
    return _compile_path_glob(pattern.replace("\\", "/")).match(path) is not None


def match_command(pattern: str, command: str) -> bool:
    return fnmatch.fnmatchcase(normalize_command(command), normalize_command(pattern))


def globs_overlap(first: str, second: str) -> bool:
    """True when one path glob, read as a literal path, is matched by the other.

    Catches identical globs and nested ones (``src/*.py`` inside ``src/**``);
    disjoint siblings such as ``src/*.py`` and ``src/*.md`` do not overlap.
    """
    return first == second or match_path(first, second) or match_path(second, first)
