"""
Content fingerprints for query SQL.

The fingerprint identifies the *body* of a query: header directives such as
``-- name: Daily Count`` are metadata and do not contribute, and neither does
leading or trailing whitespace.

A directive line is recognized by one rule shared with
:func:`parse_directives`: ``--``, optional spaces, a known key in any case,
optional spaces, then ``:``.
"""
from __future__ import annotations

import hashlib
import re
from typing import Dict, Iterable, Optional, Tuple

SQL_DIRECTIVES: Tuple[str, ...] = ("name", "description", "tags", "private")
DEFAULT_METADATA_PREFIXES: Tuple[str, ...] = tuple(f"-- {d}:" for d in SQL_DIRECTIVES)

DIRECTIVE_RE = re.compile(r"^--\s*(%s)\s*:(.*)$" % "|".join(SQL_DIRECTIVES), re.IGNORECASE)

ALGORITHM = "sha256"
DIGEST_LENGTH = 16


def match_directive(line: str) -> Optional[Tuple[str, str]]:
    """Return ``(key, value)`` when *line* is a directive, else ``None``."""
    m = DIRECTIVE_RE.match(line.strip())
    if not m:
        return None
    return m.group(1).lower(), m.group(2).strip()


def _is_metadata(line: str, prefixes: Tuple[str, ...]) -> bool:
    if prefixes == DEFAULT_METADATA_PREFIXES:
        return match_directive(line) is not None
    return line.strip().startswith(prefixes)


def normalize(content: str, prefixes: Iterable[str] = DEFAULT_METADATA_PREFIXES) -> str:
    """Drop metadata lines and trim. Custom *prefixes* are matched literally."""
    prefixes = tuple(prefixes)
    kept = [line for line in (content or "").splitlines() if not _is_metadata(line, prefixes)]
    return "\n".join(kept).strip()


def fingerprint(content: str, prefixes: Iterable[str] = DEFAULT_METADATA_PREFIXES) -> str:
    """Return ``sha256:<16 hex chars>`` for the normalized *content*.

    Content made only of directive lines fingerprints as the empty string.
    """
    digest = hashlib.new(ALGORITHM, normalize(content, prefixes).encode("utf-8")).hexdigest()
    return f"{ALGORITHM}:{digest[:DIGEST_LENGTH]}"


def parse_directives(content: str) -> Dict[str, str]:
    """Extract header directives recognized by :data:`SQL_DIRECTIVES`.

    Only the leading comment block is inspected; the first non-comment,
    non-blank line ends the header.
    """
    found: Dict[str, str] = {}
    for line in (content or "").splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if not stripped.startswith("--"):
            break
        directive = match_directive(stripped)
        if directive and directive[0] not in found:
            found[directive[0]] = directive[1]
    return found
