"""Named PII patterns and the fragment matcher."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Sequence

# JavaScript-style flag letters accepted in pattern definitions. "g" and "u"
# carry no meaning here: matching never keeps a cursor between calls.
_FLAG_MAP = {
    "g": 0,
    "u": 0,
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}


class PatternError(ValueError):
    """Raised when a pattern definition is malformed."""


@dataclass(frozen=True)
class PIIPattern:
    """A named, compiled PII expression."""

    name: str
    regex: str
    flags: str = "g"

    @property
    def compiled(self) -> re.Pattern:
        return _compile(self.regex, self.flags)

    def search(self, text: str) -> bool:
        return self.compiled.search(text) is not None


def _re_flags(flags: str) -> int:
    value = 0
    for letter in flags or "":
        if letter not in _FLAG_MAP:
            raise PatternError(f"Unsupported pattern flag: {letter!r}")
        value |= _FLAG_MAP[letter]
    return value


def _compile(regex: str, flags: str) -> re.Pattern:
    # re caches compiled patterns, and a compiled Pattern holds no match state
    return re.compile(regex, _re_flags(flags))


DEFAULT_PATTERNS: tuple[PIIPattern, ...] = (
    PIIPattern("Email", r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", "gi"),
    PIIPattern("Phone(IN)", r"(?:\+91[-\s]?)?[6-9]\d{9}", "g"),
    PIIPattern("PAN", r"\b[A-Z]{5}\d{4}[A-Z]\b", "g"),
    PIIPattern("Aadhaar", r"\b\d{4}\s?\d{4}\s?\d{4}\b", "g"),
)


def build_patterns(definitions: Iterable[Mapping[str, Any]] | None) -> List[PIIPattern]:
    """
    Validate caller-supplied pattern definitions.

    Each definition is a mapping with ``name``, ``regex`` and optional ``flags``.
    ``None`` selects the default set; an empty list is rejected because it
    would silently redact nothing.

    Raises:
        PatternError: If a definition has the wrong shape, an unknown flag, or
            a regular expression that does not compile.
    """
    if definitions is None:
        return list(DEFAULT_PATTERNS)
    if isinstance(definitions, (str, bytes)) or not isinstance(definitions, Iterable):
        raise PatternError("Patterns must be a list of {name, regex, flags} objects")
    patterns: List[PIIPattern] = []
    for index, item in enumerate(definitions, start=1):
        if not isinstance(item, Mapping):
            raise PatternError(f"Pattern #{index} must be an object")
        name = str(item.get("name") or f"pattern_{index}").strip()
        regex = item.get("regex")
        if not isinstance(regex, str) or not regex:
            raise PatternError(f"Pattern {name!r} is missing a regex")
        flags = item.get("flags")
        flags = "g" if flags is None else str(flags)
        try:
            _compile(regex, flags)
        except re.error as error:
            raise PatternError(f"Pattern {name!r} does not compile: {error}") from error
        patterns.append(PIIPattern(name, regex, flags))
    if not patterns:
        raise PatternError("At least one pattern is required")
    return patterns


def match_fragment(text: str, patterns: Sequence[PIIPattern]) -> bool:
    """Return True if any pattern matches anywhere in ``text``."""
    return any(pattern.search(text) for pattern in patterns)
