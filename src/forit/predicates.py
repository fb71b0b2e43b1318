"""Hostname glob predicates.

Supported syntax: ``*`` matches any run of characters, ``?`` exactly one,
``[abc]``/``[a-z]`` a character class (``[!a]`` or ``[^a]`` negated),
``{web,db}*`` alternation, and ``\\`` escapes the next character.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Pattern

from .errors import PredicateError


@dataclass(frozen=True)
class HostPredicate:
    pattern: str
    regex: Pattern[str]

    @classmethod
    def compile(cls, pattern: str) -> "HostPredicate":
        if pattern == "":
            return cls(pattern, re.compile(r"(?s:.*)\Z"))
        translated = _GlobTranslator(pattern).translate()
        try:
            regex = re.compile(rf"(?s:{translated})\Z")
        except re.error as exc:
            raise PredicateError(f"invalid pattern {pattern!r}: {exc}") from None
        return cls(pattern, regex)

    def matches(self, hostname: str) -> bool:
        return self.regex.match(hostname) is not None


class _GlobTranslator:
    def __init__(self, pattern: str):
        self.pattern = pattern
        self.pos = 0

    def translate(self) -> str:
        result = self._sequence(top_level=True)
        if self.pos < len(self.pattern):
            self._fail(f"unexpected {self.pattern[self.pos]!r}")
        return result

    def _fail(self, reason: str) -> None:
        raise PredicateError(f"invalid pattern {self.pattern!r} at offset {self.pos}: {reason}")

    def _sequence(self, *, top_level: bool) -> str:
        parts: list[str] = []
        while self.pos < len(self.pattern):
            char = self.pattern[self.pos]
            if not top_level and char in ",}":
                break
            self.pos += 1
            if char == "*":
                parts.append(".*")
            elif char == "?":
                parts.append(".")
            elif char == "[":
                parts.append(self._char_class())
            elif char == "{":
                parts.append(self._alternation())
            elif char == "\\":
                if self.pos >= len(self.pattern):
                    self._fail("trailing escape")
                parts.append(re.escape(self.pattern[self.pos]))
                self.pos += 1
            else:
                parts.append(re.escape(char))
        return "".join(parts)

    def _char_class(self) -> str:
        start = self.pos - 1
        negate = False
        if self.pos < len(self.pattern) and self.pattern[self.pos] in "!^":
            negate = True
            self.pos += 1
        members: list[str] = []
        while self.pos < len(self.pattern) and self.pattern[self.pos] != "]":
            char = self.pattern[self.pos]
            if char == "\\":
                self.pos += 1
                if self.pos >= len(self.pattern):
                    break
                char = self.pattern[self.pos]
            self.pos += 1
            if (
                self.pos + 1 < len(self.pattern)
                and self.pattern[self.pos] == "-"
                and self.pattern[self.pos + 1] != "]"
            ):
                upper = self.pattern[self.pos + 1]
                if upper < char:
                    self._fail(f"bad range {char}-{upper}")
                members.append(f"{re.escape(char)}-{re.escape(upper)}")
                self.pos += 2
            else:
                members.append(re.escape(char))
        if self.pos >= len(self.pattern):
            self.pos = start
            self._fail("unterminated character class")
        self.pos += 1
        if not members:
            self.pos = start
            self._fail("empty character class")
        prefix = "^" if negate else ""
        return f"[{prefix}{''.join(members)}]"

    def _alternation(self) -> str:
        start = self.pos - 1
        options: list[str] = []
        while True:
            options.append(self._sequence(top_level=False))
            if self.pos >= len(self.pattern):
                self.pos = start
                self._fail("unterminated alternation")
            char = self.pattern[self.pos]
            self.pos += 1
            if char == "}":
                break
        return "(?:" + "|".join(options) + ")"
