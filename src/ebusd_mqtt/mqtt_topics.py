"""
MQTT topic templates for the ebusd bridge.

A template is a flat placeholder string such as ``ebusd/%circuit/%name``:
``%`` starts a field made of letters and underscores, ``%%`` is a literal
percent sign. Templates render against a value mapping and can be matched
backwards to recover circuit/name/field from a concrete topic.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

KNOWN_FIELDS = ("circuit", "name", "field")
UNKNOWN_FIELD = len(KNOWN_FIELDS)

DEFAULT_PREFIX = "ebusd/"

_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")


class TopicTemplateError(ValueError):
    """Raised when a template string cannot be parsed under the requested rules."""


def normalize(value: str) -> str:
    """Replace every non-alphanumeric character with an underscore."""
    return _NON_ALNUM_RE.sub("_", value)


def _is_field_char(ch: str) -> bool:
    return ("a" <= ch <= "z") or ("A" <= ch <= "Z") or ch == "_"


@dataclass(frozen=True, slots=True)
class TemplatePart:
    """Literal text (index None) or a named field with its known index."""

    text: str
    index: Optional[int] = None

    @classmethod
    def literal(cls, text: str) -> "TemplatePart":
        return cls(text, None)

    @classmethod
    def field(cls, name: str) -> "TemplatePart":
        try:
            return cls(name, KNOWN_FIELDS.index(name))
        except ValueError:
            return cls(name, UNKNOWN_FIELD)

    @property
    def is_field(self) -> bool:
        return self.index is not None


@dataclass(frozen=True, slots=True)
class TopicMatch:
    """Result of matching a topic against a template; matched < 0 on failure."""

    circuit: str = ""
    name: str = ""
    field: str = ""
    matched: int = 0

    @property
    def ok(self) -> bool:
        return self.matched >= 0


class TopicTemplate:
    def __init__(self, parts: Iterable[TemplatePart] = (), *, empty_if_missing: bool = False) -> None:
        self.parts: list[TemplatePart] = list(parts)
        self.empty_if_missing = empty_if_missing

    @classmethod
    def create(
        cls,
        template_str: str,
        *,
        ensure_default: bool = True,
        only_known: bool = True,
        no_known_duplicates: bool = True,
    ) -> "TopicTemplate":
        """Parse template_str into a new template, raising TopicTemplateError if invalid."""
        template = cls()
        if not template.parse(template_str, only_known=only_known, no_known_duplicates=no_known_duplicates):
            raise TopicTemplateError(f"malformed topic template: {template_str!r}")
        if ensure_default:
            template.ensure_default()
        return template

    def copy(self) -> "TopicTemplate":
        return TopicTemplate(self.parts, empty_if_missing=self.empty_if_missing)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TopicTemplate):
            return NotImplemented
        return self.parts == other.parts and self.empty_if_missing == other.empty_if_missing

    def __repr__(self) -> str:
        return f"TopicTemplate({self.source()!r}, empty_if_missing={self.empty_if_missing})"

    def source(self) -> str:
        """Return the template in its textual form."""
        out = []
        for part in self.parts:
            out.append(f"%{part.text}" if part.is_field else part.text.replace("%", "%%"))
        return "".join(out)

    def parse(
        self,
        template_str: str,
        *,
        only_known: bool = False,
        no_known_duplicates: bool = False,
        empty_if_missing: bool = False,
    ) -> bool:
        """
        Parse template_str, replacing the current parts.

        Returns False and leaves the template untouched when only_known is set
        and an unknown field is referenced, or when no_known_duplicates is set
        and a known field appears more than once.
        """
        parts: list[TemplatePart] = []
        in_field = False
        pending: list[str] = []

        def flush(as_field: bool) -> None:
            text = "".join(pending)
            parts.append(TemplatePart.field(text) if as_field else TemplatePart.literal(text))
            pending.clear()

        # None marks the end of input so the last pending run gets flushed
        for ch in [*template_str, None]:
            if ch == "%" or ch is None:
                if in_field and not pending:
                    # %% is a plain percent sign; a lone trailing % is dropped
                    in_field = False
                    if ch is not None:
                        pending.append(ch)
                else:
                    if pending:
                        flush(in_field)
                    in_field = True
                continue
            if in_field and not _is_field_char(ch):
                if pending:
                    flush(True)
                in_field = False
            pending.append(ch)

        if only_known or no_known_duplicates:
            seen: set[int] = set()
            for part in parts:
                if not part.is_field:
                    continue
                if only_known and part.index == UNKNOWN_FIELD:
                    return False
                if no_known_duplicates and part.index < UNKNOWN_FIELD:
                    if part.index in seen:
                        return False
                    seen.add(part.index)

        self.parts = parts
        self.empty_if_missing = empty_if_missing
        return True

    def ensure_default(self) -> None:
        """Make sure the template addresses both circuit and name."""
        if not self.parts:
            self.parts.append(TemplatePart.literal(DEFAULT_PREFIX))
        elif len(self.parts) == 1 and not self.parts[0].is_field and "/" not in self.parts[0].text:
            self.parts[0] = TemplatePart.literal(self.parts[0].text + "/")
        if not self.has("circuit"):
            self.parts.append(TemplatePart.field("circuit"))
            self.parts.append(TemplatePart.literal("/"))
        if not self.has("name"):
            self.parts.append(TemplatePart.field("name"))

    def has(self, field: str) -> bool:
        return any(part.is_field and part.text == field for part in self.parts)

    def fields(self) -> list[str]:
        return [part.text for part in self.parts if part.is_field]

    def without_trailing_field(self) -> Optional["TopicTemplate"]:
        """Copy without a trailing %field and the literal before it, or None."""
        if not self.parts or not self.parts[-1].is_field or self.parts[-1].text != "field":
            return None
        parts = self.parts[:-1]
        if parts and not parts[-1].is_field:
            parts = parts[:-1]
        return TopicTemplate(parts, empty_if_missing=self.empty_if_missing)

    def render(
        self,
        values: Mapping[str, str],
        *,
        until_first_empty: bool = True,
        only_alphanumeric: bool = False,
    ) -> str:
        """
        Concatenate literals and field values.

        A missing field contributes nothing, or ends the rendering when
        until_first_empty is set (an empty value ends it as well).
        """
        out: list[str] = []
        for part in self.parts:
            if not part.is_field:
                out.append(part.text)
                continue
            value = values.get(part.text)
            if value is None or value == "":
                if until_first_empty:
                    break
                continue
            out.append(value)
        result = "".join(out)
        return normalize(result) if only_alphanumeric else result

    def is_reducible(self, values: Mapping[str, str]) -> bool:
        return all(part.text in values for part in self.parts if part.is_field)

    def reduce(self, values: Mapping[str, str], *, only_alphanumeric: bool = False) -> tuple[str, bool]:
        """
        Render against values and report whether every field was resolved.

        With empty_if_missing set, a missing or empty field collapses the whole
        result to an empty string that counts as resolved.
        """
        out: list[str] = []
        for part in self.parts:
            if not part.is_field:
                out.append(part.text)
                continue
            value = values.get(part.text)
            if value is None:
                if self.empty_if_missing:
                    return "", True
                return "".join(out), False
            if self.empty_if_missing and value == "":
                return "", True
            out.append(value)
        result = "".join(out)
        return (normalize(result) if only_alphanumeric else result), True

    def match_topic(self, remain: str) -> TopicMatch:
        """
        Match a concrete topic against this template.

        Each non-trailing field takes everything up to the text of the literal
        following it; a trailing field takes the rest, which must not contain
        another level. On failure, matched is the negated (1-based) index of
        the failing part and values extracted so far are kept.
        """
        found = ["", "", ""]
        last = 0
        count = len(self.parts)
        for idx, part in enumerate(self.parts):
            if not part.is_field:
                if not remain.startswith(part.text, last):
                    return self._match_result(found, -idx - 1)
                last += len(part.text)
                continue
            if idx + 1 < count:
                pos = remain.find(self.parts[idx + 1].text, last)
                if pos < 0:
                    rest = remain[last:]
                    if "/" not in rest and part.index < UNKNOWN_FIELD:
                        found[part.index] = rest
                    return self._match_result(found, -idx - 1)
                value = remain[last:pos]
            else:
                value = remain[last:]
                if "/" in value:
                    return self._match_result(found, -idx - 1)
            last += len(value)
            if part.index < UNKNOWN_FIELD:
                found[part.index] = value
        return self._match_result(found, count)

    @staticmethod
    def _match_result(found: list[str], matched: int) -> TopicMatch:
        return TopicMatch(circuit=found[0], name=found[1], field=found[2], matched=matched)
