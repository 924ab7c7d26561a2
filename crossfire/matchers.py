"""
Response matchers for declarative templates.

Every matcher is scoped to one ``part`` of the response (status, header,
body, raw) and reports the patterns that hit so they can go into evidence.
"""
import binascii
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from .http_client import ResponseWrapper

CONDITIONS = ("and", "or")
PARTS = ("status", "header", "body", "raw", "all")
SIZE_CONDITIONS = ("equal", "greater", "less")


@dataclass(frozen=True)
class Matcher:
    type: str
    values: Tuple[Any, ...]
    part: str = "body"
    condition: str = "or"
    negative: bool = False
    case_insensitive: bool = False

    def match(self, response: ResponseWrapper) -> Tuple[bool, List[str]]:
        hit, matched = self._match(response)
        if self.negative:
            return (not hit), []
        return hit, matched

    def _match(self, response: ResponseWrapper) -> Tuple[bool, List[str]]:
        if self.type == "status":
            if response.status_code is None:
                return False, []
            ok = response.status_code in self.values
            return ok, [str(response.status_code)] if ok else []

        if self.type == "size":
            size = len(_part_bytes(response, self.part))
            expected = self.values[0]
            ok = {
                "equal": size == expected,
                "greater": size > expected,
                "less": size < expected,
            }[self.condition]
            return ok, [f"size {self.condition} {expected}"] if ok else []

        if self.type == "binary":
            data = _part_bytes(response, self.part)
            results = [(bytes.hex(v), v in data) for v in self.values]
        elif self.type == "word":
            text = _part_text(response, self.part)
            if self.case_insensitive:
                text = text.lower()
                results = [(w, w.lower() in text) for w in self.values]
            else:
                results = [(w, w in text) for w in self.values]
        else:
            text = _part_text(response, self.part)
            results = [(p.pattern, p.search(text) is not None) for p in self.values]

        matched = [label for label, ok in results if ok]
        if self.condition == "and":
            return len(matched) == len(results), matched
        return bool(matched), matched


def _part_text(response: ResponseWrapper, part: str) -> str:
    if part == "status":
        return "" if response.status_code is None else str(response.status_code)
    if part == "header":
        return response.header_text
    if part in ("raw", "all"):
        return response.raw_text
    return response.text


def _part_bytes(response: ResponseWrapper, part: str) -> bytes:
    if part == "body":
        return response.body
    return _part_text(response, part).encode("utf-8")


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def parse_matcher(raw: Dict[str, Any]) -> Matcher:
    """Builds a Matcher from its YAML mapping. Raises ValueError on a malformed definition."""
    if not isinstance(raw, dict):
        raise ValueError("matcher must be a mapping")
    kind = str(raw.get("type", "")).lower()
    part = str(raw.get("part", "status" if kind == "status" else "body")).lower()
    if part not in PARTS:
        raise ValueError(f"unknown matcher part '{part}'")
    negative = bool(raw.get("negative", False))

    if kind == "status":
        try:
            codes = tuple(int(c) for c in _as_list(raw.get("status")))
        except (TypeError, ValueError):
            raise ValueError("status matcher needs integer status codes")
        if not codes:
            raise ValueError("status matcher needs at least one status code")
        return Matcher("status", codes, part="status", negative=negative)

    if kind == "size":
        condition = str(raw.get("condition", "equal")).lower()
        if condition not in SIZE_CONDITIONS:
            raise ValueError(f"unknown size condition '{condition}'")
        try:
            size = int(raw["size"])
        except (KeyError, TypeError, ValueError):
            raise ValueError("size matcher needs an integer 'size'")
        return Matcher("size", (size,), part=part, condition=condition, negative=negative)

    condition = str(raw.get("condition", "or")).lower()
    if condition not in CONDITIONS:
        raise ValueError(f"unknown matcher condition '{condition}'")

    if kind == "word":
        words = tuple(str(w) for w in _as_list(raw.get("words")))
        if not words:
            raise ValueError("word matcher needs at least one word")
        return Matcher("word", words, part=part, condition=condition, negative=negative,
                       case_insensitive=bool(raw.get("case-insensitive", False)))

    if kind == "regex":
        flags = re.IGNORECASE if raw.get("case-insensitive") else 0
        patterns = []
        for pattern in _as_list(raw.get("regex")):
            try:
                patterns.append(re.compile(str(pattern), flags))
            except re.error as e:
                raise ValueError(f"invalid regex '{pattern}': {e}")
        if not patterns:
            raise ValueError("regex matcher needs at least one pattern")
        return Matcher("regex", tuple(patterns), part=part, condition=condition, negative=negative)

    if kind == "binary":
        chunks = []
        for value in _as_list(raw.get("binary")):
            try:
                chunks.append(binascii.unhexlify(str(value).replace(" ", "")))
            except (binascii.Error, ValueError):
                raise ValueError(f"invalid hex pattern '{value}'")
        if not chunks:
            raise ValueError("binary matcher needs at least one hex pattern")
        return Matcher("binary", tuple(chunks), part=part, condition=condition, negative=negative)

    raise ValueError(f"unknown matcher type '{kind}'")


def evaluate(matchers: Tuple[Matcher, ...], condition: str,
             response: ResponseWrapper) -> Tuple[bool, List[str]]:
    """
    Combines matchers with the step's matchers-condition. No matchers means
    any obtained response counts as a match.
    """
    if not matchers:
        return True, []

    matched: List[str] = []
    verdicts = []
    for matcher in matchers:
        ok, hits = matcher.match(response)
        verdicts.append(ok)
        if ok:
            matched.extend(hits)
        elif condition == "and":
            return False, []

    if condition == "and":
        return all(verdicts), matched
    return any(verdicts), matched
