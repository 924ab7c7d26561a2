"""
Static metadata extraction from template comment headers.

Templates declare themselves with ``@field: value`` annotations in their
first 50 lines, behind whatever comment marker the language uses::

    # @id: redis-unauth
    # @name: Redis Unauthenticated Access
    # @severity: high
    # @tags: redis, database

Nothing here executes template code.
"""
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .errors import LoadError
from .models import Language, Severity, TemplateMetadata

HEADER_LINES = 50

_FIELD_PATTERN = r"(?m)^\s*(?:#|//!?|/\*+|\*|--|;)?\s*@{name}\s*:\s*(.+?)\s*(?:\*/)?\s*$"

# Fallback tag literals, one per language family
_TAG_PATTERNS = [
    (re.compile(r"(?:self\.)?tags\s*=\s*\[([^\]]+)\]"), "array"),
    (re.compile(r"tags\s*:\s*\[([^\]]+)\]"), "array"),
    (re.compile(r"Tags\s*:\s*\[\]string\{([^}]+)\}"), "array"),
    (re.compile(r"(?:Arrays\.asList|List\.of)\s*\(([^)]+)\)"), "array"),
    (re.compile(r"tags\s*=>\s*\[([^\]]+)\]"), "array"),
    (re.compile(r"TAGS\s*=\s*[\"']([^\"']+)[\"']"), "csv"),
]
_QUOTED = re.compile(r"[\"']([^\"']+)[\"']")


@dataclass
class ParsedHeaders:
    fields: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)

    def get(self, name: str) -> Optional[str]:
        return self.fields.get(name)


def _field(header: str, name: str) -> Optional[str]:
    match = re.search(_FIELD_PATTERN.format(name=re.escape(name)), header)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def _csv(value: str) -> List[str]:
    return [part.strip().lower() for part in value.split(",") if part.strip()]


def tags_from_code(content: str) -> List[str]:
    found: List[str] = []
    for pattern, style in _TAG_PATTERNS:
        match = pattern.search(content)
        if not match:
            continue
        values = _csv(match.group(1)) if style == "csv" else [
            v.strip().lower() for v in _QUOTED.findall(match.group(1)) if v.strip()
        ]
        for v in values:
            if v not in found:
                found.append(v)
    return found


def parse_headers(content: str) -> ParsedHeaders:
    header = "\n".join(content.splitlines()[:HEADER_LINES])
    parsed = ParsedHeaders()
    for name in ("id", "name", "author", "severity", "description", "cwe", "references", "tags"):
        value = _field(header, name)
        if value is not None:
            parsed.fields[name] = value
    if "tags" in parsed.fields:
        parsed.tags = _csv(parsed.fields["tags"])
    else:
        parsed.tags = tags_from_code(content)
    return parsed


def build_metadata(path: str, language: Language, content: str) -> TemplateMetadata:
    """Builds TemplateMetadata from comment headers, falling back to the file name."""
    parsed = parse_headers(content)
    stem = Path(path).stem

    severity = Severity.MEDIUM
    if parsed.get("severity"):
        try:
            severity = Severity.parse(parsed.get("severity"))
        except ValueError:
            raise LoadError(path, f"invalid severity '{parsed.get('severity')}'")

    tags = list(parsed.tags)
    if language.value not in tags:
        tags.append(language.value)

    references = parsed.get("references")
    return TemplateMetadata(
        id=parsed.get("id") or stem,
        name=parsed.get("name") or stem.replace("-", " ").replace("_", " "),
        severity=severity,
        language=language,
        author=parsed.get("author") or "Unknown",
        description=parsed.get("description") or f"{language.value} template: {stem}",
        tags=tuple(tags),
        cwe=parsed.get("cwe"),
        references=tuple(r.strip() for r in references.split(",") if r.strip()) if references else (),
    )
