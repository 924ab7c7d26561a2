"""
Tolerant parser for the template stdout contract.

A template prints exactly one ``{"findings": [...]}`` object. Interpreters
and compilers like to add noise around it (warnings, banners, debug prints),
so the first decodable JSON object carrying a ``findings`` list wins wherever
it sits in the stream. A bare JSON array of findings is accepted as well.
"""
import json
from typing import Any, List, Optional, Tuple

from .errors import InvalidOutput
from .models import Finding, Severity, Target, TemplateMetadata

_decoder = json.JSONDecoder()


def _locate_document(stdout: str) -> Optional[Any]:
    text = stdout.strip()
    try:
        doc = json.loads(text)
        if isinstance(doc, list) or (isinstance(doc, dict) and "findings" in doc):
            return doc
    except ValueError:
        pass

    first_array = None
    for index, char in enumerate(text):
        if char not in "{[":
            continue
        try:
            doc, _ = _decoder.raw_decode(text, index)
        except ValueError:
            continue
        if isinstance(doc, dict) and "findings" in doc:
            return doc
        if isinstance(doc, list) and first_array is None and all(isinstance(i, dict) for i in doc):
            first_array = doc
    return first_array


def _string_list(value: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise InvalidOutput(f"expected a list of strings, got {type(value).__name__}")


def _to_finding(entry: Any, metadata: TemplateMetadata, target: Optional[Target]) -> Finding:
    if not isinstance(entry, dict):
        raise InvalidOutput(f"finding entries must be objects, got {type(entry).__name__}")

    finding_id = entry.get("id") or entry.get("template_id") or metadata.id
    if not isinstance(finding_id, str):
        raise InvalidOutput("finding id must be a string")

    raw_severity = entry.get("severity")
    try:
        severity = Severity.parse(raw_severity) if raw_severity is not None else metadata.severity
    except ValueError:
        raise InvalidOutput(f"unknown severity '{raw_severity}'")

    evidence = entry.get("evidence", {})
    if evidence is None:
        evidence = {}
    if not isinstance(evidence, dict):
        evidence = {"type": "raw", "data": evidence}

    cwe = entry.get("cwe", metadata.cwe)
    if isinstance(cwe, list):
        cwe = ", ".join(str(c) for c in cwe) or None

    return Finding(
        id=finding_id,
        name=entry.get("name") or entry.get("title") or metadata.name,
        severity=severity,
        description=entry.get("description") or metadata.description,
        evidence=evidence,
        tags=_string_list(entry.get("tags"), metadata.tags),
        cwe=cwe,
        references=_string_list(entry.get("references"), metadata.references),
        template_id=metadata.id,
        target=str(target) if target is not None else None,
    )


def parse_findings(stdout: str, metadata: TemplateMetadata, target: Optional[Target] = None) -> List[Finding]:
    """
    Returns the findings in stdout. Empty output yields no findings.
    Raises InvalidOutput for non-JSON output or a malformed findings array;
    a single bad entry invalidates the whole document.
    """
    if not stdout or not stdout.strip():
        return []

    doc = _locate_document(stdout)
    if doc is None:
        raise InvalidOutput("no JSON findings document in template output")

    entries = doc["findings"] if isinstance(doc, dict) else doc
    if not isinstance(entries, list):
        raise InvalidOutput("'findings' must be an array")

    try:
        return [_to_finding(entry, metadata, target) for entry in entries]
    except ValueError as e:
        raise InvalidOutput(str(e)) from e

