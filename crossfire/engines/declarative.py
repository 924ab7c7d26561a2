import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..errors import LoadError
from ..extractors import RebindPolicy
from ..flows import FlowRunner, parse_flows, to_finding
from ..http_client import HttpClient
from ..models import Context, Finding, Language, Severity, Target, TemplateMetadata
from ..process import ProcessSupervisor
from ..runtime import RuntimeLocator
from .base import Engine, Template

logger = logging.getLogger("crossfire.engines.yaml")


def _list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


def _metadata(path: str, doc: Dict[str, Any]) -> TemplateMetadata:
    # Metadata may sit at the top level or under an 'info' block
    info = dict(doc)
    if isinstance(doc.get("info"), dict):
        info.update(doc["info"])
    stem = Path(path).stem

    try:
        severity = Severity.parse(info.get("severity", "medium"))
    except ValueError:
        raise LoadError(path, f"invalid severity '{info.get('severity')}'")

    tags = _list(info.get("tags"))
    if Language.YAML.value not in tags:
        tags.append(Language.YAML.value)
    cwe = info.get("cwe")
    if isinstance(cwe, list):
        cwe = ", ".join(str(c) for c in cwe)

    return TemplateMetadata(
        id=str(info.get("id") or stem),
        name=str(info.get("name") or stem),
        severity=severity,
        language=Language.YAML,
        author=str(info.get("author") or "Unknown"),
        description=str(info.get("description") or ""),
        tags=tuple(tags),
        cwe=str(cwe) if cwe is not None else None,
        references=tuple(_list(info.get("references") or info.get("reference"))),
    )


class YamlEngine(Engine):
    """Declarative templates: HTTP and raw-socket flows with matchers and extractors."""
    LANGUAGE = Language.YAML

    def __init__(self, locator: RuntimeLocator, supervisor: Optional[ProcessSupervisor] = None,
                 rebind_policy: str = RebindPolicy.LAST_WRITE_WINS.value):
        super().__init__(locator, supervisor)
        self.rebind_policy = RebindPolicy(rebind_policy)

    def load_template(self, path: str) -> Template:
        source = self._read(path)
        try:
            doc = yaml.safe_load(source)
        except yaml.YAMLError as e:
            raise LoadError(path, f"invalid YAML: {e}") from e
        if not isinstance(doc, dict):
            raise LoadError(path, "template must be a YAML mapping")

        metadata = _metadata(path, doc)
        try:
            flows = parse_flows(doc, metadata.id)
        except ValueError as e:
            raise LoadError(path, str(e)) from e
        return Template(path=path, language=Language.YAML, metadata=metadata,
                        source=source, body=flows)

    def execute_template(self, template: Template, target: Target, context: Context,
                         env: Optional[Dict[str, str]] = None,
                         cancel: Optional[threading.Event] = None) -> List[Finding]:
        client = HttpClient(timeout=context.timeout, user_agent=context.user_agent)
        runner = FlowRunner(target, context, client=client, policy=self.rebind_policy, cancel=cancel)
        findings = []
        try:
            for flow in template.body:
                if cancel is not None and cancel.is_set():
                    break
                state = runner.run(flow)
                finding = to_finding(state, template.metadata, target)
                if finding is not None:
                    findings.append(finding)
        finally:
            client.close()
        return findings
