import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ExecutionError, InvalidOutput, LoadError
from ..metadata import build_metadata
from ..models import Context, Finding, Language, Target, TemplateMetadata
from ..output import parse_findings
from ..process import ProcessResult, ProcessSupervisor, build_env
from ..runtime import RuntimeLocator

logger = logging.getLogger("crossfire.engines")


@dataclass(frozen=True)
class Template:
    """A loaded template. Shared read-only by every job that runs it."""
    path: str
    language: Language
    metadata: TemplateMetadata
    source: bytes
    # Parsed flows for declarative templates, empty otherwise
    body: Tuple[Any, ...] = ()

    @property
    def id(self) -> str:
        return self.metadata.id


class Engine(ABC):
    """
    One execution strategy per language.
    Subclasses set LANGUAGE and implement load_template / execute_template.
    """
    LANGUAGE: Language = None

    def __init__(self, locator: RuntimeLocator, supervisor: Optional[ProcessSupervisor] = None):
        self.locator = locator
        self.supervisor = supervisor or ProcessSupervisor()

    def name(self) -> str:
        return self.LANGUAGE.value

    def language(self) -> Language:
        return self.LANGUAGE

    def supports_file(self, path: str) -> bool:
        return Path(path).suffix.lower() in self.LANGUAGE.extensions

    def is_available(self) -> bool:
        return True

    def prepare(self, template: Template):
        """Work that must happen before the timed section (compilation)."""

    @abstractmethod
    def load_template(self, path: str) -> Template:
        pass

    @abstractmethod
    def execute_template(self, template: Template, target: Target, context: Context,
                         env: Optional[Dict[str, str]] = None,
                         cancel: Optional[threading.Event] = None) -> List[Finding]:
        pass

    def _read(self, path: str) -> bytes:
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise LoadError(path, str(e)) from e


class ProcessEngine(Engine):
    """Runs a template as a child process and reads findings from its stdout."""
    RUNTIMES: Tuple[str, ...] = ()

    def is_available(self) -> bool:
        return self.locator.is_available(self.RUNTIMES)

    def load_template(self, path: str) -> Template:
        source = self._read(path)
        metadata = build_metadata(path, self.LANGUAGE, source.decode("utf-8", errors="replace"))
        return Template(path=path, language=self.LANGUAGE, metadata=metadata, source=source)

    @abstractmethod
    def command(self, template: Template) -> List[str]:
        pass

    def execute_template(self, template: Template, target: Target, context: Context,
                         env: Optional[Dict[str, str]] = None,
                         cancel: Optional[threading.Event] = None) -> List[Finding]:
        argv = self.command(template)
        child_env = dict(self.locator.environment(self.LANGUAGE.value))
        child_env.update(env if env is not None else build_env(target, context, template.metadata))

        logger.debug(f"Running {template.id}: {' '.join(argv)}")
        result = self.supervisor.run(argv, child_env, context.timeout, cancel=cancel)
        return self.collect(result, template, target)

    def collect(self, result: ProcessResult, template: Template, target: Target) -> List[Finding]:
        try:
            findings = parse_findings(result.stdout, template.metadata, target)
        except InvalidOutput:
            if not result.ok:
                raise ExecutionError(f"exit status {result.returncode}: {result.stderr_tail()}")
            raise

        if not result.ok:
            if not findings:
                raise ExecutionError(f"exit status {result.returncode}: {result.stderr_tail()}")
            logger.warning(f"{template.id} exited with status {result.returncode} after reporting findings")
        return findings
