from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple
from enum import Enum
from urllib.parse import urlparse
import time


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Accepts 'High', 'HIGH', 'informational', or a Severity. Raises ValueError otherwise."""
        if isinstance(value, Severity):
            return value
        text = str(value or "").strip().lower()
        if text == "informational":
            text = "info"
        return cls(text)


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFO: 0,
}


class LanguageKind(str, Enum):
    INTERPRETED = "interpreted"
    COMPILED = "compiled"
    DECLARATIVE = "declarative"


class Language(str, Enum):
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    RUBY = "ruby"
    PERL = "perl"
    PHP = "php"
    SHELL = "shell"
    RUST = "rust"
    C = "c"
    CPP = "cpp"
    JAVA = "java"
    GO = "go"
    YAML = "yaml"

    @property
    def kind(self) -> LanguageKind:
        if self in (Language.RUST, Language.C, Language.CPP, Language.JAVA, Language.GO):
            return LanguageKind.COMPILED
        if self is Language.YAML:
            return LanguageKind.DECLARATIVE
        return LanguageKind.INTERPRETED

    @property
    def extensions(self) -> Tuple[str, ...]:
        return _EXTENSIONS[self]


_EXTENSIONS = {
    Language.PYTHON: (".py",),
    Language.JAVASCRIPT: (".js", ".mjs", ".cjs"),
    Language.RUBY: (".rb",),
    Language.PERL: (".pl", ".pm"),
    Language.PHP: (".php",),
    Language.SHELL: (".sh", ".bash"),
    Language.RUST: (".rs",),
    Language.C: (".c",),
    Language.CPP: (".cpp", ".cc", ".cxx"),
    Language.JAVA: (".java",),
    Language.GO: (".go",),
    Language.YAML: (".yaml", ".yml"),
}


class JobStatus(str, Enum):
    OK = "ok"
    SKIP = "skip"
    TIMEOUT = "timeout"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Target:
    """An addressable endpoint. Immutable once scheduled."""
    host: str
    port: Optional[int] = None
    url: Optional[str] = None
    protocol: str = "http"

    @classmethod
    def parse(cls, spec: str, protocol: Optional[str] = None) -> "Target":
        spec = spec.strip()
        if "://" in spec:
            parsed = urlparse(spec)
            scheme = parsed.scheme.lower()
            return cls(host=parsed.hostname or "", port=parsed.port, url=spec.rstrip("/"),
                       protocol=protocol or scheme)
        host, port = spec, None
        # Bracketed IPv6 literals keep their colons
        if spec.startswith("["):
            host, _, rest = spec[1:].partition("]")
            if rest.startswith(":") and rest[1:].isdigit():
                port = int(rest[1:])
        elif spec.count(":") == 1:
            name, _, maybe_port = spec.partition(":")
            if maybe_port.isdigit():
                host, port = name, int(maybe_port)
        return cls(host=host, port=port, protocol=protocol or "http")

    @property
    def scheme(self) -> str:
        if self.url:
            return urlparse(self.url).scheme.lower()
        if self.protocol in ("http", "https"):
            return self.protocol
        return "https" if self.port == 443 else "http"

    def base_url(self) -> str:
        if self.url:
            return self.url.rstrip("/")
        host = f"[{self.host}]" if ":" in self.host else self.host
        if self.port is None or (self.scheme, self.port) in (("http", 80), ("https", 443)):
            return f"{self.scheme}://{host}"
        return f"{self.scheme}://{host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}" if self.port else self.host


@dataclass(frozen=True)
class Context:
    """Per-run configuration, created once per scan and shared read-only by all jobs."""
    timeout: float = 30.0
    retry_count: int = 1
    retry_delay: float = 1.0
    user_agent: str = "crossfire/1.0"
    additional_ports: Tuple[int, ...] = ()
    override_ports: Optional[Tuple[int, ...]] = None
    mode: str = "engine"
    variables: Dict[str, str] = field(default_factory=dict)

    def ports_to_scan(self) -> List[int]:
        if self.override_ports is not None:
            return list(self.override_ports)
        return sorted({80, 443, *self.additional_ports})


@dataclass(frozen=True)
class TemplateMetadata:
    id: str
    name: str
    severity: Severity
    language: Language
    author: str = "Unknown"
    description: str = ""
    tags: Tuple[str, ...] = ()
    cwe: Optional[str] = None
    references: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("template id must be non-empty")


@dataclass(frozen=True)
class Finding:
    """A detection result. Produced only by engine execution, never mutated."""
    id: str
    name: str
    severity: Severity
    description: str = ""
    evidence: Dict[str, Any] = field(default_factory=dict)
    tags: Tuple[str, ...] = ()
    cwe: Optional[str] = None
    references: Tuple[str, ...] = ()
    template_id: Optional[str] = None
    target: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("finding id must be a non-empty string")
        if not isinstance(self.severity, Severity):
            object.__setattr__(self, "severity", Severity.parse(self.severity))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "severity": self.severity.value,
            "description": self.description,
            "evidence": self.evidence,
            "tags": list(self.tags),
            "cwe": self.cwe,
            "references": list(self.references),
            "template_id": self.template_id,
            "target": self.target,
        }


@dataclass(frozen=True)
class CompiledArtifact:
    language: Language
    source_hash: str
    fingerprint: str
    executable_path: str
    # Java main class; binaries have none
    entrypoint: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.language.value, self.source_hash, self.fingerprint)


@dataclass
class Job:
    target: Target
    template: Any
    priority: int
    sequence: int

    @property
    def sort_key(self) -> Tuple[int, int]:
        # Highest priority first, then submission order
        return (-self.priority, self.sequence)


@dataclass
class JobOutcome:
    template_id: str
    target: str
    status: JobStatus
    findings: List[Finding] = field(default_factory=list)
    reason: str = ""
    warnings: List[str] = field(default_factory=list)
    attempts: int = 1
    duration: float = 0.0
    sequence: int = 0


@dataclass
class ScanResult:
    outcomes: List[JobOutcome] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    cancelled: bool = False

    @property
    def findings(self) -> List[Finding]:
        return [f for o in self.outcomes for f in o.findings]

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        return counts

    def skipped(self) -> List[JobOutcome]:
        return [o for o in self.outcomes if o.status is JobStatus.SKIP]
