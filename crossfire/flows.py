"""
Multi-step declarative flows.

A flow is an ordered list of steps. Each step sends one HTTP request set or
one raw network exchange, evaluates its matchers and, on a match, runs its
extractors so later steps can reference the captured values as ``{{name}}``.

Step lifecycle: PENDING -> RUNNING -> MATCHED_SUCCESS | MATCHED_FAIL | ERROR.
A failed or errored non-optional step ends the flow without a finding.
"""
import codecs
import logging
import re
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from .errors import RequestFailed, TransientDialError
from .extractors import Extractor, RebindError, RebindPolicy, bind, parse_extractor
from .http_client import HttpClient, ResponseWrapper, exchange
from .matchers import CONDITIONS, Matcher, evaluate, parse_matcher
from .models import Context, Finding, Target, TemplateMetadata

logger = logging.getLogger("crossfire.flows")

VAR_PATTERN = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")
EXCERPT = 512


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    MATCHED_SUCCESS = "matched_success"
    MATCHED_FAIL = "matched_fail"
    ERROR = "error"


class UnresolvedVariable(Exception):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"unresolved variable '{name}'")


@dataclass(frozen=True)
class Step:
    id: str
    kind: str  # http | network
    request: Dict[str, Any]
    matchers: Tuple[Matcher, ...] = ()
    condition: str = "or"
    extractors: Tuple[Extractor, ...] = ()
    optional: bool = False


@dataclass(frozen=True)
class Flow:
    id: str
    steps: Tuple[Step, ...]


@dataclass
class StepRecord:
    state: StepState = StepState.PENDING
    reason: str = ""
    request: Dict[str, Any] = field(default_factory=dict)
    response: Optional[ResponseWrapper] = None
    matched: List[str] = field(default_factory=list)
    extracted: Dict[str, str] = field(default_factory=dict)


class FlowState:
    """Per-execution state: step records and the variable map. Never shared between runs."""

    def __init__(self, flow: Flow):
        self.flow = flow
        self.variables: Dict[str, str] = {}
        self.records: Dict[str, StepRecord] = {s.id: StepRecord() for s in flow.steps}

    def state_of(self, step_id: str) -> StepState:
        return self.records[step_id].state

    def succeeded(self) -> bool:
        return all(
            self.records[s.id].state == StepState.MATCHED_SUCCESS
            for s in self.flow.steps if not s.optional
        )


# --- Parsing ---

def _parse_step(raw: Dict[str, Any], index: int, default_matchers: Tuple[Matcher, ...] = (),
                default_condition: str = "or") -> Step:
    if not isinstance(raw, dict):
        raise ValueError(f"step {index + 1} must be a mapping")
    kinds = [k for k in ("http", "network") if k in raw]
    if len(kinds) != 1:
        raise ValueError(f"step {index + 1} needs exactly one of 'http' or 'network'")
    kind = kinds[0]
    request = raw[kind]
    if not isinstance(request, dict):
        raise ValueError(f"step {index + 1}: '{kind}' must be a mapping")

    if "matchers" in raw:
        matchers = tuple(parse_matcher(m) for m in raw.get("matchers") or [])
    else:
        matchers = default_matchers
    condition = str(raw.get("matchers-condition", default_condition)).lower()
    if condition not in CONDITIONS:
        raise ValueError(f"unknown matchers-condition '{condition}'")

    return Step(
        id=str(raw.get("id", f"step-{index + 1}")),
        kind=kind,
        request=dict(request),
        matchers=matchers,
        condition=condition,
        extractors=tuple(parse_extractor(e) for e in raw.get("extractors") or []),
        optional=bool(raw.get("optional", False)),
    )


def parse_flows(doc: Dict[str, Any], template_id: str) -> Tuple[Flow, ...]:
    """
    Reads ``flow:`` (one ordered flow) and the single-request ``http:`` /
    ``network:`` lists, each entry of which becomes its own one-step flow.
    Raises ValueError on any malformed step, matcher or extractor.
    """
    flows: List[Flow] = []

    steps = doc.get("flow")
    if steps is not None:
        if not isinstance(steps, list) or not steps:
            raise ValueError("'flow' must be a non-empty list of steps")
        parsed = tuple(_parse_step(s, i) for i, s in enumerate(steps))
        ids = [s.id for s in parsed]
        if len(set(ids)) != len(ids):
            raise ValueError("step ids must be unique within a flow")
        flows.append(Flow(id=template_id, steps=parsed))

    default_matchers = tuple(parse_matcher(m) for m in doc.get("matchers") or [])
    default_condition = str(doc.get("matchers-condition", "or")).lower()
    for kind in ("http", "network"):
        entries = doc.get(kind)
        if entries is None:
            continue
        if isinstance(entries, dict):
            entries = [entries]
        if not isinstance(entries, list):
            raise ValueError(f"'{kind}' must be a list of requests")
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ValueError(f"{kind} request {i + 1} must be a mapping")
            request = {k: v for k, v in entry.items()
                       if k not in ("matchers", "matchers-condition", "extractors")}
            raw = {kind: request, "id": f"{kind}-{i + 1}"}
            for key in ("matchers", "matchers-condition", "extractors"):
                if key in entry:
                    raw[key] = entry[key]
            step = _parse_step(raw, i, default_matchers, default_condition)
            flows.append(Flow(id=f"{template_id}/{kind}-{i + 1}", steps=(step,)))

    if not flows:
        raise ValueError("template must define 'flow', 'http' or 'network'")
    return tuple(flows)


# --- Execution ---

def _unescape(payload: str) -> bytes:
    return codecs.decode(payload.encode("latin-1", errors="backslashreplace"), "unicode_escape").encode("latin-1")


class FlowRunner:
    """
    Runs the flows of one template execution. ``contacted`` and the chosen URL
    scheme belong to the runner, not to a single flow: once the target has
    answered anything, later dial failures are step errors instead of a
    retryable TransientDialError.
    """

    def __init__(self, target: Target, context: Context,
                 client: Optional[HttpClient] = None,
                 exchanger: Optional[Callable[..., ResponseWrapper]] = None,
                 policy: RebindPolicy = RebindPolicy.LAST_WRITE_WINS,
                 cancel: Optional[threading.Event] = None):
        self.target = target
        self.context = context
        self.client = client or HttpClient(timeout=context.timeout, user_agent=context.user_agent)
        self.exchanger = exchanger or exchange
        self.policy = RebindPolicy(policy)
        self.cancel = cancel
        self.contacted = False
        self.scheme: Optional[str] = None

    def base_url(self) -> str:
        if self.scheme is None or self.target.url:
            return self.target.base_url()
        return replace(self.target, protocol=self.scheme).base_url()

    def builtins(self) -> Dict[str, str]:
        port = self.target.port if self.target.port is not None else 80
        return {
            "Hostname": f"{self.target.host}:{port}" if self.target.port is not None else self.target.host,
            "Host": self.target.host,
            "Port": str(port),
            "BaseURL": self.base_url(),
        }

    def interpolate(self, value: Any, state: FlowState) -> Any:
        if isinstance(value, str):
            builtins = self.builtins()

            def repl(match):
                key = match.group(1)
                if key in state.variables:
                    return str(state.variables[key])
                if key in builtins:
                    return builtins[key]
                if key in self.context.variables:
                    return str(self.context.variables[key])
                raise UnresolvedVariable(key)

            return VAR_PATTERN.sub(repl, value)
        if isinstance(value, dict):
            return {self.interpolate(k, state): self.interpolate(v, state) for k, v in value.items()}
        if isinstance(value, list):
            return [self.interpolate(v, state) for v in value]
        return value

    def run(self, flow: Flow) -> FlowState:
        state = FlowState(flow)
        for step in flow.steps:
            if self.cancel is not None and self.cancel.is_set():
                logger.debug(f"Flow {flow.id} cancelled before step {step.id}")
                break
            record = state.records[step.id]
            record.state = StepState.RUNNING
            self._run_step(step, state, record)
            logger.debug(f"{flow.id}:{step.id} -> {record.state.value} {record.reason}")
            if record.state != StepState.MATCHED_SUCCESS and not step.optional:
                break
        return state

    def _run_step(self, step: Step, state: FlowState, record: StepRecord):
        try:
            if step.kind == "http":
                requests_ = self._http_requests(step, state)
            else:
                requests_ = [self._network_request(step, state)]
        except UnresolvedVariable as e:
            record.state = StepState.ERROR
            record.reason = f"unresolved variable '{e.name}'"
            return
        except ValueError as e:
            record.state = StepState.ERROR
            record.reason = f"bad request definition: {e}"
            return

        last_response = None
        failure = ""
        for request in requests_:
            try:
                request, response = self._exchange(step, request)
            except TransientDialError as e:
                if not self.contacted:
                    raise
                failure = str(e)
                continue
            except RequestFailed as e:
                failure = str(e)
                continue
            last_response = response
            ok, matched = evaluate(step.matchers, step.condition, response)
            if not ok:
                continue
            record.request, record.response, record.matched = request, response, matched
            try:
                for extractor in step.extractors:
                    value = extractor.extract(response)
                    if value is None:
                        continue
                    bind(state.variables, extractor.name, value, self.policy)
                    record.extracted[extractor.name] = state.variables[extractor.name]
            except RebindError as e:
                record.state = StepState.ERROR
                record.reason = str(e)
                return
            record.state = StepState.MATCHED_SUCCESS
            return

        record.request = requests_[-1] if requests_ else {}
        record.response = last_response
        if last_response is None and failure:
            record.state = StepState.ERROR
            record.reason = failure
        else:
            record.state = StepState.MATCHED_FAIL
            record.reason = "matchers did not match"

    def _exchange(self, step: Step, request: Dict[str, Any]) -> Tuple[Dict[str, Any], ResponseWrapper]:
        """Sends one request, falling back to the other HTTP scheme if the first never connects."""
        fallback = self._can_switch_scheme(step, request)
        if fallback and self.scheme and urlparse(request["url"]).scheme != self.scheme:
            request = self._rebase(request, self.scheme)
        try:
            response = self._send(step, request)
        except TransientDialError as e:
            if self.contacted or not fallback:
                raise
            other = "http" if urlparse(request["url"]).scheme == "https" else "https"
            alternate = self._rebase(request, other)
            logger.debug(f"{request['url']} unreachable ({e}); trying {alternate['url']}")
            request = alternate
            response = self._send(step, request)
        if fallback:
            self.scheme = urlparse(request["url"]).scheme
        self.contacted = True
        return request, response

    def _can_switch_scheme(self, step: Step, request: Dict[str, Any]) -> bool:
        return (step.kind == "http" and bool(request.get("relative"))
                and not self.target.url and self.target.protocol in ("http", "https"))

    def _rebase(self, request: Dict[str, Any], scheme: str) -> Dict[str, Any]:
        base = replace(self.target, protocol=urlparse(request["url"]).scheme).base_url()
        rebased = replace(self.target, protocol=scheme).base_url()
        return dict(request, url=rebased + request["url"][len(base):])

    def _http_requests(self, step: Step, state: FlowState) -> List[Dict[str, Any]]:
        definition = step.request
        paths = definition.get("path", "/")
        if not isinstance(paths, list):
            paths = [paths]
        method = str(definition.get("method", "GET")).upper()
        headers = self.interpolate(dict(definition.get("headers") or {}), state)
        body = definition.get("body")
        body = self.interpolate(body, state) if body is not None else None

        built = []
        for path in paths:
            path = self.interpolate(str(path), state)
            relative = not path.startswith(("http://", "https://"))
            if relative:
                url = self.base_url().rstrip("/") + ("" if path.startswith("/") else "/") + path
            else:
                url = path
            built.append({"method": method, "url": url, "headers": headers, "body": body,
                          "relative": relative})
        return built

    def _network_request(self, step: Step, state: FlowState) -> Dict[str, Any]:
        definition = step.request
        payloads: List[bytes] = []
        if "hex" in definition:
            for chunk in definition["hex"] if isinstance(definition["hex"], list) else [definition["hex"]]:
                payloads.append(bytes.fromhex(self.interpolate(str(chunk), state).replace(" ", "")))
        raw = definition.get("payloads", definition.get("payload"))
        if raw is not None:
            for chunk in raw if isinstance(raw, list) else [raw]:
                payloads.append(_unescape(self.interpolate(str(chunk), state)))
        port = definition.get("port")
        port = int(self.interpolate(str(port), state)) if port is not None else (self.target.port or 80)
        return {
            "protocol": str(definition.get("protocol", "tcp")).lower(),
            "host": self.interpolate(str(definition.get("host", self.target.host)), state),
            "port": port,
            "payloads": payloads,
        }

    def _send(self, step: Step, request: Dict[str, Any]) -> ResponseWrapper:
        if step.kind == "http":
            return self.client.send(request["method"], request["url"],
                                    headers=request["headers"], body=request["body"],
                                    timeout=self.context.timeout)
        return self.exchanger(request["host"], request["port"], request["payloads"],
                              protocol=request["protocol"], timeout=self.context.timeout,
                              read_timeout=min(self.context.timeout, 5.0))


def to_finding(state: FlowState, metadata: TemplateMetadata, target: Target) -> Optional[Finding]:
    """One finding per flow whose required steps all matched; evidence from the last of them."""
    if not state.succeeded():
        return None
    required = [s for s in state.flow.steps if not s.optional] or list(state.flow.steps)
    matching = [s for s in required if state.records[s.id].state == StepState.MATCHED_SUCCESS]
    if not matching:
        return None
    step = matching[-1]
    record = state.records[step.id]
    response = record.response

    request = dict(record.request)
    request.pop("relative", None)
    if "payloads" in request:
        request["payloads"] = [p.decode("latin-1") for p in request["payloads"]]
    data = {
        "flow": state.flow.id,
        "step": step.id,
        "request": request,
        "response": {
            "status": response.status_code if response else None,
            "excerpt": response.text[:EXCERPT] if response else "",
        },
        "matched": record.matched,
        "extracted": dict(state.variables),
    }
    return Finding(
        id=metadata.id,
        name=metadata.name,
        severity=metadata.severity,
        description=metadata.description,
        evidence={"type": "flow", "data": data},
        tags=metadata.tags,
        cwe=metadata.cwe,
        references=metadata.references,
        template_id=metadata.id,
        target=str(target),
    )
