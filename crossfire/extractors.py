import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import CrossfireError
from .http_client import ResponseWrapper
from .matchers import PARTS, _as_list, _part_text


class RebindError(CrossfireError):
    """An extractor tried to rebind a variable under the 'error' policy."""


class RebindPolicy(str, Enum):
    LAST_WRITE_WINS = "last-write-wins"
    FIRST_WRITE_WINS = "first-write-wins"
    ERROR = "error"


def bind(variables: Dict[str, str], name: str, value: str, policy: RebindPolicy):
    if name in variables:
        if policy == RebindPolicy.FIRST_WRITE_WINS:
            return
        if policy == RebindPolicy.ERROR and variables[name] != value:
            raise RebindError(f"variable '{name}' already bound")
    variables[name] = value


def json_path(data: Any, path: str) -> Any:
    """Dotted lookup: ``$.a.b.0``. Returns None when any segment is missing."""
    if not path.startswith("$"):
        return None
    parts = [p for p in path[1:].lstrip(".").split(".") if p]
    curr = data
    for p in parts:
        if isinstance(curr, dict):
            curr = curr.get(p)
        elif isinstance(curr, list) and p.isdigit() and int(p) < len(curr):
            curr = curr[int(p)]
        else:
            return None
        if curr is None:
            return None
    return curr


@dataclass(frozen=True)
class Extractor:
    name: str
    type: str
    values: Tuple[Any, ...]
    part: str = "body"
    group: Optional[int] = None

    def extract(self, response: ResponseWrapper) -> Optional[str]:
        if self.type == "kval":
            wanted = {k.lower().replace("-", "_") for k in self.values}
            for key, value in response.headers.items():
                if key.lower().replace("-", "_") in wanted:
                    return value
            return None

        if self.type == "json":
            try:
                data = json.loads(response.text)
            except ValueError:
                return None
            for path in self.values:
                value = json_path(data, path)
                if value is not None:
                    return value if isinstance(value, str) else json.dumps(value)
            return None

        text = _part_text(response, self.part)
        for pattern in self.values:
            m = pattern.search(text)
            if m is None:
                continue
            group = self.group
            if group is None:
                group = 1 if pattern.groups else 0
            return m.group(group)
        return None


def parse_extractor(raw: Dict[str, Any]) -> Extractor:
    if not isinstance(raw, dict):
        raise ValueError("extractor must be a mapping")
    name = raw.get("name")
    if not name or not isinstance(name, str):
        raise ValueError("extractor needs a 'name'")
    kind = str(raw.get("type", "regex")).lower()
    part = str(raw.get("part", "body")).lower()
    if part not in PARTS:
        raise ValueError(f"unknown extractor part '{part}'")

    if kind == "regex":
        patterns = []
        for pattern in _as_list(raw.get("regex")):
            try:
                patterns.append(re.compile(str(pattern)))
            except re.error as e:
                raise ValueError(f"invalid regex '{pattern}': {e}")
        if not patterns:
            raise ValueError(f"extractor '{name}' needs at least one regex")
        group = raw.get("group")
        if group is not None:
            group = int(group)
            if any(group > p.groups for p in patterns):
                raise ValueError(f"extractor '{name}' group {group} out of range")
        return Extractor(name, "regex", tuple(patterns), part=part, group=group)

    if kind == "kval":
        keys = tuple(str(k) for k in _as_list(raw.get("kval")))
        if not keys:
            raise ValueError(f"extractor '{name}' needs at least one header key")
        return Extractor(name, "kval", keys, part="header")

    if kind == "json":
        paths = tuple(str(p) for p in _as_list(raw.get("json")))
        if not paths or not all(p.startswith("$") for p in paths):
            raise ValueError(f"extractor '{name}' needs '$.'-style json paths")
        return Extractor(name, "json", paths)

    raise ValueError(f"unknown extractor type '{kind}'")
