import logging
import os
import tempfile
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

import yaml
from colorama import Fore, Style, init

from .errors import ConfigurationError

DEFAULT_CACHE_DIR = os.path.join(tempfile.gettempdir(), "crossfire-cache")
DEFAULT_USER_AGENT = "crossfire/1.0"

REBIND_POLICIES = ("last-write-wins", "first-write-wins", "error")


@dataclass
class ConcurrencyLimits:
    max_targets: int = 10
    max_templates_per_target: int = 5
    max_executions: int = 20


@dataclass
class RateLimits:
    """Requests per second per scope. None disables a scope."""
    global_rate: Optional[float] = None
    per_host_rate: Optional[float] = None
    per_protocol_rate: Dict[str, float] = field(default_factory=dict)
    burst: int = 1


@dataclass
class ScanConfig:
    limits: ConcurrencyLimits = field(default_factory=ConcurrencyLimits)
    rate_limits: RateLimits = field(default_factory=RateLimits)
    cache_dir: str = DEFAULT_CACHE_DIR
    build_timeout: float = 300.0
    # Extra seconds the executor waits past Context.timeout before giving up on a job
    timeout_grace: float = 2.0
    rebind_policy: str = "last-write-wins"
    tool_paths: Dict[str, str] = field(default_factory=dict)

    def validate(self):
        for name in ("max_targets", "max_templates_per_target", "max_executions"):
            if getattr(self.limits, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        if self.rebind_policy not in REBIND_POLICIES:
            raise ConfigurationError(f"Unknown rebind policy: {self.rebind_policy}")
        if self.rate_limits.burst < 1:
            raise ConfigurationError("rate limit burst must be at least 1")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanConfig":
        data = dict(data or {})
        limits = _build(ConcurrencyLimits, data.pop("limits", {}))
        rate_limits = _build(RateLimits, data.pop("rate_limits", {}))
        config = _build(cls, data)
        config.limits = limits
        config.rate_limits = rate_limits
        config.validate()
        return config


def _build(kind, values: Dict[str, Any]):
    known = {f.name for f in fields(kind)}
    unknown = set(values or {}) - known
    if unknown:
        raise ConfigurationError(f"Unknown {kind.__name__} keys: {', '.join(sorted(unknown))}")
    return kind(**(values or {}))


def get_config() -> ScanConfig:
    return ScanConfig()


def load_config(path: str) -> ScanConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Error loading config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return ScanConfig.from_dict(data)


class _ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: Style.DIM,
        logging.INFO: Fore.CYAN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def format(self, record):
        color = self.COLORS.get(record.levelno, "")
        return f"{color}{super().format(record)}{Style.RESET_ALL}"


def setup_logging(verbose: bool = False) -> logging.Logger:
    init(autoreset=True)
    logger = logging.getLogger("crossfire")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(_ColorFormatter("[%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(handler)
    return logger
