import hashlib
import logging
import os
import shutil
import subprocess
import threading
from typing import Dict, Iterable, Optional

from .errors import EngineUnavailable

logger = logging.getLogger("crossfire.runtime")

# Tools that print their identity with something other than --version
VERSION_ARGS = {
    "go": ["version"],
    "java": ["-version"],
    "javac": ["-version"],
}


class RuntimeLocator:
    """
    Resolves interpreter and compiler paths and the environment each runtime needs.

    Explicit overrides (from ScanConfig.tool_paths) win over PATH lookup.
    Compiler fingerprints are memoised for the lifetime of the locator.
    """

    def __init__(self, tool_paths: Optional[Dict[str, str]] = None, cache_dir: Optional[str] = None):
        self.tool_paths = dict(tool_paths or {})
        self.cache_dir = cache_dir
        self._fingerprints: Dict[str, str] = {}
        self._lock = threading.Lock()

    def which(self, tool: str) -> Optional[str]:
        override = self.tool_paths.get(tool)
        if override:
            return override if os.path.isfile(override) and os.access(override, os.X_OK) else None
        return shutil.which(tool)

    def resolve(self, language: str, candidates: Iterable[str]) -> str:
        """Returns the first available tool among candidates or raises EngineUnavailable."""
        candidates = list(candidates)
        for tool in candidates:
            path = self.which(tool)
            if path:
                return path
        raise EngineUnavailable(language, " / ".join(candidates))

    def is_available(self, candidates: Iterable[str]) -> bool:
        return any(self.which(tool) for tool in candidates)

    def environment(self, language: str) -> Dict[str, str]:
        """Extra variables that keep a runtime's caches out of the user's home."""
        env: Dict[str, str] = {}
        if language == "python":
            env["PYTHONDONTWRITEBYTECODE"] = "1"
            env["PYTHONUNBUFFERED"] = "1"
        elif language == "go" and self.cache_dir:
            env["GOCACHE"] = os.path.join(self.cache_dir, "go", ".gocache")
            env["GOPATH"] = os.path.join(self.cache_dir, "go", ".gopath")
            env["GO111MODULE"] = "off"
        return env

    def fingerprint(self, tool_path: str) -> str:
        """sha256 over the resolved compiler path and its version banner."""
        with self._lock:
            cached = self._fingerprints.get(tool_path)
        if cached:
            return cached

        name = os.path.basename(tool_path)
        args = VERSION_ARGS.get(name, ["--version"])
        try:
            proc = subprocess.run([tool_path] + args, capture_output=True, timeout=30)
            banner = proc.stdout + proc.stderr
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Could not query version of {tool_path}: {e}")
            banner = b""
        real = os.path.realpath(tool_path)
        digest = hashlib.sha256(real.encode() + b"\0" + banner).hexdigest()

        with self._lock:
            self._fingerprints.setdefault(tool_path, digest)
            return self._fingerprints[tool_path]
