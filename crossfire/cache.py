"""
Content-addressed build cache for compiled-language templates.

Layout::

    <root>/<language>/<source_hash>/
        manifest.json      toolchain fingerprint + artifact description
        template           binary (or class files for Java)

Key = (language, sha256(source), compiler fingerprint). Builds happen in a
private temporary directory beside the destination and are published with a
single rename, so a half-written binary is never visible. Concurrent callers
for one key share a single in-flight build.
"""
import hashlib
import json
import logging
import os
import shutil
import tempfile
import threading
import time
from concurrent.futures import Future
from typing import Callable, Dict, List, Optional, Tuple

from .errors import CompilationFailed, EngineUnavailable, ExecutionTimeout
from .models import CompiledArtifact, Language
from .process import ProcessSupervisor
from .runtime import RuntimeLocator

logger = logging.getLogger("crossfire.cache")

MANIFEST = "manifest.json"


class Toolchain:
    """How one language turns a source file into something runnable. Flags are fixed."""
    language: Language = None
    compilers: Tuple[str, ...] = ()
    source_file = "template.src"
    artifact = "template"

    def source_name(self, source: bytes) -> str:
        return self.source_file

    def command(self, compiler: str, source_path: str, out_dir: str) -> List[str]:
        raise NotImplementedError

    def entrypoint(self, source: bytes) -> Optional[str]:
        return None

    def executable(self, out_dir: str) -> str:
        return os.path.join(out_dir, self.artifact)


class CompilationCache:
    def __init__(self, root: str, locator: RuntimeLocator, build_timeout: float = 300.0,
                 supervisor: Optional[ProcessSupervisor] = None):
        self.root = root
        self.locator = locator
        self.build_timeout = build_timeout
        self.supervisor = supervisor or ProcessSupervisor()
        self.compilations = 0
        self._toolchains: Dict[Language, Toolchain] = {}
        # Successful builds leave the map once published; failures stay for the run
        self._inflight: Dict[Tuple[str, str, str], Future] = {}
        self._lock = threading.Lock()

    def register(self, toolchain: Toolchain):
        self._toolchains[toolchain.language] = toolchain

    def toolchain(self, language: Language) -> Toolchain:
        toolchain = self._toolchains.get(language)
        if toolchain is None:
            raise EngineUnavailable(language.value)
        return toolchain

    def get_or_build(self, source: bytes, language: Language) -> CompiledArtifact:
        toolchain = self.toolchain(language)
        compiler = self.locator.resolve(language.value, toolchain.compilers)
        fingerprint = self.locator.fingerprint(compiler)
        source_hash = hashlib.sha256(source).hexdigest()
        key = (language.value, source_hash, fingerprint)

        with self._lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if not owner:
            return future.result()

        try:
            artifact = self._lookup(language, source_hash, fingerprint, toolchain)
            if artifact is None:
                artifact = self._build(source, toolchain, compiler, source_hash, fingerprint)
        except CompilationFailed as e:
            future.set_exception(e)
            raise
        except BaseException as e:
            with self._lock:
                self._inflight.pop(key, None)
            future.set_exception(e)
            raise

        with self._lock:
            self._inflight.pop(key, None)
        future.set_result(artifact)
        return artifact

    def entry_dir(self, language: Language, source_hash: str) -> str:
        return os.path.join(self.root, language.value, source_hash)

    def _lookup(self, language: Language, source_hash: str, fingerprint: str,
                toolchain: Toolchain) -> Optional[CompiledArtifact]:
        directory = self.entry_dir(language, source_hash)
        try:
            with open(os.path.join(directory, MANIFEST), "r", encoding="utf-8") as f:
                manifest = json.load(f)
        except (OSError, ValueError):
            return None
        if manifest.get("fingerprint") != fingerprint:
            logger.debug(f"Toolchain changed for {language.value}/{source_hash[:12]}, rebuilding")
            return None
        executable = toolchain.executable(directory)
        if not os.path.exists(executable):
            return None
        return CompiledArtifact(
            language=language,
            source_hash=source_hash,
            fingerprint=fingerprint,
            executable_path=executable,
            entrypoint=manifest.get("entrypoint"),
        )

    def _build(self, source: bytes, toolchain: Toolchain, compiler: str,
               source_hash: str, fingerprint: str) -> CompiledArtifact:
        language = toolchain.language
        lang_dir = os.path.join(self.root, language.value)
        os.makedirs(lang_dir, exist_ok=True)
        staging = tempfile.mkdtemp(prefix=f".build-{source_hash[:12]}-", dir=lang_dir)

        try:
            source_path = os.path.join(staging, toolchain.source_name(source))
            with open(source_path, "wb") as f:
                f.write(source)

            argv = toolchain.command(compiler, source_path, staging)
            with self._lock:
                self.compilations += 1
            logger.info(f"Compiling {language.value} template {source_hash[:12]} with {os.path.basename(compiler)}")
            try:
                result = self.supervisor.run(argv, self.locator.environment(language.value),
                                             self.build_timeout, cwd=staging)
            except ExecutionTimeout:
                raise CompilationFailed(language.value, f"compiler exceeded {self.build_timeout:g}s")
            if not result.ok or not os.path.exists(toolchain.executable(staging)):
                raise CompilationFailed(language.value, (result.stderr + result.stdout) or
                                        f"compiler exited with status {result.returncode}")

            entrypoint = toolchain.entrypoint(source)
            with open(os.path.join(staging, MANIFEST), "w", encoding="utf-8") as f:
                json.dump({
                    "language": language.value,
                    "source_hash": source_hash,
                    "fingerprint": fingerprint,
                    "compiler": compiler,
                    "entrypoint": entrypoint,
                    "built_at": time.time(),
                }, f)

            self._publish(staging, self.entry_dir(language, source_hash),
                          lambda: self._lookup(language, source_hash, fingerprint, toolchain) is not None)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        artifact = self._lookup(language, source_hash, fingerprint, toolchain)
        if artifact is None:
            raise CompilationFailed(language.value, "published artifact disappeared")
        return artifact

    def _publish(self, staging: str, destination: str, current: Callable[[], bool]):
        try:
            os.replace(staging, destination)
            return
        except OSError:
            pass
        if current():
            # Another process published the same build first
            logger.debug(f"{destination} already published, discarding local build")
            shutil.rmtree(staging, ignore_errors=True)
            return
        # Destination holds a stale build from an older toolchain
        stale = destination + f".stale-{os.getpid()}-{threading.get_ident()}"
        try:
            os.replace(destination, stale)
        except OSError:
            shutil.rmtree(staging, ignore_errors=True)
            return
        try:
            os.replace(staging, destination)
        except OSError:
            shutil.rmtree(staging, ignore_errors=True)
        shutil.rmtree(stale, ignore_errors=True)

    def stats(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        if not os.path.isdir(self.root):
            return counts
        for language in sorted(os.listdir(self.root)):
            lang_dir = os.path.join(self.root, language)
            if os.path.isdir(lang_dir):
                counts[language] = sum(
                    1 for name in os.listdir(lang_dir)
                    if not name.startswith(".") and os.path.exists(os.path.join(lang_dir, name, MANIFEST))
                )
        return counts

    def clear(self, language: Optional[Language] = None):
        target = os.path.join(self.root, language.value) if language else self.root
        shutil.rmtree(target, ignore_errors=True)
        with self._lock:
            self._inflight.clear()
