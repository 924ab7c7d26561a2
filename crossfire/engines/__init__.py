"""
The closed set of language engines.

Every Language member maps to exactly one engine class; EngineRegistry
refuses to start if the map is incomplete.
"""
import logging
import os
from typing import Dict, Iterable, List, Optional, Tuple, Type

from ..cache import CompilationCache
from ..config import ScanConfig, get_config
from ..errors import ConfigurationError, LoadError
from ..models import Language
from ..process import ProcessSupervisor
from ..runtime import RuntimeLocator
from .base import Engine, ProcessEngine, Template
from .compiled import CEngine, CompiledEngine, CppEngine, GoEngine, JavaEngine, RustEngine
from .declarative import YamlEngine
from .interpreted import (
    JavaScriptEngine, PerlEngine, PhpEngine, PythonEngine, RubyEngine, ShellEngine,
)

logger = logging.getLogger("crossfire.engines")

ENGINE_CLASSES: Dict[Language, Type[Engine]] = {
    Language.PYTHON: PythonEngine,
    Language.JAVASCRIPT: JavaScriptEngine,
    Language.RUBY: RubyEngine,
    Language.PERL: PerlEngine,
    Language.PHP: PhpEngine,
    Language.SHELL: ShellEngine,
    Language.RUST: RustEngine,
    Language.C: CEngine,
    Language.CPP: CppEngine,
    Language.JAVA: JavaEngine,
    Language.GO: GoEngine,
    Language.YAML: YamlEngine,
}


class EngineRegistry:
    def __init__(self, config: Optional[ScanConfig] = None,
                 locator: Optional[RuntimeLocator] = None,
                 cache: Optional[CompilationCache] = None,
                 supervisor: Optional[ProcessSupervisor] = None,
                 engine_classes: Optional[Dict[Language, Type[Engine]]] = None):
        self.config = config or get_config()
        self.locator = locator or RuntimeLocator(self.config.tool_paths, self.config.cache_dir)
        self.supervisor = supervisor or ProcessSupervisor()
        self.cache = cache or CompilationCache(self.config.cache_dir, self.locator,
                                               build_timeout=self.config.build_timeout,
                                               supervisor=self.supervisor)

        classes = engine_classes if engine_classes is not None else ENGINE_CLASSES
        missing = [lang.value for lang in Language if lang not in classes]
        if missing:
            raise ConfigurationError(f"No engine registered for: {', '.join(missing)}")

        self._engines: Dict[Language, Engine] = {}
        for language, engine_cls in classes.items():
            if engine_cls.LANGUAGE is not language:
                raise ConfigurationError(f"{engine_cls.__name__} does not implement {language.value}")
            self._engines[language] = self._create(engine_cls)

    def _create(self, engine_cls: Type[Engine]) -> Engine:
        if issubclass(engine_cls, CompiledEngine):
            return engine_cls(self.locator, self.cache, self.supervisor)
        if issubclass(engine_cls, YamlEngine):
            return engine_cls(self.locator, self.supervisor, rebind_policy=self.config.rebind_policy)
        return engine_cls(self.locator, self.supervisor)

    def engine(self, language: Language) -> Engine:
        return self._engines[language]

    def engines(self) -> List[Engine]:
        return list(self._engines.values())

    def engine_for(self, path: str) -> Optional[Engine]:
        for engine in self._engines.values():
            if engine.supports_file(path):
                return engine
        return None

    def availability(self) -> Dict[str, bool]:
        return {lang.value: engine.is_available() for lang, engine in self._engines.items()}

    def load(self, path: str) -> Template:
        engine = self.engine_for(path)
        if engine is None:
            raise LoadError(path, f"unsupported file type '{os.path.splitext(path)[1] or path}'")
        return engine.load_template(path)

    def load_all(self, paths: Iterable[str]) -> Tuple[List[Template], List[LoadError]]:
        """Loads every path; failures are collected, not raised. Duplicate ids keep the first."""
        templates: List[Template] = []
        errors: List[LoadError] = []
        seen: Dict[str, str] = {}
        for path in paths:
            try:
                template = self.load(path)
            except LoadError as e:
                logger.warning(str(e))
                errors.append(e)
                continue
            if template.id in seen:
                error = LoadError(path, f"duplicate template id '{template.id}' (already loaded from {seen[template.id]})")
                logger.warning(str(error))
                errors.append(error)
                continue
            seen[template.id] = path
            templates.append(template)
        logger.info(f"Loaded {len(templates)} templates ({len(errors)} failed)")
        return templates, errors


__all__ = [
    "ENGINE_CLASSES", "Engine", "EngineRegistry", "ProcessEngine", "Template",
]
