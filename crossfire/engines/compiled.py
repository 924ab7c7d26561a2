"""
Compiled-language strategies. Sources are built once through the shared
CompilationCache (ahead of the timed section) and the cached artifact is
executed for every target.
"""
import re
from typing import List, Optional

from ..cache import CompilationCache, Toolchain
from ..models import CompiledArtifact, Language
from ..process import ProcessSupervisor
from ..runtime import RuntimeLocator
from .base import ProcessEngine, Template

JAVA_CLASS = re.compile(rb"public\s+(?:final\s+|abstract\s+)*class\s+(\w+)")


class RustToolchain(Toolchain):
    language = Language.RUST
    compilers = ("rustc",)
    source_file = "template.rs"

    def command(self, compiler, source_path, out_dir):
        return [compiler, "-O", "--edition", "2021", "-o", self.executable(out_dir), source_path]


class CToolchain(Toolchain):
    language = Language.C
    compilers = ("cc", "gcc", "clang")
    source_file = "template.c"

    def command(self, compiler, source_path, out_dir):
        return [compiler, "-O2", "-std=c11", "-o", self.executable(out_dir), source_path]


class CppToolchain(Toolchain):
    language = Language.CPP
    compilers = ("c++", "g++", "clang++")
    source_file = "template.cpp"

    def command(self, compiler, source_path, out_dir):
        return [compiler, "-O2", "-std=c++17", "-o", self.executable(out_dir), source_path]


class GoToolchain(Toolchain):
    language = Language.GO
    compilers = ("go",)
    source_file = "main.go"

    def command(self, compiler, source_path, out_dir):
        return [compiler, "build", "-trimpath", "-o", self.executable(out_dir), source_path]


class JavaToolchain(Toolchain):
    """javac writes class files into the entry directory; the directory is the classpath."""
    language = Language.JAVA
    compilers = ("javac",)

    def entrypoint(self, source: bytes) -> Optional[str]:
        m = JAVA_CLASS.search(source)
        return m.group(1).decode("ascii") if m else "Main"

    def source_name(self, source: bytes) -> str:
        return f"{self.entrypoint(source)}.java"

    def command(self, compiler, source_path, out_dir):
        return [compiler, "-d", out_dir, source_path]

    def executable(self, out_dir: str) -> str:
        return out_dir


class CompiledEngine(ProcessEngine):
    TOOLCHAIN = Toolchain

    def __init__(self, locator: RuntimeLocator, cache: CompilationCache,
                 supervisor: Optional[ProcessSupervisor] = None):
        super().__init__(locator, supervisor)
        self.cache = cache
        self.toolchain = self.TOOLCHAIN()
        self.RUNTIMES = self.toolchain.compilers
        cache.register(self.toolchain)

    def prepare(self, template: Template) -> CompiledArtifact:
        return self.cache.get_or_build(template.source, self.LANGUAGE)

    def command(self, template: Template) -> List[str]:
        return self.launch(self.prepare(template))

    def launch(self, artifact: CompiledArtifact) -> List[str]:
        return [artifact.executable_path]


class RustEngine(CompiledEngine):
    LANGUAGE = Language.RUST
    TOOLCHAIN = RustToolchain


class CEngine(CompiledEngine):
    LANGUAGE = Language.C
    TOOLCHAIN = CToolchain


class CppEngine(CompiledEngine):
    LANGUAGE = Language.CPP
    TOOLCHAIN = CppToolchain


class GoEngine(CompiledEngine):
    LANGUAGE = Language.GO
    TOOLCHAIN = GoToolchain


class JavaEngine(CompiledEngine):
    LANGUAGE = Language.JAVA
    TOOLCHAIN = JavaToolchain

    def is_available(self) -> bool:
        return super().is_available() and self.locator.is_available(("java",))

    def launch(self, artifact: CompiledArtifact) -> List[str]:
        java = self.locator.resolve(self.LANGUAGE.value, ("java",))
        return [java, "-cp", artifact.executable_path, artifact.entrypoint or "Main"]
