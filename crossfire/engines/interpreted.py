from typing import List

from ..models import Language
from .base import ProcessEngine, Template


class InterpretedEngine(ProcessEngine):
    # Extra interpreter flags placed before the script path
    FLAGS: List[str] = []

    def command(self, template: Template) -> List[str]:
        interpreter = self.locator.resolve(self.LANGUAGE.value, self.RUNTIMES)
        return [interpreter] + list(self.FLAGS) + [template.path]


class PythonEngine(InterpretedEngine):
    LANGUAGE = Language.PYTHON
    RUNTIMES = ("python3", "python")
    FLAGS = ["-B"]


class JavaScriptEngine(InterpretedEngine):
    LANGUAGE = Language.JAVASCRIPT
    RUNTIMES = ("node", "nodejs")


class RubyEngine(InterpretedEngine):
    LANGUAGE = Language.RUBY
    RUNTIMES = ("ruby",)


class PerlEngine(InterpretedEngine):
    LANGUAGE = Language.PERL
    RUNTIMES = ("perl",)


class PhpEngine(InterpretedEngine):
    LANGUAGE = Language.PHP
    RUNTIMES = ("php",)
    FLAGS = ["-f"]


class ShellEngine(InterpretedEngine):
    LANGUAGE = Language.SHELL
    RUNTIMES = ("bash", "sh")
