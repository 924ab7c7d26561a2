import os
import shutil
import sys
import tempfile
import textwrap
import unittest
from unittest.mock import patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from crossfire.config import ScanConfig
from crossfire.engines import ENGINE_CLASSES, EngineRegistry
from crossfire.engines.compiled import JavaToolchain
from crossfire.engines.interpreted import PythonEngine
from crossfire.errors import ConfigurationError, ExecutionError, LoadError
from crossfire.http_client import ResponseWrapper
from crossfire.models import Context, Language, Severity, Target

REDIS_TEMPLATE = textwrap.dedent("""\
    # @id: redis-unauth
    # @name: Redis Unauthenticated Access
    # @severity: high
    # @tags: redis
    import json, os
    host = os.environ["CROSSFIRE_TARGET_HOST"]
    port = os.environ["CROSSFIRE_TARGET_PORT"]
    print("connecting to", host, port)
    print(json.dumps({"findings": [{
        "id": "redis-unauth",
        "severity": "high",
        "evidence": {"response": "+PONG", "port": port},
    }]}))
""")

YAML_TEMPLATE = textwrap.dedent("""\
    id: git-config
    info:
      name: Exposed git config
      severity: medium
      tags: [exposure, git]
    http:
      - path: ["/.git/config"]
        matchers:
          - type: word
            words: ["[core]"]
""")


class EngineTestCase(unittest.TestCase):
    def setUp(self):
        self.dir = tempfile.mkdtemp(prefix="crossfire-templates-")
        config = ScanConfig(cache_dir=os.path.join(self.dir, ".cache"),
                            tool_paths={"python3": sys.executable})
        self.registry = EngineRegistry(config)

    def tearDown(self):
        shutil.rmtree(self.dir, ignore_errors=True)

    def write(self, name, content):
        path = os.path.join(self.dir, name)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        return path


class TestRegistry(EngineTestCase):
    def test_every_language_has_one_engine(self):
        self.assertEqual(set(ENGINE_CLASSES), set(Language))
        self.assertEqual(len(self.registry.engines()), 12)

    def test_incomplete_map_rejected(self):
        partial = {Language.PYTHON: PythonEngine}
        with self.assertRaises(ConfigurationError):
            EngineRegistry(self.registry.config, engine_classes=partial)

    def test_engine_for(self):
        self.assertEqual(self.registry.engine_for("a/b/scan.PY").language(), Language.PYTHON)
        self.assertEqual(self.registry.engine_for("x.cc").language(), Language.CPP)
        self.assertEqual(self.registry.engine_for("x.yml").language(), Language.YAML)
        self.assertIsNone(self.registry.engine_for("README.md"))

    def test_load_all_rejects_duplicates(self):
        first = self.write("redis.py", REDIS_TEMPLATE)
        dupe = self.write("redis_copy.py", REDIS_TEMPLATE)
        bad = self.write("notes.txt", "hello")
        templates, errors = self.registry.load_all([first, dupe, bad])

        self.assertEqual([t.path for t in templates], [first])
        self.assertEqual(len(errors), 2)
        self.assertIn("duplicate template id", errors[0].reason)

    def test_load_does_not_execute(self):
        marker = os.path.join(self.dir, "ran")
        path = self.write("side_effect.py", f"open({marker!r}, 'w').write('x')\n")
        template = self.registry.load(path)
        self.assertEqual(template.id, "side_effect")
        self.assertFalse(os.path.exists(marker))


class TestProcessEngines(EngineTestCase):
    def test_python_template_redis_scenario(self):
        template = self.registry.load(self.write("redis.py", REDIS_TEMPLATE))
        engine = self.registry.engine(Language.PYTHON)
        findings = engine.execute_template(template, Target("10.0.0.5", 6379, protocol="tcp"),
                                           Context(timeout=30))

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].id, "redis-unauth")
        self.assertEqual(findings[0].severity, Severity.HIGH)
        self.assertEqual(findings[0].evidence, {"response": "+PONG", "port": "6379"})

    def test_template_is_not_mutated(self):
        template = self.registry.load(self.write("redis.py", REDIS_TEMPLATE))
        before = (template.metadata, template.source)
        engine = self.registry.engine(Language.PYTHON)
        engine.execute_template(template, Target("h"), Context(timeout=30))
        self.assertEqual((template.metadata, template.source), before)

    def test_crash_without_output(self):
        path = self.write("crash.py", "import sys\nsys.stderr.write('Traceback: boom')\nsys.exit(2)\n")
        template = self.registry.load(path)
        with self.assertRaises(ExecutionError) as ctx:
            self.registry.engine(Language.PYTHON).execute_template(template, Target("h"), Context(timeout=30))
        self.assertIn("boom", str(ctx.exception))

    def test_java_main_class(self):
        toolchain = JavaToolchain()
        source = b"import java.util.*;\npublic final class RedisProbe {\n}\n"
        self.assertEqual(toolchain.entrypoint(source), "RedisProbe")
        self.assertEqual(toolchain.source_name(source), "RedisProbe.java")
        self.assertEqual(toolchain.entrypoint(b"class Hidden {}"), "Main")


class TestYamlEngine(EngineTestCase):
    def test_load(self):
        template = self.registry.load(self.write("git.yaml", YAML_TEMPLATE))
        self.assertEqual(template.id, "git-config")
        self.assertEqual(template.metadata.name, "Exposed git config")
        self.assertEqual(template.metadata.tags, ("exposure", "git", "yaml"))
        self.assertEqual(len(template.body), 1)

    def test_load_errors(self):
        with self.assertRaises(LoadError):
            self.registry.load(self.write("broken.yaml", "id: [unclosed\n"))
        with self.assertRaises(LoadError):
            self.registry.load(self.write("badregex.yaml", textwrap.dedent("""\
                id: bad
                http:
                  - path: ["/"]
                    matchers:
                      - type: regex
                        regex: ["(oops"]
            """)))
        with self.assertRaises(LoadError):
            self.registry.load(self.write("sev.yaml", "id: s\nseverity: nuclear\nhttp: [{path: /}]\n"))

    @patch("crossfire.engines.declarative.HttpClient")
    def test_execute_against_mocked_http(self, client_cls):
        client_cls.return_value.send.return_value = ResponseWrapper(
            status_code=200, body=b"[core]\n\trepositoryformatversion = 0\n")
        template = self.registry.load(self.write("git.yaml", YAML_TEMPLATE))
        findings = self.registry.engine(Language.YAML).execute_template(
            template, Target("example.com", 8080), Context(timeout=5))

        self.assertEqual(len(findings), 1)
        self.assertEqual(findings[0].id, "git-config")
        self.assertEqual(findings[0].severity, Severity.MEDIUM)
        self.assertEqual(findings[0].evidence["data"]["matched"], ["[core]"])
        client_cls.return_value.send.assert_called_once()
        self.assertEqual(client_cls.return_value.send.call_args[0][1], "http://example.com:8080/.git/config")
        client_cls.return_value.close.assert_called_once()


if __name__ == '__main__':
    unittest.main()
