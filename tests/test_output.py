import json
import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from crossfire.errors import InvalidOutput, LoadError
from crossfire.metadata import build_metadata, parse_headers
from crossfire.models import Language, Severity, Target, TemplateMetadata
from crossfire.output import parse_findings

REDIS_TEMPLATE = """#!/usr/bin/env python3
# @id: redis-unauth
# @name: Redis Unauthenticated Access
# @author: ops-team
# @severity: high
# @description: Redis answers commands without AUTH
# @tags: redis, database
# @cwe: CWE-306
# @references: https://redis.io/docs/management/security/
import os
"""


class TestMetadata(unittest.TestCase):
    def test_python_headers(self):
        meta = build_metadata("/t/redis_unauth.py", Language.PYTHON, REDIS_TEMPLATE)
        self.assertEqual(meta.id, "redis-unauth")
        self.assertEqual(meta.severity, Severity.HIGH)
        self.assertEqual(meta.author, "ops-team")
        self.assertEqual(meta.tags, ("redis", "database", "python"))
        self.assertEqual(meta.cwe, "CWE-306")
        self.assertEqual(meta.references, ("https://redis.io/docs/management/security/",))

    def test_c_style_headers_and_fallbacks(self):
        source = "/*\n * @name: Open Telnet\n * @severity: Low\n */\nint main(void) { return 0; }\n"
        meta = build_metadata("/t/open-telnet.c", Language.C, source)
        self.assertEqual(meta.id, "open-telnet")
        self.assertEqual(meta.name, "Open Telnet")
        self.assertEqual(meta.severity, Severity.LOW)
        self.assertIn("c", meta.tags)

    def test_defaults_without_headers(self):
        meta = build_metadata("/t/probe.sh", Language.SHELL, "echo hi\n")
        self.assertEqual(meta.id, "probe")
        self.assertEqual(meta.severity, Severity.MEDIUM)
        self.assertEqual(meta.author, "Unknown")

    def test_invalid_severity_is_load_error(self):
        with self.assertRaises(LoadError):
            build_metadata("/t/x.rb", Language.RUBY, "# @severity: apocalyptic\n")

    def test_tags_from_code(self):
        go_source = "// @id: go-probe\nvar meta = Meta{\n\tTags: []string{\"web\", \"exposure\"},\n}\n"
        self.assertEqual(parse_headers(go_source).tags, ["web", "exposure"])
        java_source = "List<String> tags = Arrays.asList(\"jmx\", \"rce\");\n"
        self.assertEqual(parse_headers(java_source).tags, ["jmx", "rce"])


class TestOutputParser(unittest.TestCase):
    def setUp(self):
        self.meta = TemplateMetadata(id="redis-unauth", name="Redis Unauthenticated Access",
                                     severity=Severity.HIGH, language=Language.PYTHON,
                                     tags=("redis",), cwe="CWE-306")
        self.target = Target("10.0.0.5", 6379, protocol="tcp")

    def test_redis_scenario(self):
        stdout = json.dumps({"findings": [{
            "id": "redis-unauth",
            "severity": "high",
            "evidence": {"response": "+PONG"},
        }]})
        findings = parse_findings(stdout, self.meta, self.target)
        self.assertEqual(len(findings), 1)
        f = findings[0]
        self.assertEqual(f.id, "redis-unauth")
        self.assertEqual(f.severity, Severity.HIGH)
        self.assertEqual(f.evidence, {"response": "+PONG"})
        self.assertEqual(f.name, "Redis Unauthenticated Access")
        self.assertEqual(f.tags, ("redis",))
        self.assertEqual(f.target, "10.0.0.5:6379")

    def test_noise_around_document(self):
        stdout = ("DeprecationWarning: something\n{not json\n"
                  + json.dumps({"findings": [{"name": "x"}]}) + "\ntrailing log line\n")
        findings = parse_findings(stdout, self.meta)
        self.assertEqual(len(findings), 1)
        # id and severity inherited from the template
        self.assertEqual(findings[0].id, "redis-unauth")
        self.assertEqual(findings[0].severity, Severity.HIGH)

    def test_bare_array(self):
        stdout = json.dumps([{"id": "a", "severity": "low"}, {"id": "b"}])
        findings = parse_findings(stdout, self.meta)
        self.assertEqual([f.id for f in findings], ["a", "b"])
        self.assertEqual(findings[0].severity, Severity.LOW)

    def test_empty_output(self):
        self.assertEqual(parse_findings("", self.meta), [])
        self.assertEqual(parse_findings("  \n", self.meta), [])
        self.assertEqual(parse_findings('{"findings": []}', self.meta), [])

    def test_invalid_documents(self):
        with self.assertRaises(InvalidOutput):
            parse_findings("plain text, no json here", self.meta)
        with self.assertRaises(InvalidOutput):
            parse_findings('{"findings": {"id": "x"}}', self.meta)
        with self.assertRaises(InvalidOutput):
            parse_findings('{"findings": ["x"]}', self.meta)
        with self.assertRaises(InvalidOutput):
            parse_findings('{"findings": [{"severity": "urgent"}]}', self.meta)


if __name__ == '__main__':
    unittest.main()
