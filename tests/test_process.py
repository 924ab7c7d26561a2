import json
import os
import sys
import tempfile
import threading
import time
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from crossfire.errors import EngineUnavailable, ExecutionTimeout
from crossfire.models import Context, Language, Severity, Target, TemplateMetadata
from crossfire.process import ProcessSupervisor, build_env


def process_alive(pid):
    """Zombies awaiting their new parent count as gone."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    if not os.path.isdir("/proc"):
        return True
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except FileNotFoundError:
        return False


class TestEnvironmentContract(unittest.TestCase):
    def test_build_env(self):
        meta = TemplateMetadata(id="redis-unauth", name="Redis", severity=Severity.HIGH,
                                language=Language.PYTHON, author="ops")
        context = Context(timeout=5, retry_count=2, additional_ports=(8080,),
                          variables={"token": "abc"})
        env = build_env(Target("10.0.0.5", 6379, protocol="tcp"), context, meta)

        self.assertEqual(env["CROSSFIRE_TARGET_HOST"], "10.0.0.5")
        self.assertEqual(env["CROSSFIRE_TARGET_PORT"], "6379")
        self.assertEqual(env["CROSSFIRE_TIMEOUT"], "5")
        self.assertEqual(env["CROSSFIRE_RETRIES"], "2")
        self.assertEqual(env["CROSSFIRE_ADD_PORTS"], "8080")
        self.assertEqual(env["CROSSFIRE_TEMPLATE_ID"], "redis-unauth")
        self.assertEqual(env["CROSSFIRE_MODE"], "engine")
        self.assertEqual(json.loads(env["CROSSFIRE_CONTEXT"]), {"token": "abc"})
        self.assertNotIn("CROSSFIRE_OVERRIDE_PORTS", env)

    def test_default_port(self):
        env = build_env(Target("example.com"), Context())
        self.assertEqual(env["CROSSFIRE_TARGET_PORT"], "80")
        self.assertEqual(env["CROSSFIRE_TARGET_URL"], "http://example.com")


@unittest.skipIf(sys.platform == "win32", "process groups are POSIX-only")
class TestProcessSupervisor(unittest.TestCase):
    def setUp(self):
        self.supervisor = ProcessSupervisor()

    def test_collects_output_and_env(self):
        code = "import os; print(os.environ['CROSSFIRE_TARGET_HOST'])"
        result = self.supervisor.run([sys.executable, "-c", code],
                                     {"CROSSFIRE_TARGET_HOST": "10.0.0.5"}, timeout=30)
        self.assertTrue(result.ok)
        self.assertEqual(result.stdout.strip(), "10.0.0.5")

    def test_nonzero_exit(self):
        code = "import sys; sys.stderr.write('boom'); sys.exit(3)"
        result = self.supervisor.run([sys.executable, "-c", code], {}, timeout=30)
        self.assertEqual(result.returncode, 3)
        self.assertEqual(result.stderr_tail(), "boom")

    def test_timeout_kills_process_tree(self):
        # Child spawns a grandchild; both must be gone once the timeout fires
        code = ("import subprocess, sys, time; "
                "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']); "
                "time.sleep(60)")
        start = time.monotonic()
        with self.assertRaises(ExecutionTimeout):
            self.supervisor.run([sys.executable, "-c", code], {}, timeout=1.0)
        elapsed = time.monotonic() - start
        self.assertLess(elapsed, 1.0 + 3.0)

    def test_timeout_kills_orphaned_grandchild(self):
        # Leader exits at once; the grandchild keeps stdout open so the run times out
        with tempfile.NamedTemporaryFile("r", suffix=".pid", delete=False) as f:
            pidfile = f.name
        self.addCleanup(os.unlink, pidfile)
        code = ("import subprocess, sys; "
                "p = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']); "
                f"open({pidfile!r}, 'w').write(str(p.pid)); print('started')")
        with self.assertRaises(ExecutionTimeout):
            self.supervisor.run([sys.executable, "-c", code], {}, timeout=1.0)

        with open(pidfile) as f:
            pid = int(f.read())
        deadline = time.monotonic() + 3
        while process_alive(pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        self.assertFalse(process_alive(pid))

    def test_cancel(self):
        cancel = threading.Event()
        threading.Timer(0.3, cancel.set).start()
        with self.assertRaises(ExecutionTimeout):
            self.supervisor.run([sys.executable, "-c", "import time; time.sleep(30)"], {},
                                timeout=30, cancel=cancel)

    def test_missing_interpreter(self):
        with self.assertRaises(EngineUnavailable):
            self.supervisor.run(["/nonexistent/crossfire-interp"], {}, timeout=5)


if __name__ == '__main__':
    unittest.main()
