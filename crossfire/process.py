"""
Process boundary: the environment contract handed to every template process
and a supervisor that owns the child for the duration of one execution.
"""
import errno
import json
import logging
import os
import queue
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from .errors import EngineUnavailable, ExecutionTimeout, TransientDialError
from .models import Context, Target, TemplateMetadata

logger = logging.getLogger("crossfire.process")

ENV_PREFIX = "CROSSFIRE_"
KILL_GRACE = 0.5
_TRANSIENT_ERRNOS = {errno.EAGAIN, errno.ENOMEM, errno.EMFILE, errno.ENFILE}


def build_env(target: Target, context: Context, metadata: Optional[TemplateMetadata] = None) -> Dict[str, str]:
    env = {
        "MODE": context.mode,
        "TARGET_HOST": target.host,
        "TARGET_PORT": str(target.port if target.port is not None else 80),
        "TARGET_URL": target.base_url(),
        "TIMEOUT": f"{context.timeout:g}",
        "RETRIES": str(context.retry_count),
        "USER_AGENT": context.user_agent,
    }
    if context.additional_ports:
        env["ADD_PORTS"] = ",".join(str(p) for p in context.additional_ports)
    if context.override_ports is not None:
        env["OVERRIDE_PORTS"] = ",".join(str(p) for p in context.override_ports)
    if context.variables:
        env["CONTEXT"] = json.dumps(context.variables, sort_keys=True)
    if metadata is not None:
        env["TEMPLATE_ID"] = metadata.id
        env["TEMPLATE_NAME"] = metadata.name
        env["TEMPLATE_AUTHOR"] = metadata.author
    return {ENV_PREFIX + key: value for key, value in env.items()}


@dataclass
class ProcessResult:
    returncode: int
    stdout: str
    stderr: str
    elapsed: float

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def stderr_tail(self, limit: int = 1000) -> str:
        return self.stderr.strip()[-limit:]


class ProcessSupervisor:
    """
    Spawns a child in its own process group and waits for exactly one of:
    completion, timeout, or cancellation. A waiter thread owns the child handle
    and posts the collected output on a queue; the caller never touches the
    process state directly.
    """

    def __init__(self, poll_interval: float = 0.1):
        self.poll_interval = poll_interval

    def run(self, argv: List[str], env: Dict[str, str], timeout: float,
            cwd: Optional[str] = None, cancel: Optional[threading.Event] = None) -> ProcessResult:
        child_env = dict(os.environ)
        child_env.update(env)
        start = time.monotonic()
        proc = self._spawn(argv, child_env, cwd)

        inbox: "queue.Queue" = queue.Queue()
        waiter = threading.Thread(target=self._wait, args=(proc, inbox), daemon=True)
        waiter.start()

        deadline = start + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.kill_tree(proc)
                waiter.join(KILL_GRACE * 4)
                raise ExecutionTimeout(timeout)
            if cancel is not None and cancel.is_set():
                self.kill_tree(proc)
                waiter.join(KILL_GRACE * 4)
                raise ExecutionTimeout(time.monotonic() - start)
            try:
                stdout, stderr = inbox.get(timeout=min(remaining, self.poll_interval))
            except queue.Empty:
                continue
            return ProcessResult(
                returncode=proc.returncode,
                stdout=stdout.decode("utf-8", errors="replace"),
                stderr=stderr.decode("utf-8", errors="replace"),
                elapsed=time.monotonic() - start,
            )

    def _spawn(self, argv: List[str], env: Dict[str, str], cwd: Optional[str]) -> subprocess.Popen:
        kwargs = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        try:
            return subprocess.Popen(
                argv, env=env, cwd=cwd,
                stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                **kwargs,
            )
        except FileNotFoundError as e:
            raise EngineUnavailable(os.path.basename(argv[0]), argv[0]) from e
        except OSError as e:
            if e.errno in _TRANSIENT_ERRNOS:
                raise TransientDialError(f"Could not spawn {argv[0]}: {e}") from e
            raise

    @staticmethod
    def _wait(proc: subprocess.Popen, inbox: "queue.Queue"):
        stdout, stderr = proc.communicate()
        inbox.put((stdout or b"", stderr or b""))

    @staticmethod
    def kill_tree(proc: subprocess.Popen):
        """
        SIGTERM the whole group, then SIGKILL whatever survives the grace period.
        The group is signalled even when the leader has already exited: a
        background grandchild can outlive it and keep the output pipes open.
        """
        if sys.platform == "win32":
            if proc.poll() is None:
                proc.kill()
            return
        # start_new_session makes the child's pid its process group id
        pgid = proc.pid
        try:
            os.killpg(pgid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return
        try:
            proc.wait(KILL_GRACE)
        except subprocess.TimeoutExpired:
            pass
        try:
            os.killpg(pgid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            return
        try:
            proc.wait(KILL_GRACE)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process group {pgid} did not exit after SIGKILL")
