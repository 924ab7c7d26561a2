"""
Runs one template against one target and turns every failure mode into a
JobOutcome. Nothing raised by an engine escapes Executor.run.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Dict, List, Optional

from .config import ScanConfig, get_config
from .engines import Engine, EngineRegistry, Template
from .errors import (
    CompilationFailed, CrossfireError, EngineUnavailable, ExecutionTimeout,
    InvalidOutput, TransientDialError,
)
from .models import Context, Finding, JobOutcome, JobStatus, Target
from .process import build_env

logger = logging.getLogger("crossfire.executor")


class Executor:
    def __init__(self, registry: EngineRegistry, config: Optional[ScanConfig] = None,
                 workers: Optional[int] = None):
        self.registry = registry
        self.config = config or registry.config or get_config()
        # Timed-out engine calls may linger until they notice the stop signal; leave headroom
        size = workers or self.config.limits.max_executions * 2
        self.pool = ThreadPoolExecutor(max_workers=size, thread_name_prefix="crossfire-exec")

    def run(self, template: Template, target: Target, context: Context,
            cancel: Optional[threading.Event] = None, sequence: int = 0) -> JobOutcome:
        start = time.monotonic()
        outcome = JobOutcome(template_id=template.id, target=str(target),
                             status=JobStatus.OK, sequence=sequence, attempts=0)
        try:
            self._run(template, target, context, cancel, outcome)
        except Exception as e:
            # Last-resort isolation: a bug in one engine must not take the scan down
            logger.exception(f"Unexpected failure in {template.id} @ {target}")
            outcome.status = JobStatus.ERROR
            outcome.reason = f"{type(e).__name__}: {e}"
        outcome.duration = time.monotonic() - start
        logger.debug(f"{template.id} @ {target}: {outcome.status.value} {outcome.reason}")
        return outcome

    def _run(self, template: Template, target: Target, context: Context,
             cancel: Optional[threading.Event], outcome: JobOutcome):
        engine = self.registry.engine(template.language)

        try:
            engine.prepare(template)
        except (EngineUnavailable, CompilationFailed) as e:
            outcome.status = JobStatus.SKIP
            outcome.reason = str(e)
            logger.warning(f"Skipping {template.id}: {e}")
            return

        env = build_env(target, context, template.metadata)
        while True:
            outcome.attempts += 1
            try:
                outcome.findings = self._execute(engine, template, target, context, env)
                outcome.status = JobStatus.OK
            except TransientDialError as e:
                if outcome.attempts <= context.retry_count and not (cancel and cancel.is_set()):
                    logger.info(f"{template.id} @ {target}: {e}; retrying in {context.retry_delay:g}s "
                                f"(attempt {outcome.attempts + 1}/{context.retry_count + 1})")
                    if cancel is not None:
                        cancel.wait(context.retry_delay)
                    else:
                        time.sleep(context.retry_delay)
                    continue
                outcome.status = JobStatus.ERROR
                outcome.reason = str(e)
            except (EngineUnavailable, CompilationFailed) as e:
                outcome.status = JobStatus.SKIP
                outcome.reason = str(e)
            except ExecutionTimeout as e:
                outcome.status = JobStatus.TIMEOUT
                outcome.reason = str(e)
                outcome.findings = []
            except InvalidOutput as e:
                outcome.status = JobStatus.OK
                outcome.findings = []
                outcome.warnings.append(f"invalid output: {e}")
                logger.warning(f"{template.id} @ {target} produced invalid output: {e}")
            except CrossfireError as e:
                outcome.status = JobStatus.ERROR
                outcome.reason = str(e)
            return

    def _execute(self, engine: Engine, template: Template, target: Target,
                 context: Context, env: Dict[str, str]) -> List[Finding]:
        stop = threading.Event()
        future = self.pool.submit(engine.execute_template, template, target, context, env, stop)
        try:
            return future.result(timeout=context.timeout + self.config.timeout_grace)
        except FutureTimeout:
            stop.set()
            future.cancel()
            raise ExecutionTimeout(context.timeout)

    def shutdown(self, wait: bool = True):
        self.pool.shutdown(wait=wait)
