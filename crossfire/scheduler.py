"""
Expands targets x templates into jobs and runs them under three admission
ceilings (targets in flight, templates per target, total executions) and
the configured rate limits.
"""
import heapq
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .config import ScanConfig
from .engines import Template
from .errors import ConfigurationError
from .executor import Executor
from .forensics import AuditTrail
from .models import Context, Job, JobOutcome, JobStatus, ScanResult, Target
from .throttler import RateLimiter

logger = logging.getLogger("crossfire.scheduler")


class JobQueue:
    """Priority queue of pending jobs: highest severity first, then submission order."""

    def __init__(self, jobs: Iterable[Job] = ()):
        self._heap = [(job.sort_key, job) for job in jobs]
        heapq.heapify(self._heap)

    def __len__(self):
        return len(self._heap)

    def pop_first(self, admissible: Callable[[Job], bool]) -> Optional[Job]:
        """Removes and returns the highest-priority job the predicate accepts."""
        for _, job in sorted(self._heap, key=lambda item: item[0]):
            if admissible(job):
                self._heap = [item for item in self._heap if item[1] is not job]
                heapq.heapify(self._heap)
                return job
        return None

    def drain(self) -> List[Job]:
        jobs = [job for _, job in sorted(self._heap, key=lambda item: item[0])]
        self._heap = []
        return jobs


class Scheduler:
    def __init__(self, executor: Executor, config: Optional[ScanConfig] = None,
                 audit: Optional[AuditTrail] = None, limiter: Optional[RateLimiter] = None,
                 poll_interval: float = 0.05):
        self.executor = executor
        self.config = config or executor.config
        self.config.validate()
        self.audit = audit
        self.limiter = limiter or RateLimiter(self.config.rate_limits)
        self.poll_interval = poll_interval

        self._cond = threading.Condition()
        self._cancel = threading.Event()
        self._running_total = 0
        self._running: Dict[Target, int] = {}
        self._next_token = poll_interval
        self.peak_executions = 0

    # --- Admission ---

    def _admissible(self, job: Job) -> bool:
        limits = self.config.limits
        if self._running_total >= limits.max_executions:
            return False
        per_target = self._running.get(job.target, 0)
        if per_target == 0 and len(self._running) >= limits.max_targets:
            return False
        if per_target >= limits.max_templates_per_target:
            return False
        wait = self.limiter.try_acquire(job.target.host, job.target.protocol)
        if wait > 0:
            self._next_token = min(self._next_token, wait)
            return False
        return True

    def _admit(self, job: Job):
        self._running_total += 1
        self._running[job.target] = self._running.get(job.target, 0) + 1
        self.peak_executions = max(self.peak_executions, self._running_total)

    def _release(self, job: Job):
        self._running_total -= 1
        remaining = self._running.get(job.target, 1) - 1
        if remaining:
            self._running[job.target] = remaining
        else:
            self._running.pop(job.target, None)

    # --- Run ---

    def cancel(self):
        """Stops admissions immediately. Running jobs finish or hit their own timeout."""
        logger.warning("Scan cancellation requested")
        self._cancel.set()
        with self._cond:
            self._cond.notify_all()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def build_jobs(self, targets: Sequence[Target], templates: Sequence[Template]) -> List[Job]:
        jobs = []
        sequence = 0
        for target in targets:
            for template in templates:
                jobs.append(Job(target=target, template=template,
                                priority=template.metadata.severity.rank, sequence=sequence))
                sequence += 1
        return jobs

    def run(self, targets: Sequence[Target], templates: Sequence[Template], context: Context) -> ScanResult:
        if not targets:
            raise ConfigurationError("No targets to scan")
        if not templates:
            raise ConfigurationError("No templates to run")

        result = ScanResult()
        queue = JobQueue(self.build_jobs(targets, templates))
        outcomes: List[JobOutcome] = []
        limits = self.config.limits
        logger.info(f"Scheduling {len(queue)} jobs ({len(targets)} targets x {len(templates)} templates)")
        if self.audit:
            self.audit.log_event("SCAN_START", {"jobs": len(queue), "targets": len(targets),
                                                "templates": len(templates)})

        def work(job: Job):
            try:
                outcome = self.executor.run(job.template, job.target, context,
                                            cancel=self._cancel, sequence=job.sequence)
            except Exception as e:
                logger.exception(f"Job {job.template.id} @ {job.target} crashed")
                outcome = JobOutcome(template_id=job.template.id, target=str(job.target),
                                     status=JobStatus.ERROR, reason=str(e), sequence=job.sequence)
            if self.audit:
                self.audit.log_event("JOB_COMPLETE", {
                    "template": outcome.template_id, "target": outcome.target,
                    "status": outcome.status.value, "findings": len(outcome.findings),
                    "reason": outcome.reason,
                })
            with self._cond:
                outcomes.append(outcome)
                self._release(job)
                self._cond.notify_all()

        with ThreadPoolExecutor(max_workers=limits.max_executions,
                                thread_name_prefix="crossfire-job") as pool:
            while True:
                with self._cond:
                    if self._cancel.is_set():
                        break
                    if not queue and self._running_total == 0:
                        break
                    self._next_token = self.poll_interval
                    job = queue.pop_first(self._admissible) if queue else None
                    if job is None:
                        # Saturated or rate limited: the job stays queued
                        self._cond.wait(max(self._next_token, 0.001))
                        continue
                    self._admit(job)

                if self.audit:
                    self.audit.log_event("JOB_ADMITTED", {"template": job.template.id,
                                                          "target": str(job.target)})
                pool.submit(work, job)

            with self._cond:
                for job in queue.drain():
                    outcomes.append(JobOutcome(template_id=job.template.id, target=str(job.target),
                                               status=JobStatus.CANCELLED, reason="scan cancelled",
                                               attempts=0, sequence=job.sequence))
            # Leaving the pool context waits for running jobs

        result.outcomes = sorted(outcomes, key=lambda o: o.sequence)
        result.finished_at = time.time()
        result.cancelled = self._cancel.is_set()
        summary = result.summary()
        logger.info(f"Scan finished: {len(result.findings)} findings, " +
                    ", ".join(f"{k}={v}" for k, v in summary.items() if v))
        if self.audit:
            self.audit.log_event("SCAN_COMPLETE", {"summary": summary, "cancelled": result.cancelled})
        return result
