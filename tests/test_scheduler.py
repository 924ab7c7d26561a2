import os
import sys
import threading
import time
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from crossfire.config import ConcurrencyLimits, RateLimits, ScanConfig
from crossfire.engines import Template
from crossfire.errors import ConfigurationError
from crossfire.forensics import AuditTrail
from crossfire.models import Context, Finding, JobOutcome, JobStatus, Language, Severity, Target, TemplateMetadata
from crossfire.scheduler import JobQueue, Scheduler
from crossfire.throttler import RateLimiter, TokenBucket


def make_template(template_id, severity=Severity.MEDIUM):
    meta = TemplateMetadata(id=template_id, name=template_id, severity=severity, language=Language.PYTHON)
    return Template(path=f"/t/{template_id}.py", language=Language.PYTHON, metadata=meta, source=b"")


class FakeExecutor:
    """Records concurrency and start order instead of running anything."""

    def __init__(self, config, delay=0.05, fail_on=(), report=False):
        self.config = config
        self.delay = delay
        self.fail_on = set(fail_on)
        self.report = report
        self.lock = threading.Lock()
        self.active = 0
        self.active_per_target = {}
        self.peak = 0
        self.peak_per_target = 0
        self.started = []

    def run(self, template, target, context, cancel=None, sequence=0):
        with self.lock:
            self.active += 1
            self.active_per_target[target] = self.active_per_target.get(target, 0) + 1
            self.peak = max(self.peak, self.active)
            self.peak_per_target = max(self.peak_per_target, self.active_per_target[target])
            self.started.append((str(target), template.id))
        try:
            time.sleep(self.delay)
            if template.id in self.fail_on:
                raise RuntimeError("engine bug")
            findings = []
            if self.report:
                findings.append(Finding(id=template.id, name=template.id,
                                        severity=template.metadata.severity, target=str(target)))
            return JobOutcome(template_id=template.id, target=str(target),
                              status=JobStatus.OK, findings=findings, sequence=sequence)
        finally:
            with self.lock:
                self.active -= 1
                self.active_per_target[target] -= 1


def config_with(**limits):
    return ScanConfig(limits=ConcurrencyLimits(**limits))


class TestJobQueue(unittest.TestCase):
    def test_priority_then_submission_order(self):
        scheduler = Scheduler(FakeExecutor(config_with()))
        templates = [make_template("low", Severity.LOW), make_template("crit", Severity.CRITICAL),
                     make_template("low2", Severity.LOW)]
        queue = JobQueue(scheduler.build_jobs([Target("a")], templates))
        self.assertEqual([j.template.id for j in queue.drain()], ["crit", "low", "low2"])

    def test_pop_first_skips_inadmissible(self):
        scheduler = Scheduler(FakeExecutor(config_with()))
        jobs = scheduler.build_jobs([Target("a"), Target("b")], [make_template("t", Severity.HIGH)])
        queue = JobQueue(jobs)
        job = queue.pop_first(lambda j: j.target.host == "b")
        self.assertEqual(job.target.host, "b")
        self.assertEqual(len(queue), 1)
        self.assertIsNone(queue.pop_first(lambda j: False))


class TestScheduler(unittest.TestCase):
    def test_admission_ceiling_of_two(self):
        config = config_with(max_targets=10, max_templates_per_target=10, max_executions=2)
        executor = FakeExecutor(config)
        templates = [make_template(f"t{i}") for i in range(5)]
        result = Scheduler(executor).run([Target("a"), Target("b")], templates, Context())

        self.assertLessEqual(executor.peak, 2)
        self.assertEqual(executor.peak, 2)
        self.assertEqual(len(result.outcomes), 10)
        self.assertEqual(result.summary()["ok"], 10)

    def test_per_target_and_target_ceilings(self):
        config = config_with(max_targets=1, max_templates_per_target=2, max_executions=10)
        executor = FakeExecutor(config)
        templates = [make_template(f"t{i}") for i in range(4)]
        targets = [Target("a"), Target("b"), Target("c")]
        Scheduler(executor).run(targets, templates, Context())

        self.assertLessEqual(executor.peak_per_target, 2)
        # Only one target in flight at any time
        self.assertLessEqual(executor.peak, 2)

    def test_priority_within_target(self):
        config = config_with(max_targets=1, max_templates_per_target=1, max_executions=1)
        executor = FakeExecutor(config, delay=0.01)
        templates = [make_template("info", Severity.INFO), make_template("high", Severity.HIGH),
                     make_template("crit", Severity.CRITICAL)]
        result = Scheduler(executor).run([Target("a")], templates, Context())

        self.assertEqual([t for _, t in executor.started], ["crit", "high", "info"])
        # Outcomes come back in submission order regardless of run order
        self.assertEqual([o.template_id for o in result.outcomes], ["info", "high", "crit"])

    def test_job_failure_does_not_abort_scan(self):
        config = config_with()
        executor = FakeExecutor(config, fail_on={"t1"})
        templates = [make_template(f"t{i}") for i in range(3)]
        result = Scheduler(executor).run([Target("a")], templates, Context())

        self.assertEqual(result.summary()["error"], 1)
        self.assertEqual(result.summary()["ok"], 2)

    def test_empty_inputs_are_fatal(self):
        scheduler = Scheduler(FakeExecutor(config_with()))
        with self.assertRaises(ConfigurationError):
            scheduler.run([], [make_template("t")], Context())
        with self.assertRaises(ConfigurationError):
            scheduler.run([Target("a")], [], Context())

    def test_cancel_marks_queued_jobs(self):
        config = config_with(max_targets=1, max_templates_per_target=1, max_executions=1)
        executor = FakeExecutor(config, delay=0.3)
        scheduler = Scheduler(executor)
        threading.Timer(0.1, scheduler.cancel).start()
        templates = [make_template(f"t{i}") for i in range(5)]
        result = scheduler.run([Target("a")], templates, Context())

        self.assertTrue(result.cancelled)
        summary = result.summary()
        self.assertEqual(summary["ok"], 1)
        self.assertEqual(summary["cancelled"], 4)
        self.assertEqual(len(result.outcomes), 5)

    def test_cancel_keeps_findings_of_running_jobs(self):
        config = config_with(max_targets=1, max_templates_per_target=1, max_executions=1)
        executor = FakeExecutor(config, delay=0.3, report=True)
        scheduler = Scheduler(executor)
        threading.Timer(0.1, scheduler.cancel).start()
        templates = [make_template(f"t{i}") for i in range(3)]
        result = scheduler.run([Target("a")], templates, Context())

        self.assertTrue(result.cancelled)
        self.assertEqual([f.id for f in result.findings], ["t0"])
        self.assertEqual(result.summary()["cancelled"], 2)

    def test_audit_trail(self):
        audit = AuditTrail()
        config = config_with()
        Scheduler(FakeExecutor(config, delay=0), audit=audit).run(
            [Target("a")], [make_template("t1"), make_template("t2")], Context())

        types = [e["type"] for e in audit.events]
        self.assertEqual(types.count("JOB_ADMITTED"), 2)
        self.assertEqual(types.count("JOB_COMPLETE"), 2)
        self.assertEqual(types[-1], "SCAN_COMPLETE")
        self.assertTrue(audit.verify())
        self.assertIn("signature", audit.sign_run())


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestRateLimiter(unittest.TestCase):
    def test_token_bucket(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2.0, burst=1, clock=clock)
        self.assertEqual(bucket.wait_time(), 0.0)
        bucket.take()
        bucket.refill()
        self.assertAlmostEqual(bucket.wait_time(), 0.5)
        clock.now += 0.5
        bucket.refill()
        self.assertEqual(bucket.wait_time(), 0.0)

    def test_all_buckets_debited_together(self):
        clock = FakeClock()
        limiter = RateLimiter(RateLimits(global_rate=10.0, per_host_rate=1.0), clock=clock)
        self.assertEqual(limiter.try_acquire("a", "http"), 0.0)
        clock.now += 0.2
        # Global bucket has refilled but host "a" has not: nothing is debited
        self.assertAlmostEqual(limiter.try_acquire("a", "http"), 0.8)
        self.assertEqual(limiter.try_acquire("b", "http"), 0.0)
        self.assertGreater(limiter.try_acquire("c", "http"), 0.0)

    def test_per_protocol(self):
        clock = FakeClock()
        limiter = RateLimiter(RateLimits(per_protocol_rate={"tcp": 1.0}), clock=clock)
        self.assertEqual(limiter.try_acquire("a", "tcp"), 0.0)
        self.assertGreater(limiter.try_acquire("b", "tcp"), 0.0)
        self.assertEqual(limiter.try_acquire("b", "http"), 0.0)

    def test_scheduler_respects_rate_limit(self):
        config = ScanConfig(rate_limits=RateLimits(per_host_rate=20.0))
        executor = FakeExecutor(config, delay=0)
        start = time.monotonic()
        Scheduler(executor).run([Target("a")], [make_template(f"t{i}") for i in range(5)], Context())
        # Burst of one: four refills at 20/s
        self.assertGreaterEqual(time.monotonic() - start, 0.15)


if __name__ == '__main__':
    unittest.main()
