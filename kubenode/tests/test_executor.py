import pytest

from kubenode.engine.checkpoint import CheckpointStore
from kubenode.engine.executor import Step, StepContext, StepExecutor, StepStatus
from kubenode.errors import FatalStepError


class RecordingStep(Step):
    def __init__(self, name, log, fail=False, warn=None, optional=False):
        super().__init__(optional=optional)
        self.name = name
        self.description = f"test step {name}"
        self.log = log
        self.fail = fail
        self.warning = warn

    def run(self, ctx):
        self.log.append(self.name)
        if self.warning:
            ctx.warn(self.warning)
        if self.fail:
            raise FatalStepError(f"{self.name} broke")


@pytest.fixture
def store(tmp_path):
    store = CheckpointStore(tmp_path / "checkpoints")
    store.init()
    return store


@pytest.fixture
def context():
    return StepContext(config=None, host=None, probe=None, fetcher=None)


def test_runs_all_steps_in_order(store, context):
    log = []
    steps = [RecordingStep(name, log) for name in ("a", "b", "c")]
    report = StepExecutor(store).run_all(steps, context)

    assert log == ["a", "b", "c"]
    assert report.success
    assert [o.status for o in report.outcomes] == [StepStatus.COMPLETED] * 3
    assert all(store.exists(name) for name in ("a", "b", "c"))


def test_checkpointed_step_is_skipped(store, context):
    store.mark("a")
    log = []
    report = StepExecutor(store).run_all([RecordingStep("a", log), RecordingStep("b", log)], context)

    assert log == ["b"]
    assert report.outcome("a").status is StepStatus.SKIPPED
    assert report.outcome("a").completed_at


def test_fatal_failure_stops_the_run(store, context):
    log = []
    steps = [RecordingStep("a", log), RecordingStep("b", log, fail=True), RecordingStep("c", log)]
    report = StepExecutor(store).run_all(steps, context)

    assert log == ["a", "b"]
    assert not report.success
    assert report.failed_step == "b"
    assert report.outcome("b").status is StepStatus.FAILED
    assert "b broke" in report.outcome("b").error
    assert report.outcome("c") is None
    assert store.exists("a")
    assert not store.exists("b")


def test_rerun_after_failure_resumes_at_failed_step(store, context):
    log = []
    failing = RecordingStep("b", log, fail=True)
    executor = StepExecutor(store)
    executor.run_all([RecordingStep("a", log), failing], context)

    failing.fail = False
    log.clear()
    report = executor.run_all([RecordingStep("a", log), failing], context)
    assert log == ["b"]
    assert report.success


def test_optional_failure_continues(store, context):
    log = []
    steps = [RecordingStep("a", log, fail=True, optional=True), RecordingStep("b", log)]
    report = StepExecutor(store).run_all(steps, context)

    assert log == ["a", "b"]
    assert report.success
    assert report.outcome("a").status is StepStatus.FAILED_OPTIONAL
    assert not store.exists("a")
    assert store.exists("b")


def test_warnings_do_not_fail_a_step(store, context):
    log = []
    report = StepExecutor(store).run_all([RecordingStep("a", log, warn="disk is slow")], context)

    assert report.success
    assert report.outcome("a").warnings == ["disk is slow"]
    assert report.warnings == ["disk is slow"]
    assert context.warnings == ["disk is slow"]
    assert store.exists("a")


def test_unexpected_exception_is_fatal(store, context):
    class Broken(Step):
        name = "broken"

        def run(self, ctx):
            raise KeyError("missing")

    report = StepExecutor(store).run_all([Broken()], context)
    assert report.failed_step == "broken"
    assert not store.exists("broken")
