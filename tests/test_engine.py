"""Tests for the engine: step driving, continuous tasks and wiring."""
from __future__ import annotations

from datetime import timedelta

from followthrough.core.audit import read_events
from followthrough.core.engine import Engine, build_registry
from followthrough.core.lifecycle import StepOutcome
from followthrough.core.tasks import ACTIVE, CANCELLED, COMPLETED, FAILED, WAITING, WAITING_FOR_INPUT
from followthrough.integrations.base import IntegrationId

from conftest import ScriptedExecutor, emojis, make_settings, wait_until


class TestRunSteps:
    def test_runs_until_the_plan_is_done(self, make_engine):
        executor = ScriptedExecutor()
        engine = make_engine(executor)
        task = engine.create_task("Tidy", "tidy up", plan=["One", "Two", "Three"], start=False)

        assert engine.execute_task(task.task_id) is True

        assert [step for _, step in executor.calls] == [1, 2, 3]
        task = engine.get_task(task.task_id)
        assert task.status == COMPLETED
        assert emojis(engine.notifier).count("✅") == 1

    def test_stops_when_task_leaves_active(self, make_engine):
        executor = ScriptedExecutor([None, StepOutcome(next_status=WAITING_FOR_INPUT, clarification_question="Which room?")])
        engine = make_engine(executor)
        task = engine.create_task("Book", "book a room", plan=["Find rooms", "Pick one", "Book it"], start=False)

        engine.execute_task(task.task_id)

        task = engine.get_task(task.task_id)
        assert task.status == WAITING_FOR_INPUT
        assert task.current_step.index == 2
        assert len(executor.calls) == 2
        assert engine.notifier.recent()[-1].message == "Which room?"

    def test_executor_error_fails_only_that_task(self, make_engine, data_dir):
        executor = ScriptedExecutor([RuntimeError("contact lookup exploded")])
        engine = make_engine(executor)
        task = engine.create_task("Bad", "x", plan=["One"], start=False)

        engine.execute_task(task.task_id)

        task = engine.get_task(task.task_id)
        assert task.status == FAILED
        assert task.execution_log[-1].message == "Task failed: contact lookup exploded"
        assert "❌" in emojis(engine.notifier)
        assert [e["task_id"] for e in read_events(data_dir, "task.failed")] == [task.task_id]

    def test_cancel_during_a_step_drops_its_outcome(self, make_engine, monkeypatch):
        stale = {}

        def cancel_mid_step(task):
            engine.store.cancel_task(task.task_id)
            stale[task.task_id] = task
            return StepOutcome(next_status=COMPLETED)

        engine = make_engine(ScriptedExecutor([cancel_mid_step]))
        real_require = engine.store.require
        # the outcome is applied against the copy read before the cancel landed
        monkeypatch.setattr(engine.store, "require", lambda task_id: stale.pop(task_id, None) or real_require(task_id))
        task = engine.create_task("Race", "x", plan=["One", "Two"], start=False)

        assert engine.execute_task(task.task_id) is True

        task = engine.get_task(task.task_id)
        assert task.status == CANCELLED
        assert task.execution_log[-1].message == "Task cancelled by user"
        assert "✅" not in emojis(engine.notifier)

    def test_long_runs_yield_and_resume_later(self, make_engine):
        executor = ScriptedExecutor()
        engine = make_engine(executor)
        engine.max_steps_per_run = 2
        task = engine.create_task("Long", "x", plan=[f"Step {i}" for i in range(1, 6)], start=False)

        try:
            engine.execute_task(task.task_id)
        finally:
            engine.scheduler.stop()

        task = engine.get_task(task.task_id)
        assert task.status == ACTIVE
        assert task.current_step.index == 3
        assert len(executor.calls) == 2

    def test_no_executor_leaves_task_active(self, make_engine):
        engine = make_engine()
        task = engine.create_task("Idle", "x", plan=["One", "Two"], start=False)
        engine.execute_task(task.task_id)
        task = engine.get_task(task.task_id)
        assert task.status == ACTIVE
        assert task.current_step.index == 1

    def test_create_task_kicks_execution(self, make_engine):
        executor = ScriptedExecutor()
        engine = make_engine(executor)
        task = engine.create_task("Quick", "x", plan=["Only"])
        assert wait_until(lambda: engine.get_task(task.task_id).status == COMPLETED)

    def test_user_response_resumes(self, make_engine):
        executor = ScriptedExecutor([StepOutcome(next_status=WAITING_FOR_INPUT, clarification_question="Who?")])
        engine = make_engine(executor)
        task = engine.create_task("Ask", "x", plan=["Ask who", "Do it"], start=False)
        engine.execute_task(task.task_id)

        engine.submit_user_response(task.task_id, "Bob", run=False)
        engine.execute_task(task.task_id)

        task = engine.get_task(task.task_id)
        assert task.status == COMPLETED
        assert task.context_memory["userResponse"] == "Bob"
        assert [step for _, step in executor.calls] == [1, 1, 2]


class TestContinuousTasks:
    def test_final_step_loops_back_to_first(self, make_engine):
        executor = ScriptedExecutor()
        engine = make_engine(executor)
        task = engine.create_task(
            "Watch invoices",
            "watch for invoices",
            plan=["Check for invoices", "Summarize"],
            task_type="continuous",
            poll_frequency="15min",
            start=False,
        )

        engine.execute_task(task.task_id)

        task = engine.get_task(task.task_id)
        assert task.status == WAITING
        assert task.current_step.index == 1
        assert task.next_check is not None

        engine.scheduler.tick(now=task.next_check + timedelta(seconds=1))

        task = engine.get_task(task.task_id)
        assert task.status == WAITING
        assert task.current_step.index == 1
        assert [step for _, step in executor.calls] == [1, 2, 1, 2]
        assert "✅" not in emojis(engine.notifier)


class TestWiring:
    def test_build_registry_from_tokens(self, tmp_path):
        settings = make_settings(tmp_path, slack_bot_token="xoxb-1", telegram_bot_token="123:abc", imessage_enabled=True)
        ids = build_registry(settings).ids()
        assert set(ids) == {IntegrationId.SLACK, IntegrationId.TELEGRAM, IntegrationId.IMESSAGE}

    def test_default_registry_is_empty_without_tokens(self, tmp_path):
        engine = Engine(make_settings(tmp_path))
        assert engine.registry.ids() == []

    def test_start_stop(self, make_engine):
        engine = make_engine()
        engine.start()
        try:
            assert engine.scheduler.running
        finally:
            engine.stop()
        assert not engine.scheduler.running

    def test_logout_rejects_confirmations_and_clears_caches(self, make_engine):
        engine = make_engine()
        engine.credentials.set_token("slack", "xoxb-stored")
        assert engine.logout() == {"confirmations_cleared": 0}
        assert engine.credentials.token_for("slack") == "xoxb-stored"
