"""
Heartbeat scheduling and ledger integrity tasks.
"""

import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from reunite.core import heartbeat
from reunite.core.db import get_db
from reunite.core.heartbeat import (
    get_status, list_tasks, register_integrity_tasks, register_task, reset_task, run_due_tasks, run_task,
    should_run_task, unregister_task,
)
from reunite.core.schema import ConsentRecord, utcnow


@pytest.fixture(autouse=True)
def reset_heartbeat():
    """Reset heartbeat state between tests."""
    heartbeat.tasks.clear()
    heartbeat.running = False
    heartbeat.shutdown_event = None
    heartbeat.alerts = None
    yield
    heartbeat.tasks.clear()


class TestHeartbeatRegistration:

    def test_register_task_valid(self):
        register_task("test_task", 30, lambda: None)
        assert list_tasks() == ["test_task"]

    def test_register_task_invalid_func(self):
        with pytest.raises(ValueError, match="Task function must be callable"):
            register_task("bad_task", 30, "not_callable")

    def test_register_task_invalid_interval(self):
        with pytest.raises(ValueError, match="Interval must be >= 1 second"):
            register_task("bad_task", 0, lambda: None)

    def test_register_duplicate_replaces(self):
        register_task("duplicate", 30, lambda: None)
        register_task("duplicate", 60, lambda: None)
        assert len(list_tasks()) == 1
        assert heartbeat.tasks["duplicate"]["interval"] == 60

    def test_unregister(self):
        register_task("test_task", 30, lambda: None)
        unregister_task("test_task")
        unregister_task("nonexistent")
        assert list_tasks() == []


class TestHeartbeatScheduling:

    def test_should_run_first_time(self):
        assert should_run_task("test", {"last_run": None, "interval": 30})

    def test_should_not_run_before_interval(self):
        assert not should_run_task("test", {"last_run": time.monotonic(), "interval": 30})

    def test_should_run_after_interval(self):
        assert should_run_task("test", {"last_run": time.monotonic() - 31, "interval": 30})

    def test_run_task_records_last_run(self):
        calls = []
        register_task("t", 30, lambda: calls.append(1))
        run_task("t", heartbeat.tasks["t"])
        assert calls == [1]
        assert heartbeat.tasks["t"]["last_run"] is not None

        reset_task("t")
        assert heartbeat.tasks["t"]["last_run"] is None

    def test_run_task_failure_raises_runtime_error(self):
        def boom():
            raise ValueError("disk unavailable")

        register_task("boom", 30, boom)
        with pytest.raises(RuntimeError, match="Task 'boom' failed"):
            run_task("boom", heartbeat.tasks["boom"])
        assert heartbeat.tasks["boom"]["last_run"] is not None

    def test_failing_task_does_not_stop_others(self):
        calls = []

        def boom():
            raise ValueError("fail")

        register_task("boom", 30, boom)
        register_task("ok", 30, lambda: calls.append("ok"))
        assert run_due_tasks() == 2
        assert calls == ["ok"]
        # Neither is due again within the interval
        assert run_due_tasks() == 0

    @patch('reunite.core.heartbeat.is_heartbeat_enabled', return_value=False)
    def test_status_disabled(self, mock_enabled):
        assert get_status()["status"] == "disabled"

    @patch('reunite.core.heartbeat.is_heartbeat_enabled', return_value=True)
    def test_status_lists_tasks(self, mock_enabled):
        register_task("t", 45, lambda: None)
        status = get_status()
        assert status["status"] == "stopped"
        assert status["tasks"]["t"]["interval_sec"] == 45
        assert status["tasks"]["t"]["next_run"] is None


class TestIntegrityTasks:

    def test_registers_verify_and_checkpoint(self, engine):
        register_integrity_tasks(engine)
        assert set(list_tasks()) == {"ledger_verify", "ledger_checkpoint", "consent_expiry"}

    def test_verify_task_latches_on_tamper(self, engine, alerts):

        for i in range(3):
            engine.ledger.append("tester", "test.event", f"res:{i}", {"i": i})
        with get_db(engine.db_path) as conn:
            conn.execute("UPDATE audit_ledger SET actor = 'intruder' WHERE event_id = 2")
            conn.commit()

        register_integrity_tasks(engine)
        run_due_tasks()
        assert engine.ledger.integrity_fault is not None
        assert any(a["kind"] == "integrity_fault" for a in alerts.raised)

    def test_repeated_failures_escalate_once(self, engine, alerts):
        register_integrity_tasks(engine)

        def boom():
            raise ValueError("segment dir unreadable")

        register_task("flaky", 30, boom)
        with patch.object(heartbeat.config, "HEARTBEAT_FAILURE_THRESHOLD", 2):
            for _ in range(3):
                reset_task("flaky")
                with pytest.raises(RuntimeError):
                    run_task("flaky", heartbeat.tasks["flaky"])

        escalations = [a for a in alerts.raised if a["kind"] == "heartbeat_failure"]
        assert len(escalations) == 1
        assert heartbeat.tasks["flaky"]["failures"] == 3

    def test_consent_expiry_task(self, engine):

        engine.record_consent(ConsentRecord(case_id="case-1", subject_is_minor=True))
        request = engine.consent.request_approval("case-1", "guardian_approval", "guardian-portal")
        request.expires_at = utcnow() - timedelta(seconds=1)

        register_integrity_tasks(engine)
        run_task("consent_expiry", heartbeat.tasks["consent_expiry"])
        assert request.status == "expired"
