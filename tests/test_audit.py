import json
import os
import tempfile

from followthrough.core.audit import log_event, read_events


def test_log_event_creates_file() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        log_event(tmpdir, "test.event", {"key": "val"})
        path = os.path.join(tmpdir, "audit.jsonl")
        assert os.path.exists(path)
        with open(path, "r") as f:
            line = f.readline()
        record = json.loads(line)
        assert record["type"] == "test.event"
        assert record["payload"]["key"] == "val"
        assert "ts" in record
        assert "task_id" not in record


def test_log_event_with_task_id() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        log_event(tmpdir, "task.cancelled", {}, task_id="task-abc")
        assert read_events(tmpdir)[0]["task_id"] == "task-abc"


def test_log_event_appends() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        log_event(tmpdir, "a", {})
        log_event(tmpdir, "b", {})
        path = os.path.join(tmpdir, "audit.jsonl")
        with open(path, "r") as f:
            lines = [l.strip() for l in f if l.strip()]
        assert len(lines) == 2


def test_log_event_mirrors_to_log_dir(tmp_path) -> None:
    log_event(str(tmp_path / "data"), "message.approved", {"recipient": "U1"})
    central = tmp_path / "logs" / "audit.jsonl"
    assert central.exists()
    assert json.loads(central.read_text().splitlines()[-1])["type"] == "message.approved"


def test_read_events_filters_and_limits() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        for i in range(5):
            log_event(tmpdir, "scheduler.error", {"n": i})
        log_event(tmpdir, "app.start", {})
        errors = read_events(tmpdir, "scheduler.error", limit=2)
        assert [e["payload"]["n"] for e in errors] == [3, 4]
        assert len(read_events(tmpdir)) == 6


def test_read_events_missing_file() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        assert read_events(tmpdir) == []
