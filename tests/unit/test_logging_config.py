"""Unit tests for logging setup and the action log."""

import json
import logging
import pytest
from datetime import datetime

from fleet_scaler.core.logging_config import (
    ActionLog, StructuredFormatter, setup_logging
)
from fleet_scaler.core.types import ActionLogEntry, EntryKind


class TestActionLog:
    """Test cases for ActionLog."""

    @pytest.fixture
    def log_path(self, tmp_path):
        return tmp_path / "logs" / "fleet-scaler-actions.log"

    def test_writes_json_lines(self, log_path):
        action_log = ActionLog(log_path)
        action_log.decision("SCALE UP (CPU: 80.0% > 70.0%)", action="scale_up")
        action_log.action("Added instance worker-3", instance_id="worker-3")
        action_log.close()

        lines = log_path.read_text().splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first['kind'] == "decision"
        assert first['details'] == {'action': "scale_up"}
        assert json.loads(lines[1])['message'] == "Added instance worker-3"

    def test_tail_filters_kinds(self, log_path):
        action_log = ActionLog(log_path)
        action_log.decision("NO ACTION")
        action_log.action("Added instance worker-1")
        action_log.warning("Scale action refused")
        action_log.health("Instance worker-1 is unhealthy")
        action_log.error("Evicted unhealthy instance worker-1")

        entries = action_log.tail(10, kinds=[EntryKind.ACTION, EntryKind.WARNING, EntryKind.ERROR])
        action_log.close()

        assert [e.kind for e in entries] == [EntryKind.ACTION, EntryKind.WARNING, EntryKind.ERROR]

    def test_tail_survives_restart(self, log_path):
        """A new process reads entries written by an earlier one."""
        first = ActionLog(log_path)
        for i in range(15):
            first.action(f"entry {i}")
        first.close()

        second = ActionLog(log_path)
        entries = second.tail(10)
        second.close()

        assert len(entries) == 10
        assert entries[0].message == "entry 5"
        assert entries[-1].message == "entry 14"

    def test_logs_are_independent(self, log_path, tmp_path):
        """Opening another action log leaves the first one writing to its file."""
        first = ActionLog(log_path)
        first.action("before")
        memory_only = ActionLog()
        other = ActionLog(tmp_path / "other.log")
        first.action("after")
        memory_only.close()
        other.close()
        first.close()

        assert [e.message for e in first.read_entries()] == ["before", "after"]
        assert other.line_count() == 0

    def test_appends_without_rotating(self, log_path):
        log_path.parent.mkdir(parents=True)
        log_path.write_text('{"kind": "action", "message": "earlier run", "timestamp": "2024-03-01T09:00:00"}\n')

        action_log = ActionLog(log_path)
        assert [type(h) for h in action_log.logger.handlers] == [logging.FileHandler]
        action_log.action("this run")
        action_log.close()

        assert [e.message for e in action_log.read_entries()] == ["earlier run", "this run"]
        assert list(log_path.parent.iterdir()) == [log_path]

    def test_memory_only(self):
        action_log = ActionLog()
        action_log.action("one")
        action_log.action("two")

        assert [e.message for e in action_log.tail(1)] == ["two"]
        assert action_log.line_count() == 0
        action_log.close()

    def test_read_entries_from_offset_skips_malformed(self, log_path):
        action_log = ActionLog(log_path)
        action_log.action("first")
        action_log.close()
        with open(log_path, 'a') as f:
            f.write("not json\n")
        action_log = ActionLog(log_path)
        action_log.action("second")
        action_log.close()

        assert action_log.line_count() == 3
        assert [e.message for e in action_log.read_entries(1)] == ["second"]

    def test_does_not_propagate(self, log_path, caplog):
        action_log = ActionLog(log_path)
        with caplog.at_level(logging.INFO):
            action_log.error("halted")
        action_log.close()

        assert "halted" not in caplog.text

    def test_entry_format(self):
        entry = ActionLogEntry(
            kind=EntryKind.WARNING,
            message="Scale action refused",
            timestamp=datetime(2024, 3, 1, 9, 5, 7)
        )

        assert entry.format() == "[2024-03-01 09:05:07] [WARNING] Scale action refused"
        assert ActionLogEntry.from_dict(entry.to_dict()) == entry


class TestLoggingSetup:
    """Test cases for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        for handler in list(root.handlers):
            if handler not in handlers:
                root.removeHandler(handler)
                handler.close()
        for handler in handlers:
            if handler not in root.handlers:
                root.addHandler(handler)
        root.setLevel(level)

    def test_invalid_level(self):
        with pytest.raises(ValueError):
            setup_logging("CHATTY")

    def test_file_logging(self, tmp_path):
        log_file = tmp_path / "scaler.log"

        setup_logging("DEBUG", str(log_file), structured=True)
        logging.getLogger("fleet_scaler.test").info("scaled", extra={'instance_count': 3})
        for handler in logging.getLogger().handlers:
            handler.flush()

        record = json.loads(log_file.read_text().splitlines()[-1])
        assert record['message'] == "scaled"
        assert record['instance_count'] == 3
        assert logging.getLogger('docker').level == logging.WARNING

    def test_structured_formatter(self):
        record = logging.LogRecord("fleet_scaler", logging.ERROR, __file__, 10, "failed %s", ("x",), None)
        record.instance_id = "worker-1"

        data = json.loads(StructuredFormatter().format(record))

        assert data['level'] == "ERROR"
        assert data['message'] == "failed x"
        assert data['instance_id'] == "worker-1"
