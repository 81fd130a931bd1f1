"""Tests for the hash-chained event log."""

from datetime import datetime, timedelta

from discipline_kernel.events.log import EventLog
from discipline_kernel.models.events import EngineEvent, EventType
from discipline_kernel.models.pressure import PressureLevel

T0 = datetime(2026, 3, 2, 9, 0, 0)


def _make_event(event_type=EventType.PRESSURE_ESCALATED, minutes=0, **kwargs):
    kwargs.setdefault("lock_id", "lock_1")
    kwargs.setdefault("obligation_id", "obl_1")
    return EngineEvent.create(event_type, T0 + timedelta(minutes=minutes), **kwargs)


class TestEventLog:
    def setup_method(self):
        self.log = EventLog()

    def test_append_and_retrieve(self):
        event = _make_event(pressure_level=PressureLevel.P1, elapsed_percent=25.0)
        self.log.append(event)
        retrieved = self.log.get_by_id(event.id)
        assert retrieved is not None
        assert retrieved.pressure_level == PressureLevel.P1
        assert retrieved.signature != ""

    def test_chain_links(self):
        first = self.log.append(_make_event(minutes=0))
        second = self.log.append(_make_event(minutes=1))
        assert first.prior_event_hash is None
        assert second.prior_event_hash == first.signature

    def test_chain_integrity(self):
        for i in range(5):
            self.log.append(_make_event(minutes=i))
        assert self.log.verify_chain_integrity() is True
        assert self.log.count() == 5

    def test_tampering_detected(self):
        event = self.log.append(_make_event(from_level="P0"))
        self.log.append(_make_event(minutes=1))

        tampered = self.log.get_by_id(event.id)
        tampered.detail = {"from_level": "P3"}
        self.log._conn.execute(
            "UPDATE events SET event_json = ? WHERE id = ?",
            (tampered.model_dump_json(), event.id),
        )
        self.log._conn.commit()
        assert self.log.verify_chain_integrity() is False

    def test_query_by_type(self):
        self.log.extend([
            _make_event(EventType.LOCK_ACQUIRED),
            _make_event(EventType.PROMPT_DELIVERED, minutes=1),
            _make_event(EventType.PROMPT_DELIVERED, minutes=2),
        ])
        prompts = self.log.query_by_type(EventType.PROMPT_DELIVERED)
        assert len(prompts) == 2
        assert prompts[0].timestamp < prompts[1].timestamp

    def test_query_by_lock_and_obligation(self):
        self.log.append(_make_event(lock_id="lock_1", obligation_id="obl_1"))
        self.log.append(_make_event(lock_id="lock_2", obligation_id="obl_2"))
        self.log.append(_make_event(EventType.DEBT_ACCRUED, lock_id=None, obligation_id="obl_2"))
        assert len(self.log.query_by_lock("lock_2")) == 1
        assert len(self.log.query_by_obligation("obl_2")) == 2

    def test_query_recent_is_chronological(self):
        for i in range(10):
            self.log.append(_make_event(minutes=i))
        recent = self.log.query_recent(limit=3)
        assert [e.timestamp for e in recent] == [
            T0 + timedelta(minutes=m) for m in (7, 8, 9)
        ]

    def test_file_backed_log_survives_reopen(self, tmp_path):
        path = str(tmp_path / "events.db")
        log = EventLog(path)
        log.append(_make_event())
        log.close()

        reopened = EventLog(path)
        assert reopened.count() == 1
        assert reopened.verify_chain_integrity() is True
        reopened.close()
