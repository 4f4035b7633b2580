import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from dripflow.core.locks import KeyedLock
from dripflow.services.step_sequencer import fire_time, meaningful_fields, schedule, step_offset


@dataclass
class _Step:
    step_number: int
    delay_days: int = 0
    delay_hours: int = 0
    delay_minutes: int = 0
    id: str | None = None
    channel: str = "email"


ENROLLED = datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_offsets_are_measured_from_enrollment_not_previous_step():
    steps = [_Step(1, delay_days=1), _Step(2, delay_days=2)]
    plan = schedule(steps, ENROLLED)
    assert [item.fire_at for item in plan] == [
        datetime(2025, 1, 2, tzinfo=timezone.utc),
        datetime(2025, 1, 3, tzinfo=timezone.utc),
    ]


def test_schedule_orders_by_step_number_and_keeps_ids():
    steps = [_Step(3, delay_hours=5, id="s3", channel="sms"), _Step(1, id="s1"), _Step(2, delay_minutes=30, id="s2")]
    plan = schedule(steps, ENROLLED)
    assert [item.step_number for item in plan] == [1, 2, 3]
    assert [item.step_id for item in plan] == ["s1", "s2", "s3"]
    assert plan[2].channel == "sms"
    assert plan[2].offset == timedelta(hours=5)


def test_fire_time_combines_days_hours_minutes():
    step = _Step(1, delay_days=1, delay_hours=2, delay_minutes=15)
    assert step_offset(step) == timedelta(days=1, hours=2, minutes=15)
    assert fire_time(step, ENROLLED) == datetime(2025, 1, 2, 2, 15, tzinfo=timezone.utc)


def test_subject_line_only_meaningful_for_email():
    assert "subject_line" in meaningful_fields("email")
    assert "subject_line" not in meaningful_fields("sms")
    assert "subject_line" not in meaningful_fields("whatsapp")


def test_keyed_lock_serialises_same_key_and_cleans_up():
    locks = KeyedLock()
    order: list[str] = []
    entered = threading.Event()
    release = threading.Event()

    def first():
        with locks.hold("c1"):
            order.append("first-in")
            entered.set()
            release.wait(timeout=5)
            order.append("first-out")

    def second():
        entered.wait(timeout=5)
        with locks.hold("c1"):
            order.append("second-in")

    t1 = threading.Thread(target=first)
    t2 = threading.Thread(target=second)
    t1.start()
    t2.start()
    entered.wait(timeout=5)
    with locks.hold("other"):
        order.append("other")
    release.set()
    t1.join(timeout=5)
    t2.join(timeout=5)

    assert order.index("first-out") < order.index("second-in")
    assert "other" in order
    assert locks.active_keys() == 0
