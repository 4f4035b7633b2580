"""Fire-time computation for campaign steps.

Each step's delay is an offset from the recipient's enrollment time. Delays
are never chained from the previous step.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Protocol

CHANNELS = ("email", "sms", "whatsapp")

# Content fields each channel renders; subject lines only exist for email.
CHANNEL_CONTENT_FIELDS: dict[str, tuple[str, ...]] = {
    "email": ("subject_line", "content", "cta_text", "cta_url"),
    "sms": ("content", "cta_text", "cta_url"),
    "whatsapp": ("content", "cta_text", "cta_url"),
}


class TimedStep(Protocol):
    step_number: int
    delay_days: int
    delay_hours: int


@dataclass(frozen=True)
class ScheduledStep:
    step_number: int
    fire_at: datetime
    offset: timedelta
    step_id: str | None = None
    channel: str | None = None


def step_offset(step: TimedStep) -> timedelta:
    return timedelta(
        days=step.delay_days or 0,
        hours=step.delay_hours or 0,
        minutes=getattr(step, "delay_minutes", 0) or 0,
    )


def fire_time(step: TimedStep, enrollment_time: datetime) -> datetime:
    return enrollment_time + step_offset(step)


def schedule(steps: Iterable[TimedStep], enrollment_time: datetime) -> list[ScheduledStep]:
    out = []
    for step in sorted(steps, key=lambda item: item.step_number):
        offset = step_offset(step)
        out.append(
            ScheduledStep(
                step_number=step.step_number,
                fire_at=enrollment_time + offset,
                offset=offset,
                step_id=getattr(step, "id", None),
                channel=getattr(step, "channel", None),
            )
        )
    return out


def meaningful_fields(channel: str) -> tuple[str, ...]:
    return CHANNEL_CONTENT_FIELDS.get(channel, ())
