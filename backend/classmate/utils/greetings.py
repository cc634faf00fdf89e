"""Time-of-day dashboard greetings."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

GREETINGS = {
    "night": [
        "Burning midnight oil, {name}?",
        "Late night studying session, {name}?",
        "Night owl mode activated, {name}!",
        "The quiet hours are perfect for focus, {name}!",
    ],
    "morning": [
        "Rise and shine, {name}! Ready to conquer today?",
        "Good morning, {name}! Let's make today count!",
        "Early bird catches knowledge, {name}!",
        "Hello {name}! Ready to learn something new?",
    ],
    "afternoon": [
        "Good afternoon, {name}! Keeping up the great work!",
        "Halfway through the day, {name}! Stay strong!",
        "Hello {name}! How's your academic day going?",
        "Afternoon vibes, {name}! Time to tackle those assignments!",
    ],
    "evening": [
        "Good evening, {name}! Time to review today's progress!",
        "Evening study session, {name}?",
        "Evening reflections, {name}! What did you achieve today?",
        "Evening dedication, {name}! Almost there!",
    ],
}

# first hour of each period, in order
PERIOD_STARTS = (("night", 0), ("morning", 6), ("afternoon", 12), ("evening", 18))

DEFAULT_GREETING = "Welcome back!"


def time_period(hour: int) -> str:
    if not 0 <= hour <= 23:
        raise ValueError("hour must be in 0..23")
    period = PERIOD_STARTS[0][0]
    for name, start in PERIOD_STARTS:
        if hour >= start:
            period = name
    return period


def next_change(now: datetime) -> datetime:
    """Start of the period following the one containing `now`."""
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    for _, start in PERIOD_STARTS:
        boundary = day + timedelta(hours=start)
        if boundary > now:
            return boundary
    return day + timedelta(days=1)


def pick_greeting(name: str | None, now: datetime, rng: random.Random | None = None) -> str:
    if not name:
        return DEFAULT_GREETING
    rng = rng or random.Random()
    template = rng.choice(GREETINGS[time_period(now.hour)])
    return template.format(name=name)
