import random
from datetime import datetime

import pytest

from classmate.config import Settings
from classmate.models import ExamRemark, Grade
from classmate.utils import grading, greetings


@pytest.mark.parametrize('score,expected', [
    (100, Grade.A), (70, Grade.A), (69.99, Grade.B), (60, Grade.B), (50, Grade.C),
    (45, Grade.D), (40, Grade.E), (39.5, Grade.F), (0, Grade.F), (None, None),
])
def test_grade_from_score_thresholds(score, expected):
    assert grading.grade_from_score(score) == expected


def test_remarks_and_points():
    assert grading.remark_for(Grade.B) == ExamRemark.VERY_GOOD
    assert grading.remark_for(None) == ExamRemark.ABSENT
    assert grading.grade_point('C') == 3.0
    assert grading.grade_point(None) == 0.0


def test_compute_gpa_skips_ungraded_items():
    assert grading.compute_gpa([(Grade.A, 3), (Grade.C, 2), (None, 4)]) == (5, 21.0, 4.2)
    assert grading.compute_gpa([]) == (0, 0.0, 0.0)


def test_percentages():
    assert grading.percentage(7, 20) == 35.0
    assert grading.percentage(None, 20) is None
    assert grading.assignment_percentage([(8, 10), (15, 20)]) == 76.67
    assert grading.assignment_percentage([]) is None


@pytest.mark.parametrize('hour,period', [
    (0, 'night'), (5, 'night'), (6, 'morning'), (11, 'morning'),
    (12, 'afternoon'), (17, 'afternoon'), (18, 'evening'), (23, 'evening'),
])
def test_time_period(hour, period):
    assert greetings.time_period(hour) == period


def test_time_period_rejects_bad_hour():
    with pytest.raises(ValueError):
        greetings.time_period(24)


def test_next_change_boundaries():
    assert greetings.next_change(datetime(2024, 5, 1, 3, 15)) == datetime(2024, 5, 1, 6, 0)
    assert greetings.next_change(datetime(2024, 5, 1, 12, 0)) == datetime(2024, 5, 1, 18, 0)
    assert greetings.next_change(datetime(2024, 5, 1, 21, 0)) == datetime(2024, 5, 2, 0, 0)


def test_pick_greeting_uses_period_templates():
    now = datetime(2024, 5, 1, 8, 0)
    text = greetings.pick_greeting('Ada', now, rng=random.Random(3))
    assert text in [t.format(name='Ada') for t in greetings.GREETINGS['morning']]
    assert greetings.pick_greeting(None, now) == greetings.DEFAULT_GREETING


def test_settings_require_secrets_outside_dev(monkeypatch):
    monkeypatch.setenv('ENV', 'production')
    monkeypatch.delenv('JWT_SECRET', raising=False)
    with pytest.raises(RuntimeError):
        Settings()
    monkeypatch.setenv('ENV', 'dev')
    monkeypatch.setenv('ENCRYPTION_KEY', 'abcd')
    with pytest.raises(RuntimeError):
        Settings()
