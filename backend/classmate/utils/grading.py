"""Grade scale and GPA arithmetic.

The portal uses the five-point scale: A=5, B=4, C=3, D=2, E=1, F=0.
Scores and percentages map to letters with the same thresholds whether
they come from a course score, an exam or aggregated assignments.
"""

from __future__ import annotations

from typing import Iterable, Optional

from ..models import ExamRemark, Grade

GRADE_POINTS = {
    Grade.A: 5.0,
    Grade.B: 4.0,
    Grade.C: 3.0,
    Grade.D: 2.0,
    Grade.E: 1.0,
    Grade.F: 0.0,
}

# (lower bound inclusive, grade)
GRADE_THRESHOLDS = (
    (70.0, Grade.A),
    (60.0, Grade.B),
    (50.0, Grade.C),
    (45.0, Grade.D),
    (40.0, Grade.E),
)

GRADE_SCALE = [
    {"grade": "A", "range": "70 - 100", "points": 5.0, "interpretation": "Excellent"},
    {"grade": "B", "range": "60 - 69", "points": 4.0, "interpretation": "Very Good"},
    {"grade": "C", "range": "50 - 59", "points": 3.0, "interpretation": "Good"},
    {"grade": "D", "range": "45 - 49", "points": 2.0, "interpretation": "Fair"},
    {"grade": "E", "range": "40 - 44", "points": 1.0, "interpretation": "Pass"},
    {"grade": "F", "range": "0 - 39", "points": 0.0, "interpretation": "Fail"},
]

_REMARKS = {
    Grade.A: ExamRemark.EXCELLENT,
    Grade.B: ExamRemark.VERY_GOOD,
    Grade.C: ExamRemark.GOOD,
    Grade.D: ExamRemark.FAIR,
    Grade.E: ExamRemark.PASS,
    Grade.F: ExamRemark.FAIL,
}


def grade_point(grade: Optional[Grade]) -> float:
    if grade is None:
        return 0.0
    return GRADE_POINTS[Grade(grade)]


def grade_from_score(score: Optional[float]) -> Optional[Grade]:
    """Map a 0-100 score or percentage to a letter grade."""
    if score is None:
        return None
    for bound, grade in GRADE_THRESHOLDS:
        if score >= bound:
            return grade
    return Grade.F


def remark_for(grade: Optional[Grade]) -> ExamRemark:
    if grade is None:
        return ExamRemark.ABSENT
    return _REMARKS[Grade(grade)]


def compute_gpa(items: Iterable[tuple[Optional[Grade], int]]) -> tuple[int, float, float]:
    """Weighted grade-point average over (grade, credits) pairs.

    Ungraded items are skipped. Returns (total_credits,
    total_grade_points, gpa) with the GPA rounded to two places and 0.0
    when nothing is graded.
    """
    total_credits = 0
    total_points = 0.0
    for grade, credits in items:
        if grade is None:
            continue
        total_credits += credits
        total_points += grade_point(grade) * credits
    gpa = total_points / total_credits if total_credits > 0 else 0.0
    return total_credits, round(total_points, 2), round(gpa, 2)


def percentage(score: Optional[float], max_score: float) -> Optional[float]:
    if score is None or not max_score:
        return None
    return round(score / max_score * 100.0, 2)


def assignment_percentage(graded: Iterable[tuple[float, float]]) -> Optional[float]:
    """Aggregate percentage over (score, max_score) pairs of graded work."""
    total = 0.0
    maximum = 0.0
    for score, max_score in graded:
        total += score
        maximum += max_score
    if maximum <= 0:
        return None
    return round(total / maximum * 100.0, 2)
