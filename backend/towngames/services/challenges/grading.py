"""Grader: the only code that compares submissions with correct answers."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .catalog import Problem

NUMERIC_TOLERANCE = 0.01


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> Optional[float]:
    # Ints too large for a float cannot match any catalog answer
    try:
        if _is_number(value):
            return float(value)
        if isinstance(value, str):
            return float(value.strip().replace(',', ''))
    except (ValueError, OverflowError):
        return None
    return None


def grade_one(problem: Problem, submitted: Any) -> bool:
    """True when ``submitted`` answers ``problem``.

    Numeric answers match within ``NUMERIC_TOLERANCE`` (numeric strings are
    accepted); any other answer type must be equal by value.
    """
    if submitted is None:
        return False
    if _is_number(problem.answer):
        number = _as_number(submitted)
        if number is None:
            return False
        return abs(number - float(problem.answer)) <= NUMERIC_TOLERANCE + 1e-9
    return submitted == problem.answer


@dataclass
class SessionGrade:
    correct_count: int = 0
    total_answered: int = 0
    max_streak: int = 0
    per_problem: List[Optional[bool]] = field(default_factory=list)

    @property
    def score(self) -> int:
        return self.correct_count


def grade_session(issued_problems: Sequence[Problem], submitted_answers: Mapping[int, Any]) -> SessionGrade:
    """Grade the stored problem set against the stored answers.

    ``per_problem`` holds True/False for answered indexes and None for
    unanswered ones. ``max_streak`` is the longest run of correct answers
    in the order they were submitted, so ``submitted_answers`` must keep
    submission order.
    """
    grade = SessionGrade()
    for index, problem in enumerate(issued_problems):
        if index not in submitted_answers:
            grade.per_problem.append(None)
            continue
        grade.total_answered += 1
        correct = grade_one(problem, submitted_answers[index])
        grade.per_problem.append(correct)
        if correct:
            grade.correct_count += 1

    streak = 0
    for index in submitted_answers:
        if 0 <= index < len(grade.per_problem) and grade.per_problem[index]:
            streak += 1
            grade.max_streak = max(grade.max_streak, streak)
        else:
            streak = 0
    return grade


def review(issued_problems: Sequence[Problem], submitted_answers: Mapping[int, Any],
           grade: SessionGrade) -> List[Dict[str, Any]]:
    """Post-grading review; the only serialization that carries answers."""
    out = []
    for index, problem in enumerate(issued_problems):
        out.append({
            'index': index,
            'prompt': problem.prompt,
            'submitted': submitted_answers.get(index),
            'correct': bool(grade.per_problem[index]),
            'answer': problem.answer,
            'explanation': problem.explanation,
        })
    return out
