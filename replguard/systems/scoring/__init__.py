"""
ReplGuard — Health Scorer

Snapshots + issues → 0–100 score and letter grade.
"""

from replguard.systems.scoring.scorer import HealthScorer, grade_for
from replguard.systems.scoring.types import HealthScore

__all__ = ["HealthScore", "HealthScorer", "grade_for"]
