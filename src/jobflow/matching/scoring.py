"""Rule-based job/candidate match scoring.

Each criterion produces a fraction in [0, 1] which is scaled by that
criterion's bound from ScoreWeights. The aggregate score is the sum of the
sub-scores, rounded to one decimal and capped at 100.
"""

from __future__ import annotations

import re

from pydantic import BaseModel

from jobflow.config import ScoreWeights
from jobflow.database.models.entity import Candidate, Job

EDUCATION_KEYWORDS = ("bachelor", "master", "phd", "diploma", "degree", "university", "college")

AVAILABILITY_FRACTIONS = {
    "immediately": 1.0,
    "2weeks": 0.8,
    "1month": 0.6,
    "3months": 0.4,
}

NEUTRAL = 0.5


class MatchScore(BaseModel):
    """Aggregate score and its per-criterion breakdown."""

    total: float
    breakdown: dict[str, float]


def _words(text: str) -> list[str]:
    return [word for word in re.split(r"\s+", text.lower().strip()) if word]


def title_fraction(candidate: Candidate, job: Job) -> float:
    candidate_title = (candidate.title or "").lower().strip()
    job_title = (job.title or "").lower().strip()
    if not candidate_title or not job_title:
        return 0.0
    if candidate_title == job_title:
        return 1.0

    candidate_words = _words(candidate_title)
    job_words = _words(job_title)
    matched = sum(
        1
        for word in candidate_words
        if len(word) > 3 and any(word in jw or jw in word for jw in job_words)
    )
    return matched / max(len(candidate_words), len(job_words))


def skills_fraction(candidate: Candidate, job: Job) -> float:
    """Share of the candidate's skills mentioned in the job requirements."""
    skills = [skill.lower() for skill in (candidate.skills or []) if skill]
    requirements = " ".join(job.requirements or []).lower()
    if not skills or not requirements:
        return 0.0
    return sum(1 for skill in skills if skill in requirements) / len(skills)


def experience_fraction(candidate: Candidate, job: Job) -> float:
    """Closeness of experience; overqualification costs less than the reverse."""
    if candidate.experience_years is None or job.experience_years is None:
        return 0.0

    diff = candidate.experience_years - job.experience_years
    if diff == 0:
        return 1.0
    if diff > 0:
        if diff <= 2:
            return 13 / 15
        if diff <= 5:
            return 10 / 15
        return 7 / 15
    shortfall = -diff
    if shortfall <= 1:
        return 12 / 15
    if shortfall <= 2:
        return 8 / 15
    if shortfall <= 3:
        return 4 / 15
    return 0.0


def location_fraction(candidate: Candidate, job: Job) -> float:
    if not candidate.city or not job.city:
        return 0.0
    if candidate.city.strip().lower() == job.city.strip().lower():
        return 1.0
    job_type = (job.job_type or "").lower()
    if "remote" in job_type or "hybrid" in job_type:
        return 12 / 15
    return 5 / 15


def education_fraction(candidate: Candidate, job: Job) -> float:
    """Full marks when the job asks for no degree or the candidate has one it names."""
    education = " ".join(degree.lower() for degree in (candidate.education or []) if degree)
    requirements = " ".join(job.requirements or []).lower()
    if not education or not requirements:
        return 0.0

    required = [keyword for keyword in EDUCATION_KEYWORDS if keyword in requirements]
    if not required:
        return 1.0
    if any(keyword in education for keyword in required):
        return 1.0
    return 0.4


def salary_fraction(candidate: Candidate, job: Job) -> float:
    expected = candidate.desired_salary_max or candidate.desired_salary_min or 0
    job_min = job.salary_min or 0
    job_max = job.salary_max or 0

    if not expected or (not job_min and not job_max):
        return NEUTRAL
    if job_max and job_min <= expected <= job_max:
        return 1.0
    if expected < job_min:
        return 0.8
    if not job_max:
        # only a floor was given and the candidate is above it
        return 1.0

    percent_over = (expected - job_max) / job_max * 100
    if percent_over <= 10:
        return 0.6
    if percent_over <= 20:
        return 0.4
    if percent_over <= 30:
        return 0.2
    return 0.0


def availability_fraction(candidate: Candidate, job: Job) -> float:
    if not candidate.availability:
        return NEUTRAL
    return AVAILABILITY_FRACTIONS.get(candidate.availability, NEUTRAL)


_CRITERIA = {
    "title": title_fraction,
    "skills": skills_fraction,
    "experience": experience_fraction,
    "location": location_fraction,
    "education": education_fraction,
    "salary": salary_fraction,
    "availability": availability_fraction,
}


def score_match(
    candidate: Candidate,
    job: Job,
    weights: ScoreWeights | None = None,
) -> MatchScore:
    """Score how well a candidate fits a job.

    Args:
        candidate: Candidate profile.
        job: Job posting.
        weights: Per-criterion bounds; defaults to ScoreWeights().

    Returns:
        MatchScore with total in [0, 100] and one sub-score per criterion,
        each within [0, its bound].
    """
    bounds = (weights or ScoreWeights()).as_dict()
    breakdown: dict[str, float] = {}
    for name, fraction_fn in _CRITERIA.items():
        fraction = min(max(fraction_fn(candidate, job), 0.0), 1.0)
        breakdown[name] = round(fraction * bounds[name], 1)

    total = min(round(sum(breakdown.values()), 1), 100.0)
    return MatchScore(total=total, breakdown=breakdown)
