"""Embedding text preparation for jobs and candidates.

Both builders repeat the most discriminating fields (title, category,
skills) so they weigh more in the resulting vector, and keep free text
bounded so a long description cannot drown out the rest.
"""

from __future__ import annotations

from jobflow.database.models.entity import Candidate, Job

MAX_DESCRIPTION_LENGTH = 2500
MAX_TEXT_LENGTH = 8000

# Checked in order; the first rule whose keywords appear in the title wins.
_ROLE_RULES: list[tuple[str, tuple[str, ...]]] = [
    (
        "Frontend Developer",
        ("frontend", "front-end", "front end", "ui developer", "react", "vue", "angular"),
    ),
    ("Backend Developer", ("backend", "back-end", "back end", "api developer")),
    ("Full Stack Developer", ("full stack", "fullstack", "full-stack")),
    ("Mobile Developer", ("mobile", "ios", "android", "react native", "flutter")),
    ("DevOps Engineer", ("devops", "infrastructure", "sre", "cloud engineer")),
    (
        "Data Science / ML Engineer",
        ("data scientist", "machine learning", "ml engineer", "ai engineer"),
    ),
    ("Data Engineer", ("data engineer", "data analyst")),
    ("QA Engineer", ("qa", "quality assurance")),
    ("Designer", ("designer", "ux", "ui/ux")),
    ("Product Manager", ("product manager", "product owner")),
    (
        "Software Engineer",
        ("software engineer", "software developer", "programmer", "developer"),
    ),
]


def extract_role_type(title: str | None) -> str | None:
    """Map a job title to a coarse role family, or None if nothing fits."""
    if not title:
        return None

    lowered = title.lower()
    for role, keywords in _ROLE_RULES:
        if any(keyword in lowered for keyword in keywords):
            return role
        # "server" titles are backend unless they are full stack ones
        if role == "Backend Developer" and "server" in lowered and "full" not in lowered:
            return role
        if role == "QA Engineer" and "test" in lowered and "engineer" in lowered:
            return role
    return None


def _truncate(text: str, limit: int) -> str:
    return text[:limit] if len(text) > limit else text


def build_job_text(job: Job, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Concatenate a job's fields into the text that gets embedded."""
    parts: list[str] = []

    if job.title:
        parts.extend([job.title, job.title])

    role = extract_role_type(job.title)
    if role:
        parts.extend([f"This is a {role} position", role])

    if job.category:
        parts.extend([job.category, job.category])

    if job.seniority:
        parts.append(f"{job.seniority} level position")

    if job.description:
        parts.append(_truncate(job.description, MAX_DESCRIPTION_LENGTH))

    if job.requirements:
        parts.append("Requirements: " + ". ".join(job.requirements))

    if job.tags:
        parts.append("Technologies: " + ", ".join(job.tags))

    if job.job_type:
        parts.append(job.job_type)

    if job.city:
        parts.append(job.city)

    return _truncate(" ".join(parts), max_length)


def build_candidate_text(candidate: Candidate, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Concatenate a candidate's profile into the text that gets embedded."""
    parts: list[str] = []

    if candidate.title:
        parts.extend([candidate.title, candidate.title])

    if candidate.skills:
        skills = " ".join(candidate.skills)
        parts.extend([skills, skills])

    if candidate.bio:
        parts.append(_truncate(candidate.bio, MAX_DESCRIPTION_LENGTH))

    if candidate.experience_years is not None:
        parts.append(f"Experience: {candidate.experience_years} years")

    if candidate.city:
        parts.append(f"Location: {candidate.city}")

    return _truncate(" ".join(parts).strip(), max_length)


def build_entity_text(entity: Job | Candidate, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Dispatch to the text builder for the entity's type."""
    if isinstance(entity, Job):
        return build_job_text(entity, max_length)
    return build_candidate_text(entity, max_length)
