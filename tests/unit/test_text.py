"""Unit tests for embedding text preparation."""

from __future__ import annotations

import pytest

from jobflow.database.models.entity import Candidate, Job
from jobflow.matching.text import (
    MAX_DESCRIPTION_LENGTH,
    build_candidate_text,
    build_entity_text,
    build_job_text,
    extract_role_type,
)


class TestExtractRoleType:
    @pytest.mark.parametrize(
        "title, role",
        [
            ("Senior Backend Engineer", "Backend Developer"),
            ("React Developer", "Frontend Developer"),
            ("Fullstack Engineer", "Full Stack Developer"),
            ("Node.js server engineer", "Backend Developer"),
            ("Full stack server developer", "Full Stack Developer"),
            ("iOS Engineer", "Mobile Developer"),
            ("SRE", "DevOps Engineer"),
            ("Machine Learning Researcher", "Data Science / ML Engineer"),
            ("Test Automation Engineer", "QA Engineer"),
            ("Product Owner", "Product Manager"),
            ("Python Programmer", "Software Engineer"),
        ],
    )
    def test_known_roles(self, title: str, role: str) -> None:
        assert extract_role_type(title) == role

    @pytest.mark.parametrize("title", [None, "", "Restaurant Chef"])
    def test_unknown_roles(self, title: str | None) -> None:
        assert extract_role_type(title) is None


class TestBuildJobText:
    def test_field_order_and_repetition(self) -> None:
        job = Job(
            title="Senior Backend Engineer",
            category="engineering",
            seniority="senior",
            description="Build APIs",
            requirements=["Go", "SQL"],
            tags=["go", "postgres"],
            job_type="remote",
            city="Berlin",
        )

        assert build_job_text(job) == (
            "Senior Backend Engineer Senior Backend Engineer "
            "This is a Backend Developer position Backend Developer "
            "engineering engineering "
            "senior level position "
            "Build APIs "
            "Requirements: Go. SQL "
            "Technologies: go, postgres "
            "remote Berlin"
        )

    def test_missing_fields_are_skipped(self) -> None:
        job = Job(title="Restaurant Chef", city="Lyon")
        assert build_job_text(job) == "Restaurant Chef Restaurant Chef Lyon"

    def test_long_description_is_truncated(self) -> None:
        job = Job(title="Chef", description="x" * (MAX_DESCRIPTION_LENGTH + 500))
        text = build_job_text(job)
        assert text.count("x") == MAX_DESCRIPTION_LENGTH

    def test_total_length_is_bounded(self) -> None:
        job = Job(title="Chef", requirements=["y" * 5000, "z" * 5000])
        assert len(build_job_text(job, max_length=1000)) == 1000


class TestBuildCandidateText:
    def test_profile_text(self) -> None:
        candidate = Candidate(
            title="Go Developer",
            skills=["Go", "Docker"],
            bio="I build distributed systems",
            experience_years=5,
            city="Berlin",
        )

        assert build_candidate_text(candidate) == (
            "Go Developer Go Developer Go Docker Go Docker "
            "I build distributed systems Experience: 5 years Location: Berlin"
        )

    def test_zero_years_is_kept(self) -> None:
        candidate = Candidate(title="Intern", experience_years=0)
        assert build_candidate_text(candidate).endswith("Experience: 0 years")

    def test_empty_profile(self) -> None:
        assert build_candidate_text(Candidate()) == ""


def test_build_entity_text_dispatches_on_type() -> None:
    job = Job(title="Chef")
    candidate = Candidate(title="Chef", city="Lyon")
    assert build_entity_text(job) == build_job_text(job)
    assert build_entity_text(candidate) == build_candidate_text(candidate)
