"""Integration tests for candidate match query functions.

Tests cover the upsert that refreshes scores without touching contact
state, ranked retrieval, expiry and contact recording.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobflow.database.models.base import as_utc, utcnow
from jobflow.database.models.match import ContactMethod
from jobflow.database.queries.match import (
    MatchNotFound,
    get_match,
    get_top_matches,
    purge_expired_matches,
    record_contact,
    upsert_match,
)

DAY = timedelta(hours=24)
BREAKDOWN = {"title": 20.0, "skills": 12.5}


@pytest.mark.asyncio
async def test_upsert_inserts_new_match(db_session: AsyncSession, make_job, make_candidate) -> None:
    job = await make_job()
    candidate = await make_candidate()

    match = await upsert_match(
        db_session, job.id, candidate.id, 72.5, BREAKDOWN, DAY, semantic_score=0.81
    )

    assert match.score == 72.5
    assert match.breakdown == BREAKDOWN
    assert match.semantic_score == 0.81
    assert match.contacted is False
    expires_in = as_utc(match.expires_at) - utcnow()
    assert timedelta(hours=23) < expires_in <= DAY


@pytest.mark.asyncio
async def test_upsert_refreshes_score_and_keeps_contact(
    session_factory: async_sessionmaker[AsyncSession],
    make_job,
    make_candidate,
) -> None:
    """Recomputing a match updates its score but never resets contact state."""
    job = await make_job()
    candidate = await make_candidate()

    async with session_factory() as session:
        first = await upsert_match(session, job.id, candidate.id, 60.0, BREAKDOWN, DAY)
    async with session_factory() as session:
        await record_contact(session, job.id, candidate.id, ContactMethod.whatsapp)
    async with session_factory() as session:
        second = await upsert_match(
            session, job.id, candidate.id, 85.0, {"title": 20.0, "skills": 25.0}, DAY
        )

    assert second.id == first.id
    assert second.score == 85.0
    assert second.breakdown == {"title": 20.0, "skills": 25.0}
    assert second.contacted is True
    assert second.contact_method == ContactMethod.whatsapp
    assert second.contacted_at is not None


@pytest.mark.asyncio
async def test_top_matches_ordered_by_score(db_session: AsyncSession, make_job, make_candidate) -> None:
    job = await make_job()
    scores = [40.0, 90.0, 65.0, 10.0]
    for score in scores:
        candidate = await make_candidate()
        await upsert_match(db_session, job.id, candidate.id, score, BREAKDOWN, DAY)

    other_job = await make_job(title="Data Engineer")
    await upsert_match(db_session, other_job.id, (await make_candidate()).id, 99.0, BREAKDOWN, DAY)

    top = await get_top_matches(db_session, job.id, limit=3)

    assert [match.score for match in top] == [90.0, 65.0, 40.0]


@pytest.mark.asyncio
async def test_expired_matches_are_hidden_and_purged(
    db_session: AsyncSession, make_job, make_candidate
) -> None:
    job = await make_job()
    live = await make_candidate()
    expired = await make_candidate()
    await upsert_match(db_session, job.id, live.id, 50.0, BREAKDOWN, DAY)
    await upsert_match(db_session, job.id, expired.id, 95.0, BREAKDOWN, timedelta(seconds=-1))

    top = await get_top_matches(db_session, job.id)
    assert [match.candidate_id for match in top] == [live.id]
    assert await get_match(db_session, job.id, expired.id) is None
    assert await get_match(db_session, job.id, expired.id, include_expired=True) is not None

    assert await purge_expired_matches(db_session) == 1
    assert await get_match(db_session, job.id, expired.id, include_expired=True) is None
    assert await get_match(db_session, job.id, live.id) is not None


@pytest.mark.asyncio
async def test_record_contact(db_session: AsyncSession, make_job, make_candidate) -> None:
    job = await make_job()
    candidate = await make_candidate()
    await upsert_match(db_session, job.id, candidate.id, 70.0, BREAKDOWN, DAY)

    match = await record_contact(db_session, job.id, candidate.id, ContactMethod.email)

    assert match.contacted is True
    assert match.contact_method == ContactMethod.email
    assert match.contacted_at is not None


@pytest.mark.asyncio
async def test_record_contact_without_match(db_session: AsyncSession) -> None:
    with pytest.raises(MatchNotFound):
        await record_contact(db_session, uuid4(), uuid4(), ContactMethod.phone)


@pytest.mark.asyncio
async def test_record_contact_on_expired_match(
    db_session: AsyncSession, make_job, make_candidate
) -> None:
    job = await make_job()
    candidate = await make_candidate()
    await upsert_match(db_session, job.id, candidate.id, 70.0, BREAKDOWN, timedelta(seconds=-1))

    with pytest.raises(MatchNotFound):
        await record_contact(db_session, job.id, candidate.id, ContactMethod.email)
