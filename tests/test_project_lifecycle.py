"""
Tests for project transitions.

Tests cover:
1. Project creation and edits
2. Opening and closing the bidding window
3. Completion with ratings
4. Cancellation and deletion
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from procura.errors import DeadlinePassed, InvalidStateTransition, NotFound, ValidationError
from procura.models import (
    BidStatus,
    NoopReason,
    Outcome,
    ProjectPatch,
    ProjectStatus,
    RatingPayload,
    Trigger,
    can_transition,
    sources_of,
)

from conftest import OWNER


def good_rating(**overrides):
    scores = dict(price=5, speed=4, quality=5, responsiveness=4, customer_satisfaction=5)
    scores.update(overrides)
    return RatingPayload(**scores)


# =============================================================================
# Creation
# =============================================================================


async def test_create_project_starts_in_draft(make_project):
    project = await make_project(max_bid=500.0)

    assert project.id.startswith("proj_")
    assert project.status == ProjectStatus.DRAFT.value
    assert project.max_bid == 500.0
    assert project.show_max_bid is True
    assert project.awarded_bid_id is None


async def test_create_project_rejects_deadline_after_delivery(engine, clock):
    with pytest.raises(ValidationError):
        await engine.create_project(
            owner_id=OWNER,
            title="Backwards",
            bidding_deadline=clock.now() + timedelta(days=10),
            delivery_date=clock.now() + timedelta(days=5),
        )


async def test_create_project_rejects_blank_title(make_project):
    with pytest.raises(ValidationError):
        await make_project(title="   ")


async def test_naive_datetimes_are_treated_as_utc(engine, clock):
    naive = datetime(2025, 1, 7, 9, 0)
    project = await engine.create_project(
        owner_id=OWNER,
        title="Naive",
        bidding_deadline=naive,
        delivery_date=naive + timedelta(days=3),
    )
    assert project.bidding_deadline.tzinfo is not None


def test_transition_table():
    assert can_transition(ProjectStatus.DRAFT, ProjectStatus.BIDDING)
    assert can_transition(ProjectStatus.REVIEWING, ProjectStatus.AWARDED)
    assert not can_transition(ProjectStatus.REVIEWING, ProjectStatus.CANCELLED)
    assert not can_transition(ProjectStatus.COMPLETED, ProjectStatus.DRAFT)


def test_guarded_writes_expect_table_sources():
    assert sources_of(ProjectStatus.CANCELLED) == {ProjectStatus.DRAFT, ProjectStatus.BIDDING}
    assert sources_of(ProjectStatus.REVIEWING) == {ProjectStatus.BIDDING}
    assert sources_of(ProjectStatus.COMPLETED) == {ProjectStatus.AWARDED}
    assert sources_of(ProjectStatus.DRAFT) == frozenset()


# =============================================================================
# Edits
# =============================================================================


async def test_update_project_in_draft(engine, make_project, clock):
    project = await make_project()
    new_deadline = clock.now() + timedelta(hours=48)

    updated = await engine.update_project(
        project.id,
        ProjectPatch(title="Solar, phase 2", bidding_deadline=new_deadline, max_bid=750.0),
    )

    assert updated.title == "Solar, phase 2"
    assert updated.bidding_deadline == new_deadline
    assert updated.max_bid == 750.0


async def test_bid_parameters_frozen_after_draft(engine, make_project):
    project = await make_project(open_bidding=True)

    with pytest.raises(InvalidStateTransition):
        await engine.update_project(project.id, ProjectPatch(max_bid=1.0))

    # Non-bid fields can still change
    updated = await engine.update_project(project.id, ProjectPatch(description="Updated scope"))
    assert updated.description == "Updated scope"


async def test_update_rejects_empty_patch(engine, make_project):
    project = await make_project()
    with pytest.raises(ValidationError):
        await engine.update_project(project.id, ProjectPatch())


# =============================================================================
# Open / Close
# =============================================================================


async def test_open_bidding_broadcasts_to_bidders(engine, make_project, sink):
    project = await make_project()

    result = await engine.open_bidding(project.id)

    assert result.applied
    assert result.project.status == ProjectStatus.BIDDING.value
    assert [(role, kind) for role, kind, _ in sink.broadcasts] == [("installation_company", "new_project")]


async def test_open_bidding_twice_fails(engine, make_project):
    project = await make_project(open_bidding=True)
    with pytest.raises(InvalidStateTransition):
        await engine.open_bidding(project.id)


async def test_open_bidding_with_past_deadline(engine, make_project, clock):
    project = await make_project(hours=1)
    clock.advance(hours=2)

    with pytest.raises(DeadlinePassed):
        await engine.open_bidding(project.id)

    assert (await engine.get_project(project.id)).status == ProjectStatus.DRAFT.value


async def test_close_is_idempotent(engine, make_project, sink):
    project = await make_project(open_bidding=True)
    await engine.submit_bid(project.id, "bidder_1", 100.0)

    first = await engine.close_bidding(project.id)
    notified = len(sink.events("bidding_closed"))
    second = await engine.close_bidding(project.id)

    assert first.outcome == Outcome.APPLIED.value
    assert second.outcome == Outcome.NOOP.value
    assert second.reason == NoopReason.ALREADY_CLOSED.value
    assert second.project.status == ProjectStatus.REVIEWING.value
    assert len(sink.events("bidding_closed")) == notified


async def test_close_notifies_owner_with_stats_and_pending_bidders(engine, make_project, sink):
    project = await make_project(open_bidding=True)
    await engine.submit_bid(project.id, "bidder_1", 100.0)
    await engine.submit_bid(project.id, "bidder_2", 80.0)
    withdrawn = await engine.submit_bid(project.id, "bidder_3", 120.0)
    await engine.withdraw_bid(withdrawn.id)

    await engine.close_bidding(project.id)

    assert sorted(sink.recipients("bidding_closed")) == ["bidder_1", "bidder_2", OWNER]
    owner_payload = next(p for u, _, p in sink.events("bidding_closed") if u == OWNER)
    assert owner_payload["bid_stats"]["count"] == 3
    assert owner_payload["bid_stats"]["min_amount"] == 80.0
    assert owner_payload["auto_closed"] is False


async def test_concurrent_manual_closes_apply_once(engine, make_project, sink):
    project = await make_project(open_bidding=True)
    await engine.submit_bid(project.id, "bidder_1", 100.0)

    results = await asyncio.gather(*(engine.close_bidding(project.id) for _ in range(5)))

    assert sum(1 for r in results if r.applied) == 1
    assert sink.recipients("bidding_closed").count(OWNER) == 1


async def test_close_draft_project_fails(engine, make_project):
    project = await make_project()
    with pytest.raises(InvalidStateTransition):
        await engine.close_bidding(project.id)


async def test_close_missing_project(engine):
    with pytest.raises(NotFound):
        await engine.close_bidding("proj_missing")


async def test_close_records_trigger(engine, make_project):
    project = await make_project(open_bidding=True)
    result = await engine.close_bidding(project.id, trigger=Trigger.SCHEDULER)
    assert result.trigger == Trigger.SCHEDULER.value


# =============================================================================
# Complete
# =============================================================================


async def _awarded(engine, reviewing_project):
    project, bids = await reviewing_project()
    await engine.award(project.id, bids["bidder_5"].id)
    return project, bids


async def test_complete_forwards_rating(engine, reviewing_project, ratings, sink):
    project, _ = await _awarded(engine, reviewing_project)

    result = await engine.complete(project.id, rating=good_rating())

    assert result.project.status == ProjectStatus.COMPLETED.value
    assert result.project.completed_at is not None
    stored = await ratings.ratings_for_user("bidder_5")
    assert len(stored) == 1
    assert stored[0].rater_id == OWNER
    assert sink.recipients("project_completed") == ["bidder_5"]
    assert sink.recipients("rating_received") == ["bidder_5"]


async def test_rating_failure_does_not_undo_completion(engine, reviewing_project, ratings):
    project, _ = await _awarded(engine, reviewing_project)
    # Rating already on file for this (project, rater)
    await ratings.submit_rating(project.id, "bidder_5", OWNER, good_rating())

    result = await engine.complete(project.id, rating=good_rating(price=1))

    assert result.applied
    assert (await engine.get_project(project.id)).status == ProjectStatus.COMPLETED.value
    assert len(await ratings.ratings_for_user("bidder_5")) == 1


async def test_complete_requires_awarded(engine, reviewing_project):
    project, _ = await reviewing_project()
    with pytest.raises(InvalidStateTransition):
        await engine.complete(project.id)


# =============================================================================
# Cancel / Delete
# =============================================================================


async def test_cancel_notifies_pending_bidders(engine, make_project, sink):
    project = await make_project(open_bidding=True)
    await engine.submit_bid(project.id, "bidder_1", 100.0)

    result = await engine.cancel(project.id)

    assert result.project.status == ProjectStatus.CANCELLED.value
    assert sink.recipients("project_cancelled") == ["bidder_1"]


async def test_cancel_applies_when_pending_bids_cannot_be_read(engine, make_project, store, sink, monkeypatch):
    project = await make_project(open_bidding=True)
    await engine.submit_bid(project.id, "bidder_1", 100.0)

    async def read_timeout(*args, **kwargs):
        raise TimeoutError("bids collection unavailable")

    monkeypatch.setattr(store, "list_bids_by_project", read_timeout)

    result = await engine.cancel(project.id)

    assert result.applied
    assert (await engine.get_project(project.id)).status == ProjectStatus.CANCELLED.value
    assert sink.events("project_cancelled") == []


async def test_cancel_after_close_fails(engine, make_project):
    project = await make_project(open_bidding=True)
    await engine.close_bidding(project.id)

    with pytest.raises(InvalidStateTransition):
        await engine.cancel(project.id)


async def test_cancelled_project_is_terminal(engine, make_project):
    project = await make_project()
    await engine.cancel(project.id)

    for op in (engine.open_bidding, engine.close_bidding, engine.complete, engine.cancel):
        with pytest.raises(InvalidStateTransition):
            await op(project.id)


async def test_delete_removes_project_and_bids(engine, make_project, store):
    project = await make_project(open_bidding=True)
    bid = await engine.submit_bid(project.id, "bidder_1", 100.0)

    await engine.delete_project(project.id)

    with pytest.raises(NotFound):
        await engine.get_project(project.id)
    assert await store.get_bid(bid.id) is None


async def test_delete_awarded_project_fails(engine, reviewing_project):
    project, _ = await _awarded(engine, reviewing_project)
    with pytest.raises(InvalidStateTransition):
        await engine.delete_project(project.id)


async def test_bid_stats_empty(engine, make_project):
    project = await make_project()
    stats = await engine.bid_stats(project.id)
    assert stats.count == 0
    assert stats.avg_amount is None


async def test_list_projects_filters(engine, make_project):
    draft = await make_project()
    bidding = await make_project(open_bidding=True, owner_id="pm_2")

    assert [p.id for p in await engine.list_projects(status=ProjectStatus.DRAFT)] == [draft.id]
    assert [p.id for p in await engine.list_projects(owner_id="pm_2")] == [bidding.id]


async def test_withdrawn_bids_survive_close(engine, make_project, store):
    project = await make_project(open_bidding=True)
    bid = await engine.submit_bid(project.id, "bidder_1", 100.0)
    await engine.withdraw_bid(bid.id)
    await engine.close_bidding(project.id)

    assert (await store.get_bid(bid.id)).status == BidStatus.WITHDRAWN.value
