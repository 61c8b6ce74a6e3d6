"""
Tests for privileged force transitions.

Tests cover:
1. force_close regardless of deadline
2. force_complete from awarded and from reviewing
3. reset_to_draft and bid reopening
"""

import pytest

from procura.errors import InvalidStateTransition, NotFound, ValidationError
from procura.models import BidStatus, NoopReason, OperationKind, Outcome, ProjectStatus

from conftest import OWNER


async def test_force_close_before_deadline(overrides, engine, make_project, sink):
    project = await make_project(open_bidding=True, hours=48)
    await engine.submit_bid(project.id, "bidder_1", 100.0)

    result = await overrides.force_close(project.id)

    assert result.applied
    assert result.kind == OperationKind.OVERRIDE.value
    assert result.project.status == ProjectStatus.REVIEWING.value
    assert sorted(sink.recipients("bidding_closed")) == ["bidder_1", OWNER]


async def test_force_close_from_draft(overrides, make_project):
    project = await make_project()

    result = await overrides.force_close(project.id)

    assert result.project.status == ProjectStatus.REVIEWING.value


async def test_force_close_already_closed_is_noop(overrides, engine, make_project, sink):
    project = await make_project(open_bidding=True)
    await engine.close_bidding(project.id)
    before = len(sink.sent)

    result = await overrides.force_close(project.id)

    assert result.outcome == Outcome.NOOP.value
    assert result.reason == NoopReason.ALREADY_CLOSED.value
    assert len(sink.sent) == before


async def test_force_close_cancelled_fails(overrides, engine, make_project):
    project = await make_project()
    await engine.cancel(project.id)

    with pytest.raises(InvalidStateTransition):
        await overrides.force_close(project.id)


async def test_force_complete_from_awarded(overrides, engine, reviewing_project, sink):
    project, bids = await reviewing_project()
    await engine.award(project.id, bids["bidder_5"].id)

    result = await overrides.force_complete(project.id)

    assert result.kind == OperationKind.OVERRIDE.value
    assert result.project.status == ProjectStatus.COMPLETED.value
    assert result.project.completed_at is not None
    assert sink.recipients("project_completed") == ["bidder_5"]


async def test_force_complete_from_reviewing_awards_atomically(overrides, reviewing_project, store):
    project, bids = await reviewing_project()

    result = await overrides.force_complete(project.id, bid_id=bids["bidder_3"].id)

    completed = result.project
    assert completed.status == ProjectStatus.COMPLETED.value
    assert completed.awarded_bid_id == bids["bidder_3"].id
    assert completed.awarded_amount == 100.0
    statuses = {b.bidder_id: b.status for b in await store.list_bids_by_project(project.id)}
    assert statuses == {
        "bidder_3": BidStatus.WON.value,
        "bidder_5": BidStatus.LOST.value,
        "bidder_7": BidStatus.LOST.value,
    }


async def test_force_complete_from_reviewing_notifies_like_award_and_complete(overrides, reviewing_project, sink):
    project, bids = await reviewing_project()

    await overrides.force_complete(project.id, bid_id=bids["bidder_3"].id)

    assert sink.recipients("bid_accepted") == ["bidder_3"]
    assert sorted(sink.recipients("bid_rejected")) == ["bidder_5", "bidder_7"]
    assert sink.recipients("project_completed") == ["bidder_3"]
    assert sink.events("project_update") == []


async def test_force_complete_from_reviewing_needs_bid(overrides, reviewing_project):
    project, _ = await reviewing_project()
    with pytest.raises(ValidationError):
        await overrides.force_complete(project.id)


async def test_force_complete_unknown_bid(overrides, reviewing_project):
    project, _ = await reviewing_project()
    with pytest.raises(NotFound):
        await overrides.force_complete(project.id, bid_id="bid_missing")


async def test_force_complete_from_bidding_fails(overrides, make_project):
    project = await make_project(open_bidding=True)
    with pytest.raises(InvalidStateTransition):
        await overrides.force_complete(project.id)


async def test_reset_awarded_project(overrides, engine, reviewing_project, store, sink):
    project, bids = await reviewing_project()
    await engine.award(project.id, bids["bidder_5"].id)

    result = await overrides.reset_to_draft(project.id)

    reset = result.project
    assert reset.status == ProjectStatus.DRAFT.value
    assert reset.awarded_bid_id is None
    assert reset.awarded_to is None
    assert reset.awarded_amount is None
    bids_now = await store.list_bids_by_project(project.id)
    assert {b.status for b in bids_now} == {BidStatus.PENDING.value}
    assert sorted(sink.recipients("project_update")) == ["bidder_3", "bidder_5", "bidder_7", OWNER]


async def test_reset_completed_project_clears_completion(overrides, engine, reviewing_project):
    project, bids = await reviewing_project()
    await engine.award(project.id, bids["bidder_5"].id)
    await engine.complete(project.id)

    result = await overrides.reset_to_draft(project.id)

    assert result.project.status == ProjectStatus.DRAFT.value
    assert result.project.completed_at is None


async def test_reset_keeps_withdrawn_bids(overrides, engine, make_project, store):
    project = await make_project(open_bidding=True)
    bid = await engine.submit_bid(project.id, "bidder_1", 100.0)
    await engine.withdraw_bid(bid.id)

    await overrides.reset_to_draft(project.id)

    assert (await store.get_bid(bid.id)).status == BidStatus.WITHDRAWN.value


async def test_reset_draft_fails(overrides, make_project):
    project = await make_project()
    with pytest.raises(InvalidStateTransition):
        await overrides.reset_to_draft(project.id)


async def test_reset_then_reopen(overrides, engine, make_project):
    project = await make_project(open_bidding=True)
    await engine.close_bidding(project.id)
    await overrides.reset_to_draft(project.id)

    result = await engine.open_bidding(project.id)

    assert result.project.status == ProjectStatus.BIDDING.value
