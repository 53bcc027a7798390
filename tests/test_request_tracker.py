"""Tests for request ids, the cancellation watermark and handles."""

from __future__ import annotations

import asyncio

import pytest

from paperchat.chat.request_tracker import CancellationHandle, CancellationToken, RequestTracker


def test_request_ids_are_strictly_increasing() -> None:
    tracker = RequestTracker()

    ids = [tracker.next_request_id() for _ in range(5)]

    assert ids == [1, 2, 3, 4, 5]
    assert tracker.current_request_id == 5


def test_watermark_cancels_everything_at_or_below() -> None:
    tracker = RequestTracker()
    ids = [tracker.next_request_id() for _ in range(4)]

    tracker.cancel_up_to(2)

    assert [tracker.is_cancelled(request_id) for request_id in ids] == [True, True, False, False]


def test_watermark_never_moves_backwards() -> None:
    tracker = RequestTracker()
    for _ in range(5):
        tracker.next_request_id()

    assert tracker.cancel_up_to(4) == 4
    assert tracker.cancel_up_to(2) == 4
    assert tracker.watermark == 4
    assert tracker.is_cancelled(3)


def test_fresh_request_after_cancel_is_live() -> None:
    tracker = RequestTracker()
    first = tracker.next_request_id()
    tracker.cancel_up_to(first)

    second = tracker.next_request_id()

    assert tracker.is_cancelled(first)
    assert not tracker.is_cancelled(second)


@pytest.mark.asyncio
async def test_handle_cancel_is_idempotent_and_wakes_waiters() -> None:
    handle = CancellationHandle(7)
    waiter = asyncio.create_task(handle.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    handle.cancel("user")
    handle.cancel("second")
    await asyncio.wait_for(waiter, timeout=1)

    assert handle.cancelled
    assert handle.reason == "user"


@pytest.mark.asyncio
async def test_issuing_a_handle_replaces_without_signalling_the_old_one() -> None:
    tracker = RequestTracker()
    first = tracker.issue_handle(tracker.next_request_id())
    second = tracker.issue_handle(tracker.next_request_id())

    assert tracker.active_handle is second
    assert not first.cancelled
    assert not tracker.release_handle(first)
    assert tracker.release_handle(second)
    assert tracker.active_handle is None


@pytest.mark.asyncio
async def test_signal_active_only_fires_covered_handle() -> None:
    tracker = RequestTracker()
    older = tracker.next_request_id()
    newer = tracker.next_request_id()
    handle = tracker.issue_handle(newer)

    assert not tracker.signal_active(older)
    assert not handle.cancelled
    assert tracker.signal_active(newer)
    assert handle.cancelled


@pytest.mark.asyncio
async def test_token_combines_watermark_and_handle() -> None:
    tracker = RequestTracker()
    request_id = tracker.next_request_id()
    token = CancellationToken(request_id, tracker)
    assert not token.is_cancelled

    handle = tracker.issue_handle(request_id)
    token.bind(handle)
    handle.cancel()

    assert token.is_cancelled


def test_token_observation_is_sticky() -> None:
    tracker = RequestTracker()
    request_id = tracker.next_request_id()
    token = CancellationToken(request_id, tracker)

    tracker.cancel_up_to(request_id)
    assert token.is_cancelled

    tracker._watermark = 0  # simulate a tracker reset
    assert token.is_cancelled


def test_token_reports_superseded_requests() -> None:
    tracker = RequestTracker()
    token = CancellationToken(tracker.next_request_id(), tracker)
    assert not token.superseded()

    tracker.next_request_id()

    assert token.superseded()
    assert not token.is_cancelled
