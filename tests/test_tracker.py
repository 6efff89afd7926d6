from __future__ import annotations

import pytest

from live_status import LiveStatus
from tracker import DEFAULT_POLICY, Edge, TrackedState, TransitionTracker, build_policy, classify

OFF = TrackedState()


@pytest.mark.parametrize(
    ("previous", "live", "edge"),
    [
        (OFF, True, Edge.WENT_LIVE),
        (OFF, False, Edge.STILL_OFFLINE),
        (TrackedState(True, "12345678"), True, Edge.STILL_LIVE),
        (TrackedState(True, "12345678"), False, Edge.WENT_OFFLINE),
    ],
)
def test_classify(previous, live, edge) -> None:
    assert classify(previous, LiveStatus(live=live)) == edge


def test_off_to_on_notifies_and_records_room() -> None:
    tracker = TransitionTracker()
    status = LiveStatus(live=True, room_id="12345678", title="hi", viewer_count=3)

    decision = tracker.evaluate("alice", status, OFF)

    assert decision.should_notify is True
    assert decision.edge == Edge.WENT_LIVE
    assert decision.next_state == TrackedState(live=True, room_id="12345678")


def test_on_to_on_is_silent_but_updates_room() -> None:
    tracker = TransitionTracker()

    decision = tracker.evaluate(
        "alice",
        LiveStatus(live=True, room_id="87654321", title="new title", viewer_count=900),
        TrackedState(live=True, room_id="12345678"),
    )

    assert decision.should_notify is False
    assert decision.next_state == TrackedState(live=True, room_id="87654321")


def test_badge_only_live_after_live_keeps_silent_and_clears_room() -> None:
    tracker = TransitionTracker()

    decision = tracker.evaluate("alice", LiveStatus(live=True), TrackedState(live=True, room_id="12345678"))

    assert decision.should_notify is False
    assert decision.next_state == TrackedState(live=True, room_id=None)


@pytest.mark.parametrize("previous", [OFF, TrackedState(True, "12345678")])
def test_going_or_staying_offline_is_silent_by_default(previous) -> None:
    decision = TransitionTracker().evaluate("alice", LiveStatus(live=False), previous)

    assert decision.should_notify is False
    assert decision.next_state == OFF


def test_session_end_notification_is_opt_in() -> None:
    tracker = TransitionTracker(policy=build_policy(notify_on_end=True))

    ended = tracker.evaluate("alice", LiveStatus(live=False), TrackedState(True, "12345678"))
    started = tracker.evaluate("alice", LiveStatus(live=True), OFF)

    assert ended.should_notify is True
    assert ended.edge == Edge.WENT_OFFLINE
    assert started.should_notify is True


def test_default_policy_only_contains_went_live() -> None:
    assert DEFAULT_POLICY == frozenset({Edge.WENT_LIVE})
    assert build_policy(notify_on_end=False) == DEFAULT_POLICY


def test_unknown_account_defaults_to_offline() -> None:
    tracker = TransitionTracker({"bob": TrackedState(True, "11111111")})

    assert tracker.current("alice") == OFF
    assert tracker.current("bob") == TrackedState(True, "11111111")


def test_cold_start_live_account_notifies() -> None:
    tracker = TransitionTracker()

    decision = tracker.evaluate("alice", LiveStatus(live=True), tracker.current("alice"))

    assert decision.should_notify is True


def test_snapshot_is_a_copy() -> None:
    initial = {"alice": OFF}
    tracker = TransitionTracker(initial)
    tracker.commit("alice", TrackedState(True, "12345678"))

    snapshot = tracker.snapshot()
    snapshot["bob"] = OFF

    assert initial == {"alice": OFF}
    assert tracker.snapshot() == {"alice": TrackedState(True, "12345678")}
