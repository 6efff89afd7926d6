from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Mapping, NamedTuple, Optional

from live_status import LiveStatus


@dataclass(frozen=True)
class TrackedState:
    live: bool = False
    room_id: Optional[str] = None


OFFLINE = TrackedState()


class Edge(str, Enum):
    WENT_LIVE = "went_live"
    WENT_OFFLINE = "went_offline"
    STILL_LIVE = "still_live"
    STILL_OFFLINE = "still_offline"


DEFAULT_POLICY: FrozenSet[Edge] = frozenset({Edge.WENT_LIVE})


def build_policy(notify_on_end: bool) -> FrozenSet[Edge]:
    if notify_on_end:
        return DEFAULT_POLICY | {Edge.WENT_OFFLINE}
    return DEFAULT_POLICY


class Decision(NamedTuple):
    should_notify: bool
    next_state: TrackedState
    edge: Edge


def classify(previous: TrackedState, status: LiveStatus) -> Edge:
    if status.live:
        return Edge.STILL_LIVE if previous.live else Edge.WENT_LIVE
    return Edge.WENT_OFFLINE if previous.live else Edge.STILL_OFFLINE


class TransitionTracker:
    """Owns the last-known state of every monitored account.

    The map is injected at construction (normally whatever the state store
    loaded) and handed back through `snapshot()` for persisting. Accounts with
    no record are treated as offline, so an account that is already live on
    the first poll after a cold start still produces a notification.
    """

    def __init__(
        self,
        states: Optional[Mapping[str, TrackedState]] = None,
        policy: Iterable[Edge] = DEFAULT_POLICY,
    ) -> None:
        self._states: Dict[str, TrackedState] = dict(states or {})
        self.policy: FrozenSet[Edge] = frozenset(policy)

    def evaluate(self, account: str, status: LiveStatus, current: TrackedState) -> Decision:
        edge = classify(current, status)
        # Written every cycle so title or viewer drift never re-arms an alert.
        next_state = TrackedState(live=status.live, room_id=status.room_id)
        return Decision(should_notify=edge in self.policy, next_state=next_state, edge=edge)

    def current(self, account: str) -> TrackedState:
        return self._states.get(account, OFFLINE)

    def commit(self, account: str, state: TrackedState) -> None:
        self._states[account] = state

    def snapshot(self) -> Dict[str, TrackedState]:
        return dict(self._states)
