import contextlib
import json
import os
from typing import Dict, List, Mapping

from errors import PersistenceError
from events import log_json
from tracker import TrackedState


def encode_states(states: Mapping[str, TrackedState]) -> List[list]:
    return [[account, {"live": state.live, "roomId": state.room_id}] for account, state in states.items()]


def decode_states(data: object) -> Dict[str, TrackedState]:
    if not isinstance(data, list):
        raise PersistenceError("state file must contain a list of [account, state] pairs")
    states: Dict[str, TrackedState] = {}
    for entry in data:
        if not isinstance(entry, list) or len(entry) != 2:
            raise PersistenceError(f"malformed state entry: {entry!r}")
        account, raw = entry
        if not isinstance(account, str) or not isinstance(raw, dict):
            raise PersistenceError(f"malformed state entry: {entry!r}")
        live = raw.get("live", False)
        room_id = raw.get("roomId")
        if not isinstance(live, bool):
            raise PersistenceError(f"malformed state entry: {entry!r}")
        # Later duplicates win, leaving one record per account.
        states[account] = TrackedState(
            live=live,
            room_id=str(room_id) if room_id is not None else None,
        )
    return states


class StateStore:
    """JSON snapshot of the tracked state, one file per monitor instance.

    Read failures yield an empty map and write failures are logged; neither
    ever stops the monitor. There is no locking between processes.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def load(self) -> Dict[str, TrackedState]:
        if not os.path.exists(self.path):
            return {}
        try:
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError, RecursionError) as e:
                raise PersistenceError(str(e)) from e
            return decode_states(data)
        except PersistenceError as e:
            log_json("state_load_failed", path=self.path, message=str(e))
            return {}

    def save(self, states: Mapping[str, TrackedState]) -> bool:
        try:
            self._write(encode_states(states))
        except PersistenceError as e:
            log_json("state_save_failed", path=self.path, message=str(e))
            return False
        return True

    def _write(self, payload: List[list]) -> None:
        tmp_path = self.path + ".tmp"
        try:
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as e:
            with contextlib.suppress(OSError):
                os.remove(tmp_path)
            raise PersistenceError(str(e)) from e
