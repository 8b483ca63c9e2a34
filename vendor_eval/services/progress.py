# vendor_eval/services/progress.py
"""
Live progress of specialist executions, scoped by project.

- subscribe(scope_id, listener) -> unsubscribe callable
- emit(update)
- get_snapshot(scope_id)  latest update per (vendor, role)
- clear(scope_id)         drops stored history, keeps subscriptions

A late subscriber is replayed the current snapshot before any new event.
Listener exceptions are logged and never reach the emitter.
"""
from __future__ import annotations
import logging
from typing import Callable, Dict, List, Tuple

from vendor_eval.models import ProgressUpdate

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

ProgressListener = Callable[[ProgressUpdate], None]


class ProgressReporter:

    def __init__(self):
        self._listeners: Dict[str, List[ProgressListener]] = {}
        # scope -> {(vendor, role): latest update}, insertion ordered
        self._latest: Dict[str, Dict[Tuple[str, str], ProgressUpdate]] = {}

    def subscribe(self, scope_id: str, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.setdefault(scope_id, []).append(listener)

        for update in self.get_snapshot(scope_id):
            self._notify(listener, update)

        def unsubscribe() -> None:
            listeners = self._listeners.get(scope_id)
            if not listeners:
                return
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(scope_id, None)

        return unsubscribe

    def emit(self, update: ProgressUpdate) -> None:
        scope = self._latest.setdefault(update.project_id, {})
        scope[(update.vendor_name, update.agent_role)] = update

        # copy: a listener may unsubscribe while being notified
        for listener in list(self._listeners.get(update.project_id, [])):
            self._notify(listener, update)

    def get_snapshot(self, scope_id: str) -> List[ProgressUpdate]:
        return list(self._latest.get(scope_id, {}).values())

    def clear(self, scope_id: str) -> None:
        self._latest.pop(scope_id, None)

    def listener_count(self, scope_id: str) -> int:
        return len(self._listeners.get(scope_id, []))

    @staticmethod
    def _notify(listener: ProgressListener, update: ProgressUpdate) -> None:
        try:
            listener(update)
        except Exception as e:
            logger.exception("Progress listener failed for %s/%s: %s", update.vendor_name, update.agent_role, e)
