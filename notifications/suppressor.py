"""Short-window suppression of repeated change notifications."""
import logging
import time
from collections import deque
from typing import Callable, Optional

from processor.errors import SuppressionCheckError

logger = logging.getLogger(__name__)


class DuplicateSuppressor:
    """
    Decides whether a notification repeats one emitted moments ago.

    The in-process window only sees broadcasts from this process; the
    persisted lookback covers other instances writing to the same log.
    """

    def __init__(self,
                 lookback: Optional[Callable[[str, str, float], bool]] = None,
                 window_seconds: float = 5,
                 lookback_seconds: float = 10,
                 max_entries: int = 1000,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the suppressor.

        Args:
            lookback: Called as lookback(event_type, entity_id, since) and
                returns True if the persisted log holds a matching entry
                created at or after ``since``
            window_seconds: Lifetime of in-process entries
            lookback_seconds: How far back the persisted check looks; the
                persisted log has one-second granularity
            max_entries: Bound on the in-process window
            clock: Returns the current epoch time
        """
        self.lookback = lookback
        self.window_seconds = window_seconds
        self.lookback_seconds = lookback_seconds
        self.clock = clock
        self._recent = deque(maxlen=max_entries)

    def _prune(self, now: float) -> None:
        while self._recent and now - self._recent[0][2] >= self.window_seconds:
            self._recent.popleft()

    def should_suppress(self, event_type: str, entity_id: Optional[str]) -> bool:
        """
        Check whether (event_type, entity_id) was broadcast recently.

        Args:
            event_type: Change type
            entity_id: Id of the changed entity; None is never suppressed

        Returns:
            True if the caller must not enqueue
        """
        now = self.clock()
        self._prune(now)

        if entity_id is None:
            return False

        for recent_type, recent_id, _ in self._recent:
            if recent_type == event_type and recent_id == entity_id:
                logger.info(
                    f"Preventing duplicate broadcast for {event_type} "
                    f"event ID {entity_id}"
                )
                return True

        if self.lookback is None:
            return False

        try:
            found = self.lookback(event_type, entity_id, now - self.lookback_seconds)
        except SuppressionCheckError as e:
            logger.warning(f"Duplicate lookback failed, broadcasting anyway: {e}")
            return False

        if found:
            logger.info(
                f"Cross-process duplicate for {event_type} event ID {entity_id}"
            )
        return found

    def record(self, event_type: str, entity_id: Optional[str]) -> None:
        """Remember a broadcast that is about to be enqueued."""
        if entity_id is None:
            return
        self._recent.append((event_type, entity_id, self.clock()))
