"""Flake classifier.

Classifies each test identity from a bounded sliding window of its most
recent executed (non-skipped) history entries. Rules, first match wins:

1. fewer than ``min_runs`` entries          -> insufficient-data
2. trailing failure streak >= ``failing_streak`` -> consistently-failing
3. flake rate >= ``flaky_threshold``        -> flaky
4. no failures and no retries               -> stable
5. otherwise                                -> unstable

Quarantined tests report ``quarantined``; the rule result is kept as the
base classification.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from flakelens.exceptions import InsufficientHistory
from flakelens.identity.resolver import canonical_title
from flakelens.models.classification import (
    Classification,
    ClassificationState,
    ClassificationTransition,
    WindowStats,
)
from flakelens.models.config import ClassifierConfig
from flakelens.models.history import HistoryEntry
from flakelens.models.identity import TestIdentity
from flakelens.models.run import TestStatus

if TYPE_CHECKING:
    from flakelens.persistence.store import HistoryStore

logger = logging.getLogger(__name__)

TransitionListener = Callable[[ClassificationTransition], None]

# Absorbs float error in rate comparisons such as 2/20 >= 0.10
_RATE_EPSILON = 1e-9


def classify_window(entries: Sequence[HistoryEntry], config: ClassifierConfig) -> WindowStats:
    """Compute window statistics and the classification.

    Pure function of the window contents.

    Args:
        entries: Window entries, oldest first. Skipped entries are ignored.
        config: Classifier thresholds.

    Returns:
        Statistics and classification for the window.

    Raises:
        InsufficientHistory: If the window has no executed entries.
    """
    window = [e for e in entries if e.status != TestStatus.SKIPPED]
    if not window:
        msg = "Cannot classify an empty window"
        raise InsufficientHistory(msg)

    size = len(window)
    failures = sum(1 for e in window if e.is_failure)
    flakes = sum(1 for e in window if e.is_flaky)

    streak = 0
    for entry in reversed(window):
        if entry.status != TestStatus.FAILED:
            break
        streak += 1

    # Exponentially weighted flake rate, newest entry weighted 1
    weight_sum = 0.0
    weighted = 0.0
    weight = 1.0
    for entry in reversed(window):
        weight_sum += weight
        if entry.is_flaky:
            weighted += weight
        weight *= config.score_decay
    flake_score = weighted / weight_sum

    fail_rate = failures / size
    flake_rate = flakes / size

    if size < config.min_runs:
        classification = Classification.INSUFFICIENT_DATA
    elif streak >= config.failing_streak:
        classification = Classification.CONSISTENTLY_FAILING
    elif flake_rate + _RATE_EPSILON >= config.flaky_threshold:
        classification = Classification.FLAKY
    elif failures == 0 and flakes == 0:
        classification = Classification.STABLE
    else:
        classification = Classification.UNSTABLE

    return WindowStats(
        window_size=size,
        fail_rate=fail_rate,
        flake_rate=flake_rate,
        flake_score=min(max(flake_score, 0.0), 1.0),
        consecutive_fail_streak=streak,
        avg_duration_seconds=math.fsum(e.duration_seconds for e in window) / size,
        classification=classification,
    )


class FlakeClassifier:
    """Maintains a ClassificationState per test identity.

    ``update`` must be called while the caller holds the identity's lock in
    the history store; the store does this for commit callbacks.
    """

    def __init__(
        self,
        config: ClassifierConfig | None = None,
        quarantined: Iterable[str] = (),
    ) -> None:
        """Initialize the classifier.

        Args:
            config: Window size and thresholds.
            quarantined: Test titles to report as quarantined.
        """
        self._config = config or ClassifierConfig()
        self._windows: dict[str, deque[HistoryEntry]] = {}
        self._states: dict[str, ClassificationState] = {}
        self._quarantined: set[str] = {canonical_title(t) for t in quarantined}
        self._listeners: list[TransitionListener] = []
        self._log_lock = threading.Lock()
        self._transitions: deque[ClassificationTransition] = deque(
            maxlen=self._config.transition_log_size
        )

    @property
    def config(self) -> ClassifierConfig:
        return self._config

    def subscribe(self, listener: TransitionListener) -> Callable[[], None]:
        """Register a transition listener.

        Returns:
            Function that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update(self, identity: TestIdentity, entry: HistoryEntry) -> ClassificationTransition | None:
        """Fold a newly committed entry into the identity's window and reclassify.

        Never raises for an empty window: the previous state is kept.

        Returns:
            The transition, if the classification changed.
        """
        window = self._windows.setdefault(
            identity.fingerprint, deque(maxlen=self._config.window_size)
        )
        if entry.status != TestStatus.SKIPPED:
            window.append(entry)
        return self._recompute(identity, list(window), entry.run_id)

    def _recompute(
        self,
        identity: TestIdentity,
        window: list[HistoryEntry],
        run_id: str | None,
        emit: bool = True,
    ) -> ClassificationTransition | None:
        fingerprint = identity.fingerprint
        previous = self._states.get(fingerprint)
        try:
            stats = classify_window(window, self._config)
        except InsufficientHistory:
            if previous is not None:
                logger.debug("No executed history for %s; keeping previous state", identity.title)
                return None
            stats = WindowStats(
                window_size=0,
                fail_rate=0.0,
                flake_rate=0.0,
                flake_score=0.0,
                classification=Classification.INSUFFICIENT_DATA,
            )

        base = stats.classification
        current = Classification.QUARANTINED if identity.title in self._quarantined else base
        state = ClassificationState(
            fingerprint=fingerprint,
            title=identity.title,
            classification=current,
            base_classification=base,
            flake_score=stats.flake_score,
            flake_rate=stats.flake_rate,
            fail_rate=stats.fail_rate,
            consecutive_fail_streak=stats.consecutive_fail_streak,
            window_size=stats.window_size,
            avg_duration_seconds=stats.avg_duration_seconds,
            updated_at=datetime.now(UTC),
            last_run_id=run_id or (previous.last_run_id if previous else None),
        )
        self._states[fingerprint] = state

        if previous is None or previous.classification == current:
            return None
        transition = ClassificationTransition(
            fingerprint=fingerprint,
            title=identity.title,
            previous=previous.classification,
            current=current,
            flake_score=state.flake_score,
            run_id=run_id,
            occurred_at=state.updated_at,
        )
        if emit:
            self._emit(transition)
        return transition

    def _emit(self, transition: ClassificationTransition) -> None:
        logger.info(
            "Test %r changed from %s to %s",
            transition.title,
            transition.previous.value,
            transition.current.value,
        )
        with self._log_lock:
            self._transitions.append(transition)
        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception:
                logger.exception("Transition listener failed for %r", transition.title)

    def set_quarantined(
        self,
        identity: TestIdentity,
        quarantined: bool,
    ) -> ClassificationTransition | None:
        """Quarantine or release a test and reclassify it immediately.

        Must be called while holding the identity's lock.
        """
        if quarantined:
            self._quarantined.add(identity.title)
        else:
            self._quarantined.discard(identity.title)
        if identity.fingerprint not in self._states:
            return None
        window = list(self._windows.get(identity.fingerprint, ()))
        return self._recompute(identity, window, None)

    def is_quarantined(self, title: str) -> bool:
        return canonical_title(title) in self._quarantined

    def rebuild(self, store: HistoryStore) -> int:
        """Recompute every state from the store's history without emitting transitions.

        Returns:
            Number of identities classified.
        """
        self._windows.clear()
        self._states.clear()
        count = 0
        for identity in store.identities():
            if not store.entries(identity.fingerprint):
                continue
            window = store.window(identity.fingerprint, self._config.window_size)
            self._windows[identity.fingerprint] = deque(window, maxlen=self._config.window_size)
            last = store.query(identity.fingerprint, limit=1)
            self._recompute(identity, window, last[0].run_id if last else None, emit=False)
            count += 1
        return count

    def forget(self, fingerprint: str) -> None:
        """Drop the state of a pruned identity."""
        self._windows.pop(fingerprint, None)
        self._states.pop(fingerprint, None)

    def state(self, fingerprint: str) -> ClassificationState | None:
        return self._states.get(fingerprint)

    def states(self) -> list[ClassificationState]:
        return list(self._states.values())

    def recent_transitions(self, since: datetime | None = None) -> list[ClassificationTransition]:
        """Transitions kept in the bounded log, oldest first."""
        with self._log_lock:
            transitions = list(self._transitions)
        if since is not None:
            transitions = [t for t in transitions if t.occurred_at >= since]
        return transitions
