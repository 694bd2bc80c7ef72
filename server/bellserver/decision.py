from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from bellserver.protocol import DeviceIdentity
from bellserver.ranking import RankedRecord

DEFAULT_EFFECTIVE_SOUNDS: tuple[str, ...] = (
    "Telephone",
    "Telephone bell ringing",
    "Alarm clock",
    "Alarm",
    "Beep, bleep",
    "Ringtone",
    "Knock",
)

# A generic "Music" top class tends to mask the specific sound underneath it.
DEFAULT_MASK_LABEL = "Music"


@dataclass(slots=True)
class TriggerState:
    last_ring_s: float | None = None


@dataclass(frozen=True, slots=True)
class RingEvent:
    identity: DeviceIdentity
    label: str
    probability: float
    at_s: float

    def to_json(self) -> dict[str, object]:
        return {
            "type": "ring",
            "device": {"name": self.identity.name, "uuid": self.identity.uuid},
            "label": self.label,
            "probability": self.probability,
        }


class DecisionEngine:
    """Turns ranked batches into debounced ring events, one trigger history per device uuid.

    Matching:
    - top label is the mask label and a runner-up exists: the runner-up must beat
      ``secondary_threshold`` and be in the allow-list;
    - otherwise the top record must beat ``primary_threshold`` and be in the allow-list.

    A match only fires when no ring happened in the last ``ring_cooldown_s``. The
    ``active_window_s`` window behind :meth:`is_active` is independent of the cooldown.
    """

    def __init__(
        self,
        *,
        effective_sounds: Iterable[str] | None = None,
        primary_threshold: float = 0.5,
        secondary_threshold: float = 0.4,
        mask_label: str = DEFAULT_MASK_LABEL,
        ring_cooldown_s: float = 1.0,
        active_window_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        sounds = DEFAULT_EFFECTIVE_SOUNDS if effective_sounds is None else tuple(effective_sounds)
        self._effective_sounds = frozenset(s for s in sounds if s)
        self._primary_threshold = float(primary_threshold)
        self._secondary_threshold = float(secondary_threshold)
        self._mask_label = mask_label
        self._ring_cooldown_s = max(0.0, float(ring_cooldown_s))
        self._active_window_s = max(0.0, float(active_window_s))
        self._clock = clock
        self._states: dict[str, TriggerState] = {}
        self._logger = logging.getLogger("bellserver.decision")

    @property
    def effective_sounds(self) -> frozenset[str]:
        return self._effective_sounds

    def match(self, ranked: Sequence[RankedRecord]) -> RankedRecord | None:
        """Return the record that qualifies for a ring, ignoring the cooldown."""
        if not ranked:
            return None
        top = ranked[0]
        if top.label == self._mask_label and len(ranked) > 1:
            candidate = ranked[1]
            threshold = self._secondary_threshold
        else:
            candidate = top
            threshold = self._primary_threshold
        # Unresolved labels ("") are never in the allow-list.
        if not candidate.label or candidate.label not in self._effective_sounds:
            return None
        if not candidate.probability > threshold:
            return None
        return candidate

    def decide(self, identity: DeviceIdentity, ranked: Sequence[RankedRecord]) -> RingEvent | None:
        candidate = self.match(ranked)
        if candidate is None:
            return None
        now = self._clock()
        state = self._states.setdefault(identity.uuid, TriggerState())
        if state.last_ring_s is not None and not (now - state.last_ring_s > self._ring_cooldown_s):
            self._logger.debug(
                "Ring suppressed by cooldown uuid=%s label=%s sinceLastS=%.3f",
                identity.uuid,
                candidate.label,
                now - state.last_ring_s,
            )
            return None
        state.last_ring_s = now
        return RingEvent(identity=identity, label=candidate.label, probability=candidate.probability, at_s=now)

    def is_active(self, uuid: str) -> bool:
        state = self._states.get(uuid)
        if state is None or state.last_ring_s is None:
            return False
        return (self._clock() - state.last_ring_s) < self._active_window_s

    def state(self, uuid: str) -> TriggerState | None:
        return self._states.get(uuid)
