from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from bellserver.protocol import DeviceIdentity


@dataclass(slots=True)
class Session:
    connection: Any
    identity: DeviceIdentity
    connected_at_s: float = 0.0


@dataclass(slots=True)
class HelloResult:
    session: Session
    first_seen: bool
    # Session of another live connection that held the same uuid and was replaced.
    evicted: Session | None = None


class SessionRegistry:
    """Live connection <-> device identity association.

    Policy for a uuid claimed by a second connection: the latest Hello wins and the
    older session is evicted (the caller is expected to close that connection).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._by_conn: dict[Hashable, Session] = {}
        self._by_uuid: dict[str, Session] = {}
        self._seen_uuids: set[str] = set()
        self._logger = logging.getLogger("bellserver.sessions")

    def on_hello(self, connection: Hashable, identity: DeviceIdentity) -> HelloResult:
        evicted: Session | None = None
        prev = self._by_uuid.get(identity.uuid)
        if prev is not None and prev.connection is not connection:
            self._by_conn.pop(prev.connection, None)
            evicted = prev
            self._logger.info(
                "Device uuid=%s re-identified on a new connection; replacing previous session name=%s",
                identity.uuid,
                prev.identity.name,
            )

        old = self._by_conn.get(connection)
        if old is not None and old.identity.uuid != identity.uuid:
            # Same connection switched identity; drop the stale uuid index entry.
            if self._by_uuid.get(old.identity.uuid) is old:
                self._by_uuid.pop(old.identity.uuid, None)
        if old is not None and old.identity == identity:
            session = old
        else:
            session = Session(connection=connection, identity=identity, connected_at_s=self._clock())
        self._by_conn[connection] = session
        self._by_uuid[identity.uuid] = session

        first_seen = identity.uuid not in self._seen_uuids
        self._seen_uuids.add(identity.uuid)
        return HelloResult(session=session, first_seen=first_seen, evicted=evicted)

    def lookup(self, connection: Hashable) -> Session | None:
        return self._by_conn.get(connection)

    def lookup_uuid(self, uuid: str) -> Session | None:
        return self._by_uuid.get(uuid.lower())

    def remove(self, connection: Hashable) -> Session | None:
        session = self._by_conn.pop(connection, None)
        if session is None:
            return None
        cur = self._by_uuid.get(session.identity.uuid)
        if cur is session:
            self._by_uuid.pop(session.identity.uuid, None)
        self._logger.info("Session removed name=%s uuid=%s", session.identity.name, session.identity.uuid)
        return session

    def sessions(self) -> list[Session]:
        return list(self._by_conn.values())

    def clear(self) -> None:
        self._by_conn.clear()
        self._by_uuid.clear()

    def __len__(self) -> int:
        return len(self._by_conn)
