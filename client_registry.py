"""
client_registry.py

In-memory registry of browser-extension subscribers and their live SSE connections.

Requirements:
- No persistence: the registry lives as long as the process.
- A subscriber may hold several connections (one per browser tab); metadata survives disconnects.
- Thread-safe: Flask serves requests on several threads and fan-out runs on a worker pool.
  The lock only covers map mutation; connection writes happen on a copied snapshot outside the lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from gitlab_helpers import (
    InvalidArgument,
    TransportWriteFailure,
    first_non_empty,
    normalize_id,
    strip_trailing_slash,
    utc_now_iso,
)
from sse_channel import format_sse_data

logger = logging.getLogger(__name__)


class Connection(Protocol):
    def write(self, frame: str) -> None: ...

    def close(self) -> None: ...

    def add_close_observer(self, observer: Callable[[Any], None]) -> None: ...


@dataclass
class SubscriberInfo:
    user_id: str
    user_name: str
    user_agent: str
    registered_at: str
    last_seen: str
    gitlab_base_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "userAgent": self.user_agent,
            "registeredAt": self.registered_at,
            "lastSeen": self.last_seen,
            "gitlabBaseUrl": self.gitlab_base_url,
        }


@dataclass(frozen=True)
class RegistryStats:
    total_registered: int
    connected_count: int
    total_connection_count: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "totalClients": self.total_registered,
            "connectedClients": self.connected_count,
            "totalConnections": self.total_connection_count,
        }


class ClientRegistry:
    """
    Owns the subscriber -> connections mapping and the subscriber metadata map.

    Nothing outside this class mutates either map. Connections are removed by identity,
    never by position, so concurrent disconnects of sibling tabs stay correct.
    """

    def __init__(self, clock: Callable[[], str] = utc_now_iso) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._connections: Dict[str, List[Connection]] = {}
        self._info: Dict[str, SubscriberInfo] = {}

    def register(
        self,
        user_id: Any,
        user_name: Optional[str] = None,
        user_agent: Optional[str] = None,
        gitlab_base_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        uid = normalize_id(user_id)
        if uid is None:
            raise InvalidArgument("userId is required")

        name = first_non_empty(user_name) or uid
        agent = first_non_empty(user_agent) or ""
        hint = strip_trailing_slash(gitlab_base_url)

        now = self._clock()
        with self._lock:
            info = self._info.get(uid)
            if info is None:
                info = SubscriberInfo(uid, name, agent, now, now, hint)
                self._info[uid] = info
            else:
                info.user_name = name
                info.user_agent = agent
                info.registered_at = now
                info.last_seen = now
                if hint:
                    info.gitlab_base_url = hint

        logger.info("[registry] registered user_id=%s user_name=%s", uid, name)
        return {"success": True, "userId": uid}

    def connect(self, user_id: Any, connection: Connection, gitlab_base_url: Optional[str] = None) -> None:
        uid = normalize_id(user_id)
        if uid is None:
            raise InvalidArgument("userId is required")

        now = self._clock()
        with self._lock:
            conns = self._connections.setdefault(uid, [])
            if not any(c is connection for c in conns):
                conns.append(connection)
            info = self._info.get(uid)
            if info is None:
                info = SubscriberInfo(uid, uid, "", now, now)
                self._info[uid] = info
            info.last_seen = now
            hint = strip_trailing_slash(gitlab_base_url)
            if hint:
                info.gitlab_base_url = hint
            total = len(conns)

        logger.info("[registry] connection added user_id=%s total_connections=%d", uid, total)

        try:
            connection.write(
                format_sse_data(
                    {
                        "type": "connected",
                        "message": "Connected to server",
                        "timestamp": now,
                    }
                )
            )
        except TransportWriteFailure as e:
            logger.error("[registry] connected frame failed user_id=%s error=%s", uid, e)
            connection.close()
            self.disconnect(uid, connection)
            return

        connection.add_close_observer(lambda c: self.disconnect(uid, c))

    def disconnect(self, user_id: Any, connection: Connection) -> None:
        """Idempotent: removing an unknown or already-removed connection is a no-op."""
        uid = normalize_id(user_id)
        if uid is None:
            return
        with self._lock:
            conns = self._connections.get(uid)
            if not conns:
                return
            for i, c in enumerate(conns):
                if c is connection:
                    del conns[i]
                    break
            else:
                return
            remaining = len(conns)
            if remaining == 0:
                del self._connections[uid]

        if remaining == 0:
            logger.info("[registry] client disconnected user_id=%s", uid)
        else:
            logger.info("[registry] connection removed user_id=%s remaining_connections=%d", uid, remaining)

    def _snapshot(self, user_id: str) -> List[Connection]:
        with self._lock:
            return list(self._connections.get(user_id, ()))

    def _send_frame(self, user_id: str, frame: str) -> int:
        conns = self._snapshot(user_id)
        if not conns:
            logger.warning("[registry] client not connected user_id=%s", user_id)
            return 0

        sent = 0
        for conn in conns:
            try:
                conn.write(frame)
                sent += 1
            except TransportWriteFailure as e:
                logger.error("[registry] send failed user_id=%s error=%s", user_id, e)
                conn.close()
                self.disconnect(user_id, conn)

        logger.info("[registry] message sent user_id=%s sent_count=%d total_connections=%d", user_id, sent, len(conns))
        return sent

    def send_to(self, user_id: Any, notification: Dict[str, Any]) -> int:
        """
        Push a notification to every open connection of one subscriber.
        Returns the number of connections that accepted the write (0 when not connected).
        """
        uid = normalize_id(user_id)
        if uid is None:
            return 0
        return self._send_frame(uid, format_sse_data(notification))

    def send_to_many(self, user_ids: Iterable[Any], notification: Dict[str, Any]) -> int:
        """Returns the number of subscribers with at least one successful write."""
        ids = [uid for uid in (normalize_id(u) for u in user_ids) if uid is not None]
        if not ids:
            return 0
        frame = format_sse_data(notification)
        delivered = 0
        for uid in ids:
            if self._send_frame(uid, frame) > 0:
                delivered += 1
        return delivered

    def broadcast_all(self, notification: Dict[str, Any]) -> int:
        with self._lock:
            ids = list(self._connections.keys())
        return self.send_to_many(ids, notification)

    def connection_count(self, user_id: Any) -> int:
        uid = normalize_id(user_id)
        if uid is None:
            return 0
        with self._lock:
            return len(self._connections.get(uid, ()))

    def get_client(self, user_id: Any) -> Optional[Dict[str, Any]]:
        uid = normalize_id(user_id)
        with self._lock:
            info = self._info.get(uid) if uid else None
            if info is None:
                return None
            return self._summary(info)

    def _summary(self, info: SubscriberInfo) -> Dict[str, Any]:
        count = len(self._connections.get(info.user_id, ()))
        d = info.to_dict()
        d["isConnected"] = count > 0
        d["connectionCount"] = count
        return d

    def list_clients(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._summary(info) for info in self._info.values()]

    def stats(self) -> RegistryStats:
        with self._lock:
            return RegistryStats(
                total_registered=len(self._info),
                connected_count=sum(1 for conns in self._connections.values() if conns),
                total_connection_count=sum(len(conns) for conns in self._connections.values()),
            )

    def any_connected_base_url_hint(self) -> str:
        """Base-URL hint of any currently connected subscriber, or "" (no ordering guarantee)."""
        with self._lock:
            for uid, conns in self._connections.items():
                if not conns:
                    continue
                info = self._info.get(uid)
                if info is not None and info.gitlab_base_url:
                    return info.gitlab_base_url
        return ""
