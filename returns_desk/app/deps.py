import threading
from typing import Dict, Optional

from fastapi import Depends, HTTPException

from .config import load_config
from .reconciliation import ReconciliationEngine, ReturnSession

_engine: Optional[ReconciliationEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> ReconciliationEngine:
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = ReconciliationEngine(load_config())
        return _engine


class SessionRegistry:
    """
    Lookup sessions for the till UI. In memory only: a restart drops every draft,
    which is fine since nothing in a draft has been processed yet.
    """

    def __init__(self, max_sessions: int = 200):
        self._sessions: Dict[str, ReturnSession] = {}
        self._lock = threading.Lock()
        self.max_sessions = max_sessions

    def add(self, session: ReturnSession) -> ReturnSession:
        with self._lock:
            if len(self._sessions) >= self.max_sessions:
                # Oldest first; dicts keep insertion order.
                oldest = next(iter(self._sessions))
                self._sessions.pop(oldest, None)
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[ReturnSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def drop(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None


_registry = SessionRegistry()


def get_registry() -> SessionRegistry:
    return _registry


def get_session(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> ReturnSession:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    return session
