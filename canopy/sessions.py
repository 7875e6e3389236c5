import logging
from typing import Generic, Iterator, Optional, TypeVar

T = TypeVar("T")


class SessionRegistry(Generic[T]):
    """Live sessions by id. Owned by whoever starts them; nothing global."""

    def __init__(self) -> None:
        self.sessions: dict[str, T] = {}

    def add(self, session_id: str, session: T) -> None:
        if session_id in self.sessions:
            raise ValueError(f"session {session_id} is already running")
        logging.info("registered session %s", session_id)
        self.sessions[session_id] = session

    def get(self, session_id: str) -> Optional[T]:
        return self.sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[T]:
        logging.info("unregistered session %s", session_id)
        return self.sessions.pop(session_id, None)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self.sessions

    def __iter__(self) -> Iterator[T]:
        return iter(list(self.sessions.values()))

    def __len__(self) -> int:
        return len(self.sessions)
