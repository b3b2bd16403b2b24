"""
In-process conversation window.
Keeps the most recent messages of recently used sessions; the chat_messages
table stays the source of truth.
"""
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional


class ConversationWindowCache:
    """
    LRU of sessions, each holding at most max_messages {role, content} dicts.

    Args:
        max_sessions: Sessions kept before the least recently used is evicted
        max_messages: Messages kept per session (oldest dropped first)
    """

    def __init__(self, max_sessions: int = 256, max_messages: int = 20):
        if max_sessions < 1 or max_messages < 1:
            raise ValueError("max_sessions and max_messages must be positive")
        self.max_sessions = max_sessions
        self.max_messages = max_messages
        self._windows: "OrderedDict[int, List[Dict[str, str]]]" = OrderedDict()

    def __contains__(self, session_id: int) -> bool:
        return session_id in self._windows

    def __len__(self) -> int:
        return len(self._windows)

    def get(self, session_id: int, last: Optional[int] = None) -> List[Dict[str, str]]:
        window = self._windows.get(session_id)
        if window is None:
            return []
        self._windows.move_to_end(session_id)
        messages = window if last is None else window[-last:] if last > 0 else []
        return [dict(m) for m in messages]

    def seed(self, session_id: int, messages: Iterable[Dict[str, str]]) -> None:
        """Replace a session's window with persisted messages, oldest first."""
        window = [{"role": m["role"], "content": m["content"]} for m in messages]
        self._put(session_id, window[-self.max_messages:])

    def append_turn(self, session_id: int, question: str, answer: str) -> None:
        window = self._windows.get(session_id, [])
        window = window + [
            {"role": "user", "content": question},
            {"role": "assistant", "content": answer},
        ]
        self._put(session_id, window[-self.max_messages:])

    def clear(self, session_id: int) -> None:
        self._windows.pop(session_id, None)

    def _put(self, session_id: int, window: List[Dict[str, str]]) -> None:
        self._windows[session_id] = window
        self._windows.move_to_end(session_id)
        while len(self._windows) > self.max_sessions:
            self._windows.popitem(last=False)
