"""Per-client session state with expiry.

Holds two kinds of short-lived state that must never live at module level:

* continuation state per conversation (last response id and the input it
  answered), used to send only the new suffix of a conversation;
* "disabled" flags per endpoint, e.g. a base URL whose streaming path failed
  and should go straight to the non-streaming fallback for a while.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionState:
    """Continuation state for one conversation."""

    response_id: str
    input_items: tuple[Any, ...]
    updated_at: float


@dataclass(frozen=True)
class DisabledFlag:
    until: float
    reason: str


class SessionStore:
    """Conversation continuation state and temporary endpoint flags.

    Entries expire ``ttl_s`` seconds after they were written. ``clock`` is
    injectable so tests can move time without sleeping.
    """

    def __init__(
        self,
        *,
        ttl_s: float = 1800.0,
        disable_ttl_s: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_s <= 0 or disable_ttl_s <= 0:
            raise ValueError("SessionStore TTLs must be > 0")
        self.ttl_s = ttl_s
        self.disable_ttl_s = disable_ttl_s
        self._clock = clock
        self._sessions: dict[str, SessionState] = {}
        self._disabled: dict[str, DisabledFlag] = {}

    def __len__(self) -> int:
        self.purge_expired()
        return len(self._sessions)

    def get(self, conversation_id: str) -> SessionState | None:
        """Return live state for *conversation_id*, dropping it if expired."""
        state = self._sessions.get(conversation_id)
        if state is None:
            return None
        if self._clock() - state.updated_at >= self.ttl_s:
            del self._sessions[conversation_id]
            logger.debug("Session %s expired", conversation_id)
            return None
        return state

    def record(
        self, conversation_id: str, response_id: str, input_items: Sequence[Any]
    ) -> None:
        self._sessions[conversation_id] = SessionState(
            response_id=response_id,
            input_items=tuple(input_items),
            updated_at=self._clock(),
        )

    def forget(self, conversation_id: str) -> None:
        self._sessions.pop(conversation_id, None)

    def disable(self, key: str, reason: str, *, ttl_s: float | None = None) -> None:
        """Flag *key* as disabled for ``ttl_s`` (default ``disable_ttl_s``)."""
        until = self._clock() + (ttl_s if ttl_s is not None else self.disable_ttl_s)
        self._disabled[_normalize_key(key)] = DisabledFlag(until=until, reason=reason)
        logger.info("Disabled %s for %.0fs: %s", key, until - self._clock(), reason)

    def is_disabled(self, key: str) -> bool:
        return self.disabled_reason(key) is not None

    def disabled_reason(self, key: str) -> str | None:
        norm = _normalize_key(key)
        flag = self._disabled.get(norm)
        if flag is None:
            return None
        if self._clock() >= flag.until:
            del self._disabled[norm]
            return None
        return flag.reason

    def purge_expired(self) -> None:
        now = self._clock()
        for cid in [c for c, s in self._sessions.items() if now - s.updated_at >= self.ttl_s]:
            del self._sessions[cid]
        for key in [k for k, f in self._disabled.items() if now >= f.until]:
            del self._disabled[key]

    def clear(self) -> None:
        self._sessions.clear()
        self._disabled.clear()


def _normalize_key(key: str) -> str:
    return key.strip().lower().rstrip("/")


def continuation_suffix(
    state: SessionState | None, input_items: Sequence[Any]
) -> tuple[str, list[Any]] | None:
    """Return ``(previous_response_id, new_items)`` when *input_items* extends *state*.

    Only a strict extension qualifies: the stored input must be a proper
    prefix of the new input.
    """
    if state is None or not state.response_id:
        return None
    prefix = state.input_items
    if not prefix or len(prefix) >= len(input_items):
        return None
    if tuple(input_items[: len(prefix)]) != prefix:
        return None
    return state.response_id, list(input_items[len(prefix) :])
