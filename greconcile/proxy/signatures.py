"""
Signature trust store.

Thinking signatures cannot be verified here (the issuing key is not ours),
so the only trust heuristic is "this exact tag was minted for this exact
text within this session, and we saw it happen". Entries are keyed by
``(session_id, text)`` and expire after a TTL.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from greconcile.proxy.parts import ContentBlock

logger = logging.getLogger(__name__)

# Tags shorter than this are treated as truncated / absent.
MIN_SIGNATURE_LENGTH = 50

# Publicly known sentinel accepted by the gateway in place of a signature.
# Never looked up in, or written to, the store.
BYPASS_SIGNATURE = "skip_thought_signature_validator"


def is_valid_signature(signature: Optional[str]) -> bool:
    """Well-formed enough to be worth a cache lookup."""
    return (
        isinstance(signature, str)
        and len(signature) >= MIN_SIGNATURE_LENGTH
        and signature != BYPASS_SIGNATURE
    )


@dataclass
class _Entry:
    signature: str
    expires_at: float


class SignatureStore:
    """In-memory ``(session_id, text) -> signature`` cache with TTL.

    Every session owns its own dictionary, so a lookup can only ever see
    tags recorded for that same session.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries_per_session: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries_per_session = max_entries_per_session
        self._clock = clock
        self._sessions: Dict[str, Dict[str, _Entry]] = {}
        self._last_sweep = clock()

    def lookup(self, session_id: Optional[str], text: str) -> Optional[str]:
        if not session_id or not text:
            return None
        entries = self._sessions.get(session_id)
        if not entries:
            return None
        entry = entries.get(text)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            entries.pop(text, None)
            return None
        return entry.signature

    def record(self, session_id: Optional[str], text: str, signature: str) -> bool:
        """Remember a signature we watched the gateway issue for ``text``.

        Returns False when the entry was not worth keeping.
        """
        if not session_id or not text or not is_valid_signature(signature):
            return False
        if self.ttl_seconds <= 0:
            return False

        now = self._clock()
        if now - self._last_sweep >= self.ttl_seconds:
            # Sessions that are never looked up again only go away here
            self._last_sweep = now
            removed = self.purge()
            if removed:
                logger.debug("Swept %d expired thinking signatures", removed)

        entries = self._sessions.setdefault(session_id, {})
        if text not in entries and len(entries) >= self.max_entries_per_session:
            # Oldest insertion goes first
            entries.pop(next(iter(entries)), None)
        entries[text] = _Entry(signature=signature, expires_at=now + self.ttl_seconds)
        logger.debug(
            "Recorded thinking signature for session %s (%d chars of thinking)",
            session_id,
            len(text),
        )
        return True

    def is_trusted(self, block: ContentBlock, session_id: Optional[str]) -> bool:
        """True iff the block's own tag equals the tag cached for its text."""
        if not block.is_thinking or not is_valid_signature(block.signature):
            return False
        cached = self.lookup(session_id, block.text)
        return cached is not None and cached == block.signature

    def purge(self) -> int:
        """Drop expired entries. Returns the number removed."""
        now = self._clock()
        removed = 0
        for session_id, entries in list(self._sessions.items()):
            expired = [text for text, entry in list(entries.items()) if entry.expires_at <= now]
            for text in expired:
                entries.pop(text, None)
            removed += len(expired)
            if not entries:
                self._sessions.pop(session_id, None)
        return removed

    def clear_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def session_count(self) -> int:
        return len(self._sessions)


_default_store: Optional[SignatureStore] = None


def get_default_store() -> SignatureStore:
    """Process-wide store shared by the client and CLI."""
    global _default_store
    if _default_store is None:
        _default_store = SignatureStore()
    return _default_store
