from __future__ import annotations

import logging
import re
import threading
import time
from typing import Callable, Iterable

from agent_ide.config import DEFAULT_RESPONSE_GRACE_S, DEFAULT_SCREEN_BUFFER_CHARS
from agent_ide.input_normalizer import strip_ansi_stream

LOGGER = logging.getLogger("agent_ide.screen_monitor")
LOGGER.addHandler(logging.NullHandler())

STATE_IDLE = "idle"
STATE_ACTIVE = "active"
STATE_GRACE = "grace"

STREAMING_INDICATORS = ("esc to interrupt", "esc to cancel", "ctrl+c to interrupt")
APPROVAL_PHRASES = (
    "do you want to",
    "would you like to",
    "allow execution",
    "apply this change",
    "waiting for user confirmation",
)
HIGHLIGHTED_FIRST_CHOICE_RE = re.compile(r"[❯›>]\s*1\.\s*\S")
ANSI_CURSOR_POSITION_RE = re.compile(r"\x1b\[[0-9;?]*[Hf]")
ANSI_ERASE_IN_LINE_RE = re.compile(r"\x1b\[[0-9;?]*K")
TERMINAL_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
INDICATOR_OVERLAP_CHARS = 32
AUTH_MARKER_WINDOW_CHARS = 600


def clean_terminal_output(carry: str, text: str) -> tuple[str, str]:
    """Strip escapes and control characters from a chunk of PTY output.

    Cursor jumps become line breaks so redrawn frames do not run together.
    """
    text = ANSI_CURSOR_POSITION_RE.sub("\n", text)
    text = ANSI_ERASE_IN_LINE_RE.sub("\n", text)
    cleaned, next_carry = strip_ansi_stream(carry, text)
    cleaned = cleaned.replace("\r", "\n")
    cleaned = TERMINAL_CONTROL_CHAR_RE.sub("", cleaned)
    return cleaned, next_carry


def _last_index(haystack: str, needles: Iterable[str]) -> int:
    return max((haystack.rfind(needle) for needle in needles), default=-1)


def _ends_after(haystack: str, needles: Iterable[str], offset: int) -> bool:
    """True when a needle occurrence ends past ``offset``."""
    return any(haystack.find(needle, max(0, offset - len(needle) + 1)) >= 0 for needle in needles)


class ScreenMonitor:
    """Heuristic response tracker over the trailing window of PTY output.

    The streaming indicator drives ``idle -> active -> grace``; when the grace
    window lapses without the indicator coming back, ``on_response_complete``
    fires with an estimated duration. Approval menus and provider auth screens
    are reported through their own callbacks.
    """

    def __init__(
        self,
        *,
        buffer_chars: int = DEFAULT_SCREEN_BUFFER_CHARS,
        grace_s: float = DEFAULT_RESPONSE_GRACE_S,
        auth_markers: Iterable[str] = (),
        clock: Callable[[], float] = time.time,
        approval_wait: Callable[[], float] | None = None,
        on_response_complete: Callable[[float], None] | None = None,
        on_approval_change: Callable[[bool], None] | None = None,
        on_auth_flow_change: Callable[[bool], None] | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._buffer_chars = max(INDICATOR_OVERLAP_CHARS, int(buffer_chars))
        self._grace_s = grace_s
        self._auth_markers = tuple(marker.lower() for marker in auth_markers if marker)
        self._clock = clock
        self._approval_wait = approval_wait or (lambda: 0.0)
        self._on_response_complete = on_response_complete
        self._on_approval_change = on_approval_change
        self._on_auth_flow_change = on_auth_flow_change
        self._window = ""
        self._carry = ""
        self.state = STATE_IDLE
        self.active_started_at: float | None = None
        self.grace_deadline: float | None = None
        self.awaiting_approval = False
        self.auth_flow_active = False

    @property
    def window(self) -> str:
        return self._window

    def feed(self, data: str) -> None:
        with self._lock:
            cleaned, self._carry = clean_terminal_output(self._carry, data)
            if not cleaned:
                return
            overlap = self._window[-INDICATOR_OVERLAP_CHARS:].lower()
            self._window = (self._window + cleaned)[-self._buffer_chars :]
            lowered_window = self._window.lower()
            chunk_view = overlap + cleaned.lower()
            now = self._clock()

            indicator_seen = _ends_after(chunk_view, STREAMING_INDICATORS, len(overlap))
            if indicator_seen:
                if self.state == STATE_IDLE:
                    self.active_started_at = now
                    LOGGER.debug("Response banner appeared.")
                self.state = STATE_ACTIVE
                self.grace_deadline = None
            elif self.state == STATE_ACTIVE:
                self.state = STATE_GRACE
                self.grace_deadline = now + self._grace_s

            self._update_approval(lowered_window)
            self._update_auth_flow(lowered_window)

    def _update_approval(self, lowered_window: str) -> None:
        approval_at = _last_index(lowered_window, APPROVAL_PHRASES)
        choice_match = None
        for choice_match in HIGHLIGHTED_FIRST_CHOICE_RE.finditer(lowered_window):
            pass
        if choice_match is not None:
            approval_at = max(approval_at, choice_match.start())
        indicator_at = _last_index(lowered_window, STREAMING_INDICATORS)
        awaiting = approval_at >= 0 and approval_at > indicator_at
        if awaiting == self.awaiting_approval:
            return
        self.awaiting_approval = awaiting
        LOGGER.debug("Approval prompt %s.", "shown" if awaiting else "cleared")
        if self._on_approval_change is not None:
            self._on_approval_change(awaiting)

    def _update_auth_flow(self, lowered_window: str) -> None:
        if not self._auth_markers:
            return
        recent = lowered_window[-AUTH_MARKER_WINDOW_CHARS:]
        active = any(marker in recent for marker in self._auth_markers)
        if active == self.auth_flow_active:
            return
        self.auth_flow_active = active
        LOGGER.info("Provider auth flow %s.", "started" if active else "ended")
        if self._on_auth_flow_change is not None:
            self._on_auth_flow_change(active)

    def tick(self) -> float | None:
        """Fire the completion signal once the grace window has lapsed.

        Returns the estimated duration when the signal fired.
        """
        with self._lock:
            if self.state != STATE_GRACE or self.grace_deadline is None:
                return None
            now = self._clock()
            if now < self.grace_deadline:
                return None
            if self.awaiting_approval:
                return None
            started_at = self.active_started_at if self.active_started_at is not None else now
            duration = max(0.0, (now - self._grace_s) - started_at - self._approval_wait())
            self.state = STATE_IDLE
            self.grace_deadline = None
            self.active_started_at = None
        LOGGER.debug("Response banner gone for %.1fs; estimated duration %.2fs.", self._grace_s, duration)
        if self._on_response_complete is not None:
            self._on_response_complete(duration)
        return duration

    def reset(self) -> None:
        """Forget the previous response so its banners cannot fire for a new prompt."""
        with self._lock:
            self._window = ""
            self._carry = ""
            self.state = STATE_IDLE
            self.active_started_at = None
            self.grace_deadline = None
