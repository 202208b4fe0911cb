from __future__ import annotations

import logging
import re
import threading
from typing import Any

LOGGER = logging.getLogger("agent_ide.input_normalizer")
LOGGER.addHandler(logging.NullHandler())

OSC_COLOR_RESPONSE_FRAGMENT_RE = re.compile(
    r"(?:^|\s)\]?\d{1,3};(?:rgb|rgba):[0-9a-f]{2,4}/[0-9a-f]{2,4}/[0-9a-f]{2,4}",
    re.IGNORECASE,
)
CURSOR_ARTIFACT_RE = re.compile(r"^(?:\[[0-9;?]*[A-DHJKfhlmnsu~]|O[A-DPQRS])+$")
BRACKETED_PASTE_START = "\x1b[200~"
BRACKETED_PASTE_END = "\x1b[201~"
SUBMIT_KEY_SEQUENCES = ("\x1bOM", "\x1b[13~")
ALT_BACKSPACE = "\x1b\x7f"
MAX_LINE_CHARS = 2000

# Private-use characters stand in for edit keys across ANSI stripping.
_ERASE_WORD_MARK = "\ue000"
_PASTE_START_MARK = "\ue001"
_PASTE_END_MARK = "\ue002"


def compact_whitespace(text: Any) -> str:
    return " ".join(str(text or "").split())


def strip_ansi_stream(carry: str, text: str) -> tuple[str, str]:
    """Strip escape sequences from ``carry + text``.

    Returns the cleaned text and the trailing partial sequence, which the
    caller passes back as ``carry`` with the next chunk.
    """
    source = f"{carry}{text}"
    if not source:
        return "", ""

    output: list[str] = []
    idx = 0
    length = len(source)
    while idx < length:
        char = source[idx]
        if char != "\x1b":
            output.append(char)
            idx += 1
            continue

        seq_start = idx
        idx += 1
        if idx >= length:
            return "".join(output), source[seq_start:]

        marker = source[idx]
        if marker == "[":
            idx += 1
            while idx < length:
                final = source[idx]
                idx += 1
                if "@" <= final <= "~":
                    break
            else:
                return "".join(output), source[seq_start:]
            continue

        if marker in {"]", "P"}:
            idx += 1
            terminated = False
            while idx < length:
                current = source[idx]
                if current == "\x07":
                    idx += 1
                    terminated = True
                    break
                if current == "\x1b":
                    if idx + 1 >= length:
                        return "".join(output), source[seq_start:]
                    if source[idx + 1] == "\\":
                        idx += 2
                        terminated = True
                        break
                idx += 1
            if not terminated:
                return "".join(output), source[seq_start:]
            continue

        idx += 1

    return "".join(output), ""


def has_prompt_content(text: str) -> bool:
    """True when ``text`` holds at least one letter, digit or CJK character."""
    return any(char.isalnum() for char in text)


def looks_like_terminal_control_payload(text: str) -> bool:
    value = compact_whitespace(text).strip()
    if not value:
        return False
    lowered = value.lower()
    if re.match(r"^\]?\d{1,3};(?:rgb|rgba):[0-9a-f]{2,4}/[0-9a-f]{2,4}/[0-9a-f]{2,4}", lowered):
        return True
    if re.match(r"^\]?\d{1,3};", lowered) and "rgb:" in lowered:
        return True
    return bool(CURSOR_ARTIFACT_RE.match(value))


def sanitize_submitted_prompt(prompt: Any) -> str:
    cleaned = compact_whitespace(prompt).strip()
    if not cleaned:
        return ""
    cleaned = OSC_COLOR_RESPONSE_FRAGMENT_RE.sub(" ", cleaned)
    return compact_whitespace(cleaned).strip(" ;")


def _erase_word(current: str) -> str:
    trimmed = current.rstrip()
    cut = len(trimmed)
    while cut > 0 and not trimmed[cut - 1].isspace():
        cut -= 1
    return trimmed[:cut]


class InputNormalizer:
    """Rebuilds submitted lines from the raw bytes a user types into a session.

    The normalizer is fed the same input that is written to the child, so it
    tracks line editing keys itself. Lines typed while an auth sub-flow is on
    screen are dropped.
    """

    def __init__(self, *, max_line_chars: int = MAX_LINE_CHARS) -> None:
        self._lock = threading.Lock()
        self._current = ""
        self._ansi_carry = ""
        self._in_paste = False
        self._max_line_chars = max_line_chars
        self._suppressed = False

    @property
    def suppressed(self) -> bool:
        return self._suppressed

    def set_suppressed(self, suppressed: bool) -> None:
        with self._lock:
            if suppressed == self._suppressed:
                return
            self._suppressed = suppressed
            if suppressed:
                self._current = ""
        LOGGER.debug("Prompt capture %s.", "suspended" if suppressed else "resumed")

    def reset(self) -> None:
        """Drop any partial line and resume capture."""
        with self._lock:
            self._current = ""
            self._ansi_carry = ""
            self._in_paste = False
            self._suppressed = False

    def feed(self, data: bytes | str) -> list[str]:
        """Consume raw input and return the lines submitted by it."""
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        normalized = str(data or "")
        if not normalized:
            return []
        for sequence in SUBMIT_KEY_SEQUENCES:
            normalized = normalized.replace(sequence, "\r")
        normalized = (
            normalized.replace(ALT_BACKSPACE, _ERASE_WORD_MARK)
            .replace(BRACKETED_PASTE_START, _PASTE_START_MARK)
            .replace(BRACKETED_PASTE_END, _PASTE_END_MARK)
        )

        submissions: list[str] = []
        with self._lock:
            current = self._current
            sanitized, self._ansi_carry = strip_ansi_stream(self._ansi_carry, normalized)
            sanitized = sanitized.replace("\x1b", "")
            for char in sanitized:
                if char == _PASTE_START_MARK:
                    self._in_paste = True
                    continue
                if char == _PASTE_END_MARK:
                    self._in_paste = False
                    continue
                if char in {"\r", "\n"}:
                    if self._in_paste:
                        current += " "
                        continue
                    submitted = self._accept_line(current)
                    if submitted:
                        submissions.append(submitted)
                    current = ""
                    continue
                if char in {"\b", "\x7f"}:
                    current = current[:-1]
                    continue
                if char in {"\x17", _ERASE_WORD_MARK}:
                    current = _erase_word(current)
                    continue
                if char in {"\x15", "\x03"}:  # Ctrl+U, Ctrl+C
                    current = ""
                    continue
                if ord(char) < 32:
                    continue
                current += char
                if len(current) > self._max_line_chars:
                    current = current[-self._max_line_chars :]
            self._current = current
        return submissions

    def _accept_line(self, line: str) -> str:
        if self._suppressed:
            LOGGER.debug("Dropped input line typed during an auth flow.")
            return ""
        submitted = sanitize_submitted_prompt(line)
        if not submitted:
            return ""
        if looks_like_terminal_control_payload(submitted):
            LOGGER.debug("Dropped terminal control payload from input.")
            return ""
        if not has_prompt_content(submitted):
            return ""
        return submitted
