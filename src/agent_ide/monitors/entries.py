from __future__ import annotations

import re
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping

END_OF_TURN_STOP_REASONS = frozenset({"end_turn", "stop_sequence"})
ROOT_UUID_GUARD = 50


def slugify_claude_project(path: str | Path) -> str:
    normalized = str(path or "").replace("\\", "/").lower()
    if not normalized:
        return ""
    slug = re.sub(r"-+", "-", re.sub(r"[^a-z0-9]", "-", normalized))
    return slug if slug.startswith("-") else f"-{slug}"


def claude_project_slugs(workspace_dirs: Iterable[str | Path]) -> list[str]:
    slugs: list[str] = []
    for workspace_dir in workspace_dirs:
        slug = slugify_claude_project(workspace_dir)
        if slug and slug not in slugs:
            slugs.append(slug)
    return slugs


def parse_timestamp(value: Any, default: float | None = None) -> float:
    """Return epoch seconds for an ISO-8601 string or epoch number.

    Numbers larger than 1e11 are taken to be milliseconds.
    """
    fallback = time.time() if default is None else default
    if value is None or value == "":
        return fallback
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        number = float(value)
        return number / 1000.0 if number > 1e11 else number
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text).timestamp()
    except ValueError:
        return fallback


def unique_prompt_texts(prompts: Iterable[Any]) -> list[str]:
    """Trimmed, first-seen-ordered prompt texts with duplicates and blanks removed."""
    seen: set[str] = set()
    results: list[str] = []
    for prompt in prompts:
        raw = prompt if isinstance(prompt, str) else getattr(prompt, "text", None)
        text = raw.strip() if isinstance(raw, str) else ""
        if not text or text in seen:
            continue
        seen.add(text)
        results.append(text)
    return results


def _message(entry: Mapping[str, Any]) -> Mapping[str, Any]:
    message = entry.get("message")
    return message if isinstance(message, Mapping) else {}


def _content_parts(entry: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    content = _message(entry).get("content")
    if not isinstance(content, list):
        return []
    return [part for part in content if isinstance(part, Mapping)]


def is_user_prompt_entry(entry: Mapping[str, Any]) -> bool:
    return entry.get("type") == "user" and _message(entry).get("role") == "user"


def _is_turn_root(entry: Mapping[str, Any]) -> bool:
    return is_user_prompt_entry(entry) and not has_tool_result(entry) and not entry.get("isMeta")


def root_user_uuid(entry: Mapping[str, Any], entry_index: Mapping[str, Mapping[str, Any]]) -> str | None:
    """Follow ``parentUuid`` links back to the user prompt that started the chain.

    Tool results are recorded as user messages too; they are walked through.
    """
    if _is_turn_root(entry):
        return entry.get("uuid") or None
    current = entry.get("parentUuid")
    guard = 0
    while current and guard < ROOT_UUID_GUARD:
        parent = entry_index.get(current)
        if parent is None:
            return None
        if _is_turn_root(parent):
            return parent.get("uuid") or None
        current = parent.get("parentUuid")
        guard += 1
    return None


def has_tool_use(entry: Mapping[str, Any]) -> bool:
    return any(part.get("type") == "tool_use" for part in _content_parts(entry))


def has_tool_result(entry: Mapping[str, Any]) -> bool:
    return any(part.get("type") == "tool_result" for part in _content_parts(entry))


def _push_text(target: list[str], value: Any) -> None:
    if isinstance(value, list):
        for item in value:
            _push_text(target, item)
        return
    if isinstance(value, str) and value.strip():
        target.append(value.strip())


def assistant_text(entry: Mapping[str, Any]) -> str | None:
    texts: list[str] = []
    message = _message(entry)
    for part in _content_parts(entry):
        part_type = part.get("type")
        if part_type == "text":
            _push_text(texts, part.get("text"))
        elif part_type == "output_text":
            _push_text(texts, part.get("text") if part.get("text") is not None else part.get("value"))
        elif isinstance(part.get("value"), str):
            _push_text(texts, part.get("value"))
        elif isinstance(part.get("text"), str):
            _push_text(texts, part.get("text"))
    _push_text(texts, message.get("text"))
    _push_text(texts, entry.get("output_text"))
    _push_text(texts, entry.get("content"))
    _push_text(texts, message.get("result"))
    if not texts:
        return None
    return "\n".join(texts).strip()


def user_prompt_text(entry: Mapping[str, Any]) -> str:
    content = _message(entry).get("content")
    if isinstance(content, str):
        return content.strip()
    texts: list[str] = []
    for part in _content_parts(entry):
        if part.get("type") in {"text", "input_text"}:
            _push_text(texts, part.get("text"))
    return "\n".join(texts).strip()


def stop_reason(entry: Mapping[str, Any]) -> str | None:
    message = _message(entry)
    for source in (entry, message):
        for key in ("stop_reason", "stopReason", "stop_sequence", "stopSequence"):
            value = source.get(key)
            if isinstance(value, str) and value:
                return value.lower()
    return None


def session_id_from_path(path: str | Path) -> str | None:
    stem = Path(path).stem if path else ""
    if len(stem) < 10:
        return None
    return stem


def as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
