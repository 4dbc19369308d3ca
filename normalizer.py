"""Turn caller input (prompt or messages, plus media) into conversation turns."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from models import AttachmentSegment, ConversationTurn, ROLES, Segment, TextSegment
from prompts import FALLBACK_SEED, wrap_prompt

log = logging.getLogger("gemini_proxy")

ALLOWED_IMAGE = re.compile(r"^image/(png|jpe?g|webp|gif|bmp|svg\+xml)$", re.I)
ALLOWED_AUDIO = re.compile(r"^audio/(webm|ogg|mp3|mpeg|wav|m4a|aac|3gpp|3gpp2|mp4)$", re.I)

# Caller role aliases; anything else becomes "user".
_ROLE_ALIASES = {"model": "assistant", "bot": "assistant"}


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

def from_data_url(data_url: str) -> Tuple[str, str]:
    """Split `data:<mime>;base64,<payload>` into (mime, payload)."""
    comma = data_url.find(",")
    if comma < 0:
        return "", ""
    header = data_url[5:comma]
    mime = header.split(";", 1)[0]
    return mime, data_url[comma + 1:]


def coerce_data(obj: Any) -> Tuple[str, str]:
    if not obj:
        return "", ""
    if isinstance(obj, str):
        if obj.startswith("data:"):
            return from_data_url(obj)
        return "", ""
    if isinstance(obj, dict):
        mime = obj.get("mime") or obj.get("mime_type") or ""
        data = obj.get("data") or obj.get("base64") or ""
        if not data and isinstance(obj.get("dataUrl"), str):
            data = from_data_url(obj["dataUrl"])[1]
        if isinstance(mime, str) and isinstance(data, str):
            return mime, data
    return "", ""


def approx_base64_bytes(b64: str) -> int:
    pad = 2 if b64.endswith("==") else 1 if b64.endswith("=") else 0
    return (len(b64) - pad) * 3 // 4


def accept_attachment(obj: Any, allowed: re.Pattern, max_bytes: int) -> Optional[AttachmentSegment]:
    """Return an attachment segment, or None when the item is rejected."""
    mime, data = coerce_data(obj)
    if not mime or not data or not allowed.match(mime):
        return None
    if approx_base64_bytes(data) > max_bytes:
        return None
    return AttachmentSegment(mime_type=mime, data=data)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

def message_text(content: Any) -> str:
    """Plain text of a message `content` (string or list of text parts)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for p in content:
            if isinstance(p, str):
                parts.append(p)
            elif isinstance(p, dict) and isinstance(p.get("text"), str):
                parts.append(p["text"])
        return "\n".join(parts)
    return ""


def safe_role(role: Any) -> str:
    r = role.strip().lower() if isinstance(role, str) else ""
    r = _ROLE_ALIASES.get(r, r)
    return r if r in ROLES else "user"


def sanitize_messages(
    messages: Any,
    *,
    max_messages: int,
    max_text_chars: int,
    max_parts_per_message: int,
) -> List[Dict[str, Any]]:
    """Keep the tail of the message list and clamp per-message sizes."""
    if not isinstance(messages, list):
        return []
    out: List[Dict[str, Any]] = []
    for m in messages[-max_messages:]:
        if not isinstance(m, dict):
            continue
        images = m.get("images")
        out.append({
            "role": m.get("role"),
            "content": message_text(m.get("content"))[:max_text_chars],
            "images": images[:max_parts_per_message] if isinstance(images, list) else None,
            "audio": m.get("audio") or None,
        })
    return out


def _limit_text(segments: List[Segment], max_text_chars: int) -> List[Segment]:
    used = 0
    out: List[Segment] = []
    for seg in segments:
        if isinstance(seg, TextSegment):
            chunk = seg.text[:max(0, max_text_chars - used)]
            if chunk:
                out.append(TextSegment(chunk))
                used += len(chunk)
            if used >= max_text_chars:
                break
        else:
            out.append(seg)
    return out


class RequestNormalizer:
    """Builds the ordered conversation sent upstream.

    Exactly one guardrail block is injected, on the first user turn.
    The result is never empty.
    """

    def __init__(
        self,
        *,
        max_text_chars: int = 24_000,
        max_inline_bytes: int = 15 * 1024 * 1024,
    ) -> None:
        self._max_text_chars = max_text_chars
        self._max_inline_bytes = max_inline_bytes

    def normalize(
        self,
        messages: List[Dict[str, Any]],
        guard: str,
        system: Optional[str] = None,
    ) -> List[ConversationTurn]:
        turns: List[ConversationTurn] = []
        injected = False

        for m in messages if isinstance(messages, list) else ():
            if not isinstance(m, dict):
                continue
            raw = m.get("content") if isinstance(m.get("content"), str) else ""
            if not raw.strip() and not m.get("images") and not m.get("audio"):
                continue
            role = safe_role(m.get("role"))
            segments: List[Segment] = []
            if not injected and role == "user":
                segments.append(TextSegment(wrap_prompt(raw if raw.strip() else "", guard)))
                injected = True
            elif raw.strip():
                segments.append(TextSegment(raw))

            images = m.get("images")
            for item in images if isinstance(images, list) else ():
                seg = accept_attachment(item, ALLOWED_IMAGE, self._max_inline_bytes)
                if seg is not None:
                    segments.append(seg)
            if m.get("audio"):
                seg = accept_attachment(m["audio"], ALLOWED_AUDIO, self._max_inline_bytes)
                if seg is not None:
                    segments.append(seg)

            # The guardrail block does not count against the caller's text budget.
            segments = _limit_text(segments, self._max_text_chars + len(wrap_prompt("", guard)))
            if segments:
                turns.append(ConversationTurn(role=role, segments=tuple(segments)))

        if not turns:
            seed = system.strip() if isinstance(system, str) and system.strip() else FALLBACK_SEED
            return [ConversationTurn.text("user", wrap_prompt(seed, guard))]

        if not injected:
            # No user turn survived: close the conversation with a guarded user turn.
            turns.append(ConversationTurn.text("user", wrap_prompt(FALLBACK_SEED, guard)))
        return turns

    def normalize_prompt(self, prompt: str, guard: str, system: Optional[str] = None) -> List[ConversationTurn]:
        """Flat prompt form: a single user message."""
        return self.normalize([{"role": "user", "content": prompt[:self._max_text_chars]}], guard, system)
