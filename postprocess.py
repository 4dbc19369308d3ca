"""Continuation heuristics and response finalization."""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Tuple

from models import wants_json
from prompts import mirror_language

TruncationPredicate = Callable[[str], bool]

DEDUPE_WINDOW = 200

_ELLIPSIS_RE = re.compile(r"…$")
_MARKER_RE = re.compile(
    r"(?:\bto be continued|\bcontinued|\bcontinue\b|\(?يتبع\)?|\(?للحديث بقية\)?)\)?[:.…]?$",
    re.IGNORECASE,
)
_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def looks_truncated(text: str) -> bool:
    """
    Heuristic guess that generated output was cut off mid-thought.

    True when the trailing 80 characters end with an ellipsis, a hyphen, or a
    "(to be) continued" marker in English or Arabic. Legitimate text ending in
    a hyphen is a known false positive.
    """
    if not text:
        return False
    tail = text[-80:].strip()
    if not tail:
        return False
    return bool(_ELLIPSIS_RE.search(tail)) or tail.endswith("-") or bool(_MARKER_RE.search(tail))


def dedupe_continuation(prev: str, nxt: str) -> str:
    """Strip the head of `nxt` when `prev` already ends with it."""
    if not nxt:
        return ""
    head = nxt[:DEDUPE_WINDOW]
    if prev and prev.endswith(head):
        return nxt[len(head):].lstrip()
    return nxt


def extract_json(s: str) -> Tuple[bool, Any]:
    """Pull one JSON value out of model output (fences and pre/postamble tolerated)."""
    if not s:
        return False, None
    raw = _FENCE_RE.sub("", s).strip()
    first, last = raw.find("{"), raw.rfind("}")
    if first >= 0 and last > first:
        raw = raw[first:last + 1]
    else:
        first, last = raw.find("["), raw.rfind("]")
        if first >= 0 and last > first:
            raw = raw[first:last + 1]
    try:
        return True, json.loads(raw)
    except ValueError:
        return False, None


def finalize(text: str, lang: str, expect: str, mode: str) -> Tuple[str, bool]:
    """
    Shape the final text. Returns (text, extraction_failed).

    Structured modes get a compact JSON re-serialization so the client can
    parse `text` directly; other modes get the language mirror.
    """
    if wants_json(mode, expect):
        ok, obj = extract_json(text)
        if ok:
            return json.dumps(obj, ensure_ascii=False, separators=(",", ":")), False
        return text, True
    return mirror_language(text, lang), False
