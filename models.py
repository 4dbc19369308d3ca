"""Conversation model, generation preferences and candidate selection."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

ROLES = ("user", "assistant", "system")

# Upstream speaks "model" for assistant turns and has no system role inside contents.
_WIRE_ROLES = {"user": "user", "assistant": "model", "system": "user"}

HARD_OUTPUT_CAP = 8192


@dataclass(frozen=True)
class TextSegment:
    text: str

    def to_wire(self) -> Dict[str, Any]:
        return {"text": self.text}


@dataclass(frozen=True)
class AttachmentSegment:
    mime_type: str
    data: str  # base64 payload

    def to_wire(self) -> Dict[str, Any]:
        return {"inline_data": {"mime_type": self.mime_type, "data": self.data}}


Segment = Union[TextSegment, AttachmentSegment]


@dataclass(frozen=True)
class ConversationTurn:
    """One role-attributed message; immutable once built."""

    role: str
    segments: Tuple[Segment, ...]

    @classmethod
    def text(cls, role: str, text: str) -> ConversationTurn:
        return cls(role=role, segments=(TextSegment(text),))

    def joined_text(self) -> str:
        return "\n".join(s.text for s in self.segments if isinstance(s, TextSegment))

    def to_wire(self) -> Dict[str, Any]:
        return {
            "role": _WIRE_ROLES.get(self.role, "user"),
            "parts": [s.to_wire() for s in self.segments],
        }


@dataclass(frozen=True)
class GenerationPreferences:
    temperature: float
    top_p: float
    max_output_tokens: int
    output_format: str = "plain"  # "plain" | "json"
    candidate_count: int = 1

    def to_wire(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "topP": self.top_p,
            "maxOutputTokens": min(max(1, self.max_output_tokens), HARD_OUTPUT_CAP),
            "candidateCount": 1,
            "responseMimeType": "application/json" if self.output_format == "json" else "text/plain",
        }


def wants_json(mode: str, expect: str) -> bool:
    """Structured output is expected for plan/qa modes or an explicit expect=json."""
    return expect == "json" or mode in ("plan", "qa")


def tune_generation(mode: str, expect: str = "") -> GenerationPreferences:
    """Derive generation preferences from the caller's mode tag."""
    if mode == "qa" or expect == "json":
        return GenerationPreferences(temperature=0.22, top_p=0.9, max_output_tokens=4096, output_format="json")
    if mode == "plan":
        return GenerationPreferences(temperature=0.28, top_p=0.88, max_output_tokens=6144, output_format="json")
    if mode == "image_brief":
        return GenerationPreferences(temperature=0.25, top_p=0.85, max_output_tokens=1536)
    return GenerationPreferences(temperature=0.6, top_p=0.9, max_output_tokens=4096)


def strict_preferences() -> GenerationPreferences:
    """Lower-randomness profile used for the one-shot empty/blocked recovery."""
    return tune_generation("qa", "json")


_HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


def build_safety(level: str = "strict") -> List[Dict[str, str]]:
    threshold = "BLOCK_NONE" if level == "relaxed" else "BLOCK_ONLY_HIGH"
    return [{"category": c, "threshold": threshold} for c in _HARM_CATEGORIES]


# ---------------------------------------------------------------------------
# Model choice
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AutoModel:
    pass


@dataclass(frozen=True)
class ExplicitModel:
    model_id: str


ModelChoice = Union[AutoModel, ExplicitModel]


def parse_model_choice(raw: Any) -> ModelChoice:
    """Resolve the caller's `model` field once at the boundary."""
    s = str(raw).strip() if isinstance(raw, str) else ""
    if not s or s.lower() == "auto":
        return AutoModel()
    return ExplicitModel(s)


class ModelSelector:
    """Build the ordered candidate list from an injected, ranked pool."""

    def __init__(self, pool: Sequence[str]) -> None:
        if not pool:
            raise ValueError("model pool must not be empty")
        self._pool: Tuple[str, ...] = tuple(dict.fromkeys(pool))

    @property
    def pool(self) -> Tuple[str, ...]:
        return self._pool

    def choose_candidates(self, choice: ModelChoice) -> Tuple[str, ...]:
        """
        Auto → the whole pool, most-capable-first.
        Explicit → that model first, then the pool without it.
        """
        if isinstance(choice, ExplicitModel):
            return tuple(dict.fromkeys((choice.model_id,) + self._pool))
        return self._pool


# ---------------------------------------------------------------------------
# Attempt outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Success:
    text: str = ""
    usage: Optional[Dict[str, int]] = None
    stream: Any = None  # open httpx.Response for streaming calls


@dataclass(frozen=True)
class RetryableFailure:
    status_class: str  # "rate_limited" | "server_error" | "timeout" | "network"
    detail: Dict[str, Any]
    status: Optional[int] = None


@dataclass(frozen=True)
class TerminalFailure:
    status_class: str  # "client_error" | "empty_blocked"
    detail: Dict[str, Any]
    status: Optional[int] = None


AttemptOutcome = Union[Success, RetryableFailure, TerminalFailure]
Failure = Union[RetryableFailure, TerminalFailure]


def failure_http_status(failure: Failure) -> int:
    """Map an upstream failure onto the status returned to the caller."""
    if failure.status_class == "empty_blocked":
        return 502
    if failure.status_class in ("timeout", "network"):
        return 500
    s = failure.status or 0
    if s == 429:
        return 429
    if s >= 500:
        return 502
    return s or 500


def merge_usage(a: Optional[Dict[str, int]], b: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
    if a is None:
        return b
    if b is None:
        return a
    keys = list(dict.fromkeys(list(a) + list(b)))
    return {k: int(a.get(k) or 0) + int(b.get(k) or 0) for k in keys}


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------

def new_request_id() -> str:
    return uuid.uuid4().hex[:16].upper()


@dataclass
class RequestContext:
    """Per-request identity and time budget; never shared across requests."""

    request_id: str
    started_at: float
    deadline: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @classmethod
    def start(
        cls,
        timeout_s: float,
        request_id: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> RequestContext:
        now = clock()
        return cls(
            request_id=request_id or new_request_id(),
            started_at=now,
            deadline=now + timeout_s,
            clock=clock,
        )

    def remaining_s(self) -> float:
        return max(0.0, self.deadline - self.clock())

    def expired(self) -> bool:
        return self.remaining_s() <= 0

    def elapsed_ms(self) -> int:
        return int((self.clock() - self.started_at) * 1000)


@dataclass(frozen=True)
class GenerationRequest:
    """Everything the orchestrator needs for one inbound request."""

    turns: Tuple[ConversationTurn, ...]
    preferences: GenerationPreferences
    candidates: Tuple[str, ...]
    safety: Tuple[Dict[str, str], ...] = ()
    system_instruction: Optional[str] = None
    mode: str = "default"
    expect: str = ""
    lang: str = "en"
    long: bool = True
    max_chunks: int = 4
    include_raw: bool = False

    @property
    def structured(self) -> bool:
        return wants_json(self.mode, self.expect)

    def with_turns(self, turns: Sequence[ConversationTurn]) -> GenerationRequest:
        return replace(self, turns=tuple(turns))

    def with_preferences(self, preferences: GenerationPreferences) -> GenerationRequest:
        return replace(self, preferences=preferences)

    def to_wire(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "contents": [t.to_wire() for t in self.turns],
            "generationConfig": self.preferences.to_wire(),
            "safetySettings": list(self.safety),
        }
        if self.system_instruction:
            body["systemInstruction"] = {"role": "system", "parts": [{"text": self.system_instruction}]}
        return body


@dataclass
class GenerationResult:
    text: str
    model: str
    usage: Optional[Dict[str, int]] = None
    chunks: int = 1
