"""Language detection, guardrail text and continuation prompts."""

from __future__ import annotations

import re
from typing import Optional

_ARABIC_RE = re.compile(r"[؀-ۿ]")

GUARD_HEADER = "تعليمات حراسة (اتّبع بدقة):"
FALLBACK_SEED = "ابدأ الآن."

_RAILS = {
    "ar": {
        "mirror": "أجب حصراً بالعربية؛ لا تخلط لغتين ولا تضف ترجمات.",
        "brief": "اختصر الحشو وقدّم خطوات عملية واضحة.",
        "img": "إن وُجدت صور: 3–5 نقاط تنفيذية + خطوة فورية واحدة. بلا مقدمات.",
        "strict": "لا تختلق. عند الشك اطلب توضيحاً. التزم بمعايير سلامة الطفل وقوانين دولة الإمارات.",
    },
    "en": {
        "mirror": "Answer strictly in English; don't mix languages or add translations.",
        "brief": "Be concise and actionable.",
        "img": "If images present: 3–5 precise bullets + one immediate step. No preamble.",
        "strict": "No fabrication. Ask for missing info. Adhere to child-safety norms applicable in the UAE.",
    },
}


def has_arabic(s: Optional[str]) -> bool:
    return bool(_ARABIC_RE.search(s or ""))


def choose_lang(force: Optional[str], sample: str) -> str:
    if force in ("ar", "en"):
        return force
    return "ar" if has_arabic(sample) else "en"


def build_guardrails(lang: str, level: str = "strict", image_mode: bool = False) -> str:
    rails = _RAILS["ar" if lang == "ar" else "en"]
    out = [rails["mirror"], rails["brief"]]
    if image_mode:
        out.append(rails["img"])
    if level != "relaxed":
        out.append(rails["strict"])
    return "\n".join(out)


def wrap_prompt(text: str, guard: str) -> str:
    """Prefix a guardrail block onto user text."""
    return f"{GUARD_HEADER}\n{guard}\n\n---\n{text or ''}"


def continue_prompt(lang: str) -> str:
    if lang == "ar":
        return "تابع من حيث توقفت بنفس اللغة والبنية، بدون تكرار أو تلخيص؛ أكمل مباشرة."
    return (
        "Continue exactly where you stopped, same language/structure, "
        "no repetition or summary; output only the continuation."
    )


def mirror_language(text: str, lang: str) -> str:
    """Flag answers whose script does not match the requested language."""
    if not text:
        return text
    if lang == "ar" and has_arabic(text):
        return text
    if lang == "en" and not has_arabic(text):
        return text
    if lang == "ar":
        return f"**ملاحظة:** أجب بالعربية فقط.\n\n{text}"
    return f"**Note:** Respond in English only.\n\n{text}"
