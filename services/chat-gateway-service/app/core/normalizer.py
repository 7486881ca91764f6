"""Turns raw model text into a NormalizedPayload.

Strategies run in order and each is a pure ``text -> dict | None``:

1. strict: fences stripped, whole text parsed as JSON
2. loose: smart quotes, bare keys, single-quoted strings and trailing
   commas repaired, then parsed
3. embedded: balanced ``{...}`` substrings tried with strict, then loose

When none succeeds, text that opens with a brace or bracket and names a
payload field is broken JSON and becomes the filler line. Anything else is
plain prose and spoken as is.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

from app.core.metrics import metrics
from app.core.payload import DEFAULT_EMOTION, PAYLOAD_FIELDS, NormalizedPayload, coerce_emotion
from app.core.personas import format_filler

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_IDENT_RE = re.compile(r"[^\W\d]\w*")
_FIELD_KEY_RE = re.compile(r"[\"'](?:%s)[\"']\s*:" % "|".join(PAYLOAD_FIELDS))
_PREAMBLE_RE = re.compile(
    r"^\s*(?:(?:sure|okay|ok)[,!.]?\s+)?"
    r"(?:here(?:'s|\s+is)\s+(?:the\s+|your\s+|my\s+)?(?:json|response|reply|answer|output)\b[^:\n]*[:\n]\s*"
    r"|json\s*:\s*)",
    re.IGNORECASE,
)
_WS_RE = re.compile(r"\s+")
_SMART_QUOTES = str.maketrans(
    {
        "“": '"',
        "”": '"',
        "„": '"',
        "″": '"',
        "‘": "'",
        "’": "'",
        "‚": "'",
        "′": "'",
    }
)
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}

Strategy = Callable[[str], Optional[dict]]


@dataclass(frozen=True)
class ParseOutcome:
    payload: NormalizedPayload
    strategy: str


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _has_payload_field(obj: dict) -> bool:
    return any(field in obj for field in PAYLOAD_FIELDS)


def _as_object(value: Any) -> Optional[dict]:
    if isinstance(value, dict):
        return value
    if isinstance(value, list):
        for item in value:
            if isinstance(item, dict) and _has_payload_field(item):
                return item
    return None


def _scan_string(text: str, start: int) -> int:
    """Index just past the closing quote of the string opened at `start`."""
    quote = text[start]
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == quote:
            return i + 1
        i += 1
    return len(text)


def _requote(body: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            out.append("'" if nxt == "'" else ch + nxt)
            i += 2
            continue
        out.append('\\"' if ch == '"' else ch)
        i += 1
    return '"' + "".join(out) + '"'


def repair_json(text: str) -> str:
    s = text.translate(_SMART_QUOTES)
    out: list[str] = []
    i = 0
    n = len(s)
    while i < n:
        ch = s[i]
        if ch == '"':
            end = _scan_string(s, i)
            out.append(s[i:end])
            i = end
            continue
        if ch == "'":
            end = _scan_string(s, i)
            closed = end <= n and end - 1 > i and s[end - 1] == "'"
            body = s[i + 1 : end - 1] if closed else s[i + 1 : end]
            out.append(_requote(body))
            i = end
            continue
        if ch.isalpha() or ch == "_":
            match = _IDENT_RE.match(s, i)
            word = match.group(0) if match else ch
            j = i + len(word)
            while j < n and s[j].isspace():
                j += 1
            if j < n and s[j] == ":":
                out.append(f'"{word}"')
            else:
                out.append(_PY_LITERALS.get(word, word))
            i += len(word)
            continue
        if ch == ",":
            j = i + 1
            while j < n and s[j].isspace():
                j += 1
            if j < n and s[j] in "}]":
                i += 1
                continue
        out.append(ch)
        i += 1
    return "".join(out)


def iter_balanced_objects(text: str) -> Iterator[str]:
    depth = 0
    start = -1
    quote: Optional[str] = None
    escaped = False
    for i, ch in enumerate(text):
        if quote is not None:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start : i + 1]
        elif ch in "\"'" and depth > 0:
            quote = ch


def parse_strict(text: str) -> Optional[dict]:
    candidate = strip_code_fences(text)
    if not candidate:
        return None
    try:
        return _as_object(json.loads(candidate))
    except json.JSONDecodeError:
        return None


def parse_loose(text: str) -> Optional[dict]:
    candidate = strip_code_fences(text)
    if not candidate:
        return None
    try:
        return _as_object(json.loads(repair_json(candidate), strict=False))
    except json.JSONDecodeError:
        return None


def parse_embedded(text: str) -> Optional[dict]:
    for candidate in iter_balanced_objects(text):
        for strategy in (parse_strict, parse_loose):
            obj = strategy(candidate)
            if obj is not None and _has_payload_field(obj):
                return obj
    return None


STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("strict", parse_strict),
    ("loose", parse_loose),
    ("embedded", parse_embedded),
)


def looks_like_broken_json(text: str) -> bool:
    # A bracketed stage direction like "[smiles] hi" is prose, not JSON.
    stripped = strip_code_fences(text)
    return stripped.startswith(("{", "[")) and bool(_FIELD_KEY_RE.search(stripped))


def clean_prose(text: str) -> str:
    body = strip_code_fences(text)
    body = _PREAMBLE_RE.sub("", body, count=1)
    return _WS_RE.sub(" ", body).strip()


def coerce_payload(obj: dict, filler: str) -> NormalizedPayload:
    inner_heart = obj.get("inner_heart")
    response = obj.get("response")
    narration = obj.get("narration")
    return NormalizedPayload(
        emotion=coerce_emotion(obj.get("emotion")),
        inner_heart=inner_heart.strip() if isinstance(inner_heart, str) else "",
        response=response.strip() if isinstance(response, str) and response.strip() else filler,
        narration=narration.strip() if isinstance(narration, str) else "",
    )


def _filler_payload(filler: str) -> NormalizedPayload:
    return NormalizedPayload(emotion=DEFAULT_EMOTION, inner_heart="", response=filler, narration="")


def parse_assistant_output(raw: Any, persona_id: Any = None) -> ParseOutcome:
    filler = format_filler(persona_id)
    if not isinstance(raw, str) or not raw.strip():
        return ParseOutcome(_filler_payload(filler), "empty")

    for name, strategy in STRATEGIES:
        obj = strategy(raw)
        if obj is not None:
            return ParseOutcome(coerce_payload(obj, filler), name)

    if looks_like_broken_json(raw):
        return ParseOutcome(_filler_payload(filler), "broken_json")

    prose = clean_prose(raw)
    if not prose:
        return ParseOutcome(_filler_payload(filler), "empty")
    return ParseOutcome(NormalizedPayload(emotion=DEFAULT_EMOTION, inner_heart="", response=prose, narration=""), "prose")


def normalize_assistant_payload(raw: Any, persona_id: Any = None) -> NormalizedPayload:
    outcome = parse_assistant_output(raw, persona_id)
    metrics.inc("gateway_normalizer_total", {"strategy": outcome.strategy})
    return outcome.payload
