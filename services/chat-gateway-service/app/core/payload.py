from __future__ import annotations

import json
from dataclasses import asdict, dataclass

ALLOWED_EMOTIONS = ("normal", "happy", "confused", "angry")
DEFAULT_EMOTION = "normal"
PAYLOAD_FIELDS = ("emotion", "inner_heart", "response", "narration")


def coerce_emotion(value: object) -> str:
    if isinstance(value, str):
        candidate = value.strip().lower()
        if candidate in ALLOWED_EMOTIONS:
            return candidate
    return DEFAULT_EMOTION


@dataclass(frozen=True)
class NormalizedPayload:
    """The fixed shape the UI renders: a mood, a hidden thought, a spoken line."""

    emotion: str
    inner_heart: str
    response: str
    narration: str = ""

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)
