from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

PRIMING_ACK = "Understood. I will respond in the specified JSON format."

_ROLE_MAP = {"user": "user", "assistant": "model"}


def _part(role: str, text: str) -> dict:
    return {"role": role, "parts": [{"text": text}]}


def _history_text(content: Any) -> str:
    # Assistant turns are stored as payload objects; only the spoken line goes upstream.
    if isinstance(content, dict):
        content = content.get("response")
    if content is None:
        return ""
    return str(content)


@dataclass(frozen=True)
class ConversationTurn:
    system_prompt: str
    user_message: str
    history: tuple[dict, ...]
    max_part_chars: int
    max_system_prompt_chars: int
    # entries the client sent, before filtering and truncation
    prior_messages: int = 0

    @property
    def first_turn(self) -> bool:
        return self.prior_messages == 0

    def _clamp(self, text: str) -> str:
        return text[: self.max_part_chars]

    def turn_contents(self, include_history: bool = True) -> list[dict]:
        contents: list[dict] = []
        if include_history:
            for entry in self.history:
                role = _ROLE_MAP.get(str(entry.get("role") or ""))
                if role is None:
                    continue
                contents.append(_part(role, self._clamp(_history_text(entry.get("content")))))
        contents.append(_part("user", self._clamp(self.user_message)))
        return contents

    def priming_contents(self, max_chars: int | None = None) -> list[dict]:
        if not self.system_prompt:
            return []
        limit = self.max_system_prompt_chars if max_chars is None else min(max_chars, self.max_system_prompt_chars)
        return [_part("user", self.system_prompt[:limit]), _part("model", PRIMING_ACK)]

    def primed_contents(self) -> list[dict]:
        """Contents for a call that references a provider-side cached context."""
        return self.turn_contents()

    def inline_contents(self) -> list[dict]:
        return self.priming_contents() + self.turn_contents()

    def minimized_contents(self, system_prompt_chars: int) -> list[dict]:
        return self.priming_contents(system_prompt_chars) + self.turn_contents(include_history=False)

    def clamped_system_prompt(self) -> str:
        return self.system_prompt[: self.max_system_prompt_chars]


def build_turn(
    system_prompt: str,
    user_message: str,
    history: Iterable[Any] | None,
    *,
    max_history: int,
    max_part_chars: int,
    max_system_prompt_chars: int,
) -> ConversationTurn:
    raw = list(history or [])
    entries: list[dict] = []
    for item in raw:
        if isinstance(item, dict):
            entries.append(item)
        elif hasattr(item, "model_dump"):
            entries.append(item.model_dump())
    recent = entries[-max_history:] if max_history > 0 else []
    return ConversationTurn(
        system_prompt=str(system_prompt or "").strip(),
        user_message=user_message,
        history=tuple(recent),
        max_part_chars=max_part_chars,
        max_system_prompt_chars=max_system_prompt_chars,
        prior_messages=len(raw),
    )
