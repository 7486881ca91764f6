from __future__ import annotations

from dataclasses import dataclass

from app.core.payload import DEFAULT_EMOTION, NormalizedPayload

SAFE_FORMAT_FILLER = "잠시 응답 형식이 불안정했어요. 한 번만 다시 말해줘."


@dataclass(frozen=True)
class PersonaVoice:
    persona_id: str
    # said in character when the upstream call could not complete
    upstream_inner_heart: str
    upstream_response: str
    # said in character when the model answered but the output was unusable
    format_filler: str


PERSONA_VOICES: dict[str, PersonaVoice] = {
    "mika": PersonaVoice(
        persona_id="mika",
        upstream_inner_heart="선생님이 기다렸을 텐데... 잠깐 숨 고르고 다시 집중하자.",
        upstream_response="선생님, 방금 신호가 살짝 흔들렸어. 한 번만 다시 말해줘. 이번엔 제대로 들을게.",
        format_filler="어라, 방금 말이 꼬였어. 선생님, 한 번만 다시 말해줘!",
    ),
    "alice": PersonaVoice(
        persona_id="alice",
        upstream_inner_heart="연결이 순간 흔들렸군. 침착하게 다시 정비하면 된다.",
        upstream_response="통신이 잠시 불안정했다. 같은 내용을 한 번 더 전해주겠는가.",
        format_filler="말이 잠시 흐트러졌군. 다시 한 번 말해주겠는가.",
    ),
    "kael": PersonaVoice(
        persona_id="kael",
        upstream_inner_heart="아... 튕겼네. 기다리게 해서 미안한데 다시 받으면 된다.",
        upstream_response="지금 신호 잠깐 튐. 한 번만 다시 보내줘.",
        format_filler="방금 말 씹힘. 다시 ㄱ",
    ),
}

NEUTRAL_VOICE = PersonaVoice(
    persona_id="",
    upstream_inner_heart="응답 연결이 잠시 불안정했다.",
    upstream_response="연결이 잠시 흔들렸어요. 같은 내용을 한 번만 다시 보내주세요.",
    format_filler=SAFE_FORMAT_FILLER,
)


def normalize_persona_id(value: object) -> str:
    return str(value or "").strip().lower()


def voice_for(persona_id: object) -> PersonaVoice:
    return PERSONA_VOICES.get(normalize_persona_id(persona_id), NEUTRAL_VOICE)


def build_degradation_payload(persona_id: object) -> NormalizedPayload:
    voice = voice_for(persona_id)
    return NormalizedPayload(
        emotion=DEFAULT_EMOTION,
        inner_heart=voice.upstream_inner_heart,
        response=voice.upstream_response,
        narration="",
    )


def format_filler(persona_id: object = None) -> str:
    return voice_for(persona_id).format_filler
