from app.api.schemas import ChatRequest
from app.core.conversation import PRIMING_ACK, build_turn


def _turn(history=None, system_prompt="  You are Alice.  ", **overrides):
    options = dict(max_history=8, max_part_chars=700, max_system_prompt_chars=1800)
    options.update(overrides)
    return build_turn(system_prompt, "hello", history, **options)


def test_inline_contents_prime_system_prompt_before_turn():
    turn = _turn()
    contents = turn.inline_contents()
    assert contents[0] == {"role": "user", "parts": [{"text": "You are Alice."}]}
    assert contents[1] == {"role": "model", "parts": [{"text": PRIMING_ACK}]}
    assert contents[-1] == {"role": "user", "parts": [{"text": "hello"}]}
    assert turn.first_turn is True


def test_primed_contents_skip_system_prompt():
    contents = _turn().primed_contents()
    assert contents == [{"role": "user", "parts": [{"text": "hello"}]}]


def test_history_is_trimmed_and_roles_mapped():
    history = [{"role": "user", "content": f"m{i}"} for i in range(10)]
    history.append({"role": "assistant", "content": {"emotion": "happy", "response": "hi there"}})
    history.append({"role": "system", "content": "ignored"})
    turn = _turn(history, max_history=3)

    contents = turn.turn_contents()
    assert turn.first_turn is False
    assert [item["role"] for item in contents] == ["user", "model", "user"]
    assert contents[0]["parts"][0]["text"] == "m9"
    assert contents[1]["parts"][0]["text"] == "hi there"


def test_parts_and_system_prompt_are_clamped():
    turn = build_turn(
        "S" * 50,
        "U" * 50,
        [{"role": "user", "content": "H" * 50}],
        max_history=8,
        max_part_chars=10,
        max_system_prompt_chars=20,
    )
    contents = turn.inline_contents()
    assert contents[0]["parts"][0]["text"] == "S" * 20
    assert contents[2]["parts"][0]["text"] == "H" * 10
    assert contents[3]["parts"][0]["text"] == "U" * 10
    assert turn.clamped_system_prompt() == "S" * 20


def test_minimized_contents_drop_history_and_shorten_prompt():
    turn = _turn([{"role": "user", "content": "earlier"}], system_prompt="P" * 900)
    contents = turn.minimized_contents(600)
    assert len(contents) == 3
    assert contents[0]["parts"][0]["text"] == "P" * 600
    assert contents[-1]["parts"][0]["text"] == "hello"


def test_empty_system_prompt_has_no_priming():
    turn = _turn(system_prompt="   ")
    assert turn.inline_contents() == [{"role": "user", "parts": [{"text": "hello"}]}]


def test_history_accepts_request_models_and_skips_garbage():
    request = ChatRequest.model_validate(
        {"userMessage": "hi", "messageHistory": [{"role": "user", "content": "x"}, "junk", 3]}
    )
    turn = _turn(request.message_history)
    assert len(turn.history) == 1


def test_first_turn_counts_history_before_truncation():
    turn = _turn([{"role": "user", "content": "earlier"}], max_history=0)
    assert turn.history == ()
    assert turn.first_turn is False


def test_first_turn_counts_entries_that_are_skipped():
    turn = _turn(["junk", 3])
    assert turn.history == ()
    assert turn.prior_messages == 2
    assert turn.first_turn is False
