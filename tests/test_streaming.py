"""
Стриминг ответа: первое сообщение отправляется, дальше редактируется;
учёт токенов; поведение при ошибках и таймауте.
"""

from __future__ import annotations

import math
from datetime import timedelta

import pytest
from conftest import T0, FakeChannel, FakeLLM

from gptbot.db.models import UserProfile
from gptbot.services.openai_client import TokenUsage
from gptbot.services.streaming import APOLOGY_TEXT, EMPTY_ANSWER_TEXT, MAX_MESSAGE_LENGTH, ChunkFlusher

USER = 11


def chars(n: int) -> list[str]:
    return [chr(ord("a") + i % 26) for i in range(n)]


def assistant_turns(db):
    return [t.content for t in db.chats if t.user_id == USER and t.role == "assistant"]


async def test_250_chars_send_then_two_edits(make_responder, channel, db):
    deltas = chars(250)
    full = "".join(deltas)

    result = await make_responder(FakeLLM(deltas)).respond(USER, "hi", channel)

    assert result == full
    assert channel.ops == [
        ("send", 101, full[:100]),
        ("edit", 101, full[:200]),
        ("edit", 101, full),
    ]
    assert assistant_turns(db) == [full]


@pytest.mark.parametrize("length", [1, 99, 100, 101, 250, 1000])
async def test_operation_count_is_ceil_of_length_over_chunk(make_responder, length):
    channel = FakeChannel()

    await make_responder(FakeLLM(chars(length))).respond(USER, "hi", channel)

    assert len(channel.ops) == math.ceil(length / 100)
    assert channel.kinds[0] == "send"
    assert set(channel.kinds[1:]) <= {"edit"}


async def test_newline_in_fragment_forces_flush(make_responder, channel, db):
    await make_responder(FakeLLM(["Hello\n", "world"])).respond(USER, "hi", channel)

    assert channel.ops == [("send", 101, "Hello\n"), ("edit", 101, "Hello\nworld")]
    assert assistant_turns(db) == ["Hello\nworld"]


async def test_persisted_answer_is_full_concatenation(make_responder, channel, db):
    deltas = ["Lorem ipsum ", "dolor sit amet, " * 9, "\n", "  ", "consectetur", "\n\n", "x" * 150]

    await make_responder(FakeLLM(deltas)).respond(USER, "hi", channel)

    assert assistant_turns(db) == ["".join(deltas)]


async def test_whitespace_only_buffer_is_not_sent(make_responder, channel, db):
    await make_responder(FakeLLM(["\n", "Answer"])).respond(USER, "hi", channel)

    assert channel.ops == [("send", 101, "\nAnswer")]
    assert assistant_turns(db) == ["\nAnswer"]


async def test_long_answer_continues_in_new_message(make_responder, channel, db):
    deltas = chars(MAX_MESSAGE_LENGTH + 500)

    await make_responder(FakeLLM(deltas)).respond(USER, "hi", channel)

    sends = [op for op in channel.ops if op[0] == "send"]
    assert len(sends) == 2
    assert all(len(op[2]) <= MAX_MESSAGE_LENGTH for op in channel.ops)
    assert assistant_turns(db) == ["".join(deltas)]


async def test_messages_are_history_plus_prompt(make_responder, chat_context, channel, db, clock):
    await chat_context.append_turn(USER, "user", "earlier question")
    clock.advance(seconds=1)
    await chat_context.append_turn(USER, "assistant", "earlier answer")
    clock.advance(seconds=1)
    llm = FakeLLM(["ok"])

    await make_responder(llm).respond(USER, "new question", channel)

    assert llm.calls[0]["messages"] == [
        {"role": "user", "content": "earlier question"},
        {"role": "assistant", "content": "earlier answer"},
        {"role": "user", "content": "new question"},
    ]
    stored = [(t.role, t.content) for t in db.chats if t.user_id == USER]
    assert stored[-2:] == [("user", "new question"), ("assistant", "ok")]


async def test_free_user_gets_small_model(make_responder, channel):
    llm = FakeLLM(["ok"])

    await make_responder(llm).respond(USER, "hi", channel)

    assert llm.calls[0]["model"] == "test/free-model"
    assert llm.calls[0]["max_tokens"] == 2000
    assert llm.calls[0]["temperature"] == 0.7


async def test_premium_user_gets_large_model(make_responder, channel, db):
    db.users[USER] = UserProfile(
        user_id=USER, last_reset_date=T0, subscription="premium", subscription_expiry_date=T0 + timedelta(days=3)
    )
    llm = FakeLLM(["ok"])

    await make_responder(llm).respond(USER, "hi", channel)

    assert llm.calls[0]["model"] == "test/premium-model"
    assert llm.calls[0]["max_tokens"] == 4000


async def test_tokens_estimated_without_provider_usage(make_responder, channel, db):
    answer = "x" * 250

    await make_responder(FakeLLM([answer])).respond(USER, "twelve chars", channel)

    stats = db.user_stats[USER]
    assert stats.total_output_tokens == math.ceil(250 / 4)
    assert stats.total_input_tokens == math.ceil(len("twelve chars") / 4)


async def test_input_tokens_estimated_from_prompt_sent_to_model(make_responder, channel, db):
    prompt = "Что в файле?\n\nДокумент «a.txt»:\n" + "слово " * 1000

    await make_responder(FakeLLM(["ok"])).respond(
        USER, prompt, channel, stored_prompt="[документ a.txt] Что в файле?"
    )

    assert db.user_stats[USER].total_input_tokens == math.ceil(len(prompt) / 4)
    user_turns = [t.content for t in db.chats if t.role == "user"]
    assert user_turns == ["[документ a.txt] Что в файле?"]


async def test_image_prompt_tokens_count_text_parts(make_responder, channel, db):
    content = [
        {"type": "text", "text": "x" * 40},
        {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}},
    ]

    await make_responder(FakeLLM(["ok"])).respond(USER, content, channel, stored_prompt="[изображение]")

    assert db.user_stats[USER].total_input_tokens == 10


async def test_tokens_from_provider_usage(make_responder, channel, db):
    llm = FakeLLM(["hello"], usage=TokenUsage(input_tokens=321, output_tokens=17))

    await make_responder(llm).respond(USER, "hi", channel)

    assert db.user_stats[USER].total_input_tokens == 321
    assert db.user_stats[USER].total_output_tokens == 17


async def test_token_stats_accumulate(make_responder, db):
    await make_responder(FakeLLM(["abcd"])).respond(USER, "abcd", FakeChannel())
    await make_responder(FakeLLM(["abcdefgh"])).respond(USER, "abcd", FakeChannel())

    assert db.user_stats[USER].total_input_tokens == 2
    assert db.user_stats[USER].total_output_tokens == 3


async def test_usage_recording_failure_does_not_fail_response(make_responder, channel, repo, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(repo, "add_token_usage", broken)

    result = await make_responder(FakeLLM(["fine"])).respond(USER, "hi", channel)

    assert result == "fine"
    assert channel.ops == [("send", 101, "fine")]


async def test_provider_error_before_output_sends_single_apology(make_responder, channel, db):
    result = await make_responder(FakeLLM(chars(50), fail_after=0)).respond(USER, "hi", channel)

    assert result is None
    assert channel.ops == [("send", 101, APOLOGY_TEXT)]
    assert assistant_turns(db) == []
    assert USER not in db.user_stats


async def test_error_after_partial_output_keeps_it_and_never_edits_again(make_responder, channel, db):
    result = await make_responder(FakeLLM(chars(300), fail_after=150)).respond(USER, "hi", channel)

    assert result is None
    assert channel.kinds == ["send", "send"]
    assert len(channel.ops[0][2]) == 100
    assert channel.ops[1] == ("send", 102, APOLOGY_TEXT)
    assert assistant_turns(db) == []


async def test_edit_failure_is_reported_once(make_responder, db):
    channel = FakeChannel(fail_on_edit=True)

    result = await make_responder(FakeLLM(chars(250))).respond(USER, "hi", channel)

    assert result is None
    assert channel.kinds == ["send", "send"]
    assert channel.ops[-1][2] == APOLOGY_TEXT


async def test_stream_is_closed_when_edit_fails(make_responder):
    llm = FakeLLM(chars(500))

    await make_responder(llm).respond(USER, "hi", FakeChannel(fail_on_edit=True))

    assert llm.closed


async def test_timeout_after_flush_keeps_partial_answer(make_responder, channel, db):
    llm = FakeLLM(chars(180), hang_after=150)

    result = await make_responder(llm, stream_timeout=0.05).respond(USER, "hi", channel)

    flushed = "".join(chars(100))
    assert result == flushed
    assert llm.closed
    assert channel.ops == [("send", 101, flushed)]
    assert assistant_turns(db) == [flushed]


async def test_timeout_without_output_sends_apology(make_responder, channel, db):
    llm = FakeLLM(chars(10), hang_after=5)

    result = await make_responder(llm, stream_timeout=0.05).respond(USER, "hi", channel)

    assert result is None
    assert channel.ops == [("send", 101, APOLOGY_TEXT)]


async def test_empty_answer(make_responder, channel, db):
    result = await make_responder(FakeLLM([])).respond(USER, "hi", channel)

    assert result is None
    assert channel.ops == [("send", 101, EMPTY_ANSWER_TEXT)]
    assert assistant_turns(db) == []


async def test_stored_prompt_replaces_attachment_content(make_responder, channel, db):
    content = [
        {"type": "text", "text": "что на фото?"},
        {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}},
    ]
    llm = FakeLLM(["кот"])

    await make_responder(llm).respond(USER, content, channel, stored_prompt="[изображение] что на фото?")

    assert llm.calls[0]["messages"][-1] == {"role": "user", "content": content}
    user_turns = [t.content for t in db.chats if t.role == "user"]
    assert user_turns == ["[изображение] что на фото?"]


async def test_flusher_state_machine():
    channel = FakeChannel()
    flusher = ChunkFlusher(channel, chunk_size=5)

    assert flusher.feed("abc") is False
    assert flusher.feed("de") is True
    await flusher.flush()
    assert flusher.buffer == ""
    assert flusher.state.committed_text == "abcde"

    flusher.feed("f")
    await flusher.flush()
    assert flusher.state.committed_text == "abcdef"
    assert flusher.state.handle == 101
    assert channel.kinds == ["send", "edit"]
