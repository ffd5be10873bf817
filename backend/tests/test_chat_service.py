import asyncio

import pytest

from aether.core.exceptions import AccessDenied, InvalidOperation, MessageNotFound, MissingCredential, ProviderStreamError
from aether.models import MessageRole, UserRole
from aether.schemas import Attachment
from aether.services import ChatService
from aether.services.chat_service import clean_title, heuristic_title, to_provider_message
from aether.services.message_store import CANCELLED_NOTICE
from tests.fakes import FakeModel


def _contents(messages):
    return [(m.role, m.content) for m in messages]


@pytest.mark.asyncio
async def test_send_message_streams_reply_and_titles_chat(services, user, fake_provider):
    model = FakeModel([("text", "Hi"), ("text", " there!")], completions=["\"Trip Planning\""])
    fake_provider.model = model
    chat = await services.chat.create_chat(user)

    final = await services.chat.send_message(user, chat.id, "Plan a trip to Lisbon", "gemini-2.5-flash")

    assert final.content == "Hi there!"
    messages = await services.chat.list_messages(user, chat.id)
    assert _contents(messages) == [("user", "Plan a trip to Lisbon"), ("assistant", "Hi there!")]
    assert messages[1].model_id == "gemini-2.5-flash"
    assert messages[1].is_complete is True

    stored_chat = await services.chat.get_chat(user, chat.id)
    assert stored_chat.title == "Trip Planning"
    assert stored_chat.is_generating_title is False
    sent = model.stream_calls[0]["messages"]
    assert [m["role"] for m in sent] == ["system", "user"]
    assert (await services.admission.get_status(str(user.id), user.role)).remaining == 19


@pytest.mark.asyncio
async def test_second_message_does_not_retitle(services, user, fake_provider):
    model = FakeModel([("text", "ok")], completions=["First Title"])
    fake_provider.model = model
    chat = await services.chat.create_chat(user)

    await services.chat.send_message(user, chat.id, "first question", "gemini-2.5-flash")
    await services.chat.send_message(user, chat.id, "second question", "gemini-2.5-flash")

    assert len(model.complete_calls) == 1
    assert (await services.chat.get_chat(user, chat.id)).title == "First Title"
    history = model.stream_calls[1]["messages"]
    assert [m["content"] for m in history] == ["first question", "ok", "second question"]


@pytest.mark.asyncio
async def test_missing_credential_fails_before_any_mutation(services, user):
    chat = await services.chat.create_chat(user)

    with pytest.raises(MissingCredential):
        await services.chat.prepare_send(user, chat.id, "hello", "deepseek-r1-distill-llama-70b")

    assert await services.chat.list_messages(user, chat.id) == []
    assert (await services.admission.get_status(str(user.id), user.role)).remaining == 20


@pytest.mark.asyncio
async def test_send_to_someone_elses_chat_is_denied(services, user):
    other = await services.users.create_user(email="bob@example.com")
    chat = await services.chat.create_chat(other)

    with pytest.raises(AccessDenied):
        await services.chat.prepare_send(user, chat.id, "hello", "gemini-2.5-flash")


@pytest.mark.asyncio
async def test_guest_sends_are_counted_against_anon_key(services, guest, fake_provider):
    fake_provider.model = FakeModel([("text", "ok")], completions=["Guest Chat"])
    chat = await services.chat.create_chat(guest)

    job = await services.chat.prepare_send(guest, chat.id, "hello", "gemini-2.5-flash")

    assert job.remaining == 9
    assert (await services.admission.get_status("anon-key-1", UserRole.GUEST.value)).remaining == 9
    await services.chat.run_generation(job)


@pytest.mark.asyncio
async def test_retry_regenerates_from_message(services, user, fake_provider):
    fake_provider.model = FakeModel([("text", "first answer")], completions=["Title"])
    chat = await services.chat.create_chat(user)
    await services.chat.send_message(user, chat.id, "question", "gemini-2.5-flash")
    assistant = (await services.chat.list_messages(user, chat.id))[1]

    fake_provider.model = FakeModel([("text", "second answer")])
    final = await services.chat.retry_message(user, chat.id, assistant.id, "gemini-2.5-flash", web_search=True)

    assert final.content == "second answer"
    messages = await services.chat.list_messages(user, chat.id)
    assert _contents(messages) == [("user", "question"), ("assistant", "second answer")]
    assert messages[1].id != assistant.id
    assert {t.name for t in fake_provider.model.stream_calls[0]["tools"]} == {"webSearch"}


@pytest.mark.asyncio
async def test_retry_rejects_message_from_other_chat(services, user):
    chat = await services.chat.create_chat(user)
    other = await services.chat.create_chat(user)
    stray = await services.store.insert_message(other.id, MessageRole.USER.value, "elsewhere")

    with pytest.raises(MessageNotFound):
        await services.chat.prepare_retry(user, chat.id, stray.id, "gemini-2.5-flash")


@pytest.mark.asyncio
async def test_retry_of_only_message_has_nothing_to_regenerate(services, user):
    chat = await services.chat.create_chat(user)
    only = await services.store.insert_message(chat.id, MessageRole.USER.value, "hello")

    with pytest.raises(InvalidOperation):
        await services.chat.prepare_retry(user, chat.id, only.id, "gemini-2.5-flash")


@pytest.mark.asyncio
async def test_edit_rewrites_user_message_and_regenerates(services, user, fake_provider):
    fake_provider.model = FakeModel([("text", "Lisbon is great")], completions=["Title"])
    chat = await services.chat.create_chat(user)
    await services.chat.send_message(user, chat.id, "Tell me about Lisbon", "gemini-2.5-flash")
    question = (await services.chat.list_messages(user, chat.id))[0]

    model = FakeModel([("text", "Porto is great")])
    fake_provider.model = model
    await services.chat.edit_message_and_regenerate(user, question.id, "Tell me about Porto", "gemini-2.5-flash")

    messages = await services.chat.list_messages(user, chat.id)
    assert _contents(messages) == [("user", "Tell me about Porto"), ("assistant", "Porto is great")]
    assert messages[0].id == question.id
    assert model.stream_calls[0]["messages"][-1] == {"role": "user", "content": "Tell me about Porto"}


@pytest.mark.asyncio
async def test_edit_rejects_assistant_messages(services, user):
    chat = await services.chat.create_chat(user)
    reply = await services.store.insert_message(chat.id, MessageRole.ASSISTANT.value, "answer")

    with pytest.raises(InvalidOperation):
        await services.chat.prepare_edit(user, reply.id, "changed", "gemini-2.5-flash")


@pytest.mark.asyncio
async def test_cancel_before_generation_keeps_notice(services, user, fake_provider):
    fake_provider.model = FakeModel([("text", "late text")], completions=["Title"])
    chat = await services.chat.create_chat(user)
    job = await services.chat.prepare_send(user, chat.id, "hello", "gemini-2.5-flash")

    cancelled = await services.chat.cancel_message(user, job.assistant_message_id)
    final = await services.chat.run_generation(job)

    assert cancelled.content == CANCELLED_NOTICE
    assert final.persisted is False
    stored = await services.store.get_message(job.assistant_message_id)
    assert stored.content == CANCELLED_NOTICE
    assert stored.is_cancelled is True


@pytest.mark.asyncio
async def test_cancel_requires_ownership(services, user):
    other = await services.users.create_user(email="eve@example.com")
    chat = await services.chat.create_chat(other)
    reply = await services.store.insert_message(chat.id, MessageRole.ASSISTANT.value, "", is_complete=False)

    with pytest.raises(AccessDenied):
        await services.chat.cancel_message(user, reply.id)


@pytest.mark.asyncio
async def test_concurrent_sends_to_one_chat_all_get_placeholders(services, user):
    chat = await services.chat.create_chat(user)

    results = await asyncio.gather(
        *(services.chat.prepare_send(user, chat.id, f"question {i}", "gemini-2.5-flash") for i in range(4)),
        return_exceptions=True,
    )

    assert [r for r in results if isinstance(r, Exception)] == []
    assert sorted(job.remaining for job in results) == [16, 17, 18, 19]
    messages = await services.store.get_messages_for_chat(chat.id)
    assert [m.position for m in messages] == list(range(8))
    placeholders = {m.id for m in messages if m.role == MessageRole.ASSISTANT.value}
    assert placeholders == {job.assistant_message_id for job in results}


@pytest.mark.asyncio
async def test_guest_chats_migrate_to_signed_in_user(services, user, guest):
    chat = await services.chat.create_chat(guest, "Guest chat")

    assert await services.chat.migrate_guest_chats(user, guest) == 1
    assert (await services.chat.get_chat(user, chat.id)).title == "Guest chat"
    with pytest.raises(AccessDenied):
        await services.chat.get_chat(guest, chat.id)
    assert await services.chat.migrate_guest_chats(user, guest) == 0
    assert await services.chat.migrate_guest_chats(user, None) == 0


@pytest.mark.asyncio
async def test_guest_migration_rules(services, user, guest):
    with pytest.raises(InvalidOperation):
        await services.chat.migrate_guest_chats(guest, guest)
    other = await services.users.create_user(email="mallory@example.com")
    with pytest.raises(InvalidOperation):
        await services.chat.migrate_guest_chats(user, other)


def _title_service(services, settings, delays):
    async def fake_sleep(seconds):
        delays.append(seconds)

    return ChatService(services.store, services.admission, services.orchestrator, settings, sleep=fake_sleep)


@pytest.mark.asyncio
async def test_title_retries_overload_with_backoff(services, user, settings, fake_provider):
    fake_provider.model = FakeModel(completions=[
        ProviderStreamError("model overloaded", status_code=503),
        ProviderStreamError("too many requests", status_code=429),
        "Lisbon Weekend",
    ])
    delays = []
    chat = await services.store.create_chat(user.id)
    await services.store.claim_title_generation(chat.id)

    title = await _title_service(services, settings, delays).generate_title(chat.id, "Plan a trip", user.id)

    assert title == "Lisbon Weekend"
    assert delays == [2.0, 4.0]
    stored = await services.store.get_chat(chat.id)
    assert stored.title == "Lisbon Weekend"
    assert stored.is_generating_title is False


@pytest.mark.asyncio
async def test_title_gives_up_after_max_attempts(services, user, settings, fake_provider):
    fake_provider.model = FakeModel(completions=[ProviderStreamError("overloaded", status_code=503)] * 5)
    delays = []
    chat = await services.store.create_chat(user.id)

    title = await _title_service(services, settings, delays).generate_title(
        chat.id, "plan a **trip** to lisbon next week please", user.id
    )

    assert delays == [2.0, 4.0, 8.0, 16.0]
    assert title == "Plan a trip to lisbon next"


@pytest.mark.asyncio
async def test_title_falls_back_on_other_errors_and_short_titles(services, user, settings, fake_provider):
    delays = []
    service = _title_service(services, settings, delays)
    chat = await services.store.create_chat(user.id)

    fake_provider.model = FakeModel(completions=[ProviderStreamError("bad request", status_code=400)])
    assert await service.generate_title(chat.id, "why is the sky blue", user.id) == "Why is the sky blue"

    fake_provider.model = FakeModel(completions=["X"])
    assert await service.generate_title(chat.id, "hello", user.id) == "Hello"
    assert delays == []


def test_title_helpers():
    assert heuristic_title("") == "New chat"
    assert heuristic_title("# hello `world`") == "Hello world"
    assert clean_title('Title: "Rust Lifetimes"\nextra') == "Rust Lifetimes"


@pytest.mark.asyncio
async def test_attachments_become_content_parts(services, user):
    chat = await services.chat.create_chat(user)
    message = await services.store.insert_message(
        chat.id,
        MessageRole.USER.value,
        "what is this?",
        attachments=[
            Attachment(name="cat.png", type="image/png", size=10, url="https://cdn/cat.png").model_dump(),
            Attachment(name="notes.pdf", type="application/pdf", size=20, url="https://cdn/notes.pdf").model_dump(),
        ],
    )

    converted = to_provider_message(message)

    assert converted["content"][0] == {"type": "text", "text": "what is this?"}
    assert converted["content"][1] == {"type": "image_url", "image_url": {"url": "https://cdn/cat.png"}}
    assert "notes.pdf" in converted["content"][2]["text"]
