import pytest

from dds_ai import app_db
from dds_ai.chat_view import ChatView, InitialTurnTrigger, LocalChatBackend
from dds_ai.errors import NotFound, ValidationError
from dds_ai.streaming import TurnState

from .conftest import ScriptedProvider


class MemoryBackend:
    def __init__(self, history):
        self.history = [dict(t, img=t.get("img")) for t in history]
        self.appends = []

    async def get_chat(self, chat_id):
        return {"chat_id": chat_id, "owner_id": "u1", "created_at": "now", "history": list(self.history)}

    async def append_turns(self, chat_id, turns):
        self.appends.append(list(turns))
        self.history.extend(turns)
        return len(turns)


SEED = [{"role": "user", "text": "Tell me a joke"}]


class TestInitialTurnTrigger:
    def test_fires_for_single_seed_turn(self):
        assert InitialTurnTrigger().claim(SEED) == "Tell me a joke"

    def test_latch_closes_after_first_claim(self):
        trigger = InitialTurnTrigger()
        assert trigger.claim(SEED) == "Tell me a joke"
        assert trigger.claim(SEED) is None
        assert trigger.fired

    def test_latch_closes_even_when_not_firing(self):
        trigger = InitialTurnTrigger()
        assert trigger.claim(SEED + [{"role": "model", "text": "ha"}]) is None
        assert trigger.claim(SEED) is None

    def test_ignores_empty_and_non_user_history(self):
        assert InitialTurnTrigger().claim([]) is None
        assert InitialTurnTrigger().claim([{"role": "model", "text": "x"}]) is None
        assert InitialTurnTrigger().claim([{"role": "user", "text": ""}]) is None


@pytest.mark.asyncio
async def test_mount_answers_seed_once():
    backend = MemoryBackend(SEED)
    provider = ScriptedProvider((["Why did", " the chicken"], None))
    view = ChatView(backend, provider, "c1")

    result = await view.mount()
    again = await view.mount()

    assert result.state is TurnState.COMMITTED
    assert again is None
    assert provider.session.sent == ["Tell me a joke"]
    assert backend.appends == [[{"role": "model", "text": "Why did the chicken", "img": None}]]
    assert [t["role"] for t in view.history] == ["user", "model"]


@pytest.mark.asyncio
async def test_seed_is_not_duplicated_in_provider_context():
    provider = ScriptedProvider((["a"], None))
    await ChatView(MemoryBackend(SEED), provider, "c1").mount()
    assert provider.histories == [[]]


@pytest.mark.asyncio
async def test_mount_does_not_fire_for_answered_chat():
    history = SEED + [{"role": "model", "text": "ha"}]
    provider = ScriptedProvider()
    view = ChatView(MemoryBackend(history), provider, "c1")

    assert await view.mount() is None
    assert provider.session.sent == []
    assert len(provider.histories[0]) == 2
    assert view.state is TurnState.IDLE


@pytest.mark.asyncio
async def test_new_view_over_unanswered_chat_fires_again():
    backend = MemoryBackend(SEED)
    provider = ScriptedProvider(([], None), (["late answer"], None))

    first = await ChatView(backend, provider, "c1").mount()
    second = await ChatView(backend, provider, "c1").mount()

    assert first.no_response
    assert backend.appends == [[{"role": "model", "text": "late answer", "img": None}]]
    assert second.ok


@pytest.mark.asyncio
async def test_provider_session_is_created_once_per_view():
    backend = MemoryBackend(SEED)
    provider = ScriptedProvider((["one"], None), (["two"], None), (["three"], None))
    view = ChatView(backend, provider, "c1")

    await view.mount()
    await view.ask("again")
    await view.ask("more")

    assert len(provider.histories) == 1
    assert provider.session.sent == ["Tell me a joke", "again", "more"]


@pytest.mark.asyncio
async def test_ask_rejects_blank_question():
    view = ChatView(MemoryBackend(SEED), ScriptedProvider(), "c1")
    with pytest.raises(ValidationError):
        await view.ask("   ")


@pytest.mark.asyncio
async def test_history_listener_sees_reloaded_chat():
    backend = MemoryBackend(SEED + [{"role": "model", "text": "ha"}])
    seen = []
    view = ChatView(backend, ScriptedProvider((["sure"], None)), "c1", on_history_changed=seen.append)

    await view.ask("another?")

    assert len(seen) == 1
    assert [t["text"] for t in seen[0]["history"]][-2:] == ["another?", "sure"]


@pytest.mark.asyncio
async def test_local_backend_mounts_stored_chat(db):
    chat = app_db.create_chat(owner_id="u1", seed_text="Hi there")
    view = ChatView(LocalChatBackend("u1"), ScriptedProvider((["Hello!"], None)), chat["chat_id"])

    await view.mount()

    stored = app_db.get_chat(chat_id=chat["chat_id"], owner_id="u1")["history"]
    assert [(t["role"], t["text"]) for t in stored] == [("user", "Hi there"), ("model", "Hello!")]


@pytest.mark.asyncio
async def test_local_backend_hides_other_owners_chat(db):
    chat = app_db.create_chat(owner_id="u1", seed_text="Hi there")
    view = ChatView(LocalChatBackend("u2"), ScriptedProvider(), chat["chat_id"])
    with pytest.raises(NotFound):
        await view.load()
