"""Tests for the client-side stream reducer and its local store."""

import pytest

from sagechat.client.config import ClientSettings
from sagechat.client.reducer import ClientStreamReducer, NoCreditsError, RequestPhase, SagePhase
from sagechat.client.storage import SessionStore
from sagechat.core.personas import unavailable_placeholder
from sagechat.models.persona import Persona
from sagechat.models.protocol import (
    CompleteFrame,
    DoneFrame,
    ErrorFrame,
    FailedFrame,
    FailureReason,
    StreamFrame,
    parse_outbound,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def stream(mid, sage, chunk):
    return StreamFrame(sage_id=sage, chunk=chunk, message_id=mid)


def complete(mid, sage, text):
    return CompleteFrame(sage_id=sage, response=text, message_id=mid)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reducer(clock):
    return ClientStreamReducer("s1", credits=3, sage_names={"alpha": "Alpha", "beta": "Beta"}, clock=clock)


class TestSubmit:

    def test_submit_is_optimistic(self, reducer):
        message = reducer.submit("How to find peace?", ["alpha", "beta", "alpha"])

        assert reducer.credits == 2
        assert reducer.messages == [message]
        assert message.sages == ["alpha", "beta"]
        assert message.responses == {}
        assert reducer.phase(message.id, "alpha") is SagePhase.WAITING

    def test_submit_without_credits(self, reducer):
        reducer.credits = 0

        with pytest.raises(NoCreditsError):
            reducer.submit("Hello?", ["alpha"])
        assert reducer.messages == []

    def test_message_ids_increase(self, reducer):
        first = reducer.submit("one", ["alpha"])
        second = reducer.submit("two", ["alpha"])

        assert second.id > first.id

    def test_start_chat_frame(self, reducer):
        message = reducer.submit("Hello?", ["alpha"])

        frame = reducer.start_chat_frame(message.id)

        assert frame.model_dump(by_alias=True) == {
            "type": "start_chat",
            "content": "Hello?",
            "selectedSages": ["alpha"],
            "messageId": message.id,
            "sessionId": "s1",
        }


class TestFrames:

    def test_chunks_append_then_complete_replaces(self, reducer):
        mid = reducer.submit("q", ["alpha"]).id

        reducer.apply(stream(mid, "alpha", "Be "))
        reducer.apply(stream(mid, "alpha", "stil"))
        assert reducer.message(mid).responses["alpha"] == "Be stil"
        assert reducer.is_typing(mid, "alpha")

        reducer.apply(complete(mid, "alpha", "Be still."))
        assert reducer.message(mid).responses["alpha"] == "Be still."
        assert not reducer.is_typing(mid, "alpha")
        assert reducer.request(mid).phase is RequestPhase.ALL_SETTLED

    def test_interleaved_sages_stay_separate(self, reducer):
        mid = reducer.submit("q", ["alpha", "beta"]).id

        for frame in [
            stream(mid, "alpha", "a1"),
            stream(mid, "beta", "b1"),
            stream(mid, "alpha", "a2"),
            stream(mid, "beta", "b2"),
        ]:
            reducer.apply(frame)

        assert reducer.message(mid).responses == {"alpha": "a1a2", "beta": "b1b2"}

    def test_completions_in_any_order(self, reducer):
        mid = reducer.submit("q", ["alpha", "beta"]).id

        reducer.apply(complete(mid, "beta", "B"))
        assert reducer.request(mid).phase is RequestPhase.SENT
        reducer.apply(complete(mid, "alpha", "A"))

        assert reducer.is_settled(mid)
        assert reducer.message(mid).responses == {"alpha": "A", "beta": "B"}

    def test_late_frames_are_ignored(self, reducer):
        mid = reducer.submit("q", ["alpha", "beta"]).id
        reducer.apply(complete(mid, "alpha", "Final"))

        assert reducer.apply(stream(mid, "alpha", " extra")) is False
        assert reducer.apply(complete(mid, "alpha", "Other")) is False
        assert reducer.message(mid).responses["alpha"] == "Final"

    def test_frames_for_unrequested_sages_are_ignored(self, reducer):
        mid = reducer.submit("q", ["alpha"]).id

        assert reducer.apply(stream(mid, "gamma", "??")) is False
        assert "gamma" not in reducer.message(mid).responses

    def test_frames_for_unknown_requests_are_ignored(self, reducer):
        assert reducer.apply(stream(12345, "alpha", "??")) is False

    def test_failed_settles_without_answer(self, reducer):
        mid = reducer.submit("q", ["ghost", "alpha"]).id

        reducer.apply(FailedFrame(sage_id="ghost", reason=FailureReason.UNKNOWN_PERSONA, message_id=mid))
        reducer.apply(complete(mid, "alpha", "A"))

        assert reducer.phase(mid, "ghost") is SagePhase.SETTLED
        assert reducer.message(mid).responses == {"alpha": "A"}
        assert reducer.is_settled(mid)

    def test_error_rolls_back(self, reducer):
        mid = reducer.submit("q", ["alpha"]).id

        reducer.apply(ErrorFrame(message="Invalid session", message_id=mid))

        assert reducer.messages == []
        assert reducer.credits == 3
        assert reducer.request(mid).phase is RequestPhase.FAILED
        assert reducer.request(mid).error == "Invalid session"

    def test_error_without_request_is_ignored(self, reducer):
        reducer.submit("q", ["alpha"])

        assert reducer.apply(ErrorFrame(message="Invalid message format")) is False
        assert reducer.credits == 2

    def test_done_syncs_server_balance(self, reducer):
        mid = reducer.submit("q", ["alpha"]).id
        reducer.apply(complete(mid, "alpha", "A"))

        reducer.apply(DoneFrame(message_id=mid, served=["alpha"], balance=7))

        assert reducer.credits == 7

    def test_done_settles_stragglers(self, reducer):
        mid = reducer.submit("q", ["alpha", "beta"]).id
        reducer.apply(complete(mid, "alpha", "A"))

        reducer.apply(DoneFrame(message_id=mid, served=["alpha"], balance=2))

        assert reducer.is_settled(mid)
        assert reducer.phase(mid, "beta") is SagePhase.SETTLED

    def test_parses_wire_frames(self, reducer):
        mid = reducer.submit("q", ["alpha"]).id

        reducer.apply(parse_outbound({"type": "stream", "sageId": "alpha", "chunk": "Hi", "messageId": mid}))
        reducer.apply(parse_outbound({"type": "complete", "sageId": "alpha", "response": "Hi.", "messageId": mid}))

        assert reducer.message(mid).responses == {"alpha": "Hi."}


class TestConnectionLoss:

    def test_drop_before_any_completion_rolls_back(self, reducer):
        mid = reducer.submit("q", ["alpha", "beta"]).id
        reducer.apply(stream(mid, "alpha", "partial"))

        reducer.connection_lost()

        assert reducer.messages == []
        assert reducer.credits == 3
        assert reducer.request(mid).phase is RequestPhase.FAILED

    def test_drop_after_a_completion_keeps_it(self, reducer):
        mid = reducer.submit("q", ["alpha", "beta"]).id
        reducer.apply(complete(mid, "alpha", "A"))
        reducer.apply(stream(mid, "beta", "partial"))

        reducer.connection_lost()

        assert reducer.message(mid).responses == {
            "alpha": "A",
            "beta": "Beta is currently in deep meditation and unable to respond.",
        }
        assert reducer.credits == 2
        assert reducer.request(mid).phase is RequestPhase.ALL_SETTLED

    def test_idle_requests_expire(self, reducer, clock):
        old = reducer.submit("q1", ["alpha"]).id
        clock.now += 30
        fresh = reducer.submit("q2", ["alpha"]).id
        clock.now += 31

        expired = reducer.expire_idle(idle_timeout=60)

        assert expired == [old]
        assert reducer.request(old).phase is RequestPhase.FAILED
        assert reducer.request(fresh).phase is RequestPhase.SENT

    def test_progress_resets_idle_timer(self, reducer, clock):
        mid = reducer.submit("q", ["alpha"]).id
        clock.now += 50
        reducer.apply(stream(mid, "alpha", "still going"))
        clock.now += 50

        assert reducer.expire_idle(idle_timeout=60) == []

    def test_http_fallback_answers(self, reducer):
        mid = reducer.submit("q", ["ghost", "alpha"]).id

        reducer.apply_final(mid, {"alpha": "A"}, balance=5)

        assert reducer.message(mid).responses == {"alpha": "A"}
        assert reducer.is_settled(mid)
        assert reducer.credits == 5


class TestPersistence:

    def test_state_survives_reload(self, tmp_path):
        store = SessionStore(str(tmp_path), "s1")
        reducer = ClientStreamReducer.restore(store, default_credits=10)
        mid = reducer.submit("q", ["alpha"]).id
        reducer.apply(complete(mid, "alpha", "A"))

        reloaded = ClientStreamReducer.restore(SessionStore(str(tmp_path), "s1"), default_credits=10)

        assert reloaded.credits == 9
        assert [m.id for m in reloaded.messages] == [mid]
        assert reloaded.messages[0].responses == {"alpha": "A"}

    def test_fresh_session_uses_default_credits(self, tmp_path):
        reducer = ClientStreamReducer.restore(SessionStore(str(tmp_path), "new"), default_credits=10)

        assert reducer.credits == 10
        assert reducer.messages == []

    def test_sessions_do_not_share_history(self, tmp_path):
        first = ClientStreamReducer.restore(SessionStore(str(tmp_path), "s1"))
        first.submit("q", ["alpha"])

        second = ClientStreamReducer.restore(SessionStore(str(tmp_path), "s2"))

        assert second.messages == []

    def test_reset_clears_history(self, tmp_path):
        store = SessionStore(str(tmp_path), "s1")
        reducer = ClientStreamReducer.restore(store, reset_credits=25)
        reducer.submit("q", ["alpha"])

        reducer.reset()

        assert reducer.messages == []
        assert reducer.credits == 25
        reloaded = ClientStreamReducer.restore(SessionStore(str(tmp_path), "s1"))
        assert reloaded.messages == []
        assert reloaded.credits == 25

    def test_unreadable_history_is_discarded(self, tmp_path):
        store = SessionStore(str(tmp_path), "s1")
        store.messages_path.write_text("{not json")

        assert store.load_messages() == []

    def test_reload_mid_request_without_answers_rolls_back(self, tmp_path):
        store = SessionStore(str(tmp_path), "s1")
        reducer = ClientStreamReducer.restore(store, default_credits=3)
        mid = reducer.submit("q", ["alpha"]).id
        reducer.apply(stream(mid, "alpha", "partial"))

        reloaded = ClientStreamReducer.restore(SessionStore(str(tmp_path), "s1"), default_credits=3)

        assert reloaded.messages == []
        assert reloaded.credits == 3
        assert reloaded.request(mid).phase is RequestPhase.FAILED
        again = ClientStreamReducer.restore(SessionStore(str(tmp_path), "s1"), default_credits=3)
        assert again.messages == []
        assert again.credits == 3

    def test_reload_mid_request_keeps_completed_answers(self, tmp_path):
        store = SessionStore(str(tmp_path), "s1")
        reducer = ClientStreamReducer.restore(store, default_credits=10)
        mid = reducer.submit("q", ["alpha", "beta"]).id
        reducer.apply(complete(mid, "alpha", "A"))
        reducer.apply(stream(mid, "beta", "partial"))

        reloaded = ClientStreamReducer.restore(
            SessionStore(str(tmp_path), "s1"),
            default_credits=10,
            sage_names={"beta": "Beta"},
        )

        assert reloaded.message(mid).responses == {
            "alpha": "A",
            "beta": "Beta is currently in deep meditation and unable to respond.",
        }
        assert reloaded.credits == 9
        assert reloaded.request(mid).phase is RequestPhase.ALL_SETTLED
        assert reloaded.open_requests == []
        assert SessionStore(str(tmp_path), "s1").load_pending() == {}

    def test_session_id_is_created_once(self, tmp_path):
        first = SessionStore.open(str(tmp_path))
        second = SessionStore.open(str(tmp_path))

        assert first.session_id == second.session_id
        assert (tmp_path / "session_id").read_text() == first.session_id

    def test_restore_from_settings_reuses_session(self, tmp_path):
        settings = ClientSettings(storage_dir=str(tmp_path), default_credits=10)
        reducer = ClientStreamReducer.from_settings(settings)
        reducer.submit("q", ["alpha"])
        reducer.fail_request(reducer.messages[0].id, "test")
        reducer.submit("q2", ["alpha"])

        reloaded = ClientStreamReducer.from_settings(settings)

        assert reloaded.session_id == reducer.session_id
        assert reloaded.credits == 10
        assert ClientStreamReducer.from_settings(settings, session_id="other").session_id == "other"


def test_client_placeholder_matches_server_wording():
    persona = Persona(id="alpha", name="Alpha", title="The First", prompt="Speak plainly.")
    reducer = ClientStreamReducer("s1", sage_names={"alpha": "Alpha"})

    assert reducer.placeholder("alpha") == unavailable_placeholder(persona)
