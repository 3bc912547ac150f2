"""
API tests over the FastAPI application with an in-memory session service.
"""
import pytest
from fastapi.testclient import TestClient

from lesson_tutor.cache.assessment_cache import InMemoryAssessmentCache
from lesson_tutor.cache.snapshot_store import InMemorySnapshotStore
from lesson_tutor.core.config import settings
from lesson_tutor.core.rate_limit import limiter
from lesson_tutor.main import app
from lesson_tutor.repositories.lesson_repository import InMemoryLessonRepository
from lesson_tutor.services.session_service import SessionService, set_session_service
from lesson_tutor.services.speech_client import SpeechClient

API = settings.api_v1_prefix
LESSON_REF = "adding-fractions"


@pytest.fixture
def client(sample_lesson, fake_backend, prompts, monkeypatch):
    monkeypatch.setattr(settings, "awaiting_lock_seconds", 0.0)
    monkeypatch.setattr(settings, "api_key", None)
    limiter.reset()
    service = SessionService(
        lessons=InMemoryLessonRepository({LESSON_REF: sample_lesson}),
        cache=InMemoryAssessmentCache(),
        snapshots=InMemorySnapshotStore(),
        prompts=prompts,
        backend=fake_backend,
        speech=SpeechClient(url=""),
    )
    set_session_service(service)
    # One event loop for the whole test so session timers stay valid
    with TestClient(app) as test_client:
        yield test_client
    set_session_service(None)


def start(client, **overrides):
    body = {"lesson_ref": LESSON_REF, "learner_id": "learner-1", "learner_name": "Sam", "seed": 5}
    body.update(overrides)
    response = client.post(f"{API}/sessions", json=body)
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:

    def test_shallow(self, client):
        response = client.get(f"{API}/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_deep_lists_components(self, client):
        data = client.get(f"{API}/health/deep").json()
        assert set(data["components"]) == {"api", "lessons", "dialogue", "speech"}

    def test_root(self, client):
        assert client.get("/").json()["service"] == settings.app_name


class TestSessionRoutes:

    def test_start_returns_greeting_and_view(self, client, fake_backend):
        fake_backend.replies = ["Hi Sam! What is your favorite fruit?"]
        data = start(client)
        assert data["reply"] == "Hi Sam! What is your favorite fruit?"
        assert data["session"]["phase"] == "discussion"
        assert data["session"]["subphase"] == "opening"
        assert data["captions"] == ["Hi Sam!", "What is your favorite fruit?"]

    def test_unknown_lesson_is_404(self, client):
        response = client.post(f"{API}/sessions", json={"lesson_ref": "nope", "learner_id": "x"})
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_unknown_session_is_404(self, client):
        assert client.get(f"{API}/sessions/missing").status_code == 404

    def test_missing_fields_are_400(self, client):
        response = client.post(f"{API}/sessions", json={"lesson_ref": LESSON_REF})
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_practice_round_trip(self, client, fake_backend):
        session_id = start(client)["session"]["session_id"]

        skipped = client.post(f"{API}/sessions/{session_id}/skip").json()
        assert skipped["session"]["subphase"] == "comprehension-awaiting-begin"

        early = client.post(f"{API}/sessions/{session_id}/messages", json={"text": "hi"})
        assert early.status_code == 409

        begun = client.post(f"{API}/sessions/{session_id}/begin").json()
        assert begun["session"]["current_question"]

        fake_backend.replies = ["Correct! Well done."]
        answered = client.post(f"{API}/sessions/{session_id}/messages", json={"text": "3/4"}).json()
        assert answered["verdict"] == "correct"
        assert answered["session"]["ticker"] == 1

    def test_empty_message_is_400(self, client):
        session_id = start(client)["session"]["session_id"]
        response = client.post(f"{API}/sessions/{session_id}/messages", json={"text": ""})
        assert response.status_code == 400

    def test_back_from_discussion_is_409(self, client):
        session_id = start(client)["session"]["session_id"]
        response = client.post(f"{API}/sessions/{session_id}/back")
        assert response.status_code == 409
        assert response.json()["error"] == "phase_conflict"

    def test_dialogue_failure_comes_back_as_error_text(self, client, fake_backend):
        from lesson_tutor.core.exceptions import DialogueServiceError
        from lesson_tutor.services.dialogue_client import GENERIC_UNAVAILABLE_MESSAGE

        fake_backend.replies = [DialogueServiceError("down", status_code=500)]
        data = start(client)
        assert data["reply"] is None
        assert data["error"] == GENERIC_UNAVAILABLE_MESSAGE

    def test_printable_and_refresh(self, client):
        session_id = start(client, worksheet_length=3)["session"]["session_id"]

        printable = client.get(f"{API}/sessions/{session_id}/printable/worksheet").json()
        assert printable["title"] == "Adding Fractions - Worksheet"
        assert len(printable["answer_key"].splitlines()) == 3

        assert client.get(f"{API}/sessions/{session_id}/printable/quiz").status_code == 400

        refreshed = client.post(f"{API}/sessions/{session_id}/assessments/refresh")
        assert refreshed.status_code == 200
        assert refreshed.json()["worksheet_index"] == 0

    def test_delete_forgets_session(self, client):
        session_id = start(client)["session"]["session_id"]
        assert client.delete(f"{API}/sessions/{session_id}").status_code == 204
        assert client.get(f"{API}/sessions/{session_id}").status_code == 404


class TestJudgeRoute:

    def test_number_word_is_correct(self, client):
        response = client.post(
            f"{API}/judge",
            json={"question": {"question": "What is 10 + 10?", "expectedAny": ["20"]}, "answer": "twenty"},
        )
        data = response.json()
        assert response.status_code == 200
        assert data["correct"] is True
        assert data["mode"] == "exact"

    def test_short_answer_reports_keywords(self, client):
        question = {
            "question": "How do plants make food?",
            "keywords": ["photosynthesis", "sunlight", "energy"],
            "minKeywords": 2,
        }
        data = client.post(f"{API}/judge", json={"question": question, "answer": "sunlight gives energy"}).json()
        assert data["correct"] is True
        assert data["mode"] == "short_answer"
        assert data["required_keywords"] == 2

    def test_malformed_item_is_400(self, client):
        response = client.post(f"{API}/judge", json={"question": {"answer": "x"}, "answer": "x"})
        assert response.status_code == 400


class TestApiKey:

    def test_key_required_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_key", "secret-key")
        assert client.get(f"{API}/sessions/anything").status_code == 401
        authorized = client.get(f"{API}/sessions/anything", headers={"X-API-Key": "secret-key"})
        assert authorized.status_code == 404


class TestRateLimit:

    def test_retry_after_is_the_window_not_the_count(self, client):
        session_id = start(client)["session"]["session_id"]
        client.post(f"{API}/sessions/{session_id}/skip")

        # Refused turns still count against the per-session limit
        for _ in range(30):
            assert client.post(f"{API}/sessions/{session_id}/messages", json={"text": "hi"}).status_code == 409

        limited = client.post(f"{API}/sessions/{session_id}/messages", json={"text": "hi"})
        assert limited.status_code == 429
        assert limited.headers["Retry-After"] == "60"
        assert limited.json()["retry_after"] == 60


class TestPlaybackRoutes:

    def test_turn_carries_caption_timing(self, client, fake_backend):
        fake_backend.replies = ["Hi Sam! What is your favorite fruit?"]
        data = start(client)
        assert len(data["segments"]) == 1
        segment = data["segments"][0]
        assert segment["captions"] == ["Hi Sam!", "What is your favorite fruit?"]
        assert len(segment["offsets"]) == 2
        assert segment["offsets"][0] == 0.0
        assert segment["offsets"][1] > 0
        assert segment["duration"] > 0
        assert segment["strategy"] == "captions"

    def test_pause_and_resume(self, client):
        session_id = start(client)["session"]["session_id"]

        paused = client.post(f"{API}/sessions/{session_id}/pause").json()
        assert paused["playback"]["paused"] is True
        assert paused["timer"]["paused"] is True
        assert paused["timer"]["phase"] == "discussion"
        assert paused["timer"]["kind"] == "work"

        resumed = client.post(f"{API}/sessions/{session_id}/resume").json()
        assert resumed["playback"]["paused"] is False
        assert resumed["timer"]["paused"] is False

    def test_mute_and_unmute(self, client):
        session_id = start(client)["session"]["session_id"]
        muted = client.post(f"{API}/sessions/{session_id}/mute", json={"muted": True}).json()
        assert muted["playback"]["muted"] is True
        unmuted = client.post(f"{API}/sessions/{session_id}/mute", json={"muted": False}).json()
        assert unmuted["playback"]["muted"] is False

    def test_unlock_without_refused_audio(self, client):
        session_id = start(client)["session"]["session_id"]
        data = client.post(f"{API}/sessions/{session_id}/unlock").json()
        assert data["has_audio"] is False
        assert data["segments"] == []
        assert data["session"]["playback"]["needs_audio_unlock"] is False

    def test_controls_need_a_known_session(self, client):
        for action in ("pause", "resume", "unlock"):
            assert client.post(f"{API}/sessions/missing/{action}").status_code == 404

    def test_timer_overrides_at_start(self, client):
        session_id = start(client, phase_timers={"comprehension_play_min": 7})["session"]["session_id"]
        skipped = client.post(f"{API}/sessions/{session_id}/skip").json()
        timer = skipped["session"]["timer"]
        assert (timer["phase"], timer["kind"]) == ("comprehension", "play")
        assert timer["limit_seconds"] == 420
        assert timer["pace"] == "green"
