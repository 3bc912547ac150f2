"""
Unit tests for the dialogue client, its HTTP backend and speech decoding.
"""
import asyncio
import base64
import json

import httpx
import pytest

from lesson_tutor.core.exceptions import DialogueServiceError
from lesson_tutor.engine.reply_hygiene import ReplyHygiene, StepType
from lesson_tutor.models.schemas import DialogueReply, DialogueRequest
from lesson_tutor.services.dialogue_client import (
    GENERIC_UNAVAILABLE_MESSAGE,
    DialogueClient,
    HttpDialogueBackend,
    phase_key,
)
from lesson_tutor.services.speech_client import SpeechClient, decode_audio

DIALOGUE_URL = "http://dialogue.test/api/tutor"
AUDIO = base64.b64encode(b"ID3-fake-mp3").decode()


@pytest.fixture
def hygiene(prompts):
    return ReplyHygiene(prompts.gate_question, prompts.comprehension_cue)


def http_backend(handler):
    return HttpDialogueBackend(url=DIALOGUE_URL, transport=httpx.MockTransport(handler))


class RecordingContext:
    """build_context stand-in that records each include_guard flag."""

    def __init__(self):
        self.flags = []

    def __call__(self, include_guard):
        self.flags.append(include_guard)
        return "You are a patient tutor." + (" Stay on topic." if include_guard else "")


class TestHttpBackend:

    @pytest.mark.asyncio
    async def test_route_not_ready_is_retried_after_warm(self, hygiene):
        calls = []

        def handler(request):
            calls.append(request.method)
            posts = calls.count("POST")
            if request.method == "POST" and posts == 1:
                return httpx.Response(404)
            if request.method == "GET":
                return httpx.Response(405)
            return httpx.Response(200, json={"reply": "Hello Sam."})

        client = DialogueClient(http_backend(handler), hygiene, retry_delays=[0.0, 0.0], timeout=5)
        result = await client.send(RecordingContext(), "Greet the learner.", step=StepType.COMPREHENSION)

        assert result.success
        assert result.text == "Hello Sam."
        assert calls == ["POST", "GET", "POST"]
        await client.close()

    @pytest.mark.asyncio
    async def test_repeated_404_gives_up_after_retries(self, hygiene):
        posts = []

        def handler(request):
            if request.method == "POST":
                posts.append(request)
            return httpx.Response(404)

        client = DialogueClient(http_backend(handler), hygiene, retry_delays=[0.0, 0.0], timeout=5)
        result = await client.send(RecordingContext(), "Hi.")

        assert not result.success
        assert result.status_code == 404
        assert result.error == GENERIC_UNAVAILABLE_MESSAGE
        assert len(posts) == 3

    @pytest.mark.asyncio
    async def test_server_error_is_not_retried(self, hygiene):
        posts = []

        def handler(request):
            posts.append(request)
            return httpx.Response(500, text="boom")

        client = DialogueClient(http_backend(handler), hygiene, retry_delays=[0.0, 0.0], timeout=5)
        result = await client.send(RecordingContext(), "Hi.")

        assert not result.success
        assert result.status_code == 500
        assert result.error == GENERIC_UNAVAILABLE_MESSAGE
        assert len(posts) == 1

    @pytest.mark.asyncio
    async def test_request_body_shape(self, hygiene):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"reply": "Sure."})

        client = DialogueClient(http_backend(handler), hygiene, retry_delays=[], timeout=5)
        await client.send(
            RecordingContext(),
            "Answer the learner.",
            learner_text="what is a numerator",
            metadata={"phase": "teaching", "subject": "math"},
        )

        body = bodies[0]
        assert set(body) == {"system", "instruction", "innertext", "session"}
        assert body["innertext"] == "what is a numerator"
        assert body["session"]["phase"] == "teaching"
        assert body["session"]["step"] == StepType.DEFAULT.value

    @pytest.mark.asyncio
    async def test_malformed_reply_is_a_failure(self):
        backend = http_backend(lambda request: httpx.Response(200, text="not json"))
        with pytest.raises(DialogueServiceError):
            await backend.complete(DialogueRequest(system="s", instruction="i"))


class TestDialogueClient:

    @pytest.mark.asyncio
    async def test_hygiene_is_applied_per_step(self, fake_backend, hygiene, prompts):
        fake_backend.replies = ["Numerators are on top? Want a quiz?"]
        client = DialogueClient(fake_backend, hygiene, retry_delays=[], timeout=5)
        result = await client.send(RecordingContext(), "Teach.", step=StepType.TEACHING)
        assert result.text.endswith(prompts.gate_question)
        assert "quiz" not in result.text.lower()

    @pytest.mark.asyncio
    async def test_guard_sent_once_per_phase_bucket(self, fake_backend, hygiene):
        client = DialogueClient(fake_backend, hygiene, retry_delays=[], timeout=5)
        context = RecordingContext()

        await client.send(context, "a", metadata={"phase": "teaching"})
        await client.send(context, "b", metadata={"phase": "comprehension"})
        await client.send(context, "c", metadata={"phase": "exercise"})

        assert context.flags == [True, False, True]
        assert phase_key("Teaching") == phase_key("comprehension")

    @pytest.mark.asyncio
    async def test_guard_not_marked_after_failure(self, fake_backend, hygiene):
        fake_backend.replies = [DialogueServiceError("down", status_code=503)]
        client = DialogueClient(fake_backend, hygiene, retry_delays=[], timeout=5)
        context = RecordingContext()

        failed = await client.send(context, "a", metadata={"phase": "worksheet"})
        await client.send(context, "b", metadata={"phase": "worksheet"})

        assert not failed.success
        assert context.flags == [True, True]
        assert not client.needs_guard("worksheet")

    @pytest.mark.asyncio
    async def test_cancel_returns_aborted_result(self, fake_backend, hygiene):
        fake_backend.gate = asyncio.Event()
        client = DialogueClient(fake_backend, hygiene, retry_delays=[], timeout=5)

        pending = asyncio.create_task(client.send(RecordingContext(), "slow"))
        await asyncio.sleep(0.01)
        assert client.in_flight
        assert client.cancel()

        result = await pending
        assert result.aborted
        assert not result.success
        assert not client.in_flight
        assert not client.cancel()

    @pytest.mark.asyncio
    async def test_new_send_aborts_previous(self, fake_backend, hygiene):
        fake_backend.gate = asyncio.Event()
        client = DialogueClient(fake_backend, hygiene, retry_delays=[], timeout=5)

        first = asyncio.create_task(client.send(RecordingContext(), "first"))
        await asyncio.sleep(0.01)
        second = asyncio.create_task(client.send(RecordingContext(), "second"))
        await asyncio.sleep(0.01)
        fake_backend.gate.set()

        assert (await first).aborted
        assert (await second).success

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self, hygiene):
        class SlowBackend:
            async def complete(self, request):
                await asyncio.sleep(5)

            async def warm(self):
                pass

            async def close(self):
                pass

        client = DialogueClient(SlowBackend(), hygiene, retry_delays=[], timeout=0.05)
        result = await client.send(RecordingContext(), "slow")
        assert not result.success
        assert not result.aborted
        assert result.error == GENERIC_UNAVAILABLE_MESSAGE

    @pytest.mark.asyncio
    async def test_reply_audio_is_decoded(self, hygiene):
        class AudioBackend:
            async def complete(self, request):
                return DialogueReply(reply="Hi.", audio=f"data:audio/mpeg;base64,{AUDIO}")

            async def warm(self):
                pass

            async def close(self):
                pass

        client = DialogueClient(AudioBackend(), hygiene, retry_delays=[], timeout=5)
        result = await client.send(RecordingContext(), "hi")
        assert result.audio == b"ID3-fake-mp3"

    @pytest.mark.asyncio
    async def test_speech_fills_in_missing_audio(self, fake_backend, hygiene):
        speech = SpeechClient(url="http://speech.test/tts", timeout=5)
        speech._client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"audio": AUDIO}))
        )
        client = DialogueClient(fake_backend, hygiene, speech=speech, retry_delays=[], timeout=5)
        result = await client.send(RecordingContext(), "hi")
        assert result.audio == b"ID3-fake-mp3"
        await speech.close()


class TestSpeech:

    @pytest.mark.parametrize("payload, expected", [
        (AUDIO, b"ID3-fake-mp3"),
        (f"data:audio/mpeg;base64,{AUDIO}", b"ID3-fake-mp3"),
        ("%%%not-base64%%%", None),
        ("", None),
        (None, None),
    ])
    def test_decode_audio(self, payload, expected):
        assert decode_audio(payload) == expected

    @pytest.mark.asyncio
    async def test_disabled_speech_returns_none(self):
        assert await SpeechClient(url="").synthesize("Hello.") is None

    @pytest.mark.asyncio
    async def test_failed_synthesis_returns_none(self):
        speech = SpeechClient(url="http://speech.test/tts", timeout=5)
        speech._client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
        assert await speech.synthesize("Hello.") is None
        await speech.close()


class CountingSpeechServer:
    """MockTransport handler that answers with the requested text as audio."""

    def __init__(self, status=200):
        self.status = status
        self.texts = []

    def __call__(self, request):
        text = json.loads(request.content)["text"]
        self.texts.append(text)
        if self.status != 200:
            return httpx.Response(self.status)
        return httpx.Response(200, json={"audio": base64.b64encode(text.encode()).decode()})


def speech_client(server, cache_size=3):
    speech = SpeechClient(url="http://speech.test/tts", timeout=5, cache_size=cache_size)
    speech._client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    return speech


class TestSpeechCache:
    """
    **Feature: lesson-tutor, Property: Repeated lines are synthesized once**
    """

    @pytest.mark.asyncio
    async def test_same_text_is_fetched_once(self):
        server = CountingSpeechServer()
        speech = speech_client(server)
        first = await speech.synthesize("Question 2. What is 1/2 + 1/4?")
        again = await speech.synthesize("  question 2. what is 1/2 + 1/4?  ")
        assert first == again
        assert len(server.texts) == 1
        await speech.close()

    @pytest.mark.asyncio
    async def test_least_recently_used_entry_is_evicted(self):
        server = CountingSpeechServer()
        speech = speech_client(server, cache_size=2)
        await speech.synthesize("one")
        await speech.synthesize("two")
        await speech.synthesize("one")
        await speech.synthesize("three")
        assert speech.cached_count == 2

        await speech.synthesize("one")
        await speech.synthesize("two")
        assert server.texts == ["one", "two", "three", "two"]
        await speech.close()

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self):
        server = CountingSpeechServer(status=503)
        speech = speech_client(server)
        assert await speech.synthesize("Hello.") is None
        assert await speech.synthesize("Hello.") is None
        assert len(server.texts) == 2
        assert speech.cached_count == 0
        await speech.close()

    @pytest.mark.asyncio
    async def test_prefetched_text_is_served_from_cache(self):
        server = CountingSpeechServer()
        speech = speech_client(server)
        speech.prefetch("Question 3. Name the bottom number.")
        speech.prefetch("Question 3. Name the bottom number.")

        audio = await speech.synthesize("Question 3. Name the bottom number.")
        assert audio == b"Question 3. Name the bottom number."
        assert len(server.texts) == 1
        await speech.close()

    @pytest.mark.asyncio
    async def test_prefetch_is_skipped_when_disabled(self):
        speech = SpeechClient(url="")
        speech.prefetch("Hello.")
        assert speech.cached_count == 0
