"""
Dialogue Client - one conversational turn with the tutor model.

Each call POSTs {system, instruction, innertext, session} to the dialogue
service and returns the reply text (after step hygiene) plus optional
speech audio.

Behavior:
- a transient 'route not ready' (404) is retried with short backoff
- any other non-2xx or a timeout yields a failed DialogueResult carrying
  a generic unavailability message
- every call runs in its own task; cancel() aborts it and the caller
  gets DialogueResult(aborted=True), never an exception
- the guard text is sent once per phase bucket and only marked sent
  after a successful reply
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

import httpx
from langchain_core.messages import HumanMessage, SystemMessage

from lesson_tutor.core.config import settings
from lesson_tutor.core.exceptions import DialogueRouteNotReadyError, DialogueServiceError
from lesson_tutor.engine.guardrails import mask_for_log
from lesson_tutor.engine.llm_factory import create_tutor_llm, extract_text
from lesson_tutor.engine.reply_hygiene import ReplyHygiene, StepType
from lesson_tutor.models.schemas import DialogueReply, DialogueRequest
from lesson_tutor.services.speech_client import SpeechClient, decode_audio

logger = logging.getLogger(__name__)


GENERIC_UNAVAILABLE_MESSAGE = "Sorry, I couldn't reach the tutor just now. Please try that again."

# Teaching and comprehension share the discussion guard
PHASE_BUCKETS = {
    "teaching": "discussion",
    "comprehension": "discussion",
}


def phase_key(phase: Optional[str]) -> str:
    raw = (phase or "unknown").lower()
    return PHASE_BUCKETS.get(raw, raw)


@dataclass
class DialogueResult:
    """Outcome of one dialogue call."""
    success: bool
    text: str = ""
    audio: Optional[bytes] = None
    aborted: bool = False
    error: Optional[str] = None
    status_code: Optional[int] = None
    usage: Optional[Dict[str, Any]] = None

    @classmethod
    def cancelled(cls) -> "DialogueResult":
        return cls(success=False, aborted=True)


# =============================================================================
# Backends
# =============================================================================

class DialogueBackend(Protocol):
    """Anything that can answer a DialogueRequest."""

    async def complete(self, request: DialogueRequest) -> DialogueReply:
        ...

    async def warm(self) -> None:
        ...

    async def close(self) -> None:
        ...


class HttpDialogueBackend:
    """Dialogue service reached over HTTP."""

    def __init__(self, url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url or settings.dialogue_url
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            # Per-call ceiling is enforced by DialogueClient
            self._client = httpx.AsyncClient(timeout=None, transport=self._transport)
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def warm(self) -> None:
        """GET the route so a lazily compiled endpoint gets registered."""
        try:
            client = await self._get_client()
            await client.get(self.url, headers={"Accept": "application/json"})
        except httpx.HTTPError:
            pass

    async def complete(self, request: DialogueRequest) -> DialogueReply:
        client = await self._get_client()
        try:
            response = await client.post(
                self.url,
                json=request.model_dump(mode="json"),
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise DialogueServiceError(f"Dialogue request failed: {e}") from e

        if response.status_code == 404:
            raise DialogueRouteNotReadyError()
        if not response.is_success:
            raise DialogueServiceError(
                f"Request failed with {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return DialogueReply.model_validate(response.json())
        except ValueError as e:
            raise DialogueServiceError(f"Malformed dialogue reply: {e}", status_code=response.status_code) from e


class GeminiDialogueBackend:
    """In-process backend answering with a Gemini chat model."""

    def __init__(self, llm=None):
        self._llm = llm

    def _get_llm(self):
        if self._llm is None:
            self._llm = create_tutor_llm()
        return self._llm

    async def warm(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def complete(self, request: DialogueRequest) -> DialogueReply:
        human = request.instruction
        if request.innertext:
            human = f"{human}\n\nLearner said: {request.innertext}"
        try:
            response = await self._get_llm().ainvoke([
                SystemMessage(content=request.system),
                HumanMessage(content=human),
            ])
        except Exception as e:
            raise DialogueServiceError(f"Gemini call failed: {e}") from e
        return DialogueReply(
            reply=extract_text(response.content),
            usage=getattr(response, "usage_metadata", None),
        )


def create_backend(kind: Optional[str] = None) -> DialogueBackend:
    """Backend selected by DIALOGUE_BACKEND."""
    if (kind or settings.dialogue_backend) == "gemini":
        return GeminiDialogueBackend()
    return HttpDialogueBackend()


# =============================================================================
# Client
# =============================================================================

class DialogueClient:
    """
    Per-session dialogue client.

    At most one call is in flight; sending a new turn aborts the
    previous one.
    """

    def __init__(
        self,
        backend: DialogueBackend,
        hygiene: ReplyHygiene,
        speech: Optional[SpeechClient] = None,
        retry_delays: Optional[List[float]] = None,
        timeout: Optional[float] = None,
    ):
        self.backend = backend
        self.hygiene = hygiene
        self.speech = speech
        self.retry_delays = list(settings.dialogue_retry_delays if retry_delays is None else retry_delays)
        self.timeout = timeout or settings.dialogue_timeout_seconds
        self._task: Optional[asyncio.Task] = None
        self._aborted: Set[asyncio.Task] = set()
        self._guard_sent: Set[str] = set()

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    def needs_guard(self, phase: Optional[str]) -> bool:
        return phase_key(phase) not in self._guard_sent

    def cancel(self) -> bool:
        """Abort the in-flight call, if any."""
        task = self._task
        if task is None or task.done():
            return False
        self._aborted.add(task)
        task.cancel()
        logger.info("[DIALOGUE] In-flight call aborted")
        return True

    async def close(self) -> None:
        self.cancel()
        await self.backend.close()

    async def send(
        self,
        build_context: Callable[[bool], str],
        instruction: str,
        *,
        learner_text: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        step: StepType = StepType.DEFAULT,
        cue_phrase: Optional[str] = None,
    ) -> DialogueResult:
        """
        Run one dialogue turn.

        Args:
            build_context: callable receiving include_guard and returning
                the context description
            instruction: task instruction for this turn
            learner_text: learner utterance, already cleaned
            metadata: session metadata (phase, subphase, step, subject)
            step: hygiene step applied to the reply
            cue_phrase: cue phrase that must appear at most once
        """
        self.cancel()
        meta = dict(metadata or {})
        meta.setdefault("step", step.value)
        include_guard = self.needs_guard(meta.get("phase"))
        request = DialogueRequest(
            system=build_context(include_guard),
            instruction=instruction,
            innertext=learner_text,
            session=meta,
        )

        task = asyncio.ensure_future(self._run(request, step, cue_phrase, include_guard))
        self._task = task
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._aborted:
                return DialogueResult.cancelled()
            raise
        finally:
            self._aborted.discard(task)
            if self._task is task:
                self._task = None

    async def _call_with_retry(self, request: DialogueRequest) -> DialogueReply:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(self.backend.complete(request), timeout=self.timeout)
            except DialogueRouteNotReadyError:
                if attempt >= len(self.retry_delays):
                    raise
                delay = self.retry_delays[attempt]
                attempt += 1
                logger.warning(f"[DIALOGUE] Route not ready; retry {attempt} in {delay}s")
                await self.backend.warm()
                await asyncio.sleep(delay)
            except asyncio.TimeoutError as e:
                raise DialogueServiceError(f"Dialogue call timed out after {self.timeout}s") from e

    async def _run(
        self,
        request: DialogueRequest,
        step: StepType,
        cue_phrase: Optional[str],
        include_guard: bool,
    ) -> DialogueResult:
        logger.info(
            f"[DIALOGUE] step={step.value} phase={request.session.get('phase')} "
            f"guard={include_guard} learner={mask_for_log(request.innertext or '')!r}"
        )
        try:
            reply = await self._call_with_retry(request)
        except DialogueServiceError as e:
            logger.error(f"[DIALOGUE] ❌ {e}")
            return DialogueResult(
                success=False,
                error=GENERIC_UNAVAILABLE_MESSAGE,
                status_code=e.status_code,
            )

        text = self.hygiene.apply(reply.reply, step, cue_phrase=cue_phrase)
        if include_guard:
            self._guard_sent.add(phase_key(request.session.get("phase")))

        audio = decode_audio(reply.audio)
        if audio is None and self.speech is not None:
            audio = await self.speech.synthesize(text)

        return DialogueResult(success=True, text=text, audio=audio, usage=reply.usage)
