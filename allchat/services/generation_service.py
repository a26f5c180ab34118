"""Upstream generation adapter for OpenRouter-hosted models."""

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

import openai
import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)
from langchain_core.outputs import ChatGenerationChunk
from langchain_openai import ChatOpenAI

from allchat.core.exceptions import UpstreamCredentialError, UpstreamError
from allchat.core.settings import LLMConfig, SearchConfig
from allchat.schemas.chat_schema import SearchResult
from allchat.schemas.frame_schema import KeySource
from allchat.tools.web_search import augment_prompt, search_web

logger = structlog.get_logger()

SYSTEM_PROMPT_TEMPLATE = (
    "You are a helpful AI assistant.\n\n"
    "Current date and time: {system_time}\n"
    "When the user asks about 'today', 'now', 'yesterday', 'tomorrow', "
    "or any time-relative query, use this date to provide accurate information."
)

DeltaKind = Literal["content", "reasoning", "google_thought"]
LLMFactory = Callable[[str, str], BaseChatModel]


class OpenRouterChat(ChatOpenAI):
    """``ChatOpenAI`` that keeps the reasoning text OpenRouter streams in each delta."""

    def _convert_chunk_to_generation_chunk(
        self,
        chunk: dict,
        default_chunk_class: type,
        base_generation_info: dict | None,
    ) -> ChatGenerationChunk | None:
        generation_chunk = super()._convert_chunk_to_generation_chunk(
            chunk, default_chunk_class, base_generation_info
        )
        choices = chunk.get("choices") or []
        if generation_chunk is None or not choices:
            return generation_chunk
        delta = choices[0].get("delta") or {}
        if isinstance(generation_chunk.message, AIMessageChunk):
            for key in ("reasoning_content", "reasoning"):
                value = delta.get(key)
                if isinstance(value, str) and value:
                    generation_chunk.message.additional_kwargs[key] = value
                    break
        return generation_chunk


@dataclass(frozen=True)
class Credential:
    """API key plus where it came from."""

    api_key: str
    source: KeySource


@dataclass(frozen=True)
class Delta:
    """One normalized fragment of upstream output."""

    kind: DeltaKind
    text: str


@dataclass(frozen=True)
class ImageAttachment:
    """Base64 image passed to the model alongside the prompt."""

    data: str
    mime_type: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass(frozen=True)
class GenerationRequest:
    """Everything needed to produce one AI reply."""

    model_id: str
    history: list[tuple[str, str]]
    prompt: str
    use_web_search: bool = False
    tavily_key: str | None = None
    image: ImageAttachment | None = None


@dataclass(frozen=True)
class PreparedGeneration:
    """Request with search already performed and prompt messages built."""

    model_id: str
    messages: list[BaseMessage]
    search_results: list[SearchResult] | None = None


@dataclass
class GenerationResult:
    """Final aggregate of a finished stream."""

    content: str = ""
    reasoning: str = ""
    search_results: list[SearchResult] | None = field(default=None)


def is_google_model(model_id: str) -> bool:
    """Check if a model is served by Google (thoughts rather than reasoning)."""
    return model_id.startswith("google/")


class GenerationStream:
    """Lazy, cancellable sequence of deltas with a running aggregate.

    ``prime`` pulls the first delta so credential failures surface before
    anything is forwarded to the client.
    """

    def __init__(
        self,
        deltas: AsyncIterator[Delta],
        credential: Credential,
        search_results: list[SearchResult] | None = None,
    ) -> None:
        self.credential = credential
        self._deltas = deltas
        self._pending: Delta | None = None
        self._exhausted = False
        self.result = GenerationResult(search_results=search_results)

    async def prime(self) -> None:
        """Fetch the first delta (raises on upstream failure)."""
        try:
            self._pending = await anext(self._deltas)
        except StopAsyncIteration:
            self._exhausted = True

    def __aiter__(self) -> AsyncIterator[Delta]:
        return self._iterate()

    async def _iterate(self) -> AsyncGenerator[Delta, None]:
        if self._pending is not None:
            pending, self._pending = self._pending, None
            self._accumulate(pending)
            yield pending
        if self._exhausted:
            return
        async for delta in self._deltas:
            self._accumulate(delta)
            yield delta

    async def aclose(self) -> None:
        """Stop pulling from the upstream provider."""
        aclose = getattr(self._deltas, "aclose", None)
        if aclose is not None:
            await aclose()

    def _accumulate(self, delta: Delta) -> None:
        if delta.kind == "content":
            self.result.content += delta.text
        else:
            self.result.reasoning += delta.text


class GenerationService:
    """Normalizes upstream chat-completion streams into content/reasoning deltas."""

    def __init__(
        self,
        llm_config: LLMConfig,
        search_config: SearchConfig,
        llm_factory: LLMFactory | None = None,
    ) -> None:
        self._llm_config = llm_config
        self._search_config = search_config
        self._llm_factory = llm_factory or self._build_llm

    @property
    def default_model_id(self) -> str:
        return self._llm_config.default_model_id

    def server_credential(self) -> Credential | None:
        """Server default credential, if one is configured."""
        if not self._llm_config.has_server_key:
            return None
        return Credential(
            api_key=self._llm_config.openrouter_api_key.get_secret_value(),
            source="server_default",
        )

    def resolve_credential(self, user_api_key: str | None) -> Credential:
        """Prefer the caller's key, otherwise the server default."""
        if user_api_key:
            return Credential(api_key=user_api_key, source="user")
        server = self.server_credential()
        if server is None:
            raise UpstreamCredentialError(provider="OpenRouter")
        return server

    async def prepare(self, request: GenerationRequest) -> PreparedGeneration:
        """Run the optional web search and build the prompt messages."""
        prompt = request.prompt
        search_results: list[SearchResult] | None = None

        if request.use_web_search:
            tavily_key = (
                request.tavily_key
                or self._search_config.tavily_api_key.get_secret_value()
            )
            search_results = await search_web(
                prompt, tavily_key, max_results=self._search_config.max_results
            )
            logger.info(
                "Web search completed",
                results=len(search_results),
                key_source="user" if request.tavily_key else "server_default",
            )
            prompt = augment_prompt(request.prompt, search_results)

        messages: list[BaseMessage] = [self._build_system_message()]
        for role, content in request.history:
            if role == "user":
                messages.append(HumanMessage(content=content))
            elif role in ("ai", "assistant"):
                messages.append(AIMessage(content=content))
            elif role == "system":
                messages.append(SystemMessage(content=content))

        if request.image is not None:
            messages.append(
                HumanMessage(
                    content=[
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": request.image.data_url}},
                    ]
                )
            )
        else:
            messages.append(HumanMessage(content=prompt))

        return PreparedGeneration(
            model_id=request.model_id,
            messages=messages,
            search_results=search_results,
        )

    async def open(
        self, prepared: PreparedGeneration, credential: Credential
    ) -> GenerationStream:
        """Start streaming and prove the credential with the first delta."""
        llm = self._llm_factory(prepared.model_id, credential.api_key)
        stream = GenerationStream(
            self._normalized_deltas(llm, prepared),
            credential=credential,
            search_results=prepared.search_results,
        )
        await stream.prime()
        return stream

    async def _normalized_deltas(
        self, llm: BaseChatModel, prepared: PreparedGeneration
    ) -> AsyncGenerator[Delta, None]:
        reasoning_kind: DeltaKind = (
            "google_thought" if is_google_model(prepared.model_id) else "reasoning"
        )
        upstream = llm.astream(prepared.messages)
        try:
            async for chunk in upstream:
                for delta in split_chunk(chunk, reasoning_kind):
                    yield delta
        except openai.AuthenticationError as exc:
            raise UpstreamCredentialError(provider="OpenRouter") from exc
        except openai.PermissionDeniedError as exc:
            raise UpstreamCredentialError(provider="OpenRouter") from exc
        except openai.RateLimitError as exc:
            logger.warning("Upstream rate limit", model_id=prepared.model_id)
            raise UpstreamError(
                "The model provider is rate limiting requests. Please try again shortly."
            ) from exc
        except openai.APIStatusError as exc:
            if exc.status_code == 402:
                raise UpstreamCredentialError(
                    provider="OpenRouter",
                    message="OpenRouter API key has insufficient funds. "
                    "Please add credits to your OpenRouter account.",
                ) from exc
            logger.warning(
                "Upstream status error",
                model_id=prepared.model_id,
                status_code=exc.status_code,
            )
            raise UpstreamError() from exc
        except openai.APIError as exc:
            logger.warning("Upstream connection error", model_id=prepared.model_id)
            raise UpstreamError() from exc
        finally:
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _build_llm(self, model_id: str, api_key: str) -> BaseChatModel:
        config = self._llm_config
        return OpenRouterChat(
            model=model_id,
            api_key=api_key,
            base_url=config.openrouter_base_url,
            streaming=True,
            timeout=config.timeout_seconds,
            max_retries=0,
            default_headers={"HTTP-Referer": config.referer, "X-Title": config.title},
            extra_body={"include_reasoning": True},
        )

    @staticmethod
    def _build_system_message() -> SystemMessage:
        system_time = datetime.now(tz=UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
        return SystemMessage(content=SYSTEM_PROMPT_TEMPLATE.format(system_time=system_time))


def split_chunk(chunk: Any, reasoning_kind: DeltaKind = "reasoning") -> list[Delta]:
    """Split one upstream chunk into content and reasoning deltas.

    Handles plain string content, content-block lists (``text``, ``reasoning``,
    ``thinking``) and reasoning carried in ``additional_kwargs``.
    """
    if not isinstance(chunk, AIMessage):
        return []

    deltas: list[Delta] = []
    extra = chunk.additional_kwargs or {}
    for key in ("reasoning_content", "reasoning"):
        value = extra.get(key)
        if isinstance(value, str) and value:
            deltas.append(Delta(kind=reasoning_kind, text=value))
            break

    content = chunk.content
    if isinstance(content, str):
        if content:
            deltas.append(Delta(kind="content", text=content))
        return deltas

    for block in content:
        if isinstance(block, str):
            if block:
                deltas.append(Delta(kind="content", text=block))
            continue
        block_type = block.get("type")
        if block_type == "text" and block.get("text"):
            deltas.append(Delta(kind="content", text=block["text"]))
        elif block_type in ("reasoning", "thinking"):
            text = block.get(block_type) or block.get("text") or ""
            if isinstance(text, str) and text:
                deltas.append(Delta(kind=reasoning_kind, text=text))
    return deltas
