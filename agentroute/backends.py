"""
Backend invocation: one network call against one backend.

Supports:
- Anthropic (Claude) via the async Anthropic SDK
- OpenAI (GPT, o-series) via the async OpenAI SDK
- GitHub Models through the same SDK pointed at its inference endpoint
- Ollama (local models) via httpx

All adapters stream, so a cancelled call can still report what was
billed before it stopped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol

import anthropic
import httpx
import openai

from .cancellation import CancellationToken, CancelledException
from .config import CREDENTIAL_ENV_VARS
from .cost import estimate_tokens
from .errors import (
    AuthenticationError,
    CandidateCancelled,
    MalformedResponse,
    ProviderConfigurationError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedByProvider,
    TransientProviderError,
)
from .types import Backend, DispatchOutcome, Provider, RequestEnvelope, ToolUse, Usage

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"
GITHUB_MODELS_URL = "https://models.github.ai/inference"


class BackendInvoker(Protocol):
    """Anything that can perform one call against one backend."""

    async def invoke(
        self,
        backend: Backend,
        envelope: RequestEnvelope,
        token: CancellationToken,
    ) -> DispatchOutcome:
        """Return the outcome or raise ProviderError (CandidateCancelled on cancel)."""
        ...


@dataclass
class UsageMeter:
    """Running usage of one streamed call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    # True once the provider reported final counts
    reported: bool = False
    chunks: list[str] = field(default_factory=list)

    def acknowledge_input(
        self,
        tokens: int,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> None:
        if self.input_tokens or self.cache_creation_tokens or self.cache_read_tokens:
            return
        self.input_tokens = tokens
        self.cache_creation_tokens = cache_creation_tokens
        self.cache_read_tokens = cache_read_tokens

    def add_text(self, text: str) -> None:
        if text:
            self.chunks.append(text)

    def report(
        self,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> None:
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.cache_creation_tokens = cache_creation_tokens
        self.cache_read_tokens = cache_read_tokens
        self.reported = True

    @property
    def text(self) -> str:
        return "".join(self.chunks)

    def billed(self) -> Usage:
        """Best-effort usage so far; exact once the provider reported it."""
        output_tokens = self.output_tokens
        if not self.reported:
            output_tokens = max(output_tokens, estimate_tokens(self.text))
        return Usage(
            input_tokens=self.input_tokens,
            output_tokens=output_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
        )


@dataclass
class Completion:
    """Provider-neutral result of a finished stream."""

    content: str
    usage: Usage
    tool_uses: tuple[ToolUse, ...] = ()
    stop_reason: str | None = None


def parse_retry_after(value: str | None) -> float | None:
    """Seconds from a `retry-after` header; HTTP-date forms are ignored."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_for_status(
    status: int,
    message: str,
    backend: str,
    retry_after: float | None = None,
) -> ProviderError:
    """Map an HTTP status onto the error taxonomy."""
    if status in (401, 403):
        return AuthenticationError(message, backend=backend)
    if status == 429:
        return RateLimitedByProvider(message, backend=backend, retry_after=retry_after)
    if status >= 500 or status == 408:
        return TransientProviderError(message, backend=backend, status=status)
    return ProviderConfigurationError(message, backend=backend)


def map_sdk_error(error: Exception, backend: str) -> ProviderError:
    """Map an Anthropic or OpenAI SDK exception onto the error taxonomy."""
    # Timeout subclasses connection error in both SDKs; check it first
    if isinstance(error, (anthropic.APITimeoutError, openai.APITimeoutError)):
        return TransientProviderError(f"{backend} request timed out", backend=backend)
    if isinstance(error, (anthropic.APIConnectionError, openai.APIConnectionError)):
        return TransientProviderError(f"{backend} connection error: {error}", backend=backend)
    if isinstance(error, (anthropic.APIStatusError, openai.APIStatusError)):
        retry_after = parse_retry_after(error.response.headers.get("retry-after"))
        return error_for_status(error.status_code, str(error), backend, retry_after)
    if isinstance(error, (anthropic.APIResponseValidationError, openai.APIResponseValidationError)):
        return MalformedResponse(f"{backend} returned an invalid payload: {error}", backend=backend)
    return TransientProviderError(f"{backend}: {error}", backend=backend)


def resolve_api_key(provider: Provider, credentials: dict[str, str] | None) -> str:
    """
    Find the API key for a cloud provider.

    Raises:
        AuthenticationError: No key in the credentials or the environment
    """
    if credentials and credentials.get(provider.value):
        return credentials[provider.value]
    var = CREDENTIAL_ENV_VARS[provider.value]
    key = os.environ.get(var)
    if not key:
        raise AuthenticationError(
            f"{provider.value} API key required. Set {var} environment variable.",
            backend=provider.value,
        )
    return key


def _openai_tools(tools: tuple[dict[str, Any], ...]) -> list[dict[str, Any]]:
    """Convert Anthropic-style tool schemas to OpenAI function tools."""
    converted = []
    for tool in tools:
        if tool.get("type") == "function":
            converted.append(tool)
            continue
        converted.append(
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema", {"type": "object", "properties": {}}),
                },
            }
        )
    return converted


class ProviderAdapter(ABC):
    """Streams one completion from one provider."""

    provider: Provider

    @abstractmethod
    async def stream(
        self,
        backend: Backend,
        envelope: RequestEnvelope,
        meter: UsageMeter,
    ) -> Completion:
        """Run the call, feeding `meter` as chunks arrive."""
        pass

    async def aclose(self) -> None:
        pass


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Claude Messages API."""

    provider = Provider.ANTHROPIC

    def __init__(
        self,
        api_key: str | None = None,
        client: anthropic.AsyncAnthropic | None = None,
    ):
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self._api_key:
                raise AuthenticationError(
                    "Anthropic API key required. Set ANTHROPIC_API_KEY environment variable.",
                    backend=self.provider.value,
                )
            # Retries and timeouts are owned by the router and invoker
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key, max_retries=0)
        return self._client

    async def stream(
        self,
        backend: Backend,
        envelope: RequestEnvelope,
        meter: UsageMeter,
    ) -> Completion:
        constraints = envelope.constraints
        request_params: dict[str, Any] = {
            "model": backend.model,
            "max_tokens": constraints.max_tokens,
            "messages": [m.to_dict() for m in envelope.messages],
        }
        if constraints.temperature is not None:
            request_params["temperature"] = constraints.temperature
        if envelope.system:
            request_params["system"] = envelope.system
        if envelope.tools:
            request_params["tools"] = list(envelope.tools)

        try:
            async with self.client.messages.stream(**request_params) as stream:
                async for event in stream:
                    if event.type == "message_start":
                        usage = event.message.usage
                        meter.acknowledge_input(
                            usage.input_tokens,
                            usage.cache_creation_input_tokens or 0,
                            usage.cache_read_input_tokens or 0,
                        )
                    elif event.type == "text":
                        meter.add_text(event.text)
                final_message = await stream.get_final_message()
        except anthropic.APIError as e:
            raise map_sdk_error(e, backend.name) from e

        content = ""
        tool_uses = []
        for block in final_message.content:
            if block.type == "text":
                content += block.text
            elif block.type == "tool_use":
                tool_uses.append(ToolUse(id=block.id, name=block.name, input=dict(block.input)))

        usage = final_message.usage
        meter.report(
            usage.input_tokens,
            usage.output_tokens,
            usage.cache_creation_input_tokens or 0,
            usage.cache_read_input_tokens or 0,
        )
        return Completion(
            content=content,
            usage=meter.billed(),
            tool_uses=tuple(tool_uses),
            stop_reason=final_message.stop_reason,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


class OpenAIAdapter(ProviderAdapter):
    """OpenAI Chat Completions API."""

    provider = Provider.OPENAI
    default_base_url: str | None = None

    def __init__(
        self,
        api_key: str | None = None,
        client: openai.AsyncOpenAI | None = None,
        base_url: str | None = None,
    ):
        self._api_key = api_key
        self._client = client
        self.base_url = base_url or self.default_base_url

    @property
    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                var = CREDENTIAL_ENV_VARS[self.provider.value]
                raise AuthenticationError(
                    f"{self.provider.value} API key required. Set {var} environment variable.",
                    backend=self.provider.value,
                )
            self._client = openai.AsyncOpenAI(
                api_key=self._api_key, base_url=self.base_url, max_retries=0
            )
        return self._client

    @staticmethod
    def _report_usage(meter: UsageMeter, usage: Any) -> None:
        # prompt_tokens includes cached tokens; bill those at the cache rate
        details = usage.prompt_tokens_details
        cached = (details.cached_tokens or 0) if details else 0
        meter.report(
            usage.prompt_tokens - cached,
            usage.completion_tokens,
            cache_read_tokens=cached,
        )

    async def stream(
        self,
        backend: Backend,
        envelope: RequestEnvelope,
        meter: UsageMeter,
    ) -> Completion:
        model = backend.model
        constraints = envelope.constraints

        # OpenAI uses system message in messages array
        messages: list[dict[str, Any]] = []
        if envelope.system:
            messages.append({"role": "system", "content": envelope.system})
        messages.extend(m.to_dict() for m in envelope.messages)

        request_params: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        # Reasoning models take max_completion_tokens and no temperature.
        # GitHub Models ids carry a vendor prefix such as "openai/o3-mini".
        if model.rsplit("/", 1)[-1].startswith(("o1", "o3", "gpt-5")):
            request_params["max_completion_tokens"] = constraints.max_tokens
        else:
            request_params["max_tokens"] = constraints.max_tokens
            if constraints.temperature is not None:
                request_params["temperature"] = constraints.temperature
        if envelope.tools:
            request_params["tools"] = _openai_tools(envelope.tools)

        stop_reason = None
        # index -> [id, name, argument fragments]
        partial_calls: dict[int, list[Any]] = {}
        try:
            stream = await self.client.chat.completions.create(**request_params)
            async for chunk in stream:
                meter.acknowledge_input(envelope.estimated_input_tokens)
                if chunk.usage:
                    self._report_usage(meter, chunk.usage)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.delta.content:
                    meter.add_text(choice.delta.content)
                for call in choice.delta.tool_calls or []:
                    entry = partial_calls.setdefault(call.index, ["", "", []])
                    if call.id:
                        entry[0] = call.id
                    if call.function and call.function.name:
                        entry[1] = call.function.name
                    if call.function and call.function.arguments:
                        entry[2].append(call.function.arguments)
                if choice.finish_reason:
                    stop_reason = choice.finish_reason
        except openai.APIError as e:
            raise map_sdk_error(e, backend.name) from e

        tool_uses = []
        for index in sorted(partial_calls):
            call_id, name, fragments = partial_calls[index]
            try:
                arguments = json.loads("".join(fragments) or "{}")
            except json.JSONDecodeError as e:
                raise MalformedResponse(
                    f"{backend.name} sent unparseable tool arguments for {name}",
                    backend=backend.name,
                ) from e
            tool_uses.append(ToolUse(id=call_id, name=name, input=arguments))

        return Completion(
            content=meter.text,
            usage=meter.billed(),
            tool_uses=tuple(tool_uses),
            stop_reason=stop_reason,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()


class GitHubAdapter(OpenAIAdapter):
    """
    GitHub Models, an OpenAI-compatible inference endpoint.

    Authenticates with a GitHub personal access token that has the
    `models:read` scope. Model ids carry a vendor prefix, for example
    `openai/gpt-4o-mini`.
    """

    provider = Provider.GITHUB
    default_base_url = GITHUB_MODELS_URL


class OllamaAdapter(ProviderAdapter):
    """Local models served by Ollama's /api/chat endpoint."""

    provider = Provider.OLLAMA

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=None)
        return self._client

    async def stream(
        self,
        backend: Backend,
        envelope: RequestEnvelope,
        meter: UsageMeter,
    ) -> Completion:
        constraints = envelope.constraints
        messages: list[dict[str, Any]] = []
        if envelope.system:
            messages.append({"role": "system", "content": envelope.system})
        messages.extend(m.to_dict() for m in envelope.messages)

        options: dict[str, Any] = {"num_predict": constraints.max_tokens}
        if constraints.temperature is not None:
            options["temperature"] = constraints.temperature
        payload: dict[str, Any] = {
            "model": backend.model,
            "messages": messages,
            "stream": True,
            "options": options,
        }
        if envelope.tools:
            payload["tools"] = _openai_tools(envelope.tools)

        url = f"{(backend.base_url or self.base_url).rstrip('/')}/api/chat"
        tool_uses: list[ToolUse] = []
        stop_reason = None
        done = False
        try:
            async with self.client.stream("POST", url, json=payload) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise error_for_status(
                        response.status_code,
                        f"{backend.name} returned {response.status_code}: {response.text}",
                        backend.name,
                        parse_retry_after(response.headers.get("retry-after")),
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    data = self._decode(line, backend.name)
                    if "error" in data:
                        raise TransientProviderError(
                            f"{backend.name}: {data['error']}", backend=backend.name
                        )
                    meter.acknowledge_input(envelope.estimated_input_tokens)
                    message = data.get("message") or {}
                    meter.add_text(message.get("content", ""))
                    for call in message.get("tool_calls") or []:
                        function = call.get("function", {})
                        tool_uses.append(
                            ToolUse(
                                id=call.get("id", f"call_{len(tool_uses)}"),
                                name=function.get("name", ""),
                                input=function.get("arguments") or {},
                            )
                        )
                    if data.get("done"):
                        done = True
                        stop_reason = data.get("done_reason")
                        if "eval_count" in data:
                            meter.report(
                                data.get("prompt_eval_count", meter.input_tokens),
                                data["eval_count"],
                            )
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{backend.name} request timed out", backend=backend.name) from e
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"{backend.name} connection error: {e}", backend=backend.name
            ) from e

        if not done:
            raise MalformedResponse(
                f"{backend.name} stream ended before completion", backend=backend.name
            )

        return Completion(
            content=meter.text,
            usage=meter.billed(),
            tool_uses=tuple(tool_uses),
            stop_reason=stop_reason,
        )

    @staticmethod
    def _decode(line: str, backend: str) -> dict[str, Any]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"{backend} sent invalid JSON: {line[:80]}", backend=backend) from e
        if not isinstance(data, dict):
            raise MalformedResponse(f"{backend} sent a non-object chunk", backend=backend)
        return data

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _wasted_cost(backend: Backend, meter: UsageMeter) -> float:
    if backend.is_free:
        return 0.0
    return backend.cost_of(meter.billed())


class ProviderInvoker:
    """
    Routes each backend to the adapter for its provider.

    Adds the hard per-call timeout, cancellation through the
    candidate's token, and wasted-cost reporting on every failure path.

    Example:
        invoker = ProviderInvoker(credentials={"anthropic": key})
        outcome = await invoker.invoke(backend, envelope, CancellationToken())
    """

    def __init__(
        self,
        credentials: dict[str, str] | None = None,
        timeout_seconds: float = 120.0,
        ollama_base_url: str = DEFAULT_OLLAMA_URL,
        adapters: dict[Provider, ProviderAdapter] | None = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._credentials = dict(credentials or {})
        self._ollama_base_url = ollama_base_url
        self._adapters: dict[Provider, ProviderAdapter] = dict(adapters or {})

    def _adapter_for(self, provider: Provider) -> ProviderAdapter:
        adapter = self._adapters.get(provider)
        if adapter is not None:
            return adapter

        if provider == Provider.ANTHROPIC:
            adapter = AnthropicAdapter(api_key=resolve_api_key(provider, self._credentials))
        elif provider == Provider.OPENAI:
            adapter = OpenAIAdapter(api_key=resolve_api_key(provider, self._credentials))
        elif provider == Provider.GITHUB:
            adapter = GitHubAdapter(api_key=resolve_api_key(provider, self._credentials))
        else:
            adapter = OllamaAdapter(base_url=self._ollama_base_url)
        self._adapters[provider] = adapter
        return adapter

    async def invoke(
        self,
        backend: Backend,
        envelope: RequestEnvelope,
        token: CancellationToken | None = None,
    ) -> DispatchOutcome:
        """
        Perform one call.

        Raises:
            CandidateCancelled: The token fired; carries cost billed so far
            ProviderTimeoutError: The hard timeout elapsed
            ProviderError: Any mapped provider failure
        """
        token = token or CancellationToken()
        adapter = self._adapter_for(backend.provider)
        meter = UsageMeter()
        start = time.perf_counter()

        try:
            completion = await asyncio.wait_for(
                token.run(adapter.stream(backend, envelope, meter)),
                timeout=self.timeout_seconds,
            )
        except CancelledException:
            billed = meter.billed()
            logger.debug(f"{backend.name} cancelled after {billed.total_tokens} tokens")
            raise CandidateCancelled(
                backend.name,
                wasted_cost=backend.cost_of(billed),
                input_tokens=billed.total_input_tokens,
                output_tokens=billed.output_tokens,
                usage=billed,
            ) from None
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(
                backend.name,
                self.timeout_seconds,
                wasted_cost=_wasted_cost(backend, meter),
            ) from None
        except ProviderError as e:
            if not e.wasted_cost:
                e.wasted_cost = _wasted_cost(backend, meter)
            raise

        latency_ms = (time.perf_counter() - start) * 1000
        usage = completion.usage
        return DispatchOutcome(
            backend=backend.name,
            content=completion.content,
            usage=usage,
            latency_ms=latency_ms,
            cost=backend.cost_of(usage),
            tool_uses=completion.tool_uses,
            stop_reason=completion.stop_reason,
        )

    async def aclose(self) -> None:
        """Close any HTTP clients the adapters opened."""
        for adapter in self._adapters.values():
            await adapter.aclose()


__all__ = [
    "AnthropicAdapter",
    "BackendInvoker",
    "Completion",
    "GITHUB_MODELS_URL",
    "GitHubAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderInvoker",
    "UsageMeter",
    "error_for_status",
    "map_sdk_error",
    "parse_retry_after",
    "resolve_api_key",
]
