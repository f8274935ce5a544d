"""
Model provider integrations for conductor.

WHAT THIS FILE DOES:
-------------------
The ConversationEngine talks to language models through ONE interface,
ModelProvider.call_agent(). It never sees a wire format. This module
holds that interface plus adapters for OpenAI-compatible chat completion
endpoints (OpenAI itself, and Ollama's /v1 API).

STREAMING TOOL CALLS:
--------------------
Chat completion streams deliver tool calls in fragments keyed by index:

    data: {"choices":[{"delta":{"tool_calls":[{"index":0,"id":"call_1",
           "function":{"name":"write","arguments":""}}]}}]}
    data: {"choices":[{"delta":{"tool_calls":[{"index":0,
           "function":{"arguments":"{\\"path\\": \\"a."}}]}}]}
    data: {"choices":[{"delta":{"tool_calls":[{"index":0,
           "function":{"arguments":"py\\"}"}}]}}]}
    data: [DONE]

The adapter accumulates fragments per index and reports a ToolCallDelta
holding the FULL argument text so far after every fragment. Each call's
text only ever grows, in arrival order. When the stream ends every call
gets one last delta with is_complete=True.

With stream=False the adapter makes one plain request instead. The tool
calls come from the final message and each gets only the is_complete
delta.

HISTORY CONVERSION:
------------------
Only messages after the most recent compress block are sent. The summary
itself goes first, as a system message.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Callable, Optional

import httpx

from .cancellation import AbortSignal
from .errors import ProviderError
from .messages import messages_since_compression
from .schemas import (
    AgentResponse,
    CustomCommandBlock,
    Message,
    TextBlock,
    ToolCall,
    ToolCallBlock,
    ToolCallDelta,
    Usage,
)
from .tasks import strip_ansi

logger = logging.getLogger(__name__)

ToolCallCallback = Callable[[ToolCallDelta], None]
ContentCallback = Callable[[str], None]

DEFAULT_SYSTEM_PROMPT = """You are an interactive coding assistant working in the directory {workdir}.

Use the available tools to read and change files and to run commands.
Prefer small, verifiable steps. Start long-running commands (servers,
watchers) in the background and check on them with task_output.
When the request is complete, answer with a short summary of what you did."""

COMPRESS_SYSTEM_PROMPT = """You are a conversation history compression expert. Compress the following conversation history into a concise summary that retains key information.

Requirements:
1. Preserve important technical discussion points and code examples
2. Preserve key file operations, modifications, and their locations
3. Preserve main user requirements and assistant solutions with outcomes
4. Preserve error messages and debugging steps if any
5. Use third-person summary format
6. Target 300-500 words (adjust based on content complexity)
7. Respond in the same language as the original conversation
8. If the conversation involves multiple topics, organize by sections"""


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def build_system_prompt(base: Optional[str], memory: str = "", workdir: str = "") -> str:
    """Base prompt plus the memory section, when there is memory."""
    prompt = (base or DEFAULT_SYSTEM_PROMPT).replace("{workdir}", workdir or os.getcwd())
    if memory:
        prompt += f"\n\n## Memory\n\nThe following is persistent context you have been asked to remember:\n\n{memory}"
    return prompt


def _safe_arguments(raw: str) -> str:
    if not raw or not raw.strip():
        return "{}"
    try:
        json.loads(raw, strict=False)
        return raw
    except json.JSONDecodeError:
        logger.error("Invalid tool arguments in history: %s", raw[:200])
        return "{}"


def convert_messages_for_api(messages: list[Message]) -> list[dict]:
    """
    Convert conversation messages into chat completion messages.

    Tool blocks still streaming are left out, together with their results.
    Error and command output blocks are for the user only and are skipped.
    """
    summary, recent = messages_since_compression(messages)
    converted: list[dict] = []
    if summary:
        converted.append({"role": "system", "content": f"[Compressed Message Summary] {summary}"})

    for message in recent:
        if message.role == "user":
            parts = [
                b.content for b in message.blocks
                if isinstance(b, (TextBlock, CustomCommandBlock)) and b.content
            ]
            if parts:
                converted.append({"role": "user", "content": "\n".join(parts)})
            continue

        text = "\n".join(
            b.content for b in message.blocks if isinstance(b, TextBlock) and b.content
        )
        tool_blocks = [
            b for b in message.blocks
            if isinstance(b, ToolCallBlock) and not b.streaming
        ]
        if not text and not tool_blocks:
            continue

        entry: dict = {"role": "assistant", "content": text or None}
        if tool_blocks:
            entry["tool_calls"] = [
                {
                    "id": block.id,
                    "type": "function",
                    "function": {"name": block.name, "arguments": _safe_arguments(block.arguments)},
                }
                for block in tool_blocks
            ]
        converted.append(entry)

        for block in tool_blocks:
            content = block.result if block.result is not None else (block.error or "")
            if block.error and block.result:
                content = f"{block.result}\n\nError: {block.error}"
            converted.append({
                "role": "tool",
                "tool_call_id": block.id,
                "content": strip_ansi(content),
            })

    return converted


def _parse_usage(data: Optional[dict], model: str, operation_type: str = "agent") -> Optional[Usage]:
    if not data:
        return None
    return Usage(
        prompt_tokens=data.get("prompt_tokens", 0),
        completion_tokens=data.get("completion_tokens", 0),
        total_tokens=data.get("total_tokens", 0),
        model=model,
        operation_type=operation_type,
    )


# =============================================================================
# PROVIDER INTERFACE
# =============================================================================

class ModelProvider(ABC):
    """
    Base class for model providers.

    The engine depends on this interface only. Implementations must:
    - call on_tool_call_update for every fragment, in arrival order per call
    - stop promptly when the awaiting task is cancelled (abort)
    - raise ProviderError for transport or protocol failures
    """

    model: str = ""

    @abstractmethod
    async def call_agent(
        self,
        messages: list[Message],
        tools: list[dict],
        memory: str = "",
        abort_signal: Optional[AbortSignal] = None,
        on_tool_call_update: Optional[ToolCallCallback] = None,
        on_content_update: Optional[ContentCallback] = None,
        system_prompt: Optional[str] = None,
    ) -> AgentResponse:
        """One streamed model round-trip over the full history."""
        pass

    @abstractmethod
    async def compress_messages(
        self,
        messages: list[Message],
        abort_signal: Optional[AbortSignal] = None,
    ) -> tuple[str, Optional[Usage]]:
        """Summarize messages. Returns (summary, usage)."""
        pass


# =============================================================================
# OPENAI-COMPATIBLE PROVIDERS
# =============================================================================

class OpenAIProvider(ModelProvider):
    """
    Provider for OpenAI-style /chat/completions endpoints.

    Streams with `stream_options.include_usage` so the final chunk carries
    token counts, which drive context compression. stream=False sends one
    plain request for endpoints that cannot stream tool calls.
    """

    def __init__(
        self,
        model: str = "gpt-4o",
        api_key: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        fast_model: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        stream: bool = True,
    ):
        self.model = model
        self.fast_model = fast_model or model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.stream = stream

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def call_agent(
        self,
        messages: list[Message],
        tools: list[dict],
        memory: str = "",
        abort_signal: Optional[AbortSignal] = None,
        on_tool_call_update: Optional[ToolCallCallback] = None,
        on_content_update: Optional[ContentCallback] = None,
        system_prompt: Optional[str] = None,
    ) -> AgentResponse:
        """Completion with tool calls, streamed unless stream=False."""
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": build_system_prompt(system_prompt, memory)},
                *convert_messages_for_api(messages),
            ],
        }
        if tools:
            payload["tools"] = tools

        if self.stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
            content, calls, usage, finish_reason = await self._stream_completion(
                payload, abort_signal, on_tool_call_update, on_content_update
            )
        else:
            content, calls, usage, finish_reason = await self._complete_once(payload, on_content_update)

        tool_calls = []
        for index in sorted(calls):
            entry = calls[index]
            call_id = entry["id"] or f"call_{index}"
            tool_calls.append(ToolCall(id=call_id, name=entry["name"], arguments=entry["arguments"]))
            if on_tool_call_update:
                on_tool_call_update(ToolCallDelta(
                    id=call_id,
                    name=entry["name"],
                    arguments_so_far=entry["arguments"],
                    is_complete=True,
                ))

        logger.debug("Model %s returned %d tool calls, usage=%s", self.model, len(tool_calls), usage)
        return AgentResponse(
            content=content,
            tool_calls=tool_calls,
            usage=usage,
            finish_reason=finish_reason,
        )

    async def _stream_completion(
        self,
        payload: dict,
        abort_signal: Optional[AbortSignal],
        on_tool_call_update: Optional[ToolCallCallback],
        on_content_update: Optional[ContentCallback],
    ) -> tuple[str, dict[int, dict], Optional[Usage], Optional[str]]:
        content = ""
        calls: dict[int, dict] = {}
        usage: Optional[Usage] = None
        finish_reason: Optional[str] = None

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                ) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise ProviderError(f"{self.model} returned HTTP {response.status_code}: {body[:500]}")

                    async for line in response.aiter_lines():
                        if abort_signal is not None and abort_signal.aborted:
                            break
                        if not line.startswith("data: "):
                            continue
                        data = line[6:].strip()
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError:
                            logger.debug("Skipping unparseable stream line: %s", data[:200])
                            continue

                        if chunk.get("usage"):
                            usage = _parse_usage(chunk["usage"], self.model)

                        for choice in chunk.get("choices") or []:
                            delta = choice.get("delta") or {}
                            if delta.get("content"):
                                content += delta["content"]
                                if on_content_update:
                                    on_content_update(content)
                            for fragment in delta.get("tool_calls") or []:
                                entry = _merge_fragment(calls, fragment)
                                if on_tool_call_update and entry["id"]:
                                    on_tool_call_update(ToolCallDelta(
                                        id=entry["id"],
                                        name=entry["name"],
                                        arguments_so_far=entry["arguments"],
                                    ))
                            if choice.get("finish_reason"):
                                finish_reason = choice["finish_reason"]
        except httpx.HTTPError as e:
            raise ProviderError(f"Request to {self.base_url} failed: {e}") from e

        return content, calls, usage, finish_reason

    async def _complete_once(
        self,
        payload: dict,
        on_content_update: Optional[ContentCallback],
    ) -> tuple[str, dict[int, dict], Optional[Usage], Optional[str]]:
        """Plain request; tool calls come from the final message."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                )
                if response.status_code >= 400:
                    raise ProviderError(
                        f"{self.model} returned HTTP {response.status_code}: {response.text[:500]}"
                    )
                data = response.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"Request to {self.base_url} failed: {e}") from e
        except ValueError as e:
            raise ProviderError(f"{self.model} returned invalid JSON: {e}") from e

        try:
            choice = data["choices"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected completion response: {e}") from e

        message = choice.get("message") or {}
        content = message.get("content") or ""
        if content and on_content_update:
            on_content_update(content)

        calls: dict[int, dict] = {}
        for index, call in enumerate(message.get("tool_calls") or []):
            function = call.get("function") or {}
            calls[index] = {
                "id": call.get("id") or "",
                "name": function.get("name") or "",
                "arguments": function.get("arguments") or "",
            }
        return content, calls, _parse_usage(data.get("usage"), self.model), choice.get("finish_reason")

    async def compress_messages(
        self,
        messages: list[Message],
        abort_signal: Optional[AbortSignal] = None,
    ) -> tuple[str, Optional[Usage]]:
        payload = {
            "model": self.fast_model,
            "messages": [
                {"role": "system", "content": COMPRESS_SYSTEM_PROMPT},
                {"role": "user", "content": "Please compress the following conversation history:"},
                *convert_messages_for_api(messages),
            ],
            "temperature": 0.1,
            "max_tokens": 800,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise ProviderError(f"Compression request failed: {e}") from e

        try:
            summary = (data["choices"][0]["message"]["content"] or "").strip()
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected compression response: {e}") from e
        return summary, _parse_usage(data.get("usage"), self.fast_model, "compress")


def _merge_fragment(calls: dict[int, dict], fragment: dict) -> dict:
    index = fragment.get("index", 0)
    entry = calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
    if fragment.get("id"):
        entry["id"] = fragment["id"]
    function = fragment.get("function") or {}
    if function.get("name") and not entry["name"]:
        entry["name"] = function["name"]
    if function.get("arguments"):
        entry["arguments"] += function["arguments"]
    return entry


class OllamaProvider(OpenAIProvider):
    """
    Local Ollama models through Ollama's OpenAI-compatible API.

    No API key needed; usage reporting depends on the Ollama version.
    """

    def __init__(
        self,
        model: str = "qwen2.5-coder:14b",
        base_url: str = "http://localhost:11434",
        fast_model: Optional[str] = None,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        stream: bool = True,
    ):
        super().__init__(
            model=model,
            api_key=None,
            base_url=f"{base_url.rstrip('/')}/v1",
            fast_model=fast_model,
            timeout=timeout,
            transport=transport,
            stream=stream,
        )


# =============================================================================
# FACTORY
# =============================================================================

def get_provider(model_config, stream: bool = True) -> ModelProvider:
    """
    Build a provider from a ModelConfig.

    Example config:
        model:
          provider: "openai"
          model: "gpt-4o"
          api_key_env: "OPENAI_API_KEY"

    Args:
        model_config: ModelConfig section
        stream: engine.stream; False makes one plain request per round trip

    Raises:
        ValueError: For an unknown provider type or a missing API key
    """
    provider_type = model_config.provider
    if provider_type not in ("openai", "ollama"):
        raise ValueError(
            f"Invalid provider type: '{provider_type}'. Must be one of: openai, ollama"
        )

    if provider_type == "openai":
        api_key = model_config.get_api_key(default_env="OPENAI_API_KEY")
        if not api_key:
            api_key_env = model_config.api_key_env or "OPENAI_API_KEY"
            raise ValueError(f"Model '{model_config.model}' requires {api_key_env} but it's not set")
        return OpenAIProvider(
            model=model_config.model,
            api_key=api_key,
            base_url=model_config.base_url or "https://api.openai.com/v1",
            fast_model=model_config.fast_model,
            stream=stream,
        )

    return OllamaProvider(
        model=model_config.model,
        base_url=model_config.base_url or "http://localhost:11434",
        fast_model=model_config.fast_model,
        stream=stream,
    )
