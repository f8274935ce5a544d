"""
Tests for the model provider adapters.

The OpenAI-compatible adapter is driven through httpx.MockTransport, so
no network access or API key is needed.

Test list:
1. test_convert_messages_for_api - History to chat completion messages
2. test_build_system_prompt - Memory section appended only when present
3. test_streamed_tool_calls - SSE fragments become growing deltas and final calls
4. test_http_errors - Error statuses and transport failures raise ProviderError
5. test_compress_messages - Summary and compress usage returned
6. test_get_provider - Provider factory validation
7. test_non_streaming_call - stream=False makes one plain request
8. test_get_provider_options - API key lookup and the stream flag
"""

import json

import httpx
import pytest

from .config import ModelConfig
from .errors import ProviderError
from .messages import (
    add_assistant_message,
    add_compress_block,
    add_custom_command_message,
    add_error_block,
    add_user_message,
    update_tool_block,
)
from .providers import (
    OllamaProvider,
    OpenAIProvider,
    build_system_prompt,
    convert_messages_for_api,
    get_provider,
)


def _sse(*chunks) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


# =============================================================================
# TEST 1: History conversion
# =============================================================================

def test_convert_messages_for_api():
    """
    Test 1: History to chat completion messages.

    Verifies:
    - Only messages after the latest compress block are sent, summary first
    - Finished tool blocks become tool_calls plus role=tool results
    - Tool blocks still streaming and error blocks are left out
    - Custom commands are sent as user content
    """
    messages = []
    add_user_message(messages, "old question")
    add_assistant_message(messages, "old answer")
    add_compress_block(messages, 2, "The user asked an old question.")

    add_custom_command_message(messages, "review", "Review the diff", "/review")
    add_assistant_message(messages, "Reading the file")
    update_tool_block(messages, "call_1", name="read", arguments='{"path": "a.py"}',
                      streaming=False, stage="end", success=True, result="1\tprint()")
    update_tool_block(messages, "call_2", name="write", arguments='{"path": "b.py"', streaming=True)
    add_error_block(messages, "Tool 'write' was not run")

    converted = convert_messages_for_api(messages)

    assert converted[0] == {"role": "system", "content": "[Compressed Message Summary] The user asked an old question."}
    assert converted[1] == {"role": "user", "content": "Review the diff"}

    assistant = converted[2]
    assert assistant["role"] == "assistant"
    assert assistant["content"] == "Reading the file"
    assert [c["id"] for c in assistant["tool_calls"]] == ["call_1"]
    assert assistant["tool_calls"][0]["function"] == {"name": "read", "arguments": '{"path": "a.py"}'}

    assert converted[3] == {"role": "tool", "tool_call_id": "call_1", "content": "1\tprint()"}
    assert len(converted) == 4

    print("✓ Test 1 passed: History conversion works")


# =============================================================================
# TEST 2: System prompt
# =============================================================================

def test_build_system_prompt():
    """
    Test 2: Memory section appended only when present.

    Verifies:
    - {workdir} is substituted
    - Memory goes under a "## Memory" heading
    - No heading when memory is empty
    """
    prompt = build_system_prompt("Working in {workdir}.", "Use tabs", "/project")
    assert prompt.startswith("Working in /project.")
    assert "## Memory" in prompt
    assert prompt.endswith("Use tabs")

    assert "## Memory" not in build_system_prompt("Base", "", "/project")

    print("✓ Test 2 passed: System prompt built")


# =============================================================================
# TEST 3: Streaming
# =============================================================================

@pytest.mark.asyncio
async def test_streamed_tool_calls():
    """
    Test 3: SSE fragments become growing deltas and final calls.

    Verifies:
    - The request carries tools, stream_options and the memory section
    - Content updates carry the accumulated text
    - Each call's arguments_so_far only grows, then one is_complete delta
    - Usage from the final chunk is returned
    """
    requests = []
    body = _sse(
        {"choices": [{"delta": {"content": "Let me "}}]},
        {"choices": [{"delta": {"content": "look."}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": "call_1", "function": {"name": "read", "arguments": ""}}]}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "function": {"arguments": '{"path": "a.'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 1, "id": "call_2", "function": {"name": "bash", "arguments": '{"command": "ls"}'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "function": {"arguments": 'py"}'}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120}},
    )

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    provider = OpenAIProvider(model="test-model", api_key="sk-test", transport=httpx.MockTransport(handler))
    deltas = []
    contents = []
    messages = []
    add_user_message(messages, "read a.py")

    response = await provider.call_agent(
        messages,
        tools=[{"type": "function", "function": {"name": "read"}}],
        memory="Use tabs",
        on_tool_call_update=deltas.append,
        on_content_update=contents.append,
        system_prompt="You are testing in {workdir}.",
    )

    payload = requests[0]
    assert payload["model"] == "test-model"
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["tools"][0]["function"]["name"] == "read"
    assert payload["messages"][0]["role"] == "system"
    assert "Use tabs" in payload["messages"][0]["content"]
    assert payload["messages"][1] == {"role": "user", "content": "read a.py"}

    assert contents == ["Let me ", "Let me look."]
    assert response.content == "Let me look."

    first_call = [d.arguments_so_far for d in deltas if d.id == "call_1" and not d.is_complete]
    for shorter, longer in zip(first_call, first_call[1:]):
        assert longer.startswith(shorter)
    assert first_call[-1] == '{"path": "a.py"}'

    complete = [d for d in deltas if d.is_complete]
    assert [d.id for d in complete] == ["call_1", "call_2"]
    assert deltas[-2:] == complete

    assert [(c.id, c.name, c.arguments) for c in response.tool_calls] == [
        ("call_1", "read", '{"path": "a.py"}'),
        ("call_2", "bash", '{"command": "ls"}'),
    ]
    assert response.finish_reason == "tool_calls"
    assert response.usage.total_tokens == 120
    assert response.usage.model == "test-model"

    print("✓ Test 3 passed: Streamed tool calls parsed")


# =============================================================================
# TEST 4: Errors
# =============================================================================

@pytest.mark.asyncio
async def test_http_errors():
    """
    Test 4: Error statuses and transport failures raise ProviderError.

    Verifies:
    - HTTP >= 400 raises with the status code in the message
    - Connection failures are wrapped, not leaked as httpx errors
    """
    def server_error(request):
        return httpx.Response(500, text="upstream unavailable")

    provider = OpenAIProvider(api_key="sk-test", transport=httpx.MockTransport(server_error))
    with pytest.raises(ProviderError, match="HTTP 500"):
        await provider.call_agent([], tools=[])

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    provider = OpenAIProvider(api_key="sk-test", transport=httpx.MockTransport(refused))
    with pytest.raises(ProviderError, match="failed"):
        await provider.call_agent([], tools=[])

    print("✓ Test 4 passed: HTTP errors wrapped")


# =============================================================================
# TEST 5: Compression
# =============================================================================

@pytest.mark.asyncio
async def test_compress_messages():
    """
    Test 5: Summary and compress usage returned.

    Verifies:
    - The fast model is used for compression
    - The summary is stripped and usage is tagged "compress"
    """
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={
            "choices": [{"message": {"content": "  The user set up a project.  "}}],
            "usage": {"prompt_tokens": 50, "completion_tokens": 10, "total_tokens": 60},
        })

    provider = OpenAIProvider(model="big", fast_model="small", api_key="sk-test",
                              transport=httpx.MockTransport(handler))
    messages = []
    add_user_message(messages, "set up the project")

    summary, usage = await provider.compress_messages(messages)

    assert seen[0]["model"] == "small"
    assert summary == "The user set up a project."
    assert usage.operation_type == "compress"
    assert usage.total_tokens == 60

    print("✓ Test 5 passed: Compression request works")


# =============================================================================
# TEST 6: Factory
# =============================================================================

def test_get_provider(monkeypatch):
    """
    Test 6: Provider factory validation.

    Verifies:
    - Unknown provider types are rejected
    - OpenAI requires its API key variable
    - Ollama needs no key and targets the /v1 API
    """
    with pytest.raises(ValueError, match="Invalid provider type"):
        get_provider(ModelConfig(provider="carrier-pigeon"))

    monkeypatch.delenv("CONDUCTOR_TEST_KEY", raising=False)
    with pytest.raises(ValueError, match="CONDUCTOR_TEST_KEY"):
        get_provider(ModelConfig(provider="openai", api_key_env="CONDUCTOR_TEST_KEY"))

    monkeypatch.setenv("CONDUCTOR_TEST_KEY", "sk-test")
    provider = get_provider(ModelConfig(provider="openai", model="gpt-4o", api_key_env="CONDUCTOR_TEST_KEY"))
    assert isinstance(provider, OpenAIProvider)
    assert provider.api_key == "sk-test"

    local = get_provider(ModelConfig(provider="ollama", model="qwen2.5-coder", api_key_env=None))
    assert isinstance(local, OllamaProvider)
    assert local.base_url == "http://localhost:11434/v1"
    assert local.api_key is None

    print("✓ Test 6 passed: Provider factory works")


# =============================================================================
# TEST 7: Non-streaming requests
# =============================================================================

@pytest.mark.asyncio
async def test_non_streaming_call():
    """
    Test 7: stream=False makes one plain request.

    Verifies:
    - The request does not ask for a stream
    - Content is reported once and tool calls come from the final message
    - Each call gets exactly one delta, already complete
    - Usage is parsed from the response body
    """
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={
            "choices": [{
                "message": {
                    "content": "Reading both files",
                    "tool_calls": [
                        {"id": "call_1", "type": "function",
                         "function": {"name": "read", "arguments": '{"path": "a.py"}'}},
                        {"id": "call_2", "type": "function",
                         "function": {"name": "read", "arguments": '{"path": "b.py"}'}},
                    ],
                },
                "finish_reason": "tool_calls",
            }],
            "usage": {"prompt_tokens": 90, "completion_tokens": 10, "total_tokens": 100},
        })

    provider = OpenAIProvider(model="test-model", api_key="sk-test", stream=False,
                              transport=httpx.MockTransport(handler))
    deltas = []
    contents = []
    messages = []
    add_user_message(messages, "read a.py and b.py")

    response = await provider.call_agent(
        messages, tools=[], on_tool_call_update=deltas.append, on_content_update=contents.append
    )

    assert "stream" not in seen[0]
    assert "stream_options" not in seen[0]
    assert contents == ["Reading both files"]
    assert [(d.id, d.is_complete) for d in deltas] == [("call_1", True), ("call_2", True)]
    assert [(c.name, c.arguments) for c in response.tool_calls] == [
        ("read", '{"path": "a.py"}'),
        ("read", '{"path": "b.py"}'),
    ]
    assert response.finish_reason == "tool_calls"
    assert response.usage.total_tokens == 100

    def bad_gateway(request):
        return httpx.Response(502, text="bad gateway")

    provider = OpenAIProvider(api_key="sk-test", stream=False, transport=httpx.MockTransport(bad_gateway))
    with pytest.raises(ProviderError, match="HTTP 502"):
        await provider.call_agent([], tools=[])

    print("✓ Test 7 passed: Non-streaming request works")


# =============================================================================
# TEST 8: Factory options
# =============================================================================

def test_get_provider_options(monkeypatch):
    """
    Test 8: API key lookup and the stream flag.

    Verifies:
    - api_key_env falls back to OPENAI_API_KEY for OpenAI
    - ModelConfig.get_api_key reads the configured variable
    - stream=False reaches the provider
    """
    monkeypatch.setenv("OPENAI_API_KEY", "sk-default")
    config = ModelConfig(provider="openai", api_key_env=None)
    assert config.get_api_key() is None
    assert config.get_api_key(default_env="OPENAI_API_KEY") == "sk-default"

    provider = get_provider(config, stream=False)
    assert provider.api_key == "sk-default"
    assert provider.stream is False

    assert get_provider(ModelConfig(provider="ollama", api_key_env=None)).stream is True

    print("✓ Test 8 passed: Factory options work")
