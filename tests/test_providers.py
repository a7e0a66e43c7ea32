"""Tests for provider token extraction and streaming over HTTP."""
from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from conftest import collect
from generation import HttpError, LLMClientError, Message
from generation.http import bearer_headers, post_json, stream_post
from generation.providers import anthropic_client, azure_openai_client, cohere_client
from generation.providers import huggingface_client, ollama_client, openai_client
from generation.providers import google_client, togetherai_client
from generation.providers.anthropic_client import AnthropicClient, AnthropicConfig
from generation.providers.ollama_client import OllamaClient, OllamaConfig
from generation.providers.openai_client import OpenAIClient, OpenAIConfig
from streaming import CancellationToken, ProviderStreamError, StreamDecodeError

OPENAI_CHAT_BODY = (
    'data: {"id":"1","choices":[{"index":0,"delta":{"role":"assistant"}}]}\n\n'
    'data: {"id":"1","choices":[{"index":0,"delta":{"content":"Hel"}}]}\n\n'
    'data: {"id":"1","choices":[{"index":0,"delta":{"content":"lo"}}]}\n\n'
    'data: {"id":"1","choices":[]}\n\n'
    "data: [DONE]\n\n"
).encode("utf-8")

ANTHROPIC_MESSAGES_BODY = (
    'event: message_start\ndata: {"type":"message_start","message":{"id":"msg_1"}}\n\n'
    'event: content_block_start\ndata: {"type":"content_block_start","index":0}\n\n'
    "event: ping\ndata: {\"type\":\"ping\"}\n\n"
    'event: content_block_delta\ndata: {"type":"content_block_delta","index":0,'
    '"delta":{"type":"text_delta","text":"Bonjour"}}\n\n'
    'event: content_block_delta\ndata: {"type":"content_block_delta","index":0,'
    '"delta":{"type":"text_delta","text":" à tous"}}\n\n'
    'event: message_stop\ndata: {"type":"message_stop"}\n\n'
).encode("utf-8")


class Recorder:
    """MockTransport handler that records requests and replays a body."""

    def __init__(self, body: bytes = b"", status_code: int = 200, chunk_size: int = 0):
        self.body = body
        self.status_code = status_code
        self.chunk_size = chunk_size
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.chunk_size:
            return httpx.Response(self.status_code, content=self._chunks())
        return httpx.Response(self.status_code, content=self.body)

    async def _chunks(self):
        for i in range(0, len(self.body), self.chunk_size):
            yield self.body[i:i + self.chunk_size]

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


def mock_client(recorder: Recorder) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder))


class TestTokenExtractors:
    """Tests for the per-provider chunk to token functions."""

    def test_openai_chat(self):
        """Role-only deltas and empty choices give no text."""
        assert openai_client.chat_chunk_to_token({"choices": [{"delta": {"content": "x"}}]}) == "x"
        assert openai_client.chat_chunk_to_token({"choices": [{"delta": {"role": "assistant"}}]}) == ""
        assert openai_client.chat_chunk_to_token({"choices": []}) == ""

    def test_openai_completion(self):
        """Completion chunks carry text on the choice."""
        assert openai_client.completion_chunk_to_token({"choices": [{"text": "abc"}]}) == "abc"

    def test_anthropic_completion(self):
        """Only completion events carry text."""
        chunk = {"event": "completion", "data": {"completion": " hi"}}
        assert anthropic_client.completion_chunk_to_token(chunk) == " hi"
        assert anthropic_client.completion_chunk_to_token({"event": "ping", "data": {}}) == ""

    def test_anthropic_message(self):
        """Only text deltas carry text."""
        chunk = {
            "event": "content_block_delta",
            "data": {"delta": {"type": "text_delta", "text": "yo"}},
        }
        assert anthropic_client.message_chunk_to_token(chunk) == "yo"
        tool_chunk = {
            "event": "content_block_delta",
            "data": {"delta": {"type": "input_json_delta", "partial_json": "{"}},
        }
        assert anthropic_client.message_chunk_to_token(tool_chunk) == ""

    def test_anthropic_error_event(self):
        """An in-band error event is raised, not returned."""
        frame = (
            'event: error\r\ndata: {"type":"error","error":'
            '{"type":"overloaded_error","message":"Overloaded"}}\r\n\r'
        )
        with pytest.raises(ProviderStreamError) as exc_info:
            anthropic_client.parse_chunk(frame)
        assert exc_info.value.error_type == "overloaded_error"
        assert str(exc_info.value) == "overloaded_error: Overloaded"

    def test_cohere(self):
        """The final is_finished object has no text."""
        assert cohere_client.chunk_to_token({"text": " there", "is_finished": False}) == " there"
        assert cohere_client.chunk_to_token({"is_finished": True, "finish_reason": "COMPLETE"}) == ""

    def test_ollama(self):
        """The done chunk gives no text for both endpoints."""
        assert ollama_client.generation_chunk_to_token({"response": "a", "done": False}) == "a"
        assert ollama_client.generation_chunk_to_token({"response": "", "done": True}) == ""
        assert ollama_client.chat_chunk_to_token({"message": {"content": "b"}, "done": False}) == "b"
        assert ollama_client.chat_chunk_to_token({"done": True}) == ""

    def test_togetherai(self):
        """Stop markers and special tokens are dropped."""
        assert togetherai_client.chunk_to_token({"choices": [{"text": "word"}]}) == "word"
        assert togetherai_client.chunk_to_token({"choices": [{"text": "</s>"}]}) == ""
        special = {"choices": [{"text": "<eos>"}], "token": {"special": True}}
        assert togetherai_client.chunk_to_token(special) == ""

    def test_huggingface(self):
        """Special tokens are dropped."""
        assert huggingface_client.chunk_to_token({"token": {"text": "t", "special": False}}) == "t"
        assert huggingface_client.chunk_to_token({"token": {"text": "</s>", "special": True}}) == ""

    def test_azure_reuses_openai_chat(self):
        """Azure streams the OpenAI chat format."""
        assert azure_openai_client.chunk_to_token({"choices": [{"delta": {"content": "z"}}]}) == "z"

    def test_google(self):
        """Missing candidates or parts give no text."""
        chunk = {"candidates": [{"content": {"parts": [{"text": "Hallo"}], "role": "model"}}]}
        assert google_client.chunk_to_token(chunk) == "Hallo"
        assert google_client.chunk_to_token({"promptFeedback": {"blockReason": "SAFETY"}}) == ""
        assert google_client.chunk_to_token({"candidates": []}) == ""
        assert google_client.chunk_to_token({"candidates": [{"finishReason": "STOP"}]}) == ""
        assert google_client.chunk_to_token({"candidates": [{"content": {"parts": []}}]}) == ""


class TestRequestBuilding:
    """Tests for URLs and headers."""

    def test_bearer_headers(self):
        """The API key becomes a bearer token."""
        headers = bearer_headers("sk-1", {"x-extra": "1"})
        assert headers["authorization"] == "Bearer sk-1"
        assert headers["x-extra"] == "1"
        assert "authorization" not in bearer_headers()

    def test_anthropic_headers(self):
        """Anthropic uses x-api-key and a pinned API version."""
        headers = anthropic_client.headers("key")
        assert headers["x-api-key"] == "key"
        assert headers["anthropic-version"] == anthropic_client.ANTHROPIC_VERSION

    def test_azure_url_from_deployment(self):
        """A resource and deployment resolve to a chat completions URL."""
        url = azure_openai_client.create_url({"resource_name": "res", "deployment_id": "dep"})
        assert url == (
            "https://res.openai.azure.com/openai/deployments/dep/chat/completions"
            "?api-version=2023-05-15"
        )
        assert azure_openai_client.create_url("https://example.test/x") == "https://example.test/x"

    def test_azure_headers(self):
        """Azure takes the key in an api-key header."""
        assert azure_openai_client.headers("k")["api-key"] == "k"

    def test_google_urls(self):
        """The model and method go in the path; the key and alt=sse in the query."""
        assert google_client.create_url("gemini-pro", stream=False) == (
            "https://generativelanguage.googleapis.com/v1/models/gemini-pro:generateContent"
        )
        assert google_client.create_url("gemini-pro", stream=True, api_key="g k") == (
            "https://generativelanguage.googleapis.com/v1/models/gemini-pro:streamGenerateContent"
            "?key=g+k&alt=sse"
        )


class TestPostJson:
    """Tests for non-streaming requests."""

    @patch("generation.http.requests.post")
    def test_success(self, mock_post):
        """A 2xx response returns its JSON."""
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"choices": [{"message": {"content": "hi"}}]}
        mock_post.return_value = mock_response

        result = openai_client.run_chat({"model": "gpt-4o", "messages": []}, api_key="sk")

        assert result["choices"][0]["message"]["content"] == "hi"
        _, kwargs = mock_post.call_args
        assert kwargs["json"]["stream"] is False
        assert kwargs["headers"]["authorization"] == "Bearer sk"

    @patch("generation.http.requests.post")
    def test_error_status(self, mock_post):
        """A non-2xx response is an HttpError carrying the body."""
        mock_response = MagicMock()
        mock_response.status_code = 429
        mock_response.text = "rate limited"
        mock_post.return_value = mock_response

        with pytest.raises(HttpError) as exc_info:
            post_json("https://example.test", {}, {})
        assert exc_info.value.status_code == 429
        assert exc_info.value.body == "rate limited"

    @patch("generation.http.requests.post")
    def test_connection_error(self, mock_post):
        """Transport failures become LLMClientError."""
        import requests

        mock_post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(LLMClientError):
            post_json("https://example.test", {}, {})

    @patch("generation.http.requests.post")
    def test_google_run(self, mock_post):
        """Non-streaming Gemini calls use generateContent without a stream flag."""
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"candidates": []}
        mock_post.return_value = mock_response

        google_client.run({"model": "gemini-pro", "contents": []}, api_key="gk")

        args, kwargs = mock_post.call_args
        url = args[0]
        assert url.endswith("/models/gemini-pro:generateContent?key=gk")
        assert kwargs["json"] == {"contents": []}
        assert kwargs["headers"]["content-type"] == "application/json"


class TestStreamPost:
    """Tests for the streaming HTTP transport."""

    @pytest.mark.asyncio
    async def test_body_is_streamed(self):
        """The response body arrives as byte chunks."""
        recorder = Recorder(b"abcdef", chunk_size=2)
        async with mock_client(recorder) as client:
            chunks = await stream_post("https://example.test/s", {}, {"q": 1}, client=client)
            assert b"".join(await collect(chunks)) == b"abcdef"
        assert recorder.last_json == {"q": 1}

    @pytest.mark.asyncio
    async def test_error_status_raised_before_decoding(self):
        """A non-success status raises from the call, not the iteration."""
        recorder = Recorder(b'{"error": "bad key"}', status_code=401)
        async with mock_client(recorder) as client:
            with pytest.raises(HttpError) as exc_info:
                await stream_post("https://example.test/s", {}, {}, client=client)
        assert exc_info.value.status_code == 401
        assert "bad key" in exc_info.value.body

    @pytest.mark.asyncio
    async def test_transport_error(self):
        """Connection failures become LLMClientError."""
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            with pytest.raises(LLMClientError):
                await stream_post("https://example.test/s", {}, {}, client=client)

    @pytest.mark.asyncio
    async def test_cancelled_before_send(self):
        """A cancelled token yields an empty body without a request."""
        recorder = Recorder(b"data")
        token = CancellationToken()
        token.cancel()
        async with mock_client(recorder) as client:
            chunks = await stream_post("https://example.test/s", {}, {}, client=client, cancel_token=token)
            assert await collect(chunks) == []
        assert recorder.requests == []


class TestProviderStreams:
    """Tests for provider streams end to end over a mock transport."""

    @pytest.mark.asyncio
    async def test_openai_chat_tokens(self):
        """OpenAI chat streams decode to tokens and stop at [DONE]."""
        recorder = Recorder(OPENAI_CHAT_BODY, chunk_size=5)
        async with mock_client(recorder) as client:
            tokens = await openai_client.stream_chat_tokens(
                {"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]},
                api_key="sk-test",
                client=client,
            )
            assert await collect(tokens) == ["", "Hel", "lo", ""]

        request = recorder.requests[0]
        assert str(request.url) == openai_client.OPENAI_CHAT_COMPLETIONS_API_URL
        assert request.headers["authorization"] == "Bearer sk-test"
        assert recorder.last_json["stream"] is True

    @pytest.mark.asyncio
    async def test_openai_http_error(self):
        """An error status surfaces as HttpError before any token."""
        recorder = Recorder(b'{"error":{"message":"Incorrect API key"}}', status_code=401)
        async with mock_client(recorder) as client:
            with pytest.raises(HttpError):
                await openai_client.stream_chat_tokens({"model": "gpt-4o"}, client=client)

    @pytest.mark.asyncio
    async def test_openai_malformed_chunk(self):
        """A malformed frame raises after earlier tokens were delivered."""
        body = (
            b'data: {"choices":[{"delta":{"content":"ok"}}]}\n\n'
            b"data: {broken\n\n"
        )
        recorder = Recorder(body)
        received = []
        async with mock_client(recorder) as client:
            tokens = await openai_client.stream_chat_tokens({"model": "gpt-4o"}, client=client)
            with pytest.raises(StreamDecodeError):
                async for token in tokens:
                    received.append(token)
        assert received == ["ok"]

    @pytest.mark.asyncio
    async def test_anthropic_completion_tokens(self):
        """Completion events stream with pings ignored."""
        body = (
            'event: completion\r\ndata: {"completion":"Hello","stop_reason":null}\r\n\r\n'
            "event: ping\r\ndata: {}\r\n\r\n"
            'event: completion\r\ndata: {"completion":" world","stop_reason":"stop_sequence"}\r\n\r\n'
        ).encode("utf-8")
        recorder = Recorder(body, chunk_size=3)
        async with mock_client(recorder) as client:
            tokens = await anthropic_client.stream_completion_tokens(
                {"model": "claude-2", "prompt": "\n\nHuman: hi\n\nAssistant:"},
                api_key="ak",
                client=client,
            )
            assert "".join(await collect(tokens)) == "Hello world"

        request = recorder.requests[0]
        assert request.headers["x-api-key"] == "ak"
        assert request.headers["anthropic-version"] == "2023-06-01"

    @pytest.mark.asyncio
    async def test_anthropic_in_band_error(self):
        """An error event raises after the text before it."""
        body = (
            'event: completion\r\ndata: {"completion":"Par"}\r\n\r\n'
            'event: error\r\ndata: {"error":{"type":"overloaded_error","message":"Overloaded"}}\r\n\r\n'
        ).encode("utf-8")
        received = []
        async with mock_client(Recorder(body)) as client:
            tokens = await anthropic_client.stream_completion_tokens({"model": "claude-2"}, client=client)
            with pytest.raises(ProviderStreamError):
                async for token in tokens:
                    received.append(token)
        assert received == ["Par"]

    @pytest.mark.asyncio
    async def test_anthropic_messages_tokens(self):
        """Messages API events decode to text deltas only."""
        async with mock_client(Recorder(ANTHROPIC_MESSAGES_BODY, chunk_size=4)) as client:
            tokens = await anthropic_client.stream_messages_tokens({"model": "claude"}, client=client)
            assert "".join(await collect(tokens)) == "Bonjour à tous"

    @pytest.mark.asyncio
    async def test_cohere_tokens(self):
        """Cohere line-delimited chunks decode to text."""
        body = (
            b'{"text":"Hi","is_finished":false}\n'
            b'{"text":" there","is_finished":false}\n'
            b'{"is_finished":true,"finish_reason":"COMPLETE","response":{"id":"x"}}\n'
        )
        async with mock_client(Recorder(body, chunk_size=6)) as client:
            tokens = await cohere_client.stream_tokens({"prompt": "hi"}, api_key="co", client=client)
            assert "".join(await collect(tokens)) == "Hi there"

    @pytest.mark.asyncio
    async def test_togetherai_tokens(self):
        """TogetherAI streams drop the end-of-sequence marker."""
        body = (
            b'data: {"choices":[{"text":"Good"}]}\n\n'
            b'data: {"choices":[{"text":" day"}]}\n\n'
            b'data: {"choices":[{"text":"</s>"}]}\n\n'
            b"data: [DONE]\n\n"
        )
        recorder = Recorder(body)
        async with mock_client(recorder) as client:
            tokens = await togetherai_client.stream_tokens({"model": "m"}, client=client)
            assert "".join(await collect(tokens)) == "Good day"
        assert recorder.last_json["stream_tokens"] is True

    @pytest.mark.asyncio
    async def test_huggingface_streaming_unsupported(self):
        """A model without streaming support gets a clear error."""
        recorder = Recorder(b'{"error":"`stream` is not supported for this model"}', status_code=400)
        async with mock_client(recorder) as client:
            with pytest.raises(HttpError, match="does not support streaming"):
                await huggingface_client.stream_tokens({"model": "gpt2"}, client=client)
        assert str(recorder.requests[0].url) == huggingface_client.HF_MODEL_API_URL + "gpt2"

    @pytest.mark.asyncio
    async def test_azure_tokens(self):
        """Azure streams decode like OpenAI chat."""
        recorder = Recorder(OPENAI_CHAT_BODY)
        async with mock_client(recorder) as client:
            tokens = await azure_openai_client.stream_tokens(
                {"messages": []},
                api_key="az",
                api_url={"resource_name": "res", "deployment_id": "dep"},
                client=client,
            )
            assert "".join(await collect(tokens)) == "Hello"
        assert recorder.requests[0].headers["api-key"] == "az"

    @pytest.mark.asyncio
    async def test_ollama_generate_tokens(self):
        """Ollama /api/generate lines decode to text."""
        body = b'{"response":"Hola","done":false}\n{"response":"","done":true}\n'
        recorder = Recorder(body)
        async with mock_client(recorder) as client:
            tokens = await ollama_client.stream_tokens({"model": "llama3.2", "prompt": "hi"}, client=client)
            assert await collect(tokens) == ["Hola", ""]
        assert recorder.requests[0].url.path == "/api/generate"

    @pytest.mark.asyncio
    async def test_google_tokens(self):
        """Gemini SSE events decode to text; the model is sent in the URL only."""
        body = (
            'data: {"candidates":[{"content":{"parts":[{"text":"Guten"}],"role":"model"}}]}\r\n\r\n'
            'data: {"candidates":[{"content":{"parts":[{"text":" Tag 👋"}],"role":"model"}}]}\r\n\r\n'
            'data: {"candidates":[{"content":{"role":"model"},"finishReason":"STOP"}]}\r\n\r\n'
        ).encode("utf-8")
        recorder = Recorder(body, chunk_size=5)
        request = {"model": "gemini-pro", "contents": [{"role": "user", "parts": [{"text": "hi"}]}]}
        async with mock_client(recorder) as client:
            tokens = await google_client.stream_tokens(request, api_key="gk", client=client)
            assert "".join(await collect(tokens)) == "Guten Tag 👋"

        sent = recorder.requests[0]
        assert sent.url.path == "/v1/models/gemini-pro:streamGenerateContent"
        assert sent.url.params["key"] == "gk"
        assert sent.url.params["alt"] == "sse"
        assert "model" not in recorder.last_json
        assert recorder.last_json["contents"][0]["parts"][0]["text"] == "hi"
        assert request["model"] == "gemini-pro"

    @pytest.mark.asyncio
    async def test_google_malformed_event(self):
        """A non-JSON event is a decode error."""
        body = b'data: {"candidates":[]}\r\n\r\ndata: oops\r\n\r\n'
        async with mock_client(Recorder(body)) as client:
            tokens = await google_client.stream_tokens({"model": "gemini-pro"}, client=client)
            with pytest.raises(StreamDecodeError):
                await collect(tokens)


class TestStreamingClients:
    """Tests for the client classes' streaming methods."""

    @pytest.mark.asyncio
    async def test_openai_client_stream_generate(self):
        """The system prompt and question are sent as chat messages."""
        recorder = Recorder(OPENAI_CHAT_BODY)
        async with mock_client(recorder) as http_client:
            client = OpenAIClient(OpenAIConfig(api_key="sk", model="gpt-4o-mini"), http_client=http_client)
            tokens = await collect(client.stream_generate("Q?", system_prompt="Be brief", max_tokens=50))
        assert "".join(tokens) == "Hello"

        body = recorder.last_json
        assert body["model"] == "gpt-4o-mini"
        assert body["max_tokens"] == 50
        assert body["messages"] == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Q?"},
        ]

    @pytest.mark.asyncio
    async def test_anthropic_client_stream_chat(self):
        """The system message is sent as a top-level field."""
        recorder = Recorder(ANTHROPIC_MESSAGES_BODY)
        messages = [Message(role="system", content="sys"), Message(role="user", content="hi")]
        async with mock_client(recorder) as http_client:
            client = AnthropicClient(AnthropicConfig(api_key="ak"), http_client=http_client)
            tokens = await collect(client.stream_chat(messages))
        assert "".join(tokens) == "Bonjour à tous"
        assert recorder.last_json["system"] == "sys"
        assert recorder.last_json["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_ollama_client_stream_generate(self):
        """Ollama clients stream from /api/chat."""
        body = (
            b'{"message":{"role":"assistant","content":"Salut"},"done":false}\n'
            b'{"message":{"role":"assistant","content":""},"done":true}\n'
        )
        recorder = Recorder(body)
        async with mock_client(recorder) as http_client:
            client = OllamaClient(OllamaConfig(base_url="http://ollama.test"), http_client=http_client)
            tokens = await collect(client.stream_generate("hi"))
        assert "".join(tokens) == "Salut"
        assert str(recorder.requests[0].url) == "http://ollama.test/api/chat"
        assert recorder.last_json["stream"] is True

    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self):
        """Cancelling stops token delivery without an error."""
        recorder = Recorder(OPENAI_CHAT_BODY)
        token = CancellationToken()
        received = []
        async with mock_client(recorder) as http_client:
            client = OpenAIClient(OpenAIConfig(api_key="sk"), http_client=http_client)
            async for text in client.stream_generate("hi", cancel_token=token):
                received.append(text)
                if text == "Hel":
                    token.cancel("user stopped")
        assert received == ["", "Hel"]
