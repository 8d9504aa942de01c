"""两种传输：凭证缺失、超时、HTTP 请求体与输出提取、LangChain 调用参数。"""
import asyncio
import json

import httpx
import pytest
from langchain_core.messages import AIMessage

import ai_providers.langchain_transport as langchain_transport
from ai_providers.http_transport import HttpTransport
from ai_providers.langchain_transport import LangChainTransport
from ai_providers.transport import CompletionRequest, Transport
from conftest import make_settings
from orchestration.errors import ConfigurationError, MalformedResponseError, TransportError, TransportTimeoutError

SCHEMA = {"type": "object", "additionalProperties": False, "properties": {"a": {"type": "integer"}}, "required": ["a"]}


def _request(**kwargs) -> CompletionRequest:
    values = {"instruction": "問題を解いて", "schema": SCHEMA, "model": "cheap-model", "context": "header"}
    values.update(kwargs)
    return CompletionRequest(**values)


class _SlowTransport(Transport):
    name = "slow"

    async def _send(self, request):
        await asyncio.sleep(5)
        return "{}"


class _BrokenTransport(Transport):
    name = "broken"

    async def _send(self, request):
        raise RuntimeError("connection reset")


def test_missing_credentials_is_configuration_error():
    transport = _SlowTransport(make_settings(openai_api_key=""))
    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
        asyncio.run(transport.complete_json(_request()))


def test_timeout_is_transport_timeout():
    transport = _SlowTransport(make_settings())
    with pytest.raises(TransportTimeoutError, match="Timeout: header"):
        asyncio.run(transport.complete_json(_request(timeout=0.01)))


def test_unexpected_errors_become_transport_errors():
    with pytest.raises(TransportError, match="connection reset"):
        asyncio.run(_BrokenTransport(make_settings()).complete_json(_request()))


def _http_transport(handler, **overrides) -> HttpTransport:
    settings = make_settings(**overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport(settings, client=client)


def test_http_payload_and_output_text():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        body = {"output": [{"type": "message", "content": [{"type": "output_text", "text": '{"a": 1}'}]}]}
        return httpx.Response(200, json=body)

    transport = _http_transport(handler, openai_base_url="https://proxy.example/v1/")
    result = asyncio.run(transport.complete_json(_request(image="data:image/png;base64,AAAA", max_output_tokens=2200)))

    assert result == {"a": 1}
    assert seen["url"] == "https://proxy.example/v1/responses"
    assert seen["auth"] == "Bearer sk-test"
    body = seen["body"]
    assert body["model"] == "cheap-model"
    assert body["max_output_tokens"] == 2200
    content = body["input"][0]["content"]
    assert content[0] == {"type": "input_text", "text": "問題を解いて"}
    assert content[1] == {"type": "input_image", "image_url": "data:image/png;base64,AAAA"}
    assert body["text"]["format"]["type"] == "json_schema"
    assert body["text"]["format"]["schema"] == SCHEMA
    assert body["text"]["format"]["strict"] is False


def test_http_global_token_cap_overrides_budget():
    transport = _http_transport(lambda r: httpx.Response(200, json={}), llm_max_output_tokens=500)
    payload = transport.build_payload(_request(max_output_tokens=3200))
    assert payload["max_output_tokens"] == 500


def test_http_status_error():
    transport = _http_transport(lambda r: httpx.Response(500, text="upstream down"))
    with pytest.raises(TransportError, match="500"):
        asyncio.run(transport.complete_json(_request()))


def test_http_output_text_fallbacks():
    assert HttpTransport.extract_output_text({"output_text": '{"a": 2}'}) == '{"a": 2}'
    raw = HttpTransport.extract_output_text({"a": 3})
    assert json.loads(raw) == {"a": 3}


def test_http_malformed_output():
    body = {"output": [{"content": [{"type": "output_text", "text": "ごめんなさい"}]}]}
    transport = _http_transport(lambda r: httpx.Response(200, json=body))
    with pytest.raises(MalformedResponseError):
        asyncio.run(transport.complete_json(_request()))


class _FakeBound:
    def __init__(self, reply):
        self.reply = reply
        self.messages = None

    async def ainvoke(self, messages):
        self.messages = messages
        return AIMessage(content=self.reply)


class _FakeChatModel:
    def __init__(self, reply):
        self.bound = _FakeBound(reply)
        self.bind_kwargs = None

    def bind(self, **kwargs):
        self.bind_kwargs = kwargs
        return self.bound


def test_langchain_transport_binds_schema(monkeypatch):
    fake = _FakeChatModel('```json\n{"a": 1}\n```')
    calls = {}

    def fake_get_chat_model(settings, *, model, max_tokens=None):
        calls.update(model=model, max_tokens=max_tokens)
        return fake

    monkeypatch.setattr(langchain_transport, "get_chat_model", fake_get_chat_model)
    transport = LangChainTransport(make_settings())
    result = asyncio.run(transport.complete_json(_request(image="AAAA", max_output_tokens=1200)))

    assert result == {"a": 1}
    assert calls == {"model": "cheap-model", "max_tokens": 1200}
    assert fake.bind_kwargs["response_format"]["json_schema"]["schema"] == SCHEMA
    assert fake.bind_kwargs["response_format"]["json_schema"]["strict"] is False
    content = fake.bound.messages[0].content
    assert content[0]["text"].startswith("問題を解いて")
    assert "JSON Schema" in content[0]["text"]
    assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,AAAA"


def test_langchain_transport_joins_segmented_content(monkeypatch):
    fake = _FakeChatModel([{"type": "text", "text": '{"a":'}, {"type": "text", "text": " 5}"}])
    monkeypatch.setattr(langchain_transport, "get_chat_model", lambda settings, **kwargs: fake)
    result = asyncio.run(LangChainTransport(make_settings()).complete_json(_request()))
    assert result == {"a": 5}
