"""测试公共部分：脚本化的假传输（不走网络）、可拨动的时钟、测试用配置。"""
import json
from typing import Any, Callable

import pytest

from ai_providers.transport import CompletionRequest, Transport
from config import Settings


class FakeTransport(Transport):
    """按 responder(request) 的返回值应答；返回异常实例时抛出，dict 序列化成 JSON 文本。"""

    name = "fake"

    def __init__(self, settings: Settings, responder: Callable[[CompletionRequest], Any]):
        super().__init__(settings)
        self.responder = responder
        self.requests: list[CompletionRequest] = []
        self.closed = False

    @property
    def contexts(self) -> list[str]:
        return [r.context for r in self.requests]

    async def _send(self, request: CompletionRequest) -> str:
        self.requests.append(request)
        value = self.responder(request)
        if isinstance(value, BaseException):
            raise value
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)

    async def aclose(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "openai_api_key": "sk-test",
        "llm_model": "cheap-model",
        "llm_pro_model": "strong-model",
        "llm_steps_escalation_model": "steps-model",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def make_transport():
    def factory(responder: Callable[[CompletionRequest], Any], **overrides: Any) -> FakeTransport:
        return FakeTransport(make_settings(**overrides), responder)

    return factory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
