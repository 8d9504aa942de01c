"""AI 传输层抽象：一次调用 = 提示词 + 可选图片 + 响应 JSON Schema，返回一个 JSON 对象。超时与 JSON 提取由基类统一处理。"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from config import Settings
from llm_runner import _truncate_for_log, extract_json_object
from orchestration.errors import ConfigurationError, TransportError
from orchestration.timeouts import call_with_timeout

logger = logging.getLogger(__name__)


@dataclass
class CompletionRequest:
    instruction: str
    schema: dict[str, Any]
    model: str
    context: str
    timeout: float | None = None
    image: str | None = None
    """裸 base64 或 data URL。"""
    max_output_tokens: int | None = None


class Transport(ABC):
    name = "transport"

    def __init__(self, settings: Settings):
        self.settings = settings

    def ensure_credentials(self) -> None:
        if not self.settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is not set")

    @abstractmethod
    async def _send(self, request: CompletionRequest) -> str:
        """发送请求并返回模型输出的原始文本。"""

    async def complete_json(self, request: CompletionRequest) -> dict[str, Any]:
        """
        带超时调用并解析为 JSON 对象。
        超时 -> TransportTimeoutError；网络/HTTP 失败 -> TransportError；无法解析 -> MalformedResponseError。
        """
        self.ensure_credentials()
        logger.info(
            "[%s] 请求 context=%s model=%s prompt_len=%d has_image=%s timeout=%s",
            self.name, request.context, request.model, len(request.instruction), bool(request.image), request.timeout,
        )
        logger.debug("[%s] prompt: %s", self.name, _truncate_for_log(request.instruction))
        try:
            raw = await call_with_timeout(lambda: self._send(request), request.timeout, request.context)
        except (ConfigurationError, TransportError):
            raise
        except Exception as e:
            logger.warning("[%s] 请求失败 context=%s: %s", self.name, request.context, e)
            raise TransportError(f"{self.name} request failed: {e}") from e
        logger.info("[%s] 响应 context=%s raw_len=%d", self.name, request.context, len(raw))
        logger.debug("[%s] raw response: %s", self.name, _truncate_for_log(raw))
        return extract_json_object(raw, request.context)

    async def aclose(self) -> None:
        return None
