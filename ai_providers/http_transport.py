"""原始 HTTP 传输：httpx 直接 POST OpenAI Responses API，text.format 使用 json_schema 约束输出。"""
import json
import logging
from typing import Any

import httpx

from config import Settings
from llm_runner import split_data_url
from orchestration.errors import TransportError

from .transport import CompletionRequest, Transport

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


class HttpTransport(Transport):
    name = "http"

    def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None):
        super().__init__(settings)
        base = (settings.openai_base_url or OPENAI_BASE_URL).rstrip("/")
        self.url = f"{base}/responses"
        # 超时由编排层计时器负责；这里只兜一个较长的底线
        self._client = client or httpx.AsyncClient(timeout=120)

    def build_payload(self, request: CompletionRequest) -> dict[str, Any]:
        content: list[dict[str, Any]] = [{"type": "input_text", "text": request.instruction}]
        if request.image:
            mime_type, b64 = split_data_url(request.image)
            content.append({"type": "input_image", "image_url": f"data:{mime_type};base64,{b64}"})
        payload: dict[str, Any] = {
            "model": request.model,
            "input": [{"role": "user", "content": content}],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "result",
                    # unit / note / calculation / method_hint 是可选字段，strict 模式要求全部 required，所以关闭
                    "strict": False,
                    "schema": request.schema,
                }
            },
        }
        max_tokens = self.settings.llm_max_output_tokens or request.max_output_tokens
        if max_tokens:
            payload["max_output_tokens"] = max_tokens
        return payload

    @staticmethod
    def extract_output_text(body: dict[str, Any]) -> str:
        """Responses API 的输出文本在 output[].content[].text；取不到时退回整个响应体。"""
        for item in body.get("output") or []:
            for part in (item or {}).get("content") or []:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    return part["text"]
        if isinstance(body.get("output_text"), str):
            return body["output_text"]
        return json.dumps(body, ensure_ascii=False)

    async def _send(self, request: CompletionRequest) -> str:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.openai_api_key}",
        }
        try:
            r = await self._client.post(self.url, headers=headers, json=self.build_payload(request))
            r.raise_for_status()
        except httpx.HTTPStatusError as http_err:
            body = http_err.response.text[:500]
            raise TransportError(f"OpenAI API error ({http_err.response.status_code}): {body}") from http_err
        except httpx.RequestError as net_err:
            raise TransportError(f"OpenAI request failed: {net_err}") from net_err
        try:
            body = r.json()
        except ValueError as e:
            raise TransportError(f"Unexpected OpenAI response: {r.text[:300]}") from e
        return self.extract_output_text(body)

    async def aclose(self) -> None:
        await self._client.aclose()
