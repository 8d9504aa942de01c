"""基于 LangChain 的 LLM 调用公共部分：宽松 JSON 提取与修复、ChatModel 构造、多模态 content 组装。两种传输实现共用。"""
import json
import logging
import re

from json_repair import repair_json
from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI

from config import Settings
from orchestration.errors import MalformedResponseError

logger = logging.getLogger(__name__)

# 日志中 prompt/response 最大展示长度，超出截断
_LOG_CONTENT_MAX = 2000

_CODE_FENCE = re.compile(r"```(?:json|\w+)?\s*\n?(.*?)\n?\s*```", re.DOTALL)


def _truncate_for_log(s: str, max_len: int = _LOG_CONTENT_MAX) -> str:
    if len(s) <= max_len:
        return s
    return s[:max_len] + f"... [截断，共 {len(s)} 字]"


def _loads_object(candidate: str) -> dict | None:
    try:
        value = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def _repair_object(candidate: str) -> dict | None:
    """交给 json_repair 补齐被截断的字符串/键/括号、去掉多余逗号；修不出对象时返回 None。"""
    value = repair_json(candidate, return_objects=True)
    return value if isinstance(value, dict) and value else None


def extract_json_object(raw: str, context: str = "") -> dict:
    """
    从模型返回文本中取出一个 JSON 对象：
    1. 优先 ```json ... ``` 代码块
    2. 否则取第一个 { 到最后一个 } 之间的内容（容忍前后说明文字）
    3. 解析失败时用 json_repair 修复再试（含被截断、没有结尾 } 的情况）
    都失败则抛出 MalformedResponseError。
    """
    text = raw or ""
    for match in _CODE_FENCE.finditer(text):
        parsed = _loads_object(match.group(1).strip())
        if parsed is not None:
            return parsed

    start = text.find("{")
    if start == -1:
        logger.warning("[LLM] 非 JSON 输出 %s: %s", context, _truncate_for_log(text, 300))
        raise MalformedResponseError(f"no JSON object in response: {context}")

    end = text.rfind("}")
    candidates = []
    if end > start:
        candidates.append(text[start:end + 1])
    candidates.append(text[start:])

    for candidate in candidates:
        parsed = _loads_object(candidate)
        if parsed is not None:
            return parsed
    for candidate in candidates:
        parsed = _repair_object(candidate)
        if parsed is not None:
            logger.info("[LLM] JSON 修复成功 %s len=%d", context, len(candidate))
            return parsed

    logger.warning("[LLM] JSON 解析失败 %s head=%s", context, _truncate_for_log(text[start:], 300))
    logger.warning("[LLM] JSON 解析失败 %s tail=%s", context, text[-300:])
    raise MalformedResponseError(f"unparsable JSON response: {context}")


def split_data_url(image: str) -> tuple[str, str]:
    """接受 data:image/png;base64,... 或裸 base64，返回 (mime_type, base64)。"""
    match = re.match(r"^data:(image/[a-zA-Z0-9.+-]+);base64,", image)
    if match:
        return match.group(1), image[match.end():]
    if "," in image and image.startswith("data:"):
        return "image/jpeg", image.split(",", 1)[1]
    return "image/jpeg", image


def build_multimodal_content(prompt: str, image: str | None) -> str | list:
    """有图片时组装 [text, image_url]，否则直接返回文本。"""
    if not image:
        return prompt
    mime_type, b64 = split_data_url(image)
    return [
        {"type": "text", "text": prompt},
        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{b64}"}},
    ]


def get_chat_model(
    settings: Settings,
    *,
    model: str,
    max_tokens: int | None = None,
) -> BaseChatModel:
    """返回配置好的 ChatOpenAI。超时由编排层的 asyncio 计时器负责，这里不设置重试。"""
    kwargs = {
        "model": model,
        "api_key": settings.openai_api_key or None,
        "max_retries": 0,
    }
    if settings.llm_temperature is not None:
        kwargs["temperature"] = settings.llm_temperature
    if settings.openai_base_url:
        kwargs["base_url"] = settings.openai_base_url
    effective_max_tokens = settings.llm_max_output_tokens or max_tokens
    if effective_max_tokens:
        kwargs["max_tokens"] = effective_max_tokens
    return ChatOpenAI(**kwargs)
