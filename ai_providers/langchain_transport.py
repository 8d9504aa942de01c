"""SDK 风格传输：经 LangChain ChatOpenAI.ainvoke 调用，JSON Schema 通过 response_format 约束，并在提示词末尾重复一次。"""
import json
import logging

from langchain_core.messages import HumanMessage

from llm_runner import build_multimodal_content, get_chat_model

from .transport import CompletionRequest, Transport

logger = logging.getLogger(__name__)


def _json_hint(schema: dict) -> str:
    return (
        "\n\n**重要：JSON だけを出力し、Markdown のコードブロック（```）や説明文は付けないこと。**"
        f"\nJSON Schema: {json.dumps(schema, ensure_ascii=False)}"
    )


class LangChainTransport(Transport):
    name = "langchain"

    async def _send(self, request: CompletionRequest) -> str:
        llm = get_chat_model(self.settings, model=request.model, max_tokens=request.max_output_tokens)
        # unit / note / calculation / method_hint 是可选字段，strict 模式要求全部 required，所以关闭
        bound = llm.bind(
            response_format={
                "type": "json_schema",
                "json_schema": {"name": "result", "strict": False, "schema": request.schema},
            }
        )
        content = build_multimodal_content(request.instruction + _json_hint(request.schema), request.image)
        msg = await bound.ainvoke([HumanMessage(content=content)])
        raw = msg.content if hasattr(msg, "content") else str(msg)
        if isinstance(raw, list):
            # 部分模型返回分段 content
            raw = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in raw)
        return raw
