"""从环境变量或 .env 加载配置（AI 提供方、模型档位、各阶段超时、重试与分块策略等）。"""
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ---------- 提供方选择 ----------
    ai_provider: Literal["langchain", "http"] = "langchain"
    """langchain：经 ChatOpenAI 调用（SDK 风格）；http：直接 POST OpenAI Responses API。进程启动时选定。"""

    # ---------- 凭证与端点 ----------
    openai_api_key: str = ""
    """OpenAI API Key（或兼容接口的 Key），必填；为空时调用会抛出 ConfigurationError。"""
    openai_base_url: str | None = None
    """API 基础 URL，可选。用于代理或自定义端点。"""

    # ---------- 模型档位 ----------
    llm_model: str = "gpt-5-mini"
    """便宜档模型，easy/normal 题首次尝试使用。"""
    llm_pro_model: str | None = None
    """强档模型，hard/几何/Pro 用户及重试时使用；不设则与 llm_model 相同。"""
    llm_steps_escalation_model: str | None = None
    """步骤生成在分块=1 仍超时时单独升级使用的模型；不设则用 llm_pro_model。"""
    llm_temperature: float | None = None
    """生成温度；部分推理模型不支持 temperature，默认不传。"""
    llm_max_output_tokens: int | None = None
    """全局输出 token 上限，设定后覆盖按难度计算的预算。"""

    # ---------- 各阶段超时（秒） ----------
    timeout_plan: float = 10.0
    timeout_header: float = 15.0
    timeout_steps_chunk: float = 20.0
    timeout_steps_total: float = 25.0
    """步骤阶段总预算，与单块超时相互独立。"""
    timeout_single_shot: float = 30.0
    timeout_short_answer: float = 15.0
    timeout_extraction: float = 30.0
    timeout_drill: float = 30.0
    timeout_request_total: float = 35.0
    """整次请求的墙钟预算，超出后改走简短步骤 + 答案的降级路径。"""

    # ---------- 重试与分块 ----------
    max_attempts: int = 3
    """整条流水线的最大尝试次数（含首次）。"""
    initial_chunk_size: int = 4
    parallel_chunks: bool = False
    """为 True 时同一轮的各分块并发请求，按计划顺序拼接。"""
    plan_failure_policy: Literal["fixed_plan", "single_shot"] = "fixed_plan"

    # 不做规划时的固定步骤数
    fixed_plan_steps_easy: int = 3
    fixed_plan_steps_normal: int = 4
    fixed_plan_steps_hard: int = 6

    # 按难度的输出 token 预算
    tokens_easy: int = 1200
    tokens_normal: int = 2200
    tokens_hard: int = 3200

    # ---------- 输出形态 ----------
    require_method_hint: bool = False
    """为 True 时完整校验要求 method_hint 的 label/pitch 非空。"""
    strip_method_hint: bool = False
    """为 True 时返回前去掉 method_hint（不展示方法提示的版本）。"""

    @property
    def pro_model(self) -> str:
        return self.llm_pro_model or self.llm_model

    @property
    def steps_escalation_model(self) -> str:
        return self.llm_steps_escalation_model or self.pro_model


def get_settings() -> Settings:
    return Settings()
