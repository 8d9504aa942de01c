"""编排层异常分类：配置错误、传输超时/失败、JSON 不可解析、结构校验失败、最终耗尽、请求被取代。"""
from typing import Any

DEFAULT_USER_MESSAGE = "AIが問題を読み取れませんでした。明るい場所でもういちど撮ってみてね。"
DRILL_USER_MESSAGE = "類題を作ることができませんでした。通信状況を確認してね。"


class AnalysisError(Exception):
    """所有编排错误的基类：code 为内部原因码，user_message 可直接展示给用户。"""

    code = "analysis_error"
    user_message = DEFAULT_USER_MESSAGE
    # 是否可在流水线内部重试 / 降级
    recoverable = True

    def __init__(self, message: str = "", *, code: str | None = None, debug: dict[str, Any] | None = None):
        super().__init__(message or self.code)
        if code:
            self.code = code
        self.debug = debug


class ConfigurationError(AnalysisError):
    """凭证缺失，不重试，调用方应展示面向运维的信息。"""

    code = "credentials_missing"
    recoverable = False

    @property
    def operator_message(self) -> str:
        return str(self)


class TransportError(AnalysisError):
    code = "transport_error"


class TransportTimeoutError(TransportError):
    code = "timeout"


class MalformedResponseError(AnalysisError):
    code = "json_parse_failed"


class VerificationError(AnalysisError):
    code = "verify_failed"

    def __init__(self, issues: list[str], message: str = ""):
        super().__init__(message or f"verify_failed:{','.join(issues)}")
        self.issues = issues


class ExtractionError(AnalysisError):
    code = "extraction_failed"
    recoverable = False


class PipelineExhaustedError(AnalysisError):
    code = "pipeline_exhausted"
    recoverable = False


class SupersededRequestError(AnalysisError):
    """被更新的请求取代，结果丢弃，不向用户报告。"""

    code = "superseded"
    recoverable = False


class DrillError(AnalysisError):
    code = "drill_failed"
    user_message = DRILL_USER_MESSAGE
    recoverable = False
