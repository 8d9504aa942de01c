"""
流水线状态机：命名状态、失败原因分类、单次尝试的状态记录，以及纯函数形式的状态转移与策略。

各阶段的具体工作由 engine 完成并写入 PipelineAttempt；下一状态只由当前状态、
attempt 中的结果以及时间预算决定，不依赖网络，便于单独测试。
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from problem_analysis.schemas import AnalysisResult, DifficultyProfile, HeaderOutput, Step


class PipelineState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    HEADER_GENERATION = "header_generation"
    STEPS_GENERATION = "steps_generation"
    ASSEMBLING = "assembling"
    VALIDATING = "validating"
    FALLBACK_SINGLE_SHOT = "fallback_single_shot"
    DEGRADED = "degraded"
    SUCCESS = "success"
    FAILURE = "failure"


TERMINAL_STATES = frozenset({PipelineState.SUCCESS, PipelineState.FAILURE})
# 会发起网络调用的状态；进入前检查总时间预算
GENERATION_STATES = frozenset({
    PipelineState.PLANNING,
    PipelineState.HEADER_GENERATION,
    PipelineState.STEPS_GENERATION,
    PipelineState.FALLBACK_SINGLE_SHOT,
})


class FailureReason(str, Enum):
    PLAN_FAILED = "plan_failed"
    HEADER_FAILED = "header_failed"
    STEPS_CHUNK_TIMEOUT = "steps_chunk_timeout"
    STEPS_TOTAL_TIMEOUT = "steps_total_timeout"
    STEPS_CHUNK_FAILED = "steps_chunk_failed"
    JSON_PARSE_FAILED = "json_parse_failed"
    VERIFY_FAILED = "verify_failed"
    GATE_FAILED = "gate_failed"
    SINGLE_SHOT_TIMEOUT = "single_shot_timeout"
    SINGLE_SHOT_FAILED = "single_shot_failed"
    TRANSPORT_ERROR = "transport_error"
    TOTAL_TIMEOUT = "total_timeout"


# 同一次尝试内，单发生成因计算闸门失败最多跑到第几次闸门失败为止
MAX_GATE_FAILURES = 2

ResultSource = Literal["chunked", "single_shot", "short_answer"]


@dataclass
class PipelineAttempt:
    """一次完整尝试（规划→步骤→标题→拼装→校验，或其单发兜底）的内部状态，不持久化。"""

    index: int
    model: str
    escalated: bool
    plan: list[str] = field(default_factory=list)
    planned: bool = False
    initial_chunk_size: int = 4
    chunk_size: int = 0
    steps_model: str | None = None
    steps_escalated: bool = False
    header: HeaderOutput | None = None
    steps: list[Step] = field(default_factory=list)
    result: AnalysisResult | None = None
    source: ResultSource | None = None
    validation_ok: bool = False
    failure: FailureReason | None = None
    issues: list[str] = field(default_factory=list)
    gate_failures: int = 0
    gate_reason: str | None = None
    corrective: bool = False
    single_shot_runs: int = 0
    trail: list[str] = field(default_factory=list)


def needs_planning(profile: DifficultyProfile) -> bool:
    """只有 hard 题才单独调用规划；其余难度直接使用固定步骤数的计划。"""
    return profile.difficulty == "hard"


def choose_model(
    attempt_index: int,
    profile: DifficultyProfile,
    *,
    is_pro: bool,
    base_model: str,
    pro_model: str,
) -> tuple[str, bool]:
    """hard、几何、Pro 用户一开始就用强档；其余先用便宜档，任何重试都升级到强档。"""
    wants_strong = (
        profile.difficulty == "hard"
        or "geometry" in profile.tags
        or is_pro
        or attempt_index > 0
    )
    model = pro_model if wants_strong else base_model
    return model, model != base_model


def next_chunk_size(current: int) -> int:
    """分块大小回退：大于 2 → 2 → 1 → 0（放弃）。"""
    if current > 2:
        return 2
    if current == 2:
        return 1
    return 0


def fixed_plan(step_count: int) -> list[str]:
    return [f"ステップ{i + 1}" for i in range(max(1, step_count))]


def _after_validation(attempt: PipelineAttempt) -> PipelineState:
    if attempt.validation_ok:
        return PipelineState.SUCCESS
    if attempt.failure == FailureReason.GATE_FAILED:
        if attempt.source == "chunked":
            # 第一次闸门失败：带纠正指令重生成步骤；第二次：改走单发
            return PipelineState.STEPS_GENERATION if attempt.gate_failures == 1 else PipelineState.FALLBACK_SINGLE_SHOT
        if attempt.source == "single_shot" and attempt.gate_failures < MAX_GATE_FAILURES:
            return PipelineState.FALLBACK_SINGLE_SHOT
        return PipelineState.FAILURE
    if attempt.source == "chunked":
        return PipelineState.FALLBACK_SINGLE_SHOT
    return PipelineState.FAILURE


def _base_transition(state: PipelineState, attempt: PipelineAttempt) -> PipelineState:
    if state == PipelineState.IDLE:
        return PipelineState.PLANNING if attempt.planned else PipelineState.HEADER_GENERATION
    if state == PipelineState.PLANNING:
        return PipelineState.HEADER_GENERATION if attempt.plan else PipelineState.FALLBACK_SINGLE_SHOT
    if state == PipelineState.HEADER_GENERATION:
        return PipelineState.STEPS_GENERATION
    if state == PipelineState.STEPS_GENERATION:
        return PipelineState.ASSEMBLING if attempt.steps else PipelineState.FALLBACK_SINGLE_SHOT
    if state == PipelineState.ASSEMBLING:
        if attempt.header is None or attempt.result is None:
            return PipelineState.FALLBACK_SINGLE_SHOT
        return PipelineState.VALIDATING
    if state in (PipelineState.FALLBACK_SINGLE_SHOT, PipelineState.DEGRADED):
        return PipelineState.VALIDATING if attempt.result is not None else PipelineState.FAILURE
    if state == PipelineState.VALIDATING:
        return _after_validation(attempt)
    return state


def next_state(
    state: PipelineState,
    attempt: PipelineAttempt,
    *,
    time_exceeded: bool = False,
    degraded_available: bool = True,
) -> PipelineState:
    """
    纯转移函数。若下一状态需要发起生成调用而整次请求的时间预算已用完，
    改走一次降级（简短步骤 + 答案）；降级已用过则直接失败。
    """
    if state in TERMINAL_STATES:
        return state
    target = _base_transition(state, attempt)
    if time_exceeded and target in GENERATION_STATES:
        return PipelineState.DEGRADED if degraded_available else PipelineState.FAILURE
    return target
