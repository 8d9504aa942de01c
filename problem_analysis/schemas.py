"""解说数据模型：题目、步骤、途中计算、难度画像，以及各生成阶段的输出 schema。"""
from typing import Any, Literal

from pydantic import BaseModel, Field

Difficulty = Literal["easy", "normal", "hard"]


class CalculationRecord(BaseModel):
    expression: str = Field(..., description="途中计算式，如 3600 ÷ 15 或 最小公倍数(4と6)")
    result: float | None = Field(None, description="计算结果，必须为有限数值")
    unit: str | None = Field(None, description="单位，如 人/平方キロメートル")
    note: str | None = Field(None, description="补充说明")


class Step(BaseModel):
    order: int | None = Field(None, description="步骤序号，从 1 开始连续")
    hint: str = Field("", description="着眼点与作战，不给出计算结果")
    solution: str = Field("", description="意义说明与一句温和的提问，不含算式与结论")
    calculation: CalculationRecord | None = Field(None, description="仅需要新计算的步骤才有")


class MethodHint(BaseModel):
    label: str = Field("", description="解法名称")
    pitch: str = Field("", description="一句话说明为什么这样想")


class Problem(BaseModel):
    id: str = Field("", description="结果内唯一的题目 ID")
    problem_text: str = Field("", description="题目文本")
    steps: list[Step] = Field(default_factory=list, description="有序步骤列表")
    final_answer: str = Field("", description="唯一允许给出结论的字段：答え：…\\n\\n【理由】…")
    method_hint: MethodHint | None = None


class DifficultyProfile(BaseModel):
    difficulty: Difficulty
    tags: list[str] = Field(default_factory=list)
    confidence: float = Field(..., ge=0, le=1)
    signals: dict[str, bool | int] = Field(default_factory=dict)


class AnalysisResult(BaseModel):
    status: Literal["success", "error"] = "success"
    problems: list[Problem] = Field(default_factory=list)
    meta: DifficultyProfile | None = None
    debug: dict[str, Any] | None = None


class ExtractedProblem(BaseModel):
    id: str = ""
    title: str | None = None
    problem_text: str = ""


class ExtractionOutput(BaseModel):
    problems: list[ExtractedProblem] = Field(default_factory=list)


class DrillProblem(BaseModel):
    question: str
    answer: str
    explanation: str


class DrillResult(BaseModel):
    problems: list[DrillProblem] = Field(default_factory=list)


# ---------- 分阶段生成的中间输出 ----------


class PlanOutput(BaseModel):
    """规划阶段：只有步骤数与每步要点。"""

    step_count: int = 0
    step_titles: list[str] = Field(default_factory=list)


class StepsChunkOutput(BaseModel):
    steps: list[Step] = Field(default_factory=list)


class HeaderOutput(BaseModel):
    method_hint: MethodHint | None = None
    final_answer: str = ""
