"""请求/响应模型：图片或题目文本、难度控制、Pro/debug 开关、错误体。"""
from typing import Any

from pydantic import BaseModel, Field

from problem_analysis.schemas import Difficulty, DifficultyProfile, ExtractedProblem


class ReadRequest(BaseModel):
    image: str = Field(..., min_length=1, description="题目图片，裸 base64 或 data URL")


class ReadResponse(BaseModel):
    problems: list[ExtractedProblem]


class SolveRequest(BaseModel):
    image: str | None = Field(None, description="题目图片；同时给出 problem 时只作为单发兜底的参考")
    problem: str | None = Field(None, description="题目文本，优先于图片")
    difficulty: Difficulty | None = Field(None, description="指定难度，覆盖关键词估计")
    is_pro: bool = False
    debug: bool = False
    client_id: str | None = Field(None, description="调用方标识；同一标识的新请求开始后，旧请求返回 204 且不带结果")


class AnalyzeRequest(BaseModel):
    problem: str = Field(..., min_length=1, description="题目文本")
    difficulty: Difficulty | None = None
    meta: DifficultyProfile | None = Field(None, description="之前算好的难度画像，给出时不再估计")
    is_pro: bool = False
    debug: bool = False
    client_id: str | None = Field(None, description="调用方标识；同一标识的新请求开始后，旧请求返回 204 且不带结果")


class DrillRequest(BaseModel):
    problem: str = Field(..., min_length=1, description="原题文本")


class ErrorResponse(BaseModel):
    error: str = Field(..., description="可直接展示的错误信息")
    code: str | None = Field(None, description="内部原因码")
    debug: dict[str, Any] | None = None
