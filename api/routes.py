"""FastAPI 路由：POST /read（抽取题目）、/solve（图片或文本解析）、/analyze（文本解析）、/drill（类题）。"""
import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse, Response

from ai_providers.provider import AIProvider, AnalyzeOptions, get_ai_provider
from api.models import AnalyzeRequest, DrillRequest, ErrorResponse, ReadRequest, ReadResponse, SolveRequest
from orchestration.errors import AnalysisError, ConfigurationError, SupersededRequestError
from problem_analysis.image_to_text import ALLOWED_IMAGE_TYPES, normalize_image_payload, to_data_url
from problem_analysis.schemas import AnalysisResult, DrillResult

logger = logging.getLogger(__name__)
router = APIRouter()


@lru_cache
def get_provider() -> AIProvider:
    """进程内只选择一次传输。"""
    return get_ai_provider()


def _error_response(error: Exception, *, debug: bool = False) -> Response:
    if isinstance(error, SupersededRequestError):
        # 同一调用方已有更新的请求，本次结果静默丢弃
        logger.info("[api] 请求被取代: %s", error)
        return Response(status_code=204)
    if isinstance(error, ConfigurationError):
        logger.error("[api] 配置错误: %s", error)
        body = ErrorResponse(error=error.operator_message, code=error.code)
        return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))
    if isinstance(error, AnalysisError):
        body = ErrorResponse(
            error=error.user_message,
            code=error.code,
            debug=(error.debug or {"reason": str(error)}) if debug else None,
        )
    else:
        body = ErrorResponse(error=str(error), code="invalid_request")
    return JSONResponse(status_code=400, content=body.model_dump(exclude_none=True))


def _image_or_400(image: str | None) -> str | None:
    if not image:
        return None
    try:
        return normalize_image_payload(image)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.post("/read", response_model=ReadResponse)
async def read_problem(req: ReadRequest, provider: AIProvider = Depends(get_provider)):
    image = _image_or_400(req.image)
    try:
        problems = await provider.extract_problem_text(image)
    except (AnalysisError, ValueError) as e:
        logger.warning("[read] 抽取失败: %s", e)
        return _error_response(e)
    return ReadResponse(problems=problems)


@router.post("/read/upload", response_model=ReadResponse)
async def read_problem_upload(
    image: UploadFile = File(..., description="题目图片"),
    provider: AIProvider = Depends(get_provider),
):
    """multipart 上传版本，浏览器表单直接提交图片文件。"""
    content_type = image.content_type or "image/jpeg"
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"不支持的图片类型，仅支持: {', '.join(sorted(ALLOWED_IMAGE_TYPES))}",
        )
    image_bytes = await image.read()
    if not image_bytes:
        raise HTTPException(status_code=400, detail="上传的图片为空")
    try:
        problems = await provider.extract_problem_text(to_data_url(image_bytes, content_type))
    except (AnalysisError, ValueError) as e:
        logger.warning("[read] 抽取失败: %s", e)
        return _error_response(e)
    return ReadResponse(problems=problems)


@router.post("/solve", response_model=AnalysisResult, response_model_exclude_none=True)
async def solve(req: SolveRequest, provider: AIProvider = Depends(get_provider)):
    image = _image_or_400(req.image)
    problem = (req.problem or "").strip() or None
    if not problem and not image:
        raise HTTPException(status_code=400, detail="请提供题目文本或题目图片")
    logger.info("[solve] 收到请求 有文字=%s 有图片=%s is_pro=%s", bool(problem), bool(image), req.is_pro)
    try:
        return await provider.analyze_with_controls(
            image=image,
            text=problem,
            difficulty=req.difficulty,
            options=AnalyzeOptions(debug=req.debug, is_pro=req.is_pro, client_id=req.client_id),
        )
    except (AnalysisError, ValueError) as e:
        logger.warning("[solve] 解析失败: %s", e)
        return _error_response(e, debug=req.debug)


@router.post("/analyze", response_model=AnalysisResult, response_model_exclude_none=True)
async def analyze(req: AnalyzeRequest, provider: AIProvider = Depends(get_provider)):
    try:
        return await provider.analyze_from_text(
            req.problem,
            req.difficulty,
            meta=req.meta,
            options=AnalyzeOptions(debug=req.debug, is_pro=req.is_pro, client_id=req.client_id),
        )
    except (AnalysisError, ValueError) as e:
        logger.warning("[analyze] 解析失败: %s", e)
        return _error_response(e, debug=req.debug)


@router.post("/drill", response_model=DrillResult)
async def drill(req: DrillRequest, provider: AIProvider = Depends(get_provider)):
    try:
        return await provider.generate_drill(req.problem)
    except (AnalysisError, ValueError) as e:
        logger.warning("[drill] 生成失败: %s", e)
        return _error_response(e)
