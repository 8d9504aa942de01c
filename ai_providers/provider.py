"""
对外统一接口：题目抽取、按文本解析、图片/文本+难度控制解析、类题生成。
具体传输（LangChain / 原始 HTTP）在进程启动时按配置选定一次，之后每个请求都走同一个实例。
"""
import logging
from dataclasses import dataclass

from config import Settings, get_settings
from orchestration.engine import OrchestrationEngine
from orchestration.timeouts import RequestSequencer
from problem_analysis.level_estimator import estimate_level
from problem_analysis.schemas import AnalysisResult, Difficulty, DifficultyProfile, DrillResult, ExtractedProblem

from .http_transport import HttpTransport
from .langchain_transport import LangChainTransport
from .transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class AnalyzeOptions:
    debug: bool = False
    is_pro: bool = False
    prompt_append: str | None = None
    # 同一调用方（如同一浏览器标签页）的标识；给出时旧请求的结果会被新请求取代
    client_id: str | None = None


def resolve_profile(
    text: str,
    difficulty: Difficulty | None = None,
    meta: DifficultyProfile | None = None,
) -> DifficultyProfile:
    """难度来源优先级：调用方给出的 meta > 显式 difficulty > 关键词估计。"""
    if meta is not None:
        return meta
    estimated = estimate_level(text)
    if difficulty is None or difficulty == estimated.difficulty:
        return estimated
    logger.info("[provider] 使用指定难度 %s（估计为 %s）", difficulty, estimated.difficulty)
    return estimated.model_copy(update={"difficulty": difficulty})


class AIProvider:
    def __init__(self, transport: Transport, settings: Settings, engine: OrchestrationEngine | None = None):
        self.transport = transport
        self.settings = settings
        self.engine = engine or OrchestrationEngine(transport, settings)
        self._sequencers: dict[str, RequestSequencer] = {}

    @property
    def name(self) -> str:
        return self.transport.name

    async def extract_problem_text(self, image: str) -> list[ExtractedProblem]:
        return await self.engine.extract(image)

    async def analyze_from_text(
        self,
        text: str,
        difficulty: Difficulty | None = None,
        meta: DifficultyProfile | None = None,
        options: AnalyzeOptions | None = None,
        *,
        image: str | None = None,
    ) -> AnalysisResult:
        options = options or AnalyzeOptions()
        text = (text or "").strip()
        if not text:
            raise ValueError("問題文が空です")
        profile = resolve_profile(text, difficulty, meta)

        def run():
            return self.engine.analyze(
                text,
                profile,
                image=image,
                is_pro=options.is_pro,
                debug=options.debug,
                prompt_append=options.prompt_append,
            )

        if not options.client_id:
            return await run()
        # 同一调用方有更新的请求开始后，本次结果丢弃（抛 SupersededRequestError）
        sequencer = self._sequencers.setdefault(options.client_id, RequestSequencer())
        return await sequencer.run(run)

    async def analyze_with_controls(
        self,
        *,
        image: str | None = None,
        text: str | None = None,
        difficulty: Difficulty | None = None,
        options: AnalyzeOptions | None = None,
    ) -> AnalysisResult:
        """
        文本优先；只有图片时先抽取题目（取第一道），再带原图解析，
        单发兜底阶段可以看到原图。
        """
        problem_text = (text or "").strip()
        if not problem_text:
            if not image:
                raise ValueError("画像か問題文のどちらかが必要です")
            extracted = await self.extract_problem_text(image)
            problem_text = extracted[0].problem_text
            logger.info("[provider] 图片抽取出 %d 道题，解析第一道", len(extracted))
        return await self.analyze_from_text(problem_text, difficulty, options=options, image=image)

    async def generate_drill(self, text: str) -> DrillResult:
        return await self.engine.generate_drill(text)

    async def aclose(self) -> None:
        await self.transport.aclose()


def build_transport(settings: Settings) -> Transport:
    if settings.ai_provider == "http":
        return HttpTransport(settings)
    return LangChainTransport(settings)


def get_ai_provider(settings: Settings | None = None) -> AIProvider:
    settings = settings or get_settings()
    transport = build_transport(settings)
    logger.info("[provider] 使用 %s 传输 model=%s pro_model=%s", transport.name, settings.llm_model, settings.pro_model)
    return AIProvider(transport, settings)
