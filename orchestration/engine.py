"""
编排引擎：驱动外部 AI 服务完成 规划 → 标题/答案 → 分块步骤 → 拼装 → 校验 的分阶段生成，
失败时按 分块回退（4→2→1）、步骤模型单独升级、单发兜底、外层重试升级模型、总时间降级 的顺序恢复。

只有最终耗尽（或配置错误）会越过本模块抛给调用方；各阶段失败都在这里分类并决定下一步。
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from ai_providers.transport import CompletionRequest, Transport
from config import Settings
from problem_analysis.level_estimator import output_token_budget
from problem_analysis.prompts import PromptContext, Stage, build_prompt, default_method_hint
from problem_analysis.quality_gate import (
    CORRECTIVE_INSTRUCTION,
    apply_calculation_overrides,
    normalize_calculation_expressions,
    validate_calculations,
)
from problem_analysis.schemas import (
    AnalysisResult,
    DifficultyProfile,
    DrillResult,
    ExtractedProblem,
    ExtractionOutput,
    HeaderOutput,
    MethodHint,
    PlanOutput,
    Problem,
    Step,
    StepsChunkOutput,
)
from problem_analysis.verification import (
    create_problem_id,
    normalize_step_orders,
    verify_analysis,
    verify_steps,
)

from .errors import (
    AnalysisError,
    DrillError,
    ExtractionError,
    MalformedResponseError,
    PipelineExhaustedError,
    TransportError,
    TransportTimeoutError,
    VerificationError,
)
from .state_machine import (
    FailureReason,
    PipelineAttempt,
    PipelineState,
    TERMINAL_STATES,
    choose_model,
    fixed_plan,
    needs_planning,
    next_chunk_size,
    next_state,
)
from .timeouts import Clock, Deadline

logger = logging.getLogger(__name__)


class DebugTrace:
    """请求内的诊断信息收集器：日志照常输出，调用方要求 debug 时才挂到结果上。"""

    def __init__(self, provider: str, clock: Clock):
        self._clock = clock
        self._started = clock()
        self.data: dict[str, Any] = {
            "provider": provider,
            "models_tried": [],
            "chunk_history": [],
            "steps_escalated": False,
            "header_attempts": 0,
            "gate_attempts": [],
            "transitions": [],
            "attempts": [],
        }

    def model_tried(self, model: str) -> None:
        tried = self.data["models_tried"]
        if not tried or tried[-1] != model:
            tried.append(model)

    def transition(self, attempt: PipelineAttempt, state: PipelineState) -> None:
        self.data["transitions"].append(f"{attempt.index}:{state.value}")

    def issues(self, issues: list[str]) -> None:
        self.data["verify_issues_count"] = len(issues)
        self.data["verify_issues_top3"] = issues[:3]

    def finish(self) -> dict[str, Any]:
        self.data["total_ms"] = int((self._clock() - self._started) * 1000)
        return dict(self.data)


@dataclass
class _Run:
    """一次 analyze 请求的上下文；并发请求之间不共享。"""

    problem_text: str
    profile: DifficultyProfile
    image: str | None
    is_pro: bool
    prompt_append: str | None
    deadline: Deadline
    trace: DebugTrace
    max_output_tokens: int
    degraded_used: bool = False


@dataclass
class _StepsFlags:
    force_judgement: bool = False
    avoid_duplicates: bool = False
    ignore_duplicate_similarity: bool = False
    issues: list[str] = field(default_factory=list)


def _is_recoverable(error: AnalysisError) -> bool:
    return error.recoverable


class OrchestrationEngine:
    def __init__(
        self,
        transport: Transport,
        settings: Settings,
        *,
        clock: Clock = time.monotonic,
        id_factory: Callable[[], str] = create_problem_id,
    ):
        self.transport = transport
        self.settings = settings
        self._clock = clock
        self._id_factory = id_factory
        self._handlers: dict[PipelineState, Callable[[_Run, PipelineAttempt], Awaitable[None]]] = {
            PipelineState.IDLE: self._on_idle,
            PipelineState.PLANNING: self._on_planning,
            PipelineState.HEADER_GENERATION: self._on_header,
            PipelineState.STEPS_GENERATION: self._on_steps,
            PipelineState.ASSEMBLING: self._on_assembling,
            PipelineState.VALIDATING: self._on_validating,
            PipelineState.FALLBACK_SINGLE_SHOT: self._on_single_shot,
            PipelineState.DEGRADED: self._on_degraded,
        }

    # ==================== 对外入口 ====================

    async def analyze(
        self,
        problem_text: str,
        profile: DifficultyProfile,
        *,
        image: str | None = None,
        is_pro: bool = False,
        debug: bool = False,
        prompt_append: str | None = None,
    ) -> AnalysisResult:
        """
        生成一道题的分步解说。成功返回校验通过的 AnalysisResult；
        全部尝试耗尽抛出 PipelineExhaustedError，凭证缺失抛出 ConfigurationError。
        """
        text = (problem_text or "").strip()
        if not text:
            raise ValueError("問題文が空です")

        s = self.settings
        run = _Run(
            problem_text=text,
            profile=profile,
            image=image,
            is_pro=is_pro,
            prompt_append=prompt_append,
            deadline=Deadline(s.timeout_request_total, self._clock),
            trace=DebugTrace(self.transport.name, self._clock),
            max_output_tokens=output_token_budget(
                profile, easy=s.tokens_easy, normal=s.tokens_normal, hard=s.tokens_hard
            ),
        )
        run.trace.data["difficulty"] = profile.difficulty
        logger.info(
            "[engine] 开始解析 difficulty=%s tags=%s is_pro=%s text_len=%d",
            profile.difficulty, profile.tags, is_pro, len(text),
        )

        last_failure: FailureReason | None = None
        for index in range(max(1, s.max_attempts)):
            if run.deadline.expired() and run.degraded_used:
                break
            model, escalated = choose_model(
                index, profile, is_pro=is_pro, base_model=s.llm_model, pro_model=s.pro_model
            )
            attempt = PipelineAttempt(index=index, model=model, escalated=escalated)
            run.trace.data.update(model=model, escalated=escalated, retries=index)
            run.trace.model_tried(model)
            logger.info("[engine] 第 %d/%d 次尝试 model=%s escalated=%s", index + 1, s.max_attempts, model, escalated)

            result = await self._run_attempt(run, attempt)
            run.trace.data["attempts"].append({
                "index": index,
                "model": model,
                "path": attempt.source,
                "failure": attempt.failure.value if attempt.failure else None,
                "trail": attempt.trail,
            })
            if result is not None:
                return self._finalize(run, attempt, result, debug=debug)
            last_failure = attempt.failure
            logger.warning(
                "[engine] 第 %d 次尝试失败 reason=%s issues=%s",
                index + 1, last_failure.value if last_failure else None, attempt.issues[:3],
            )

        trace = run.trace.finish()
        logger.error("[engine] 所有尝试耗尽 last_reason=%s total_ms=%s", last_failure, trace["total_ms"])
        raise PipelineExhaustedError(
            f"analysis failed after {len(trace['attempts'])} attempts: {last_failure.value if last_failure else 'unknown'}",
            debug=trace if debug else None,
        )

    async def extract(self, image: str) -> list[ExtractedProblem]:
        """从题目图片抽取一道或多道题的文本；抽不出任何题目是硬错误。"""
        if not image:
            raise ValueError("画像が空です")
        prompt = build_prompt(Stage.EXTRACTION, PromptContext())
        try:
            data = await self.transport.complete_json(CompletionRequest(
                instruction=prompt.instruction,
                schema=prompt.schema,
                model=self.settings.pro_model,
                context="extract",
                timeout=self.settings.timeout_extraction,
                image=image,
            ))
            extracted = ExtractionOutput.model_validate(data)
        except ValidationError as e:
            raise ExtractionError(f"extraction schema mismatch: {e.error_count()} errors") from e
        except AnalysisError as e:
            if not _is_recoverable(e):
                raise
            raise ExtractionError(f"extraction failed: {e}") from e

        problems: list[ExtractedProblem] = []
        for i, item in enumerate(extracted.problems):
            text = (item.problem_text or "").strip()
            if not text:
                continue
            problems.append(ExtractedProblem(id=item.id or f"p{i + 1}", title=item.title, problem_text=text))
        if not problems:
            raise ExtractionError("no problem text extracted")
        logger.info("[engine] 抽取完成 problems=%d", len(problems))
        return problems

    async def generate_drill(self, problem_text: str) -> DrillResult:
        text = (problem_text or "").strip()
        if not text:
            raise ValueError("元の問題が空です")
        prompt = build_prompt(Stage.DRILL, PromptContext(problem_text=text))
        try:
            data = await self.transport.complete_json(CompletionRequest(
                instruction=prompt.instruction,
                schema=prompt.schema,
                model=self.settings.llm_model,
                context="drill",
                timeout=self.settings.timeout_drill,
            ))
            result = DrillResult.model_validate(data)
        except ValidationError as e:
            raise DrillError(f"drill schema mismatch: {e.error_count()} errors") from e
        except AnalysisError as e:
            if not _is_recoverable(e):
                raise
            raise DrillError(f"drill failed: {e}") from e
        if not result.problems:
            raise DrillError("drill returned no problems")
        logger.info("[engine] 类题生成完成 problems=%d", len(result.problems))
        return result

    # ==================== 状态机驱动 ====================

    async def _run_attempt(self, run: _Run, attempt: PipelineAttempt) -> AnalysisResult | None:
        state = PipelineState.IDLE
        while state not in TERMINAL_STATES:
            attempt.trail.append(state.value)
            run.trace.transition(attempt, state)
            started = self._clock()
            await self._handlers[state](run, attempt)
            logger.info(
                "[engine] 阶段 %s 完成 elapsed_ms=%d failure=%s",
                state.value, int((self._clock() - started) * 1000),
                attempt.failure.value if attempt.failure else None,
            )
            state = next_state(
                state,
                attempt,
                time_exceeded=run.deadline.expired(),
                degraded_available=not run.degraded_used,
            )
        attempt.trail.append(state.value)
        run.trace.transition(attempt, state)
        if state == PipelineState.SUCCESS:
            return attempt.result
        return None

    async def _call(
        self,
        run: _Run,
        stage: Stage,
        ctx: PromptContext,
        *,
        model: str,
        timeout: float,
        context: str,
        with_image: bool = False,
    ) -> dict[str, Any]:
        prompt = build_prompt(stage, ctx)
        run.trace.model_tried(model)
        return await self.transport.complete_json(CompletionRequest(
            instruction=prompt.instruction,
            schema=prompt.schema,
            model=model,
            context=context,
            timeout=timeout,
            image=run.image if with_image else None,
            max_output_tokens=run.max_output_tokens,
        ))

    def _context(self, run: _Run, attempt: PipelineAttempt, **kwargs: Any) -> PromptContext:
        extra = [x for x in (run.prompt_append, CORRECTIVE_INSTRUCTION if attempt.corrective else None) if x]
        return PromptContext(
            problem_text=run.problem_text,
            difficulty=run.profile.difficulty,
            tags=list(run.profile.tags),
            extra_instruction="\n".join(extra) or None,
            **kwargs,
        )

    # ==================== 各状态的处理 ====================

    async def _on_idle(self, run: _Run, attempt: PipelineAttempt) -> None:
        attempt.planned = needs_planning(run.profile)
        if attempt.planned:
            attempt.initial_chunk_size = self.settings.initial_chunk_size
            return
        # 不做规划：固定步骤数的计划一次生成
        attempt.plan = fixed_plan(self._fixed_plan_size(run.profile.difficulty))
        attempt.initial_chunk_size = len(attempt.plan)

    def _fixed_plan_size(self, difficulty: str) -> int:
        s = self.settings
        return {
            "easy": s.fixed_plan_steps_easy,
            "normal": s.fixed_plan_steps_normal,
        }.get(difficulty, s.fixed_plan_steps_hard)

    async def _on_planning(self, run: _Run, attempt: PipelineAttempt) -> None:
        try:
            data = await self._call(
                run, Stage.PLAN, self._context(run, attempt),
                model=attempt.model,
                timeout=run.deadline.clamp(self.settings.timeout_plan),
                context="plan",
            )
            plan = PlanOutput.model_validate(data)
            if plan.step_count <= 0 and not any(t.strip() for t in plan.step_titles):
                raise MalformedResponseError("plan has no steps")
        except (AnalysisError, ValidationError) as e:
            self._raise_if_fatal(e)
            logger.warning("[engine] 规划失败 policy=%s: %s", self.settings.plan_failure_policy, e)
            run.trace.data["plan_failed"] = True
            if self.settings.plan_failure_policy == "single_shot":
                attempt.plan = []
                attempt.failure = FailureReason.PLAN_FAILED
            else:
                attempt.plan = fixed_plan(self._fixed_plan_size(run.profile.difficulty))
            return

        titles = [t.strip() for t in plan.step_titles if t.strip()]
        # 要点数为准；只有步数没有要点时用占位标题
        attempt.plan = titles or fixed_plan(plan.step_count)
        logger.info("[engine] 规划完成 step_count=%d", len(attempt.plan))

    async def _on_header(self, run: _Run, attempt: PipelineAttempt) -> None:
        run.trace.data["header_attempts"] += 1
        try:
            data = await self._call(
                run, Stage.HEADER, self._context(run, attempt, step_titles=list(attempt.plan)),
                model=attempt.model,
                timeout=run.deadline.clamp(self.settings.timeout_header),
                context="header",
            )
            header = HeaderOutput.model_validate(data)
        except (AnalysisError, ValidationError) as e:
            self._raise_if_fatal(e)
            logger.warning("[engine] 标题/答案生成失败，稍后改走单发: %s", e)
            attempt.header = None
            return
        if not header.final_answer.strip():
            logger.warning("[engine] 标题阶段没有 final_answer，视为缺失")
            attempt.header = None
            return
        attempt.header = header

    async def _on_steps(self, run: _Run, attempt: PipelineAttempt) -> None:
        """
        步骤阶段。整体校验因「缺少最终比较步骤」或「相邻步骤近似重复」失败时，
        允许针对该缺陷整体重生成一次；其余失败直接返回空列表交给单发兜底。
        """
        attempt.steps = []
        steps_deadline = Deadline(self.settings.timeout_steps_total, self._clock)
        flags = _StepsFlags()
        regenerated = False
        while True:
            steps = await self._build_steps_once(run, attempt, steps_deadline, flags)
            if steps:
                attempt.steps = steps
                break
            if regenerated or not flags.issues:
                break
            targeted = False
            if "missing_final_summary_step" in flags.issues:
                flags.force_judgement = True
                targeted = True
            if "duplicate_step_similarity" in flags.issues:
                flags.avoid_duplicates = True
                flags.ignore_duplicate_similarity = True
                targeted = True
            if not targeted:
                break
            regenerated = True
            logger.info("[engine] 步骤整体校验失败 issues=%s，针对性重生成一次", flags.issues[:3])
            flags.issues = []
        run.trace.data["steps_total_ms"] = int(steps_deadline.elapsed() * 1000)

    async def _build_steps_once(
        self,
        run: _Run,
        attempt: PipelineAttempt,
        steps_deadline: Deadline,
        flags: _StepsFlags,
    ) -> list[Step]:
        chunk_size = attempt.initial_chunk_size
        while chunk_size >= 1:
            if steps_deadline.expired():
                attempt.failure = FailureReason.STEPS_TOTAL_TIMEOUT
                run.trace.data["fallback_reason"] = attempt.failure.value
                logger.warning("[engine] 步骤阶段总时间超出 %.1fs", steps_deadline.budget)
                return []
            run.trace.data["chunk_history"].append(chunk_size)
            model = attempt.steps_model or attempt.model
            try:
                collected = await self._generate_chunks(run, attempt, chunk_size, model, steps_deadline, flags)
            except TransportTimeoutError as e:
                attempt.failure = FailureReason.STEPS_CHUNK_TIMEOUT
                run.trace.data["fallback_reason"] = attempt.failure.value
                if chunk_size == 1 and not attempt.steps_escalated:
                    attempt.steps_escalated = True
                    attempt.steps_model = self.settings.steps_escalation_model
                    run.trace.data["steps_escalated"] = True
                    logger.warning("[engine] 分块=1 仍超时，步骤模型升级为 %s 重试", attempt.steps_model)
                    continue
                logger.warning("[engine] 分块=%d 超时，缩小分块重试: %s", chunk_size, e)
                chunk_size = next_chunk_size(chunk_size)
                continue
            except (AnalysisError, ValidationError) as e:
                self._raise_if_fatal(e)
                attempt.failure = self._classify(e)
                run.trace.data["fallback_reason"] = attempt.failure.value
                if isinstance(e, VerificationError):
                    run.trace.issues(e.issues)
                logger.warning("[engine] 分块=%d 生成失败 reason=%s，缩小分块重试", chunk_size, attempt.failure.value)
                chunk_size = next_chunk_size(chunk_size)
                continue

            normalize_step_orders(collected, 1)
            check = verify_steps(collected, ignore_duplicate_similarity=flags.ignore_duplicate_similarity)
            if not check.ok:
                attempt.failure = FailureReason.VERIFY_FAILED
                attempt.issues = check.issues
                flags.issues = check.issues
                run.trace.data["fallback_reason"] = attempt.failure.value
                run.trace.issues(check.issues)
                return []
            attempt.chunk_size = chunk_size
            run.trace.data["chunk_size"] = chunk_size
            run.trace.data["steps_model_final"] = model
            logger.info("[engine] 步骤生成完成 steps=%d chunk_size=%d model=%s", len(collected), chunk_size, model)
            return collected
        return []

    async def _generate_chunks(
        self,
        run: _Run,
        attempt: PipelineAttempt,
        chunk_size: int,
        model: str,
        steps_deadline: Deadline,
        flags: _StepsFlags,
    ) -> list[Step]:
        plan = attempt.plan
        total = len(plan)
        slices = [(i, plan[i:i + chunk_size]) for i in range(0, total, chunk_size)]

        async def one(start: int, titles: list[str]) -> list[Step]:
            start_order = start + 1
            end_order = start_order + len(titles) - 1
            ctx = self._context(
                run, attempt,
                step_titles=titles,
                start_order=start_order,
                end_order=end_order,
                total_steps=total,
                force_judgement_step=flags.force_judgement and end_order == total,
                avoid_duplicates=flags.avoid_duplicates,
            )
            data = await self._call(
                run, Stage.STEPS_CHUNK, ctx,
                model=model,
                timeout=steps_deadline.clamp(self.settings.timeout_steps_chunk),
                context=f"steps {start_order}-{end_order}",
            )
            chunk = StepsChunkOutput.model_validate(data)
            check = verify_steps(
                chunk.steps,
                skip_final_step_check=True,
                ignore_duplicate_similarity=flags.ignore_duplicate_similarity,
            )
            if not check.ok:
                raise VerificationError(check.issues, f"chunk_verify_failed:{','.join(check.issues)}")
            return chunk.steps

        if not self.settings.parallel_chunks or len(slices) == 1:
            collected: list[Step] = []
            for start, titles in slices:
                collected.extend(await one(start, titles))
            return collected

        tasks = [asyncio.ensure_future(one(start, titles)) for start, titles in slices]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        # gather 按传入顺序返回，拼接即计划顺序
        return [step for chunk in results for step in chunk]

    async def _on_assembling(self, run: _Run, attempt: PipelineAttempt) -> None:
        attempt.result = None
        if attempt.header is None:
            run.trace.data.setdefault("fallback_reason", FailureReason.HEADER_FAILED.value)
            attempt.failure = attempt.failure or FailureReason.HEADER_FAILED
            return
        steps = [step.model_copy(deep=True) for step in attempt.steps]
        normalize_step_orders(steps, 1)
        method_hint = attempt.header.method_hint
        if method_hint is None or not method_hint.label.strip():
            method_hint = MethodHint(**default_method_hint(run.problem_text))
        problem = Problem(
            id=self._id_factory(),
            problem_text=run.problem_text,
            steps=steps,
            final_answer=attempt.header.final_answer,
            method_hint=method_hint,
        )
        attempt.result = AnalysisResult(status="success", problems=[problem])
        attempt.source = "chunked"

    async def _on_validating(self, run: _Run, attempt: PipelineAttempt) -> None:
        result = attempt.result
        attempt.validation_ok = False
        if result is None:
            return
        check = verify_analysis(result, require_method_hint=self.settings.require_method_hint)
        if not check.ok:
            attempt.failure = FailureReason.VERIFY_FAILED
            attempt.issues = check.issues
            run.trace.issues(check.issues)
            logger.warning("[engine] 完整校验失败 source=%s issues=%s", attempt.source, check.issues[:3])
            return

        normalize_calculation_expressions(result)
        gate = validate_calculations(result.problems)
        run.trace.data["gate_attempts"].append({
            "attempt": attempt.index,
            "source": attempt.source,
            "ok": gate.ok,
            **({"reason": gate.reason} if gate.reason else {}),
        })
        if not gate.ok:
            attempt.gate_failures += 1
            attempt.gate_reason = gate.reason
            attempt.corrective = True
            attempt.failure = FailureReason.GATE_FAILED
            logger.warning(
                "[gate] 计算闸门未通过 source=%s reason=%s 次数=%d", attempt.source, gate.reason, attempt.gate_failures,
            )
            return

        changed = apply_calculation_overrides(result)
        if changed:
            logger.info("[gate] 复算修正 calculation %d 处", changed)
        attempt.validation_ok = True
        attempt.failure = None
        run.trace.issues([])

    async def _on_single_shot(self, run: _Run, attempt: PipelineAttempt) -> None:
        attempt.result = None
        attempt.single_shot_runs += 1
        run.trace.data["pipeline_path"] = "fallback_single_shot"
        logger.info(
            "[engine] 单发兜底 model=%s corrective=%s has_image=%s", attempt.model, attempt.corrective, bool(run.image)
        )
        try:
            data = await self._call(
                run, Stage.SINGLE_SHOT, self._context(run, attempt),
                model=attempt.model,
                timeout=self.settings.timeout_single_shot,
                context="single_shot",
                with_image=True,
            )
            result = AnalysisResult.model_validate(data)
        except (AnalysisError, ValidationError) as e:
            self._raise_if_fatal(e)
            if isinstance(e, TransportTimeoutError):
                attempt.failure = FailureReason.SINGLE_SHOT_TIMEOUT
            elif isinstance(e, (MalformedResponseError, ValidationError)):
                attempt.failure = FailureReason.JSON_PARSE_FAILED
            else:
                attempt.failure = FailureReason.SINGLE_SHOT_FAILED
            logger.warning("[engine] 单发兜底失败 reason=%s: %s", attempt.failure.value, e)
            return
        attempt.result = self._complete_generated(run, result)
        attempt.source = "single_shot"

    async def _on_degraded(self, run: _Run, attempt: PipelineAttempt) -> None:
        run.degraded_used = True
        attempt.result = None
        attempt.failure = FailureReason.TOTAL_TIMEOUT
        run.trace.data["pipeline_path"] = "degraded_short_answer"
        logger.warning("[engine] 总时间 %.1fs 已用完，改走简短步骤 + 答案", run.deadline.budget)
        try:
            data = await self._call(
                run, Stage.SHORT_ANSWER, self._context(run, attempt),
                model=attempt.model,
                timeout=self.settings.timeout_short_answer,
                context="short_answer",
            )
            result = AnalysisResult.model_validate(data)
        except (AnalysisError, ValidationError) as e:
            self._raise_if_fatal(e)
            logger.warning("[engine] 降级生成也失败: %s", e)
            return
        attempt.result = self._complete_generated(run, result)
        attempt.source = "short_answer"

    # ==================== 工具 ====================

    def _complete_generated(self, run: _Run, result: AnalysisResult) -> AnalysisResult:
        """补齐整题生成结果中可以确定的字段：题目 ID（缺失或重复时重新分配）、题目文本、连续 order、方法提示。"""
        seen_ids: set[str] = set()
        for problem in result.problems:
            if not problem.id.strip() or problem.id in seen_ids:
                problem.id = self._id_factory()
            seen_ids.add(problem.id)
            if not problem.problem_text.strip():
                problem.problem_text = run.problem_text
            normalize_step_orders(problem.steps, 1)
            if problem.method_hint is None or not problem.method_hint.label.strip():
                problem.method_hint = MethodHint(**default_method_hint(problem.problem_text))
        return result

    def _finalize(self, run: _Run, attempt: PipelineAttempt, result: AnalysisResult, *, debug: bool) -> AnalysisResult:
        result.meta = run.profile
        if self.settings.strip_method_hint:
            for problem in result.problems:
                problem.method_hint = None
        if attempt.source == "chunked":
            run.trace.data["pipeline_path"] = "chunked"
            run.trace.data.pop("fallback_reason", None)
        run.trace.data["model_final"] = attempt.model
        trace = run.trace.finish()
        logger.info(
            "[engine] 解析成功 path=%s model=%s total_ms=%d",
            trace.get("pipeline_path"), attempt.model, trace["total_ms"],
        )
        result.debug = trace if debug else None
        return result

    @staticmethod
    def _raise_if_fatal(error: Exception) -> None:
        if isinstance(error, AnalysisError) and not _is_recoverable(error):
            raise error

    @staticmethod
    def _classify(error: Exception) -> FailureReason:
        if isinstance(error, TransportTimeoutError):
            return FailureReason.STEPS_CHUNK_TIMEOUT
        if isinstance(error, (MalformedResponseError, ValidationError)):
            return FailureReason.JSON_PARSE_FAILED
        if isinstance(error, VerificationError):
            return FailureReason.VERIFY_FAILED
        if isinstance(error, TransportError):
            return FailureReason.TRANSPORT_ERROR
        return FailureReason.STEPS_CHUNK_FAILED
