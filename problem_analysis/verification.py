"""生成结果的结构校验：必填字段、连续重复、相邻步骤近似重复、缺少最终比较步骤。"""
import random
import re
import string
import time
from dataclasses import dataclass, field

from .schemas import AnalysisResult, Problem, Step

SIMILARITY_THRESHOLD = 0.75
REPETITION_MIN_RUN = 3

_SIMILARITY_STRIP = re.compile(r"[\s　.,!?。、！？「」『』（）()]+")


@dataclass
class VerificationResult:
    ok: bool
    issues: list[str] = field(default_factory=list)


def _non_empty(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


def has_repeating_run(items: list[str], min_run: int = REPETITION_MIN_RUN) -> bool:
    run = 1
    for prev, cur in zip(items, items[1:]):
        if cur == prev:
            run += 1
            if run >= min_run:
                return True
        else:
            run = 1
    return False


def normalize_for_similarity(text: str) -> str:
    return _SIMILARITY_STRIP.sub("", text).lower()


def _bigrams(text: str) -> set[str]:
    return {text[i:i + 2] for i in range(len(text) - 1)}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    union = len(a | b)
    return len(a & b) / union if union else 0.0


def is_near_duplicate(a: str, b: str, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    """归一化后按字符二元组 Jaccard 相似度判断；任一方短于 4 字时不判。"""
    na = normalize_for_similarity(a)
    nb = normalize_for_similarity(b)
    if len(na) < 4 or len(nb) < 4:
        return False
    return jaccard(_bigrams(na), _bigrams(nb)) >= threshold


def verify_steps(
    steps: list[Step],
    *,
    ignore_duplicate_similarity: bool = False,
    skip_final_step_check: bool = False,
) -> VerificationResult:
    """
    校验步骤列表。skip_final_step_check 用于分块生成中的单块校验（最终比较步骤只在整体上要求）；
    ignore_duplicate_similarity 用于重生成后的再次校验，避免因近似重复无限回退。
    """
    if not steps:
        return VerificationResult(ok=False, issues=["steps_empty"])

    issues: list[str] = []
    hints: list[str] = []
    solutions: list[str] = []
    calculation_count = 0

    for index, step in enumerate(steps):
        if not isinstance(step.order, int):
            issues.append(f"step_{index}_order_missing")
        if _non_empty(step.hint):
            hints.append(step.hint.strip())
        else:
            issues.append(f"step_{index}_hint_missing")
        if _non_empty(step.solution):
            solutions.append(step.solution.strip())
        else:
            issues.append(f"step_{index}_solution_missing")
        if step.calculation is not None:
            calculation_count += 1
            if not _non_empty(step.calculation.expression):
                issues.append(f"step_{index}_calc_expression_missing")

    if hints and has_repeating_run(hints):
        issues.append("repetition_hint")
    if solutions and has_repeating_run(solutions):
        issues.append("repetition_solution")

    if not ignore_duplicate_similarity:
        for prev, cur in zip(steps, steps[1:]):
            if is_near_duplicate(prev.hint or "", cur.hint or "") or is_near_duplicate(
                prev.solution or "", cur.solution or ""
            ):
                issues.append("duplicate_step_similarity")
                break

    if (
        not skip_final_step_check
        and len(steps) >= 2
        and calculation_count >= 2
        and steps[-1].calculation is not None
    ):
        issues.append("missing_final_summary_step")

    return VerificationResult(ok=not issues, issues=issues)


def verify_problems(problems: list[Problem], *, require_method_hint: bool = False) -> VerificationResult:
    if not problems:
        return VerificationResult(ok=False, issues=["problems_empty"])

    issues: list[str] = []
    seen_ids: set[str] = set()
    for index, problem in enumerate(problems):
        if not _non_empty(problem.id):
            issues.append(f"problem_{index}_id_missing")
        elif problem.id in seen_ids:
            issues.append(f"problem_{index}_id_duplicate")
        seen_ids.add(problem.id)
        if not _non_empty(problem.problem_text):
            issues.append(f"problem_{index}_text_missing")
        if not _non_empty(problem.final_answer):
            issues.append(f"problem_{index}_final_answer_missing")
        if require_method_hint and (
            problem.method_hint is None
            or not _non_empty(problem.method_hint.label)
            or not _non_empty(problem.method_hint.pitch)
        ):
            issues.append(f"problem_{index}_method_hint_missing")
        step_check = verify_steps(problem.steps)
        issues.extend(f"problem_{index}_{issue}" for issue in step_check.issues)

    return VerificationResult(ok=not issues, issues=issues)


def verify_analysis(result: AnalysisResult, *, require_method_hint: bool = False) -> VerificationResult:
    issues: list[str] = []
    if result.status != "success":
        issues.append("status_not_success")
    issues.extend(verify_problems(result.problems, require_method_hint=require_method_hint).issues)
    return VerificationResult(ok=not issues, issues=issues)


def normalize_step_orders(steps: list[Step], start_order: int = 1) -> None:
    """拼接分块结果后把 order 重新编为连续序号。"""
    for offset, step in enumerate(steps):
        step.order = start_order + offset


def create_problem_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"problem_{int(time.time() * 1000)}_{suffix}"
