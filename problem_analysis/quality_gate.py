"""途中计算质量闸门：表达式字符白名单、逗号/等号拒绝、最小公倍数/最大公约数的整除与上界校验，以及闸门前后的自动修复。"""
import logging
import math
import re
from dataclasses import dataclass

from .expression import evaluate
from .schemas import AnalysisResult, CalculationRecord, Problem

logger = logging.getLogger(__name__)

LCM_PHRASE = "最小公倍数"
GCD_PHRASE = "最大公約数"

_ALLOWED_EXPRESSION = re.compile(r"^[0-9+\-×÷().\s]+$")
_SPECIAL_FORM = re.compile(
    rf"^\s*({LCM_PHRASE}|{GCD_PHRASE})\s*[(（]\s*(-?\d+)\s*(?:と|,|、)\s*(-?\d+)\s*[)）]\s*$"
)
_HAS_OPERATOR = re.compile(r"[+\-×÷]")

CORRECTIVE_INSTRUCTION = (
    "前の出力で calculation が壊れていた。calculation を出すのは計算が必要なステップだけ。"
    "expression は算数の計算式か「最小公倍数(4と6)」「最大公約数(24と40)」のような日本語だけで、"
    "カンマや等号は使わない。最小公倍数/最大公約数の result は定義どおり必ず割り切れる値にする。"
    "result は数値のみ。"
)


@dataclass
class GateResult:
    ok: bool
    reason: str | None = None


def _fail(code: str, problem_index: int, step_index: int) -> GateResult:
    return GateResult(ok=False, reason=f"{code}@{problem_index}:{step_index}")


def parse_special_form(expression: str) -> tuple[str, int, int] | None:
    """识别「最小公倍数(A と B)」「最大公約数(A と B)」，返回 (lcm|gcd, A, B)。"""
    match = _SPECIAL_FORM.match(expression)
    if not match:
        return None
    kind = "lcm" if match.group(1) == LCM_PHRASE else "gcd"
    return kind, int(match.group(2)), int(match.group(3))


def _positive_integer(value: float) -> int | None:
    if value > 0 and float(value).is_integer():
        return int(value)
    return None


def check_special_form(kind: str, a: int, b: int, result: float) -> str | None:
    """返回违反的规则代码，满足全部不变量时返回 None。"""
    if a <= 0 or b <= 0:
        return f"{kind}_operand_not_positive"
    r = _positive_integer(result)
    if r is None:
        return f"{kind}_result_not_positive_integer"
    if kind == "lcm":
        if r % a or r % b:
            return "lcm_result_not_divisible"
        if r > a * b:
            return "lcm_result_exceeds_product"
    else:
        if a % r or b % r:
            return "gcd_result_not_divisor"
        if r > min(a, b):
            return "gcd_result_exceeds_min"
    return None


def validate_calculation(calc: CalculationRecord, problem_index: int = 0, step_index: int = 0) -> GateResult:
    if not isinstance(calc.expression, str):
        return _fail("expression_not_string", problem_index, step_index)
    if not isinstance(calc.result, (int, float)) or not math.isfinite(calc.result):
        return _fail("result_not_number", problem_index, step_index)
    if calc.unit is not None and not isinstance(calc.unit, str):
        return _fail("unit_not_string", problem_index, step_index)

    special = parse_special_form(calc.expression)
    if special is not None:
        code = check_special_form(*special, calc.result)
        return _fail(code, problem_index, step_index) if code else GateResult(ok=True)

    if "," in calc.expression or "=" in calc.expression:
        return _fail("expression_invalid_token", problem_index, step_index)
    if not _ALLOWED_EXPRESSION.match(calc.expression):
        return _fail("expression_invalid_chars", problem_index, step_index)
    return GateResult(ok=True)


def validate_calculations(problems: list[Problem] | None) -> GateResult:
    """逐题逐步检查 calculation，返回第一个违反项（带题目/步骤坐标）。"""
    if not isinstance(problems, list):
        return GateResult(ok=False, reason="problems_not_array")
    for p_index, problem in enumerate(problems):
        for s_index, step in enumerate(problem.steps):
            if step.calculation is None:
                continue
            gate = validate_calculation(step.calculation, p_index, s_index)
            if not gate.ok:
                return gate
    return GateResult(ok=True)


def normalize_calc_expression(expression: str) -> str:
    return re.sub(r"\s+", " ", expression.strip().replace("*", "×").replace("/", "÷"))


def normalize_calculation_expressions(result: AnalysisResult) -> None:
    """闸门前：把残留的 * / 统一为 × ÷，压缩空白。"""
    for problem in result.problems:
        for step in problem.steps:
            if step.calculation is not None and isinstance(step.calculation.expression, str):
                step.calculation.expression = normalize_calc_expression(step.calculation.expression)


def apply_calculation_overrides(result: AnalysisResult) -> int:
    """
    闸门通过后：纯四则运算式用求值器复算并覆盖 result；
    没有运算符的裸数字、无法安全求值的式子整块删除；最小公倍数/最大公约数形式保持原样。
    返回被改动的 calculation 个数。
    """
    changed = 0
    for problem in result.problems:
        for step in problem.steps:
            calc = step.calculation
            if calc is None or not isinstance(calc.expression, str):
                continue
            expr = calc.expression.strip()
            if parse_special_form(expr) is not None:
                continue
            if not _ALLOWED_EXPRESSION.match(expr) or not _HAS_OPERATOR.search(expr):
                step.calculation = None
                changed += 1
                continue
            computed = evaluate(expr)
            if computed is None:
                step.calculation = None
                changed += 1
            elif calc.result != computed:
                logger.info("[gate] 复算覆盖 expression=%s claimed=%s computed=%s", expr, calc.result, computed)
                calc.result = computed
                changed += 1
    return changed
