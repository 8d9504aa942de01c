"""四则运算表达式求值：字形归一 → 分词 → 调度场转逆波兰 → 栈求值。用于独立复算生成内容中的途中计算。"""
import math
import re

_PRECEDENCE = {"u-": 3, "*": 2, "/": 2, "+": 1, "-": 1}
_RIGHT_ASSOC = {"u-"}
_OPERATORS = frozenset(_PRECEDENCE)

_GLYPH_MAP = str.maketrans({
    "×": "*", "✕": "*", "＊": "*",
    "÷": "/", "／": "/",
    "−": "-", "–": "-", "—": "-",
    "＋": "+",
})
_DISALLOWED = re.compile(r"[^0-9+\-*/().]")


def normalize_expression(expression: str) -> str:
    """统一乘除加减字形，去掉空白及 [0-9+-*/().] 以外的字符（如单位「円」「人」）。"""
    if not expression:
        return ""
    normalized = re.sub(r"\s+", "", expression.translate(_GLYPH_MAP))
    return _DISALLOWED.sub("", normalized)


def _tokenize(expression: str) -> list[tuple[str, object]] | None:
    tokens: list[tuple[str, object]] = []
    i = 0
    n = len(expression)
    while i < n:
        ch = expression[i]
        if ch.isdigit() or ch == ".":
            j = i + 1
            while j < n and (expression[j].isdigit() or expression[j] == "."):
                j += 1
            try:
                value = float(expression[i:j])
            except ValueError:
                return None
            tokens.append(("number", value))
            i = j
        elif ch in "()":
            tokens.append(("paren", ch))
            i += 1
        elif ch in "+-*/":
            tokens.append(("operator", ch))
            i += 1
        else:
            # 归一化之后不应出现，跳过
            i += 1
    return tokens


def _to_rpn(tokens: list[tuple[str, object]]) -> list[tuple[str, object]] | None:
    output: list[tuple[str, object]] = []
    ops: list[str] = []
    prev: str | None = None  # number | operator | open

    for kind, value in tokens:
        if kind == "number":
            output.append((kind, value))
            prev = "number"
        elif kind == "paren" and value == "(":
            ops.append("(")
            prev = "open"
        elif kind == "paren":
            while ops and ops[-1] != "(":
                output.append(("operator", ops.pop()))
            if not ops:
                return None
            ops.pop()
            prev = "number"
        else:
            op = str(value)
            if op == "-" and prev in (None, "operator", "open"):
                op = "u-"
            while ops and ops[-1] in _OPERATORS:
                top = ops[-1]
                if _PRECEDENCE[top] > _PRECEDENCE[op] or (
                    _PRECEDENCE[top] == _PRECEDENCE[op] and op not in _RIGHT_ASSOC
                ):
                    output.append(("operator", ops.pop()))
                else:
                    break
            ops.append(op)
            prev = "operator"

    while ops:
        op = ops.pop()
        if op == "(":
            return None
        output.append(("operator", op))
    return output


def _eval_rpn(tokens: list[tuple[str, object]]) -> float | None:
    stack: list[float] = []
    for kind, value in tokens:
        if kind == "number":
            stack.append(float(value))  # type: ignore[arg-type]
            continue
        if value == "u-":
            if not stack:
                return None
            stack.append(-stack.pop())
            continue
        if len(stack) < 2:
            return None
        b = stack.pop()
        a = stack.pop()
        if value == "+":
            result = a + b
        elif value == "-":
            result = a - b
        elif value == "*":
            result = a * b
        elif value == "/":
            if b == 0:
                return None
            result = a / b
        else:
            return None
        if not math.isfinite(result):
            return None
        stack.append(result)

    if len(stack) != 1 or not math.isfinite(stack[0]):
        return None
    return stack[0]


def evaluate(expression: str) -> float | None:
    """
    计算四则运算表达式，支持括号、一元负号与小数。
    除零、结果非有限数、括号不匹配或操作数个数不对时返回 None，不抛异常。
    """
    normalized = normalize_expression(expression)
    if not normalized:
        return None
    tokens = _tokenize(normalized)
    if not tokens:
        return None
    rpn = _to_rpn(tokens)
    if not rpn:
        return None
    return _eval_rpn(rpn)
