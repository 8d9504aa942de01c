"""题目难度估计：基于关键词/正则的纯函数，输出 difficulty、tags、confidence、signals，决定后续模型档位与步骤数策略。"""
import re

from .schemas import DifficultyProfile

CONDITION_KEYWORDS = ("ただし", "もし", "場合", "とき")

FRACTION_KEYWORDS = ("分の", "分数")
RATIO_KEYWORDS = ("比例", "反比例")
PERCENTAGE_KEYWORDS = ("%", "パーセント", "百分率", "割合")
AREA_KEYWORDS = ("面積", "平方", "cm2", "cm²", "cm^2", "m2", "m²", "m^2", "㎠", "㎡")
UNIT_RATE_KEYWORDS = ("あたり", "1人あたり", "一人あたり", "こんでいる", "みっしり")
GCD_KEYWORDS = ("最大公約数", "公約数", "あまりなく配る", "あまりなく分ける", "同じ数ずつ配る", "花束", "配りたい", "分けたい")
GCD_COMBO_BASE = "あまりなく"
GCD_COMBO_PAIR = ("同じ数ずつ", "できるだけ多く")
LCM_KEYWORDS = ("最小公倍数", "公倍数", "何回目で", "周期", "そろって")
GEOMETRY_KEYWORDS = ("三角形", "長方形", "円", "角度", "周りの長さ", "周囲の長さ", "直角", "底辺", "高さ")
GRAPH_KEYWORDS = ("グラフ", "表", "棒グラフ", "折れ線")

_FRACTION_RE = re.compile(r"\d+/\d+")
# 「比べる」「比較」是比较而不是比
_RATIO_RE = re.compile(r"\d+倍|比(?![べ較])")
_PERCENTAGE_RE = re.compile(r"\d+%")
_AREA_RE = re.compile(r"(cm\s*\^?\s*2|m\s*\^?\s*2|cm²|m²)", re.IGNORECASE)

# (signal 名, tag 名)，顺序即 tags 的输出顺序
SIGNAL_TAGS = (
    ("has_fraction", "fraction"),
    ("has_ratio", "ratio"),
    ("has_percentage", "percentage"),
    ("has_area", "area"),
    ("has_unit_rate", "unit_rate"),
    ("has_gcd", "gcd"),
    ("has_lcm", "lcm"),
    ("has_geometry", "geometry"),
    ("has_graph", "graph"),
)
HARD_TAGS = frozenset({"ratio", "percentage", "fraction", "lcm"})
NORMAL_TAGS = frozenset({"gcd", "area", "unit_rate", "geometry"})


def _contains(text: str, keywords: tuple[str, ...]) -> bool:
    return any(k in text for k in keywords)


def _fallback_profile() -> DifficultyProfile:
    signals: dict[str, bool | int] = {name: False for name, _ in SIGNAL_TAGS}
    signals["num_conditions"] = 0
    return DifficultyProfile(difficulty="normal", tags=[], confidence=0.3, signals=signals)


def detect_signals(text: str) -> dict[str, bool | int]:
    """对已小写化的题目文本逐类检测信号。"""
    has_gcd_combo = GCD_COMBO_BASE in text and _contains(text, GCD_COMBO_PAIR)
    return {
        "has_fraction": _contains(text, FRACTION_KEYWORDS) or bool(_FRACTION_RE.search(text)),
        "has_ratio": _contains(text, RATIO_KEYWORDS) or bool(_RATIO_RE.search(text)),
        "has_percentage": _contains(text, PERCENTAGE_KEYWORDS) or bool(_PERCENTAGE_RE.search(text)),
        "has_area": _contains(text, AREA_KEYWORDS) or bool(_AREA_RE.search(text)),
        "has_unit_rate": _contains(text, UNIT_RATE_KEYWORDS),
        "has_gcd": has_gcd_combo or _contains(text, GCD_KEYWORDS),
        "has_lcm": _contains(text, LCM_KEYWORDS),
        "has_geometry": _contains(text, GEOMETRY_KEYWORDS),
        "has_graph": _contains(text, GRAPH_KEYWORDS),
        "num_conditions": sum(text.count(k) for k in CONDITION_KEYWORDS),
    }


def estimate_level(problem_text: str | None) -> DifficultyProfile:
    """
    估计题目难度。hard 信号（比、百分率、分数、最小公倍数）优先于 normal 信号
    （最大公约数、面积、单位量、图形），都没有则为 easy。
    空文本返回 normal / confidence=0.3 的兜底画像。
    """
    if not problem_text or not isinstance(problem_text, str):
        return _fallback_profile()
    text = problem_text.strip().lower()
    if not text:
        return _fallback_profile()

    signals = detect_signals(text)
    tags = [tag for name, tag in SIGNAL_TAGS if signals[name]]

    conditions = int(signals["num_conditions"])
    raw_confidence = 0.35 + 0.12 * len(tags) + 0.03 * min(conditions, 5)
    confidence = max(0.0, min(1.0, raw_confidence))

    if any(t in HARD_TAGS for t in tags):
        difficulty = "hard"
    elif any(t in NORMAL_TAGS for t in tags):
        difficulty = "normal"
    else:
        difficulty = "easy"

    return DifficultyProfile(difficulty=difficulty, tags=tags, confidence=confidence, signals=signals)


def output_token_budget(profile: DifficultyProfile, *, easy: int, normal: int, hard: int) -> int:
    """几何题与 hard 题给更大的生成预算。"""
    if "geometry" in profile.tags or profile.difficulty == "hard":
        return hard
    if profile.difficulty == "normal":
        return normal
    return easy
