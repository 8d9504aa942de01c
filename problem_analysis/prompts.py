"""
各生成阶段的提示词与 JSON Schema 构造。

每个阶段对应一个纯函数 (PromptContext) -> StagePrompt(instruction, schema)，
由 build_prompt 按 Stage 分发；阶段集合是封闭的，模块加载时检查每个 Stage 都有构造函数。
提示词正文为日语（面向日本小学生的算数文章题）。
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .schemas import Difficulty


class Stage(str, Enum):
    EXTRACTION = "extraction"
    PLAN = "plan"
    STEPS_CHUNK = "steps_chunk"
    HEADER = "header"
    SINGLE_SHOT = "single_shot"
    SHORT_ANSWER = "short_answer"
    DRILL = "drill"


@dataclass
class PromptContext:
    problem_text: str = ""
    difficulty: Difficulty = "normal"
    tags: list[str] = field(default_factory=list)
    step_titles: list[str] = field(default_factory=list)
    start_order: int = 1
    end_order: int = 1
    total_steps: int = 0
    force_judgement_step: bool = False
    avoid_duplicates: bool = False
    extra_instruction: str | None = None


@dataclass(frozen=True)
class StagePrompt:
    instruction: str
    schema: dict[str, Any]


# ==================== JSON Schema ====================


def _object(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "object",
        "additionalProperties": False,
        "properties": properties,
        "required": required,
    }


CALCULATION_SCHEMA = _object(
    {
        "expression": {"type": "string"},
        "result": {"type": "number"},
        "unit": {"type": "string"},
        "note": {"type": "string"},
    },
    ["expression", "result"],
)

STEP_SCHEMA = _object(
    {
        "order": {"type": "integer"},
        "hint": {"type": "string"},
        "solution": {"type": "string"},
        "calculation": CALCULATION_SCHEMA,
    },
    ["order", "hint", "solution"],
)

METHOD_HINT_SCHEMA = _object({"label": {"type": "string"}, "pitch": {"type": "string"}}, ["label", "pitch"])

PROBLEM_SCHEMA = _object(
    {
        "id": {"type": "string"},
        "problem_text": {"type": "string"},
        "final_answer": {"type": "string"},
        "method_hint": METHOD_HINT_SCHEMA,
        "steps": {"type": "array", "items": STEP_SCHEMA},
    },
    ["id", "problem_text", "steps", "final_answer"],
)

ANALYSIS_RESPONSE_SCHEMA = _object(
    {"status": {"type": "string"}, "problems": {"type": "array", "items": PROBLEM_SCHEMA}},
    ["status", "problems"],
)

PLAN_SCHEMA = _object(
    {"step_count": {"type": "integer"}, "step_titles": {"type": "array", "items": {"type": "string"}}},
    ["step_count", "step_titles"],
)

STEPS_CHUNK_SCHEMA = _object({"steps": {"type": "array", "items": STEP_SCHEMA}}, ["steps"])

HEADER_SCHEMA = _object(
    {"method_hint": METHOD_HINT_SCHEMA, "final_answer": {"type": "string"}},
    ["method_hint", "final_answer"],
)

EXTRACTION_SCHEMA = _object(
    {
        "problems": {
            "type": "array",
            "items": _object(
                {"id": {"type": "string"}, "title": {"type": "string"}, "problem_text": {"type": "string"}},
                ["id", "problem_text"],
            ),
        }
    },
    ["problems"],
)

DRILL_SCHEMA = _object(
    {
        "problems": {
            "type": "array",
            "items": _object(
                {"question": {"type": "string"}, "answer": {"type": "string"}, "explanation": {"type": "string"}},
                ["question", "answer", "explanation"],
            ),
        }
    },
    ["problems"],
)


# ==================== 共通规则 ====================

STEP_COUNT_RULES: dict[str, str] = {
    "easy": "ステップ数は2〜3。1つのステップでは1つの着眼点か1つの計算だけをあつかう。",
    "normal": "ステップ数は3〜5。前のステップをふり返りながら、ていねいに進める。",
    "hard": "ステップ数は5〜7。むずかしいところは細かく分け、1つのステップで1つの計算対象だけをあつかう。",
}

VOCABULARY_RULES: dict[str, str] = {
    "easy": "ことばはやさしく短く。次の語は使わない: 最大公約数, 最小公倍数, 比, 割合, 分数, 分母, 分子, 連立, 文字式。",
    "normal": "公約数・面積・あたり・角度などの基本語は使ってよい。式のネタバレになる言い方はさけ、考え方をていねいに説明する。",
    "hard": "専門用語は使ってよいが、はじめて出てくるときに短い補足をつける（例: 最大公約数(共通の約数のうちいちばん大きな数)）。",
}

TONE_RULES = """【語り口】
- 子どもに話しかける、やさしい会話調で書く。
- 命令調（〜しましょう、〜しなさい）や事務的な言い回し（「次に」「同じように」）は使わない。
- 文中の数は半角アラビア数字で書き、単位は数字の直後に続ける。"""

STEP_RULES = """【ステップの役割】
- hint: どこに注目するか、どんな考え方を使うか、なぜ今それをするのかを説明する。計算結果や「9を3で割る」のような確定した式は書かない。
- solution: そのステップで分かったことの意味づけと、短い問いかけ（「ここまで大丈夫そうかな？」など）だけを書く。+ - × ÷ や = や計算結果の数値は書かない。最終的な答えを断定しない。
- calculation: 新しい計算をするステップだけに付ける。expression は四則演算（+ - × ÷ と括弧）か「最小公倍数(4と6)」「最大公約数(24と40)」の形だけ。カンマ区切り・等号・比較記号・LCM(4,6) のような記号表現は禁止。単位は unit に書き、result は数値のみ。"""

JUDGEMENT_RULE = """【最後のステップ】
- いくつかの量を比べて結論を出す問題では、計算がすべて終わったあとに「結果を並べて比べ、意味を整理する」ステップを1つだけ置く。
- このステップでは新しい計算をしない（calculation を付けない）。どちらが多いか・こんでいるかを言葉で確かめ、子どもが自分で結論にたどり着ける問いかけで終える。
- 結論そのものは final_answer にだけ書く。"""

FINAL_ANSWER_RULE = "final_answer は「答え：…\\n\\n【理由】…」の2段落で、会話調で短くまとめる。"


def _control_block(ctx: PromptContext, *, with_step_count: bool = True) -> str:
    lines = ["【制御情報】", f"- 難易度: {ctx.difficulty}"]
    if with_step_count:
        lines.append(f"- {STEP_COUNT_RULES[ctx.difficulty]}")
    lines.append(f"- {VOCABULARY_RULES[ctx.difficulty]}")
    if ctx.tags:
        lines.append(f"- タグ: {', '.join(ctx.tags)}")
    return "\n".join(lines)


def _tail(ctx: PromptContext) -> str:
    extra = f"\n【追加ルール】\n{ctx.extra_instruction.strip()}\n" if ctx.extra_instruction else ""
    return f"{extra}\n【問題文】\n{ctx.problem_text.strip()}"


# ==================== 各阶段构造函数 ====================


def build_extraction_prompt(ctx: PromptContext) -> StagePrompt:
    instruction = """
画像には算数の問題が1問以上写っています。問題文だけを書き起こしてください。
- 出力は JSON のみ。problems に1問ずつ {id, title, problem_text} を入れる。
- 図や表の中の数値・単位・条件もすべて自然な日本語で problem_text に入れる。
- 「①」「下の図」などの指示語は、具体的な名前（長方形、1組など）に置きかえる。
- 図・表・グラフがある場合は、それがあること自体も文章で伝える。
- 問いかけや命令口調にせず、事実どおりに説明する文章にする。
""".strip()
    return StagePrompt(instruction, EXTRACTION_SCHEMA)


def build_plan_prompt(ctx: PromptContext) -> StagePrompt:
    instruction = f"""
あなたは算数の問題のステップ構成だけを考える係です。
式や答えは書かず、考え方の流れを短いことばで並べてください。
step_count と step_titles（ステップごとの要点を短く）だけを出力します。

{_control_block(ctx)}
- 1ステップ＝1対象 を守る。
- 比べる問題なら、最後は「結果を並べて比べる」ステップにする。
{_tail(ctx)}
""".strip()
    return StagePrompt(instruction, PLAN_SCHEMA)


def build_steps_chunk_prompt(ctx: PromptContext) -> StagePrompt:
    titles = "\n".join(f"{ctx.start_order + i}. {t}" for i, t in enumerate(ctx.step_titles))
    is_last_chunk = ctx.end_order >= ctx.total_steps
    judgement = JUDGEMENT_RULE if is_last_chunk else "- この範囲には最後のステップは含まれない。比べる・まとめるステップは作らない。"
    forced = ""
    if ctx.force_judgement_step and is_last_chunk:
        forced = (
            f"\n【必須】order {ctx.end_order} は calculation を付けない比較・まとめのステップにすること。"
            "前の出力ではこのステップが抜けていた。"
        )
    duplicates = ""
    if ctx.avoid_duplicates:
        duplicates = "\n【必須】前の出力ではとなりあうステップの文がほとんど同じだった。各ステップは別の着眼点を別のことばで書く。"
    instruction = f"""
指定された範囲のステップだけを作ってください（order {ctx.start_order} 〜 {ctx.end_order}、全 {ctx.total_steps} ステップ中）。

{TONE_RULES}

{STEP_RULES}

{judgement}{forced}{duplicates}

{_control_block(ctx, with_step_count=False)}

【この範囲のステップの要点】
{titles}

steps には order {ctx.start_order} から {ctx.end_order} までの連番で入れる。
{_tail(ctx)}
""".strip()
    return StagePrompt(instruction, STEPS_CHUNK_SCHEMA)


def build_header_prompt(ctx: PromptContext) -> StagePrompt:
    titles = "\n".join(f"{i + 1}. {t}" for i, t in enumerate(ctx.step_titles))
    instruction = f"""
あなたは算数の問題の「考え方ヒント」と「最終回答」だけを作ります。ステップを作り直さないでください。
- method_hint.label は解き方の名前、method_hint.pitch はなぜその考え方が合うかを1文で。式は書かない。
- {FINAL_ANSWER_RULE}

{_control_block(ctx, with_step_count=False)}

【ステップの要点】
{titles}
{_tail(ctx)}
""".strip()
    return StagePrompt(instruction, HEADER_SCHEMA)


def build_single_shot_prompt(ctx: PromptContext) -> StagePrompt:
    instruction = f"""
あなたは小学生の「考える力」を育てる算数のコーチです。
問題を読み、次のルールをすべて守って、解説を1つの JSON で出力してください。
status は "success"、problems には1問だけ入れ、steps は order 1 からの連番にします。

{TONE_RULES}

{STEP_RULES}

{JUDGEMENT_RULE}

【全体】
- いきなり計算しない。計算の前に「何を求めたいか」「何をそろえる・分ける・比べるか」を考えるステップを入れる。
- method_hint には解き方の名前（label）と、その考え方が合う理由（pitch）を入れる。
- {FINAL_ANSWER_RULE}

{_control_block(ctx)}
{_tail(ctx)}
""".strip()
    return StagePrompt(instruction, ANALYSIS_RESPONSE_SCHEMA)


def build_short_answer_prompt(ctx: PromptContext) -> StagePrompt:
    instruction = f"""
時間が足りないので、短い解説だけを作ります。
status は "success"、problems に1問だけ入れ、steps は2〜3個の短いステップにします。

{STEP_RULES}

- 比べる問題なら、最後のステップは calculation を付けずに結果を比べる問いかけにする。
- {FINAL_ANSWER_RULE}

{_control_block(ctx, with_step_count=False)}
{_tail(ctx)}
""".strip()
    return StagePrompt(instruction, ANALYSIS_RESPONSE_SCHEMA)


def build_drill_prompt(ctx: PromptContext) -> StagePrompt:
    original = ctx.problem_text.replace('"', '\\"')
    instruction = f"""
次の算数の問題と「同じ解き方」で解ける、別の問題を3問作ってください。

元の問題: "{original}"

【ルール】
1. 小学4年生が分かる内容にする。
2. 登場人物・数値・場面（買い物、お菓子、きょりなど）を変える。
3. 各問題に question（問題文）、answer（答え）、explanation（なぜその式になるかの短い解説）を入れる。
4. 日本語で、JSON だけを返す。
""".strip()
    return StagePrompt(instruction, DRILL_SCHEMA)


_BUILDERS: dict[Stage, Callable[[PromptContext], StagePrompt]] = {
    Stage.EXTRACTION: build_extraction_prompt,
    Stage.PLAN: build_plan_prompt,
    Stage.STEPS_CHUNK: build_steps_chunk_prompt,
    Stage.HEADER: build_header_prompt,
    Stage.SINGLE_SHOT: build_single_shot_prompt,
    Stage.SHORT_ANSWER: build_short_answer_prompt,
    Stage.DRILL: build_drill_prompt,
}

_missing = set(Stage) - set(_BUILDERS)
if _missing:
    raise RuntimeError(f"prompt builders missing for stages: {sorted(s.value for s in _missing)}")


def build_prompt(stage: Stage, ctx: PromptContext) -> StagePrompt:
    return _BUILDERS[stage](ctx)


# ==================== 方法提示兜底 ====================


def default_method_hint(problem_text: str) -> dict[str, str]:
    """生成结果缺少 method_hint 时按关键词给出固定的方法提示。"""
    text = (problem_text or "").lower()
    same_scale = "比べたいときは、ちがう量をそのまま見くらべないで、同じ単位にそろえて考えると分かりやすいよ。"
    if any(k in text for k in ("あたり", "1人あたり", "一人あたり", "こんでいる", "みっしり")):
        return {"label": "分配算", "pitch": same_scale}
    if any(k in text for k in ("%", "割合", "パーセント")):
        return {"label": "割合をそろえる", "pitch": "割合は基準をそろえると比べやすいよ。何を100%にするかを先に決めると進めやすい。"}
    if any(k in text for k in ("比例", "反比例")) or ("比" in text and "比べ" not in text):
        return {"label": "くらべ方をそろえる", "pitch": "比べるときは、同じものさしにそろえてから見ると違いが分かりやすいよ。"}
    if "平均" in text or "ならす" in text:
        return {"label": "平均の考え方", "pitch": "平均はみんなを同じにそろえる中心だよ。平均との差を考えると整理しやすい。"}
    return {"label": "情報を整理して、同じものさしで比べよう", "pitch": same_scale}
