"""编排引擎：分阶段生成、闸门纠正重试、针对性重生成、分块回退与升级、单发兜底、总时间降级、最终耗尽。"""
import asyncio
import re

import pytest

from conftest import FakeClock, FakeTransport, make_settings
from orchestration.engine import OrchestrationEngine
from orchestration.errors import (
    ConfigurationError,
    DrillError,
    ExtractionError,
    PipelineExhaustedError,
    TransportTimeoutError,
)
from problem_analysis.level_estimator import estimate_level
from problem_analysis.quality_gate import CORRECTIVE_INSTRUCTION

PARK_TEXT = "A公園は50m²で15人が遊んでいます。B公園は40m²で12人が遊んでいます。どちらがこんでいますか。"
LCM_TEXT = "6と8の最小公倍数と最大公約数を求めなさい。"

HEADER = {
    "method_hint": {"label": "単位量あたり", "pitch": "1人分の広さにそろえると比べやすいよ。"},
    "final_answer": "答え：A公園\n\n【理由】1人分の広さがせまいからだよ。",
}


def _park_steps(*, last_has_calc=False, expression="12 ÷ 40", result=0.35):
    steps = [
        {"order": 1, "hint": "まず、広さと人数がいくつずつあるか見てみよう。", "solution": "手がかりは広さと人数の2つだね。"},
        {
            "order": 2,
            "hint": "A公園で1人にどれだけの人がいるかを広さで考えるよ。",
            "solution": "A公園のようすが数で見えてきたね。",
            "calculation": {"expression": "15 ÷ 50", "result": 0.3, "unit": "人"},
        },
        {
            "order": 3,
            "hint": "B公園でも同じものさしで調べてみよう。",
            "solution": "これでB公園もくらべられる形になったよ。",
            "calculation": {"expression": expression, "result": result, "unit": "人"},
        },
        {"order": 4, "hint": "2つの結果を横に並べて見くらべよう。", "solution": "数が大きいほうがこんでいるね。どっちかな？"},
    ]
    if last_has_calc:
        steps[3]["calculation"] = {"expression": "0.3 - 0.3", "result": 0}
    return {"steps": steps}


def _analysis(steps, *, problem_id="", problem_text=""):
    return {
        "status": "success",
        "problems": [
            {
                "id": problem_id,
                "problem_text": problem_text,
                "steps": steps,
                "final_answer": HEADER["final_answer"],
            }
        ],
    }


def _engine(transport, clock=None):
    counter = iter(range(1, 100))
    kwargs = {"id_factory": lambda: f"problem_test_{next(counter)}"}
    if clock is not None:
        kwargs["clock"] = clock
    return OrchestrationEngine(transport, transport.settings, **kwargs)


def _run(engine, text=PARK_TEXT, **kwargs):
    return asyncio.run(engine.analyze(text, estimate_level(text), **kwargs))


def test_chunked_happy_path():
    """normal 题：固定 4 步计划一次生成，复算修正结果，最后一步不带计算。"""

    def responder(request):
        return HEADER if request.context == "header" else _park_steps()

    transport = FakeTransport(make_settings(), responder)
    result = _run(_engine(transport))

    assert transport.contexts == ["header", "steps 1-4"]
    assert {r.model for r in transport.requests} == {"cheap-model"}
    assert transport.requests[1].max_output_tokens == 2200
    problem = result.problems[0]
    assert result.status == "success"
    assert problem.id == "problem_test_1"
    assert problem.problem_text == PARK_TEXT
    assert [s.order for s in problem.steps] == [1, 2, 3, 4]
    assert problem.steps[2].calculation.result == pytest.approx(0.3)
    assert problem.steps[-1].calculation is None
    assert problem.method_hint.label == "単位量あたり"
    assert result.meta.difficulty == "normal"
    assert result.debug is None


def test_debug_trace_only_in_debug_mode():
    def responder(request):
        return HEADER if request.context == "header" else _park_steps()

    result = _run(_engine(FakeTransport(make_settings(), responder)), debug=True)
    debug = result.debug
    assert debug["provider"] == "fake"
    assert debug["pipeline_path"] == "chunked"
    assert debug["chunk_history"] == [4]
    assert debug["models_tried"] == ["cheap-model"]
    assert debug["gate_attempts"] == [{"attempt": 0, "source": "chunked", "ok": True}]
    assert "total_ms" in debug


def test_missing_method_hint_gets_rule_based_default():
    def responder(request):
        if request.context == "header":
            return {"final_answer": HEADER["final_answer"]}
        return _park_steps()

    result = _run(_engine(FakeTransport(make_settings(), responder)))
    assert result.problems[0].method_hint.label == "情報を整理して、同じものさしで比べよう"


def test_gate_failure_regenerates_steps_with_corrective_instruction():
    step_calls = []

    def responder(request):
        if request.context == "header":
            return HEADER
        step_calls.append(request)
        if len(step_calls) == 1:
            return _park_steps(expression="12 = 12", result=12)
        return _park_steps()

    transport = FakeTransport(make_settings(), responder)
    result = _run(_engine(transport), debug=True)

    assert transport.contexts == ["header", "steps 1-4", "steps 1-4"]
    assert CORRECTIVE_INSTRUCTION not in step_calls[0].instruction
    assert CORRECTIVE_INSTRUCTION in step_calls[1].instruction
    gates = result.debug["gate_attempts"]
    assert gates[0]["ok"] is False
    assert gates[0]["reason"] == "expression_invalid_token@0:2"
    assert gates[1]["ok"] is True


def test_second_gate_failure_goes_to_single_shot():
    def responder(request):
        if request.context == "header":
            return HEADER
        if request.context == "single_shot":
            return _analysis(_park_steps()["steps"])
        return _park_steps(expression="3,4", result=12)

    transport = FakeTransport(make_settings(), responder)
    result = _run(_engine(transport), debug=True)

    assert transport.contexts == ["header", "steps 1-4", "steps 1-4", "single_shot"]
    assert CORRECTIVE_INSTRUCTION in transport.requests[-1].instruction
    assert result.debug["pipeline_path"] == "fallback_single_shot"
    # 两次拼装已各用掉一个 ID，单发结果补第三个
    assert result.problems[0].id == "problem_test_3"
    assert result.problems[0].problem_text == PARK_TEXT


def test_missing_final_summary_step_is_regenerated_once():
    step_calls = []

    def responder(request):
        if request.context == "header":
            return HEADER
        step_calls.append(request)
        return _park_steps(last_has_calc=len(step_calls) == 1)

    transport = FakeTransport(make_settings(), responder)
    result = _run(_engine(transport))

    assert len(step_calls) == 2
    assert "【必須】order 4" not in step_calls[0].instruction
    assert "【必須】order 4" in step_calls[1].instruction
    assert result.problems[0].steps[-1].calculation is None


def test_summary_and_duplicate_issues_are_fixed_by_one_regeneration():
    """整体校验同时报缺少最终步骤与跨块近似重复时，一次重生成同时带上两条修正指示。"""
    step_calls = []

    def responder(request):
        if request.context == "header":
            return HEADER
        step_calls.append(request)
        steps = _park_steps()["steps"]
        if request.context == "steps 1-2":
            return {"steps": steps[:2]}
        tail = steps[2:]
        if len(step_calls) <= 2:
            tail[0] = {**steps[1], "order": 3}
            tail[1] = {**tail[1], "calculation": {"expression": "0.3 - 0.3", "result": 0}}
        return {"steps": tail}

    transport = FakeTransport(make_settings(initial_chunk_size=2), responder)
    result = _run(_engine(transport), debug=True)

    assert [r.context for r in step_calls] == ["steps 1-2", "steps 3-4", "steps 1-2", "steps 3-4"]
    retry = step_calls[3].instruction
    assert "【必須】order 4" in retry
    assert "となりあうステップ" in retry
    assert "となりあうステップ" not in step_calls[1].instruction
    problem = result.problems[0]
    assert problem.steps[2].hint == "B公園でも同じものさしで調べてみよう。"
    assert problem.steps[-1].calculation is None
    assert result.debug["pipeline_path"] == "chunked"


def test_duplicate_problem_ids_from_single_shot_are_reassigned():
    def responder(request):
        if request.context == "header":
            return {"final_answer": ""}
        if request.context != "single_shot":
            return _park_steps()
        payload = _analysis(_park_steps()["steps"], problem_id="p1", problem_text=PARK_TEXT)
        payload["problems"].append(dict(payload["problems"][0]))
        return payload

    transport = FakeTransport(make_settings(), responder)
    result = _run(_engine(transport))

    assert transport.contexts == ["header", "steps 1-4", "single_shot"]
    assert [p.id for p in result.problems] == ["p1", "problem_test_1"]


def test_hard_problem_is_planned_and_chunked():
    def responder(request):
        if request.context == "plan":
            return {"step_count": 6, "step_titles": [f"要点{i}" for i in range(1, 7)]}
        if request.context == "header":
            return HEADER
        start, end = map(int, re.match(r"steps (\d+)-(\d+)", request.context).groups())
        steps = []
        for order in range(start, end + 1):
            step = {"order": order, "hint": f"{order}番目は{'あいうえおか'[order - 1] * 3}に注目", "solution": f"ここまでで{order}つ分かったね"}
            if order == 3:
                step["calculation"] = {"expression": "最小公倍数(6と8)", "result": 24}
            if order == 4:
                step["calculation"] = {"expression": "最大公約数(6、8)", "result": 2}
            steps.append(step)
        return {"steps": steps}

    transport = FakeTransport(make_settings(), responder)
    result = _run(_engine(transport), LCM_TEXT)

    assert transport.contexts == ["plan", "header", "steps 1-4", "steps 5-6"]
    assert {r.model for r in transport.requests} == {"strong-model"}
    steps = result.problems[0].steps
    assert [s.order for s in steps] == [1, 2, 3, 4, 5, 6]
    assert steps[2].calculation.expression == "最小公倍数(6と8)"


def test_parallel_chunks_keep_plan_order():
    def responder(request):
        if request.context == "plan":
            return {"step_count": 4, "step_titles": ["a", "b", "c", "d"]}
        if request.context == "header":
            return HEADER
        if request.context == "steps 1-2":
            return {"steps": [
                {"order": 1, "hint": "最初に数をたしかめよう", "solution": "6と8が出てくるね"},
                {"order": 2, "hint": "それぞれの倍数を書き出してみる", "solution": "ならべると見えてくるよ"},
            ]}
        return {"steps": [
            {"order": 1, "hint": "共通するものをさがそう", "solution": "同じ数が見つかったかな"},
            {"order": 2, "hint": "いちばん小さいものを選ぼう", "solution": "答えの形が見えてきたね"},
        ]}

    transport = FakeTransport(make_settings(parallel_chunks=True, initial_chunk_size=2), responder)
    result = _run(_engine(transport), LCM_TEXT)

    steps = result.problems[0].steps
    assert [s.order for s in steps] == [1, 2, 3, 4]
    assert steps[0].hint == "最初に数をたしかめよう"
    assert steps[3].hint == "いちばん小さいものを選ぼう"


def test_plan_failure_uses_fixed_plan():
    def responder(request):
        if request.context == "plan":
            return TransportTimeoutError("Timeout: plan")
        if request.context == "header":
            return HEADER
        return _park_steps()

    transport = FakeTransport(make_settings(fixed_plan_steps_hard=4), responder)
    result = _run(_engine(transport), LCM_TEXT)
    assert transport.contexts == ["plan", "header", "steps 1-4"]
    assert len(result.problems[0].steps) == 4


def test_plan_failure_policy_single_shot():
    def responder(request):
        if request.context == "plan":
            return "計画を作れませんでした"
        return _analysis(_park_steps()["steps"], problem_id="p1", problem_text=LCM_TEXT)

    transport = FakeTransport(make_settings(plan_failure_policy="single_shot"), responder)
    result = _run(_engine(transport), LCM_TEXT)
    assert transport.contexts == ["plan", "single_shot"]
    assert result.problems[0].id == "p1"


def test_all_timeouts_exhaust_pipeline():
    """每次尝试：标题超时、分块 4→2→1→1(升级) 全部超时、单发超时；三次尝试后耗尽。"""

    def responder(request):
        return TransportTimeoutError(f"Timeout: {request.context}")

    transport = FakeTransport(make_settings(), responder)
    engine = _engine(transport)
    with pytest.raises(PipelineExhaustedError) as exc_info:
        _run(engine, debug=True)

    per_attempt = ["header", "steps 1-4", "steps 1-2", "steps 1-1", "steps 1-1", "single_shot"]
    assert transport.contexts == per_attempt * 3
    models = [r.model for r in transport.requests]
    assert models[:2] == ["cheap-model", "cheap-model"]
    assert models[4] == "steps-model"
    assert set(models[6:]) == {"strong-model", "steps-model"}
    debug = exc_info.value.debug
    assert len(debug["attempts"]) == 3
    assert debug["steps_escalated"] is True
    assert exc_info.value.user_message


def test_exhaustion_without_debug_hides_details():
    transport = FakeTransport(make_settings(max_attempts=1), lambda r: TransportTimeoutError("Timeout"))
    with pytest.raises(PipelineExhaustedError) as exc_info:
        _run(_engine(transport))
    assert exc_info.value.debug is None


def test_malformed_steps_fall_back_to_single_shot():
    def responder(request):
        if request.context == "header":
            return HEADER
        if request.context == "single_shot":
            steps = _park_steps()["steps"]
            for step in steps:
                step["order"] += 4
            return _analysis(steps)
        return "JSON ではない応答"

    transport = FakeTransport(make_settings(), responder)
    result = _run(_engine(transport), debug=True)

    assert transport.contexts == ["header", "steps 1-4", "steps 1-2", "steps 1-1", "single_shot"]
    problem = result.problems[0]
    assert [s.order for s in problem.steps] == [1, 2, 3, 4]
    assert problem.id == "problem_test_1"
    assert problem.method_hint is not None
    assert result.debug["chunk_history"] == [4, 2, 1]


def test_header_failure_still_ends_in_single_shot():
    def responder(request):
        if request.context == "header":
            return {"final_answer": ""}
        if request.context == "single_shot":
            return _analysis(_park_steps()["steps"])
        return _park_steps()

    transport = FakeTransport(make_settings(), responder)
    _run(_engine(transport))
    assert transport.contexts[-1] == "single_shot"


def test_total_time_budget_degrades_to_short_answer():
    clock = FakeClock()

    def responder(request):
        if request.context == "header":
            clock.advance(40)
            return HEADER
        if request.context == "short_answer":
            return _analysis([
                {"order": 1, "hint": "1人分の広さにそろえよう", "solution": "そろえると比べられるね",
                 "calculation": {"expression": "50 ÷ 15", "result": 3.3}},
                {"order": 2, "hint": "結果を並べて見くらべよう", "solution": "どちらがせまいかな？"},
            ])
        raise AssertionError(f"unexpected call {request.context}")

    transport = FakeTransport(make_settings(), responder)
    result = _run(_engine(transport, clock=clock), debug=True)

    assert transport.contexts == ["header", "short_answer"]
    assert result.debug["pipeline_path"] == "degraded_short_answer"
    assert result.problems[0].steps[0].calculation.result == pytest.approx(50 / 15)


def test_failed_degraded_answer_stops_retrying():
    clock = FakeClock()

    def responder(request):
        clock.advance(40)
        return TransportTimeoutError(f"Timeout: {request.context}")

    transport = FakeTransport(make_settings(), responder)
    with pytest.raises(PipelineExhaustedError):
        _run(_engine(transport, clock=clock))
    assert transport.contexts == ["header", "short_answer"]


def test_missing_credentials_are_not_retried():
    transport = FakeTransport(make_settings(openai_api_key=""), lambda r: HEADER)
    with pytest.raises(ConfigurationError):
        _run(_engine(transport))
    assert transport.requests == []


def test_empty_problem_text_is_rejected():
    engine = _engine(FakeTransport(make_settings(), lambda r: HEADER))
    with pytest.raises(ValueError, match="問題文が空"):
        asyncio.run(engine.analyze("   ", estimate_level("")))


def test_extract_assigns_ids_and_skips_empty_problems():
    def responder(request):
        assert request.image == "data:image/png;base64,AAAA"
        assert request.model == "strong-model"
        return {"problems": [
            {"id": "", "title": "1", "problem_text": "りんごが3こあります。"},
            {"id": "q2", "problem_text": "   "},
            {"id": "q3", "problem_text": "みかんが5こあります。"},
        ]}

    engine = _engine(FakeTransport(make_settings(), responder))
    problems = asyncio.run(engine.extract("data:image/png;base64,AAAA"))
    assert [(p.id, p.problem_text) for p in problems] == [("p1", "りんごが3こあります。"), ("q3", "みかんが5こあります。")]


def test_extract_errors():
    engine = _engine(FakeTransport(make_settings(), lambda r: {"problems": []}))
    with pytest.raises(ExtractionError):
        asyncio.run(engine.extract("AAAA"))
    with pytest.raises(ValueError):
        asyncio.run(engine.extract(""))

    timeout_engine = _engine(FakeTransport(make_settings(), lambda r: TransportTimeoutError("Timeout: extract")))
    with pytest.raises(ExtractionError, match="Timeout: extract"):
        asyncio.run(timeout_engine.extract("AAAA"))


def test_generate_drill():
    drill = {"problems": [
        {"question": f"問題{i}", "answer": f"答え{i}", "explanation": f"解説{i}"} for i in range(3)
    ]}
    transport = FakeTransport(make_settings(), lambda r: drill)
    result = asyncio.run(_engine(transport).generate_drill(PARK_TEXT))
    assert len(result.problems) == 3
    assert transport.contexts == ["drill"]


def test_generate_drill_failure_is_drill_error():
    engine = _engine(FakeTransport(make_settings(), lambda r: {"problems": []}))
    with pytest.raises(DrillError) as exc_info:
        asyncio.run(engine.generate_drill(PARK_TEXT))
    assert "類題" in exc_info.value.user_message
