"""Tests for the tool-calling agent loop."""

import asyncio
import itertools
import json
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage

from lovsok.agent import (
    AgentLoop,
    ReasoningModel,
    _normalise_call_id,
    build_user_prompt,
    compute_timeout_budget,
)
from lovsok.evidence import NO_EVIDENCE_ANSWER, hits_to_evidence
from lovsok.tools import LEGAL_DOCUMENTS_TOOL, LEGAL_PRACTICE_TOOL, tool_declarations
from lovsok.types import AgentError, AgentState, ConfigurationError, SearchHit, SearchResult, WebResult
from lovsok.web_search import LEGAL_PRACTICE_PATTERNS


class StubModel:
    """Returns queued responses in order; exceptions in the queue are raised."""

    model_name = "stub-model"

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def complete(self, messages, tools, timeout):
        self.calls.append({"messages": list(messages), "tools": tools, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def hit(member, title=None):
    return SearchHit(
        filename="lover.zip",
        member=member,
        title=title or member,
        date=None,
        snippet=f"Utdrag fra {member}",
        url=f"http://localhost:4000/api/documents/xml?filename=lover.zip&member={member}",
    )


def result(*members, page_size=5):
    hits = [hit(member) for member in members]
    return SearchResult(query="q", hits=hits, total_hits=len(hits), page=1, page_size=page_size)


def tool_call(call_id, name=LEGAL_DOCUMENTS_TOOL, **args):
    return {"name": name, "args": args, "id": call_id}


def calls_message(*calls):
    return AIMessage(content="", tool_calls=list(calls))


def answer_message(answer="Svar", evidence_ids=("lovdata-1",)):
    body = {"answer": answer, "citations": [{"evidenceId": evidence_id} for evidence_id in evidence_ids]}
    return AIMessage(content=json.dumps(body))


def tool_payloads(messages):
    return [
        (message.tool_call_id, json.loads(message.content))
        for message in messages
        if isinstance(message, ToolMessage)
    ]


@pytest.fixture
def search():
    search = Mock()
    search.search = AsyncMock(return_value=result("a.xml", "b.xml"))
    return search


@pytest.fixture
def web_search():
    web_search = Mock()
    web_search.configured = True
    web_search.search = AsyncMock(
        return_value=[
            WebResult(title="Dom", link="https://lovdata.no/avgjørelser/HR-2020-1", snippet="Høyesterett"),
            WebResult(title="Forside", link="https://lovdata.no/", snippet=None),
        ]
    )
    return web_search


def test_compute_timeout_budget():
    assert compute_timeout_budget(30, 55, 0) == 30
    assert compute_timeout_budget(30, 55, 10 * 1024) == pytest.approx(32)
    assert compute_timeout_budget(30, 55, 10_000_000) == 55


def test_normalise_call_id():
    generated = _normalise_call_id(None)
    assert generated.startswith("call_")
    assert len(generated) == 29
    assert _normalise_call_id("call_1") == "call_1"


def test_build_user_prompt_lists_evidence():
    evidence = hits_to_evidence([hit("a.xml", title="Husleieloven")])
    evidence[0].content = "x" * 5000

    prompt = build_user_prompt("Hva er depositum?", evidence)

    assert prompt.startswith("Brukerspørsmål: Hva er depositum?")
    assert "ID: lovdata-1" in prompt
    assert "Tittel: Husleieloven" in prompt
    assert "x" * 3001 not in prompt


def test_build_user_prompt_without_evidence():
    assert "Ingen kilder er funnet ennå" in build_user_prompt("Hva er depositum?", [])


@pytest.mark.asyncio
async def test_tool_round_then_answer(search, mock_settings):
    model = StubModel([calls_message(tool_call("call_1", query="depositum")), answer_message()])
    loop = AgentLoop(model, search, mock_settings)

    outcome = await loop.run("Hvor stort kan depositum være?")

    assert outcome.state == AgentState.DONE
    assert outcome.iterations == 2
    assert outcome.tool_rounds == 1
    assert outcome.answer == "Svar"
    assert [c.evidence_id for c in outcome.citations] == ["lovdata-1"]
    assert [item.id for item in outcome.evidence] == ["lovdata-1", "lovdata-2"]
    assert len(model.calls[0]["tools"]) == 1

    filters = search.search.await_args.kwargs["filters"]
    assert filters.min_year == datetime.now(timezone.utc).year - 5

    [(call_id, payload)] = tool_payloads(model.calls[1]["messages"])
    assert call_id == "call_1"
    assert payload["minYear"] == datetime.now(timezone.utc).year - 5
    assert [entry["evidenceId"] for entry in payload["hits"]] == ["lovdata-1", "lovdata-2"]
    assert payload["_guidance"]


@pytest.mark.asyncio
async def test_recency_filter_retries_without_year(search, mock_settings):
    async def by_filter(query, page=1, page_size=10, filters=None):
        if filters.min_year is not None:
            return result()
        return result("gammel.xml")

    search.search = AsyncMock(side_effect=by_filter)
    model = StubModel([calls_message(tool_call("call_1", query="odelsrett")), answer_message()])

    await AgentLoop(model, search, mock_settings).run("Hva er odelsrett?")

    assert search.search.await_count == 2
    [(_, payload)] = tool_payloads(model.calls[1]["messages"])
    assert payload["minYear"] is None
    assert payload["hits"][0]["member"] == "gammel.xml"


@pytest.mark.asyncio
async def test_explicit_year_skips_recency_filter(search, mock_settings):
    model = StubModel([calls_message(tool_call("call_1", query="husleie", year=1999)), answer_message()])

    await AgentLoop(model, search, mock_settings).run("Husleie i 1999?")

    filters = search.search.await_args.kwargs["filters"]
    assert filters.year == 1999
    assert filters.min_year is None
    assert search.search.await_count == 1


@pytest.mark.asyncio
async def test_concurrent_calls_merge_in_declaration_order(search, mock_settings):
    async def by_query(query, page=1, page_size=10, filters=None):
        if query == "treg":
            await asyncio.sleep(0.05)
            return result("x.xml")
        return result("y.xml", "x.xml")

    search.search = AsyncMock(side_effect=by_query)
    model = StubModel([
        calls_message(tool_call("call_1", query="treg"), tool_call("call_2", query="rask")),
        answer_message(evidence_ids=("lovdata-2",)),
    ])

    outcome = await AgentLoop(model, search, mock_settings).run("Spørsmål")

    assert [item.metadata["member"] for item in outcome.evidence] == ["x.xml", "y.xml"]
    assert [item.id for item in outcome.evidence] == ["lovdata-1", "lovdata-2"]
    payloads = tool_payloads(model.calls[1]["messages"])
    assert [call_id for call_id, _ in payloads] == ["call_1", "call_2"]
    assert [entry["evidenceId"] for entry in payloads[1][1]["hits"]] == ["lovdata-2", "lovdata-1"]


@pytest.mark.asyncio
async def test_initial_evidence_is_deduplicated(search, mock_settings):
    initial = hits_to_evidence([hit("b.xml")])
    model = StubModel([calls_message(tool_call("call_1", query="depositum")), answer_message()])

    outcome = await AgentLoop(model, search, mock_settings).run("Spørsmål", initial)

    assert [item.metadata["member"] for item in outcome.evidence] == ["b.xml", "a.xml"]
    [(_, payload)] = tool_payloads(model.calls[1]["messages"])
    assert [entry["evidenceId"] for entry in payload["hits"]] == ["lovdata-2", "lovdata-1"]


@pytest.mark.asyncio
async def test_malformed_arguments_are_returned_to_model(search, mock_settings):
    malformed = AIMessage(
        content="",
        invalid_tool_calls=[
            {"name": LEGAL_DOCUMENTS_TOOL, "args": '{"query": ', "id": "call_1", "error": "bad json"}
        ],
    )
    model = StubModel([malformed, answer_message()])

    outcome = await AgentLoop(model, search, mock_settings).run("Spørsmål")

    assert outcome.state == AgentState.DONE
    [(call_id, payload)] = tool_payloads(model.calls[1]["messages"])
    assert call_id == "call_1"
    assert payload["error"].startswith("Argumentene er ikke gyldig JSON")
    search.search.assert_not_called()


@pytest.mark.asyncio
async def test_failing_tool_becomes_error_payload(search, mock_settings):
    search.search = AsyncMock(side_effect=RuntimeError("qdrant down"))
    model = StubModel([calls_message(tool_call("call_1", query="depositum")), answer_message()])

    outcome = await AgentLoop(model, search, mock_settings).run("Spørsmål")

    assert outcome.state == AgentState.DONE
    [(_, payload)] = tool_payloads(model.calls[1]["messages"])
    assert "qdrant down" in payload["error"]


@pytest.mark.asyncio
async def test_iteration_limit_gives_best_effort_answer(search, mock_settings):
    mock_settings.agent_max_iterations = 3
    model = StubModel([calls_message(tool_call(f"call_{i}", query="depositum")) for i in range(3)])

    outcome = await AgentLoop(model, search, mock_settings).run("Spørsmål")

    assert outcome.state == AgentState.FAILED
    assert outcome.iterations == 3
    assert outcome.tool_rounds == 3
    assert outcome.best_effort is True
    assert outcome.answer.startswith("Her er en oppsummering")
    assert len(outcome.evidence) == 2


@pytest.mark.asyncio
async def test_iteration_limit_without_evidence(search, mock_settings):
    mock_settings.agent_max_iterations = 2
    search.search = AsyncMock(return_value=result())
    model = StubModel([calls_message(tool_call(f"call_{i}", query="ukjent")) for i in range(2)])

    outcome = await AgentLoop(model, search, mock_settings).run("Spørsmål")

    assert outcome.state == AgentState.FAILED
    assert outcome.answer == NO_EVIDENCE_ANSWER
    assert outcome.best_effort is False
    assert outcome.evidence == []


@pytest.mark.asyncio
async def test_model_error_fails_with_best_effort(search, mock_settings):
    model = StubModel([AgentError("Reasoning model call failed: boom")])
    initial = hits_to_evidence([hit("a.xml")])

    outcome = await AgentLoop(model, search, mock_settings).run("Spørsmål", initial)

    assert outcome.state == AgentState.FAILED
    assert outcome.error == "Reasoning model call failed: boom"
    assert outcome.iterations == 1
    assert outcome.best_effort is True


@pytest.mark.asyncio
async def test_loop_stops_when_deadline_is_near(search, mock_settings):
    ticks = itertools.count(0.0, 48.0)
    model = StubModel([calls_message(tool_call("call_1", query="depositum")), answer_message()])
    loop = AgentLoop(model, search, mock_settings, clock=lambda: next(ticks))

    outcome = await loop.run("Spørsmål")

    assert outcome.state == AgentState.FAILED
    assert outcome.iterations == 1
    assert model.calls[0]["timeout"] == pytest.approx(7.0)


@pytest.mark.asyncio
async def test_slow_tool_round_is_cut_at_deadline(search, mock_settings):
    mock_settings.agent_max_timeout_seconds = 0.5
    mock_settings.agent_min_iteration_seconds = 0.1

    async def slow_search(*args, **kwargs):
        await asyncio.sleep(2)
        return result("a.xml")

    search.search = AsyncMock(side_effect=slow_search)
    model = StubModel([calls_message(tool_call("call_1", query="depositum")), answer_message()])

    started = time.monotonic()
    outcome = await AgentLoop(model, search, mock_settings).run("Spørsmål")

    assert time.monotonic() - started < 1.5
    assert outcome.state == AgentState.FAILED
    assert outcome.iterations == 1
    assert len(model.calls) == 1
    assert outcome.evidence == []


@pytest.mark.asyncio
async def test_web_fallback_for_thin_results(search, web_search, mock_settings):
    search.search = AsyncMock(return_value=result("a.xml"))
    model = StubModel([calls_message(tool_call("call_1", query="depositum")), answer_message()])
    loop = AgentLoop(model, search, mock_settings, web_search=web_search)

    outcome = await loop.run("Spørsmål")

    assert len(loop.tools) == 2
    assert [item.id for item in outcome.evidence] == ["lovdata-1", "web-1"]
    [(_, payload)] = tool_payloads(model.calls[1]["messages"])
    assert payload["fallback"]["provider"] == "serper"
    assert [entry["evidenceId"] for entry in payload["fallback"]["results"]] == ["web-1"]
    kwargs = web_search.search.await_args.kwargs
    assert kwargs["site"] == "lovdata.no"
    assert kwargs["restricted_patterns"] == ()


@pytest.mark.asyncio
async def test_web_fallback_failure_is_ignored(search, web_search, mock_settings):
    search.search = AsyncMock(return_value=result())
    web_search.search = AsyncMock(side_effect=httpx.ConnectError("offline"))
    model = StubModel([calls_message(tool_call("call_1", query="depositum")), answer_message()])

    outcome = await AgentLoop(model, search, mock_settings, web_search=web_search).run("Spørsmål")

    assert outcome.evidence == []
    [(_, payload)] = tool_payloads(model.calls[1]["messages"])
    assert "fallback" not in payload
    assert payload["totalHits"] == 0


@pytest.mark.asyncio
async def test_legal_practice_search(search, web_search, mock_settings):
    model = StubModel([
        calls_message(tool_call("call_1", name=LEGAL_PRACTICE_TOOL, query="oppsigelse", num=3)),
        answer_message(evidence_ids=("web-1",)),
    ])

    outcome = await AgentLoop(model, search, mock_settings, web_search=web_search).run("Spørsmål")

    assert [item.link for item in outcome.evidence] == ["https://lovdata.no/avgjørelser/HR-2020-1"]
    kwargs = web_search.search.await_args.kwargs
    assert kwargs["num"] == 10
    assert kwargs["restricted_patterns"] == LEGAL_PRACTICE_PATTERNS
    search.search.assert_not_called()


@pytest.mark.asyncio
async def test_legal_practice_without_web_search(search, mock_settings):
    model = StubModel([
        calls_message(tool_call("call_1", name=LEGAL_PRACTICE_TOOL, query="oppsigelse")),
        answer_message(),
    ])

    await AgentLoop(model, search, mock_settings).run("Spørsmål")

    [(_, payload)] = tool_payloads(model.calls[1]["messages"])
    assert payload["error"] == "Nettsøk er ikke tilgjengelig."


@pytest.mark.asyncio
async def test_reasoning_model_binds_tools(mock_settings):
    llm = Mock()
    llm.bind_tools.return_value.ainvoke = AsyncMock(return_value=AIMessage(content="ok"))
    model = ReasoningModel(mock_settings, llm=llm)
    tools = tool_declarations()

    response = await model.complete([HumanMessage(content="hei")], tools, timeout=5)

    assert response.content == "ok"
    assert model.model_name == "test-model"
    llm.bind_tools.assert_called_once_with(tools, tool_choice="auto")


@pytest.mark.asyncio
async def test_reasoning_model_always_binds_tools(mock_settings):
    llm = Mock()
    llm.bind_tools.return_value.ainvoke = AsyncMock(return_value=AIMessage(content="{}"))
    model = ReasoningModel(mock_settings, llm=llm)

    await model.complete([HumanMessage(content="hei")], tool_declarations(), timeout=5)

    llm.bind_tools.assert_called_once_with(tool_declarations(), tool_choice="auto")
    llm.bind.assert_not_called()


@pytest.mark.asyncio
async def test_reasoning_model_errors_become_agent_errors(mock_settings):
    llm = Mock()
    llm.bind_tools.return_value.ainvoke = AsyncMock(side_effect=RuntimeError("rate limited"))
    model = ReasoningModel(mock_settings, llm=llm)

    with pytest.raises(AgentError, match="rate limited"):
        await model.complete([HumanMessage(content="hei")], tool_declarations(), timeout=5)


@pytest.mark.asyncio
async def test_reasoning_model_timeout(mock_settings):
    async def slow(messages):
        await asyncio.sleep(1)

    llm = Mock()
    llm.bind_tools.return_value.ainvoke = AsyncMock(side_effect=slow)
    model = ReasoningModel(mock_settings, llm=llm)

    with pytest.raises(AgentError, match="timed out"):
        await model.complete([HumanMessage(content="hei")], tool_declarations(), timeout=0.05)


def test_reasoning_model_requires_api_key(mock_settings):
    mock_settings.openai_api_key = None
    with pytest.raises(ConfigurationError):
        ReasoningModel(mock_settings)
