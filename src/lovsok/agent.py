"""Tool-calling agent loop over the reasoning model.

Each request runs a bounded state machine: the model either answers or asks
for tool calls; tool calls of one round run concurrently and their results
are merged in the order the model declared them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI

from .config import Settings
from .evidence import (
    NO_EVIDENCE_ANSWER,
    EvidenceAccumulator,
    build_fallback_answer,
    hits_to_evidence,
    parse_agent_answer,
    truncate_content,
    web_results_to_evidence,
)
from .search import HybridSearchEngine
from .timing import Timer
from .tools import (
    LegalDocumentSearch,
    LegalPracticeSearch,
    ToolCall,
    ToolCallError,
    parse_tool_call,
    tool_declarations,
)
from .types import (
    AgentError,
    AgentState,
    Citation,
    ConfigurationError,
    Evidence,
    SearchFilters,
    SearchResult,
    WebResult,
)
from .web_search import LEGAL_PRACTICE_PATTERNS, SerperClient, is_document_link

logger = logging.getLogger(__name__)

MAX_TOOL_CALL_ID_LENGTH = 40
MAX_PROMPT_CHARS = 50000
MAX_CONTENT_PER_EVIDENCE = 3000
PROMPT_OVERHEAD_CHARS = 200
MIN_EVIDENCE_SPACE = 10000
HIT_SNIPPET_CHARS = 500
SECONDS_PER_PROMPT_KB = 0.2
RECENCY_LAW_TYPES = (None, "Lov", "Forskrift")

SYSTEM_PROMPT = """Du er en juridisk assistent som bruker dokumenter fra Lovdatas offentlige data.
Svar alltid på norsk med et presist, nøkternt språk.

Du har tilgang til søkefunksjoner. Søk alltid før du svarer, og svar ikke bare ut fra egen kunnskap.

- search_lovdata_legal_documents finner lover, forskrifter, vedtak og andre juridiske dokumenter.
  Ekstraher relevante søkeord fra spørsmålet. Oppgi lawType bare hvis brukeren spør etter en bestemt dokumenttype.
- search_lovdata_legal_practice søker på lovdata.no etter rettsavgjørelser, kunngjøringer og praksis.
  Bruk den når spørsmålet gjelder hvordan regler anvendes i praksis.

Vurder søkeresultatene før du går videre. Er de irrelevante eller ufullstendige, søk på nytt med
mer presise søkeord, en annen dokumenttype eller et annet år.

Når du har nok informasjon, returner JSON på formatet
{"answer": "...", "citations": [{"evidenceId": "lovdata-1", "quote": "..."}]}.
Bruk evidenceId fra kildene eller søkeresultatene. Hvis du mangler grunnlag, si det høflig."""


def compute_timeout_budget(base: float, maximum: float, prompt_chars: int) -> float:
    """
    Seconds allowed for one model call.

    Starts at ``base`` and grows by 0.2s per KB of prompt, never beyond ``maximum``.
    """
    additional = min(prompt_chars / 1024 * SECONDS_PER_PROMPT_KB, max(maximum - base, 0.0))
    return min(base + additional, maximum)


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # Content blocks
    return "".join(
        part.get("text", "") if isinstance(part, dict) else str(part) for part in content
    )


def _prompt_chars(messages: Sequence[BaseMessage]) -> int:
    return sum(len(_message_text(message)) for message in messages)


def build_user_prompt(question: str, evidence: Sequence[Evidence]) -> str:
    """User message listing the question and the evidence known so far."""
    if not evidence:
        return (
            f"Brukerspørsmål: {question}\n\n"
            "Ingen kilder er funnet ennå. Bruk søkefunksjonene for å finne relevante dokumenter."
        )

    available = max(MAX_PROMPT_CHARS - len(question) - PROMPT_OVERHEAD_CHARS, MIN_EVIDENCE_SPACE)
    per_item = min(MAX_CONTENT_PER_EVIDENCE, available // len(evidence))
    blocks = []
    for item in evidence:
        content = truncate_content(item.content, per_item, tail_chars=500)
        lines = [
            f"ID: {item.id}",
            f"Kilde: {item.source.value}",
            f"Tittel: {item.title}" if item.title else None,
            f"Dato: {item.date}" if item.date else None,
            f"Lenke: {item.link}" if item.link else None,
            f"Utdrag: {item.snippet}" if item.snippet else None,
            f"Innhold:\n{content}" if content else None,
        ]
        blocks.append("\n".join(line for line in lines if line))

    return (
        f"Brukerspørsmål: {question}\n\n"
        f"Tilgjengelige kilder:\n" + "\n\n".join(blocks) + "\n\n"
        "Instruksjoner: Besvar spørsmålet ved å bruke kildene, eller søk etter flere. "
        "Husk å returnere JSON-formatet som spesifisert."
    )


class ReasoningModel:
    """OpenAI-compatible chat model with tool calling."""

    def __init__(self, settings: Settings, llm: Any | None = None):
        """
        Args:
            settings: Application settings
            llm: Chat model exposing ``bind_tools`` and ``ainvoke`` (built from settings if None)

        Raises:
            ConfigurationError: If no API key is configured and no llm is given
        """
        self.settings = settings
        self.model_name = settings.llm_model
        if llm is None:
            if not settings.openai_api_key:
                raise ConfigurationError("OPENAI_API_KEY is required to use the reasoning model.")
            llm = ChatOpenAI(
                model=settings.llm_model,
                temperature=settings.llm_temperature,
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                max_retries=0,
            )
        self.llm = llm

    async def complete(
        self,
        messages: Sequence[BaseMessage],
        tools: Sequence[dict[str, Any]],
        timeout: float,
    ) -> AIMessage:
        """
        Run one model call.

        Raises:
            AgentError: On timeout or any provider error
        """
        runnable = self.llm.bind_tools(list(tools), tool_choice="auto")
        try:
            return await asyncio.wait_for(runnable.ainvoke(list(messages)), timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Reasoning model call timed out after {timeout:.1f}s")
            raise AgentError(f"Reasoning model call timed out after {timeout:.1f}s") from e
        except Exception as e:
            logger.error(f"Reasoning model call failed: {e}")
            raise AgentError(f"Reasoning model call failed: {e}") from e


@dataclass
class ToolOutcome:
    """Result of one executed tool call, before it is merged into the evidence."""

    call_id: str
    name: str
    payload: dict[str, Any]
    entries: list[tuple[dict[str, Any], Evidence]] = field(default_factory=list)
    """Payload entries paired with the evidence they produced."""

    @property
    def evidence(self) -> list[Evidence]:
        return [item for _, item in self.entries]


@dataclass
class AgentRunResult:
    state: AgentState
    iterations: int
    tool_rounds: int
    evidence: list[Evidence]
    answer: str
    citations: list[Citation] = field(default_factory=list)
    best_effort: bool = False
    error: Optional[str] = None


def _normalise_call_id(call_id: Optional[str]) -> str:
    if not call_id:
        return f"call_{uuid.uuid4().hex[:24]}"
    if len(call_id) > MAX_TOOL_CALL_ID_LENGTH:
        logger.warning("Tool call id longer than %s chars: %s", MAX_TOOL_CALL_ID_LENGTH, call_id)
    return call_id


class AgentLoop:
    """Bounded tool-calling loop for one request."""

    def __init__(
        self,
        model: ReasoningModel,
        search: HybridSearchEngine,
        settings: Settings,
        web_search: SerperClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model = model
        self.search = search
        self.settings = settings
        self.web_search = web_search if web_search is not None and web_search.configured else None
        self.clock = clock
        self.tools = tool_declarations(include_web_search=self.web_search is not None)

    def _collect_tool_calls(self, response: AIMessage) -> list[ToolCall | ToolCallError]:
        calls: list[ToolCall | ToolCallError] = []
        for raw in response.tool_calls or []:
            calls.append(parse_tool_call(raw.get("name", ""), raw.get("args"), _normalise_call_id(raw.get("id"))))
        for raw in response.invalid_tool_calls or []:
            calls.append(parse_tool_call(raw.get("name") or "", raw.get("args"), _normalise_call_id(raw.get("id"))))
        return calls

    async def _execute(self, call: ToolCall | ToolCallError, question: str) -> ToolOutcome:
        if isinstance(call, ToolCallError):
            return ToolOutcome(call.call_id, call.name, call.to_payload())
        try:
            if isinstance(call.request, LegalDocumentSearch):
                return await self._search_legal_documents(call, question)
            return await self._search_legal_practice(call)
        except Exception as exc:
            logger.warning("Tool %s (%s) failed: %s", call.name, call.call_id, exc)
            return ToolOutcome(
                call.call_id,
                call.name,
                {"error": f"Søket feilet: {exc}", "_guidance": "Prøv et annet søk eller svar med kildene du har."},
            )

    async def _execute_round(
        self, calls: list[ToolCall | ToolCallError], question: str, deadline: float
    ) -> list[ToolOutcome]:
        """Run one round of tool calls concurrently, cancelling any still running at the deadline."""
        tasks = [asyncio.ensure_future(self._execute(call, question)) for call in calls]
        _, pending = await asyncio.wait(tasks, timeout=max(deadline - self.clock(), 0.0))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes = []
        for call, task in zip(calls, tasks):
            if task in pending:
                logger.warning("Tool %s (%s) cancelled at the request deadline", call.name, call.call_id)
                outcomes.append(
                    ToolOutcome(
                        call.call_id,
                        call.name,
                        {
                            "error": "Søket ble avbrutt fordi tidsbudsjettet er brukt opp.",
                            "_guidance": "Svar med kildene du allerede har.",
                        },
                    )
                )
            else:
                outcomes.append(task.result())
        return outcomes

    async def _run_legal_search(self, request: LegalDocumentSearch, page_size: int) -> tuple[SearchResult, Optional[int]]:
        filters = SearchFilters(law_type=request.law_type, year=request.year, ministry=request.ministry)
        if (
            request.year is None
            and request.law_type in RECENCY_LAW_TYPES
            and self.settings.agent_recent_years > 0
        ):
            min_year = datetime.now(timezone.utc).year - self.settings.agent_recent_years
            result = await self.search.search(
                request.query, page=request.page, page_size=page_size, filters=replace(filters, min_year=min_year)
            )
            if result.total_hits > 0:
                return result, min_year
            logger.info("No hits from %s onwards for %r, retrying without year filter", min_year, request.query)
        result = await self.search.search(request.query, page=request.page, page_size=page_size, filters=filters)
        return result, None

    async def _web_results(self, query: str, num: int, restricted: bool) -> list[WebResult]:
        """Document links from a site-restricted web search; failures give an empty list."""
        if self.web_search is None:
            return []
        try:
            results = await self.web_search.search(
                query,
                num=num,
                site=self.settings.serper_site_filter,
                restricted_patterns=LEGAL_PRACTICE_PATTERNS if restricted else (),
            )
        except Exception as exc:
            logger.warning("Web search failed for %r: %s", query, exc)
            return []
        return [result for result in results if is_document_link(result.link)]

    async def _search_legal_documents(self, call: ToolCall, question: str) -> ToolOutcome:
        request: LegalDocumentSearch = call.request
        page_size = min(request.page_size or self.settings.agent_default_page_size, self.settings.agent_max_page_size)
        result, min_year = await self._run_legal_search(request, page_size)

        entries: list[tuple[dict[str, Any], Evidence]] = []
        hits_payload = []
        for position, (hit, item) in enumerate(zip(result.hits, hits_to_evidence(result.hits)), start=1):
            entry = {
                "index": position,
                "title": hit.title,
                "snippet": (hit.snippet or "")[:HIT_SNIPPET_CHARS],
                "filename": hit.filename,
                "member": hit.member,
                "url": hit.url,
            }
            hits_payload.append(entry)
            entries.append((entry, item))

        payload: dict[str, Any] = {
            "query": request.query,
            "page": result.page,
            "pageSize": result.page_size,
            "totalHits": result.total_hits,
            "totalPages": result.total_pages,
            "minYear": min_year,
            "hits": hits_payload,
        }

        threshold = min(page_size, self.settings.agent_fallback_min_hits)
        if len(result.hits) < threshold or result.total_hits == 0:
            web_results = await self._web_results(request.query, num=10, restricted=False)
            web_payload = []
            for web_result, item in zip(web_results, web_results_to_evidence(web_results)):
                entry = {"title": web_result.title, "link": web_result.link, "snippet": web_result.snippet}
                web_payload.append(entry)
                entries.append((entry, item))
            if web_payload:
                payload["fallback"] = {"provider": "serper", "results": web_payload}
            logger.info(
                "Legal search for %r returned %s hits, web fallback added %s results",
                request.query,
                len(result.hits),
                len(web_payload),
            )

        if result.hits:
            guidance = (
                f"Du har fått {len(result.hits)} søkeresultater ({result.total_hits} totalt) for "
                f"\"{request.query}\". Vurder om de svarer på spørsmålet \"{question}\". Er de "
                "irrelevante, søk på nytt med mer spesifikke søkeord, en annen dokumenttype eller et annet år. "
                "Er de relevante, kan du svare."
            )
        elif payload.get("fallback"):
            guidance = (
                "Ingen treff i dokumentarkivet, men nettsøket på lovdata.no ga resultater. "
                "Vurder dem, eller prøv andre søkeord."
            )
        else:
            guidance = "Ingen resultater funnet. Prøv annen dokumenttype (lawType), år eller bredere søkeord."
        payload["_guidance"] = guidance
        return ToolOutcome(call.call_id, call.name, payload, entries)

    async def _search_legal_practice(self, call: ToolCall) -> ToolOutcome:
        request: LegalPracticeSearch = call.request
        if self.web_search is None:
            return ToolOutcome(
                call.call_id,
                call.name,
                {"error": "Nettsøk er ikke tilgjengelig.", "_guidance": "Bruk search_lovdata_legal_documents i stedet."},
            )
        num = min(max(request.num or 10, 10), 20)
        web_results = await self._web_results(request.query, num=num, restricted=True)

        entries: list[tuple[dict[str, Any], Evidence]] = []
        results_payload = []
        for web_result, item in zip(web_results, web_results_to_evidence(web_results)):
            entry = {
                "title": web_result.title,
                "link": web_result.link,
                "snippet": web_result.snippet,
                "date": web_result.date,
            }
            results_payload.append(entry)
            entries.append((entry, item))

        payload = {
            "query": request.query,
            "results": results_payload,
            "_guidance": (
                f"Fant {len(results_payload)} resultater fra rettspraksis og kunngjøringer. Bruk dem som eksempler på anvendelse."
                if results_payload
                else "Ingen resultater fra rettspraksis. Prøv andre søkeord eller svar med kildene du har."
            ),
        }
        return ToolOutcome(call.call_id, call.name, payload, entries)

    def _exhausted_result(
        self,
        accumulator: EvidenceAccumulator,
        iterations: int,
        tool_rounds: int,
        error: Optional[str] = None,
    ) -> AgentRunResult:
        threshold = max(1, self.settings.agent_min_evidence_for_answer)
        best_effort = len(accumulator) >= threshold
        return AgentRunResult(
            state=AgentState.FAILED,
            iterations=iterations,
            tool_rounds=tool_rounds,
            evidence=accumulator.items,
            answer=build_fallback_answer(accumulator.items) if best_effort else NO_EVIDENCE_ANSWER,
            best_effort=best_effort,
            error=error,
        )

    async def run(self, question: str, initial_evidence: Sequence[Evidence] = ()) -> AgentRunResult:
        """
        Run the loop until the model answers or the budget is spent.

        Args:
            question: Validated user question
            initial_evidence: Evidence from the prefetch search

        Returns:
            AgentRunResult in state DONE with the model's answer, or FAILED with
            a best-effort summary (or the no-answer text when too little
            evidence was gathered)
        """
        accumulator = EvidenceAccumulator()
        accumulator.merge(initial_evidence)
        messages: list[BaseMessage] = [
            SystemMessage(content=SYSTEM_PROMPT),
            HumanMessage(
                content=build_user_prompt(question, accumulator.items[: self.settings.agent_max_evidence_items])
            ),
        ]

        state = AgentState.AWAITING_MODEL_RESPONSE
        deadline = self.clock() + self.settings.agent_max_timeout_seconds
        iterations = 0
        tool_rounds = 0
        timer = Timer("agent_loop", logger, {"question": question[:100]})

        while iterations < self.settings.agent_max_iterations:
            remaining = deadline - self.clock()
            if iterations > 0 and remaining < self.settings.agent_min_iteration_seconds:
                logger.warning(
                    "Stopping agent loop with %.1fs left (needs %.1fs per round)",
                    remaining,
                    self.settings.agent_min_iteration_seconds,
                )
                break
            iterations += 1

            timeout = min(
                compute_timeout_budget(
                    self.settings.agent_base_timeout_seconds,
                    self.settings.agent_max_timeout_seconds,
                    _prompt_chars(messages),
                ),
                max(remaining, 0.0),
            )
            try:
                response = await self.model.complete(messages, self.tools, timeout)
            except AgentError as exc:
                logger.error(f"Agent iteration {iterations} failed: {exc}")
                timer.end(state=AgentState.FAILED.value, iterations=iterations)
                return self._exhausted_result(accumulator, iterations, tool_rounds, error=str(exc))

            messages.append(response)
            calls = self._collect_tool_calls(response)
            if not calls:
                answer, citations = parse_agent_answer(_message_text(response))
                state = AgentState.DONE
                timer.end(state=state.value, iterations=iterations, evidence=len(accumulator))
                return AgentRunResult(
                    state=state,
                    iterations=iterations,
                    tool_rounds=tool_rounds,
                    evidence=accumulator.items,
                    answer=answer,
                    citations=citations,
                )

            state = AgentState.EXECUTING_TOOLS
            tool_rounds += 1
            logger.info("Agent iteration %s: executing %s tool call(s)", iterations, len(calls))
            outcomes = await self._execute_round(calls, question, deadline)

            # Merge in declaration order, not completion order.
            for outcome in outcomes:
                accumulator.merge(outcome.evidence)
                for entry, item in outcome.entries:
                    entry["evidenceId"] = accumulator.id_for(item)
                messages.append(
                    ToolMessage(
                        content=json.dumps(outcome.payload, ensure_ascii=False, default=str),
                        tool_call_id=outcome.call_id,
                    )
                )
            timer.checkpoint(f"iteration_{iterations}")
            state = AgentState.AWAITING_MODEL_RESPONSE

        logger.warning("Agent did not provide a final answer after %s iteration(s)", iterations)
        timer.end(state=AgentState.FAILED.value, iterations=iterations, evidence=len(accumulator))
        return self._exhausted_result(accumulator, iterations, tool_rounds)

