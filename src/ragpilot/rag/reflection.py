"""
Self-reflection loop: critique the draft, search for what is missing, revise.

Each call builds its own state machine

    draft -> critiquing -> searching -> revising -> (critiquing | done)

and the number of completed rounds travels in that run's StateContext, so
concurrent calls on one Reflector never see each other's counters. Any
failure inside the loop ends it and the last accepted answer is returned.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..backends.base import LLMBackend, StreamSink
from ..core.cancellation import guarded
from ..core.state_machine import (
    State,
    StateContext,
    StateMachine,
    StateType,
    TerminalState,
    Transition,
)
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from .prompts import (
    CRITIQUE_PROMPT,
    ENHANCING_NOTICE,
    EXTRACT_QUERIES_PROMPT,
    FOUND_MORE_NOTICE,
    FOUND_NOTICE,
    REFLECTION_ERROR_NOTICE,
    REVISION_PROMPT,
    REVISION_SYSTEM_PROMPT,
)
from .retriever import Retriever, Source

logger = get_logger(__name__)

_NUMBERED_ITEM = re.compile(r"^\s*\d+\.\s*(.*?)(?=^\s*\d+\.|\Z)", re.DOTALL | re.MULTILINE)

DRAFT = "draft"
CRITIQUING = "critiquing"
SEARCHING = "searching"
REVISING = "revising"
DONE = "done"
FAILED = "failed"


@dataclass(frozen=True)
class ReflectionOutcome:
    """Final answer of a reflection run and how many rounds it completed."""

    answer: str
    rounds: int
    additional_sources: list[Source] = field(default_factory=list)
    error: str | None = None


def extract_numbered_queries(reflection: str, min_length: int = 5) -> list[str] | None:
    """
    Queries from a numbered list in the critique.

    Returns None when the text has no numbered items at all, and a possibly
    empty list when it has some but none is long enough.
    """
    matches = _NUMBERED_ITEM.findall(reflection)
    if not matches:
        return None
    return [m.strip() for m in matches if len(m.strip()) > min_length]


class _ReflectionState(State):
    def __init__(self, name: str, reflector: "Reflector", state_type=StateType.INTERMEDIATE):
        super().__init__(name, state_type)
        self.reflector = reflector

    def emit(self, context: StateContext, text: str) -> None:
        sink = context.get("on_chunk")
        if sink is not None:
            sink(text)


class DraftState(_ReflectionState):
    async def execute(self, context: StateContext) -> str:
        self.emit(context, ENHANCING_NOTICE)
        return CRITIQUING if self.reflector.has_rounds_left(context) else DONE


class CritiquingState(_ReflectionState):
    async def execute(self, context: StateContext) -> str:
        reflector = self.reflector
        logger.info(
            f"Executing reflection round {context.get('rounds') + 1}/{reflector.max_reflections}"
        )
        critique = await reflector.generate_critique(context.get("query"), context.get("answer"))
        if not critique or len(critique) < reflector.min_critique_length:
            logger.info("Critique too short or empty, ending reflection loop")
            return DONE

        context.set("rounds", context.get("rounds") + 1)
        context.set("critique", critique)

        queries = await reflector.extract_search_queries(critique)
        if not queries:
            logger.info("No search queries in critique, ending reflection loop")
            return DONE

        context.set("queries", queries)
        return SEARCHING


class SearchingState(_ReflectionState):
    async def execute(self, context: StateContext) -> str:
        reflector = self.reflector
        shown = context.get("shown_sources")
        blocks: list[str] = []
        found: list[Source] = []

        for search_query in context.get("queries"):
            results = await reflector.retriever.retrieve(search_query, reflector.search_limit)
            if not results:
                continue

            block = f'\n\nRegarding: "{search_query}"\n\n'
            for result in results:
                shown += 1
                block += f"Source [{shown}]: {result.basename}\n{result.content}\n\n"
            blocks.append(block)
            found.extend(results)

        if not blocks:
            logger.info("No additional information found, ending reflection loop")
            return DONE

        context.set("shown_sources", shown)
        context.set("additional_context", "".join(blocks))
        context.get("additional_sources").extend(found)
        return REVISING


class RevisingState(_ReflectionState):
    async def execute(self, context: StateContext) -> str:
        reflector = self.reflector
        current = context.get("answer")

        if context.get("on_chunk") is not None:
            self.emit(context, FOUND_MORE_NOTICE if context.get("rounds") > 1 else FOUND_NOTICE)
            self.emit(context, "\n\n")

        revised = await reflector.generate_revision(
            context.get("query"),
            current,
            context.get("critique"),
            context.get("additional_context"),
            context.get("on_chunk"),
        )

        if revised and len(revised) > len(current) * reflector.improvement_ratio:
            context.set("answer", revised)
            return CRITIQUING if reflector.has_rounds_left(context) else DONE

        logger.info("Revised answer failed the length guard, keeping current answer")
        return DONE


class Reflector:
    """Critique, re-retrieve and revise an answer for a bounded number of rounds."""

    def __init__(
        self,
        backend: LLMBackend | None,
        retriever: Retriever | None,
        max_reflections: int = 2,
        min_critique_length: int = 50,
        improvement_ratio: float = 0.5,
        search_limit: int = 3,
    ):
        self.backend = backend
        self.retriever = retriever
        self.max_reflections = max_reflections
        self.min_critique_length = min_critique_length
        self.improvement_ratio = improvement_ratio
        self.search_limit = search_limit

    def has_rounds_left(self, context: StateContext) -> bool:
        return context.get("rounds") < self.max_reflections

    def with_retriever(self, retriever: Retriever | None) -> "Reflector":
        return Reflector(
            self.backend,
            retriever,
            max_reflections=self.max_reflections,
            min_critique_length=self.min_critique_length,
            improvement_ratio=self.improvement_ratio,
            search_limit=self.search_limit,
        )

    async def improve_with_reflection(
        self, query: str, initial_answer: str, initial_context: Sequence[Source]
    ) -> ReflectionOutcome:
        return await self._run(query, initial_answer, initial_context, None)

    async def improve_with_reflection_streaming(
        self,
        query: str,
        initial_answer: str,
        initial_context: Sequence[Source],
        on_chunk: StreamSink,
    ) -> ReflectionOutcome:
        """Same loop; status notices and revision text are pushed to on_chunk."""
        return await self._run(query, initial_answer, initial_context, on_chunk)

    async def _run(
        self,
        query: str,
        initial_answer: str,
        initial_context: Sequence[Source],
        on_chunk: StreamSink | None,
    ) -> ReflectionOutcome:
        if self.backend is None or self.retriever is None:
            logger.info("Reflection needs a chat backend and a retriever, skipping")
            return ReflectionOutcome(answer=initial_answer, rounds=0)

        machine = self._build_machine()
        await machine.start(
            {
                "query": query,
                "answer": initial_answer,
                "rounds": 0,
                "shown_sources": len(initial_context),
                "additional_sources": [],
                "on_chunk": on_chunk,
            }
        )
        context = await machine.run_to_completion()

        error = context.get("error_message")
        if error is not None:
            logger.error(f"Error in reflection loop: {error}")
            if on_chunk is not None:
                try:
                    on_chunk(REFLECTION_ERROR_NOTICE)
                except Exception as e:
                    logger.warning(f"Stream sink rejected error notice: {e}")

        rounds = context.get("rounds")
        get_metrics_collector().record_reflection(rounds)
        logger.info(
            f"Reflection finished after {rounds} rounds",
            path="->".join(machine.get_state_history()),
        )
        return ReflectionOutcome(
            answer=context.get("answer"),
            rounds=rounds,
            additional_sources=list(context.get("additional_sources")),
            error=error,
        )

    def _build_machine(self) -> StateMachine:
        machine = StateMachine("reflection", DRAFT)
        machine.add_state(DraftState(DRAFT, self, StateType.INITIAL))
        machine.add_state(CritiquingState(CRITIQUING, self))
        machine.add_state(SearchingState(SEARCHING, self))
        machine.add_state(RevisingState(REVISING, self))
        machine.add_state(TerminalState(DONE, StateType.FINAL))
        machine.add_state(TerminalState(FAILED, StateType.ERROR))

        # Every way into critiquing is capped by max_reflections
        machine.add_transition(Transition(DRAFT, CRITIQUING, self.has_rounds_left))
        machine.add_transition(Transition(REVISING, CRITIQUING, self.has_rounds_left))
        for from_state, to_state in [
            (DRAFT, DONE),
            (CRITIQUING, SEARCHING),
            (CRITIQUING, DONE),
            (SEARCHING, REVISING),
            (SEARCHING, DONE),
            (REVISING, DONE),
        ]:
            machine.add_transition(Transition(from_state, to_state))
        return machine

    async def generate_critique(self, query: str, answer: str) -> str:
        prompt = CRITIQUE_PROMPT.format(query=query, answer=answer)
        return await guarded(
            self.backend.chat([{"role": "user", "content": prompt}]), "chat.critique"
        )

    async def extract_search_queries(self, reflection: str) -> list[str]:
        """Numbered items from the critique, else ask the backend to list queries."""
        numbered = extract_numbered_queries(reflection)
        if numbered is not None:
            return numbered

        prompt = EXTRACT_QUERIES_PROMPT.format(reflection=reflection)
        extracted = await guarded(
            self.backend.chat([{"role": "user", "content": prompt}]), "chat.extract_queries"
        )
        lines = (line.strip() for line in extracted.split("\n"))
        return [line for line in lines if len(line) > 5 and not line.startswith("Queries")]

    async def generate_revision(
        self,
        query: str,
        answer: str,
        reflection: str,
        additional_context: str,
        on_chunk: StreamSink | None = None,
    ) -> str:
        messages = [
            {"role": "system", "content": REVISION_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": REVISION_PROMPT.format(
                    query=query,
                    answer=answer,
                    reflection=reflection,
                    additional_context=additional_context,
                ),
            },
        ]
        return await guarded(self.backend.chat(messages, on_chunk), "chat.revise")
