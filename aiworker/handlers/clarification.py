"""Clarification handler: decide whether a request is ready for development."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from ..models import (
    KIND_CLARIFICATION,
    Clarification,
    ClarificationStatus,
    Feedback,
    Question,
    Summary,
    generate_id,
)
from ..prompts import build_analysis_prompt, extract_json_block
from ..state_machine import ClarificationStateMachine

logger = logging.getLogger(__name__)

ANALYSIS_TIMEOUT_MS = 120_000
# Requests shorter than this are too thin to act on without a follow-up.
MIN_CLEAR_INPUT_LENGTH = 20


@dataclass
class AnalysisResult:
    needs_clarification: bool
    summary: Summary | None = None
    questions: list[Question] = field(default_factory=list)

    @property
    def awaiting_user(self) -> bool:
        """True when the user has questions to answer before work can start."""
        return self.needs_clarification and bool(self.questions)


def parse_analysis_response(response: str) -> AnalysisResult:
    """Parse the analysis JSON; unparseable output needs clarification."""
    block = extract_json_block(response)
    try:
        if block is None:
            raise ValueError("No JSON found in response")
        parsed = json.loads(block)
        if not isinstance(parsed, dict):
            raise ValueError("Analysis response is not a JSON object")
        return AnalysisResult(
            needs_clarification=bool(parsed.get("needsClarification", False)),
            summary=Summary(
                summary=parsed.get("summary") or "",
                goals=list(parsed.get("goals") or []),
                acceptance_criteria=list(parsed.get("acceptanceCriteria") or []),
                ambiguity=list(parsed.get("ambiguity") or []),
            ),
            questions=[
                Question.from_dict(q) for q in parsed.get("questions") or []
                if isinstance(q, dict)
            ],
        )
    except (ValueError, TypeError) as exc:
        logger.warning("Failed to parse analysis response: %s", exc)
        return AnalysisResult(
            needs_clarification=True,
            summary=Summary(
                goals=["Analyse the request"],
                acceptance_criteria=["The feature works as expected"],
            ),
        )


def fallback_analysis(raw_input: str) -> AnalysisResult:
    """Heuristic analysis used when no backend could answer."""
    needs_clarification = len(raw_input) < MIN_CLEAR_INPUT_LENGTH
    summary = Summary(
        summary=raw_input[:50],
        goals=[
            "Understand and implement the request",
            "Keep code quality within project conventions",
            "Add the necessary error handling",
        ],
        acceptance_criteria=[
            "The feature works as expected",
            "The code follows project conventions",
            "Errors are handled appropriately",
            "The change has the tests it needs",
        ],
    )
    questions = []
    if needs_clarification:
        questions.append(
            Question(
                id="q1",
                question="Can you give more detail about the request?",
                options=["I can add more detail", "The description is enough"],
            )
        )
    return AnalysisResult(needs_clarification, summary, questions)


class ClarificationHandler:
    def __init__(self, store, adapter, timeout_hours: float = 24.0):
        self.store = store
        self.adapter = adapter
        self.timeout_hours = timeout_hours

    async def _load(self, clarification_id: str) -> Clarification:
        item = await self.store.load_work_item(clarification_id)
        if item is None or item.kind != KIND_CLARIFICATION:
            raise LookupError(f"Clarification not found: {clarification_id}")
        return item

    async def analyze(self, clarification_id: str) -> AnalysisResult:
        """Ask a backend whether the request is clear, then store its summary.

        Questions are stored only when the user has to answer them.
        """
        clarification = await self._load(clarification_id)
        await self.store.append_log(
            clarification_id, f"Analysing request: {clarification.raw_input[:50]}..."
        )

        prompt = build_analysis_prompt(clarification)
        await self.store.save_document(clarification_id, "analysis.prompt", prompt)

        try:
            response = await self.adapter.execute(prompt, timeout_ms=ANALYSIS_TIMEOUT_MS)
        except Exception as exc:
            await self.store.append_log(clarification_id, f"Analysis failed: {exc}", "error")
            result = fallback_analysis(clarification.raw_input)
        else:
            await self.store.save_document(clarification_id, "analysis.response", response.output)
            await self.store.append_log(
                clarification_id,
                f"Analysis finished via {response.tool_name}, {len(response.output)} chars",
            )
            result = parse_analysis_response(response.output)

        await self.store.append_log(
            clarification_id, f"Needs clarification: {result.needs_clarification}"
        )

        clarification = await self._load(clarification_id)
        clarification.summary = result.summary
        if result.awaiting_user:
            clarification.questions = result.questions
        await self.store.save_work_item(clarification)
        return result

    async def confirm(self, clarification_id: str, answers: dict[str, str]) -> Clarification:
        """Record answers and move the clarification to ``confirmed``.

        Raises InvalidTransition when the clarification cannot be confirmed
        from its current status.
        """
        clarification = await self._load(clarification_id)
        machine = ClarificationStateMachine(clarification.status)
        machine.transition_or_raise(ClarificationStatus.CONFIRMED)

        await self.store.append_log(
            clarification_id, f"User confirmed, answers: {json.dumps(answers, ensure_ascii=False)}"
        )
        for question in clarification.questions or []:
            if answers.get(question.id):
                question.answer = answers[question.id]

        clarification.status = machine.status
        await self.store.save_work_item(clarification)
        await self.store.append_log(clarification_id, "Clarification confirmed")
        return clarification

    async def create_feedback(self, clarification_id: str) -> Feedback:
        clarification = await self._load(clarification_id)
        if clarification.status != ClarificationStatus.CONFIRMED:
            raise ValueError("Clarification must be confirmed first")

        feedback = Feedback(
            id=generate_id(),
            raw_input=clarification.raw_input,
            project_scope=clarification.project_scope,
            summary=clarification.summary,
            origin_clarification_id=clarification_id,
        )
        await self.store.save_work_item(feedback)
        await self.store.append_log(clarification_id, f"Created feedback {feedback.id}")
        await self.store.append_log(feedback.id, f"Created from clarification {clarification_id}")
        return feedback

    async def check_expired(self, now: datetime | None = None) -> list[str]:
        """Ids of pending/awaiting clarifications older than the timeout.

        Scans every date partition the timeout window can reach, so a
        clarification created yesterday still expires today.
        """
        now = now or datetime.now(timezone.utc)
        timeout = timedelta(hours=self.timeout_hours)
        days = int(timeout / timedelta(days=1)) + 1

        expired: list[str] = []
        for offset in range(days, -1, -1):
            partition = (now - timedelta(days=offset)).strftime("%Y-%m-%d")
            for item in await self.store.list_by_partition(partition):
                if item.kind != KIND_CLARIFICATION:
                    continue
                if item.status not in (ClarificationStatus.PENDING, ClarificationStatus.AWAITING):
                    continue
                if not item.created_at:
                    continue
                if now - datetime.fromisoformat(item.created_at) > timeout:
                    expired.append(item.id)
        return expired

    async def expire_stale(self, now: datetime | None = None) -> list[str]:
        """Move timed-out clarifications to ``expired``.

        ``awaiting`` has a table edge to ``expired``; ``pending`` does not and
        is forced.
        """
        expired = await self.check_expired(now)
        for clarification_id in expired:
            clarification = await self._load(clarification_id)
            machine = ClarificationStateMachine(clarification.status)
            if not machine.expire().success:
                machine.force_transition(ClarificationStatus.EXPIRED)
            await self.store.update_status(clarification_id, machine.status)
            await self.store.append_log(clarification_id, "Clarification expired", "warn")
        return expired
