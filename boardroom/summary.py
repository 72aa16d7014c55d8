"""End-of-debate summary generation."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .completion import ChatMessage, TextCompletion
from .errors import CompletionError
from .scheduler import DebateState

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You are an impartial board secretary. You summarise executive debates "
    "for decision makers and answer with JSON only."
)

_ANSWER_CONTRACT = """Respond with a single JSON object with exactly these keys:
{
  "summary": "one paragraph overview",
  "keyConsensusPoints": ["..."],
  "majorDisagreements": ["..."],
  "recommendations": ["..."],
  "nextSteps": ["..."]
}"""


@dataclass
class DebateSummary:
    summary: str
    key_consensus_points: list[str] = field(default_factory=list)
    major_disagreements: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "keyConsensusPoints": list(self.key_consensus_points),
            "majorDisagreements": list(self.major_disagreements),
            "recommendations": list(self.recommendations),
            "nextSteps": list(self.next_steps),
        }


def build_summary_prompt(state: DebateState) -> str:
    transcript = "\n\n".join(
        f"[Round {m.round}] {m.persona.name} ({m.persona.title}):\n{m.content}" for m in state.messages
    )
    return (
        f"DEBATE TOPIC: {state.topic}\n\n"
        f"TRANSCRIPT:\n{transcript or 'No messages were produced.'}\n\n"
        f"{_ANSWER_CONTRACT}"
    )


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def parse_summary(text: str) -> DebateSummary:
    """Parse the JSON object embedded in a completion. Raises ``ValueError``."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("No JSON object in summary response")

    data = json.loads(text[start : end + 1])
    if not isinstance(data, dict) or not isinstance(data.get("summary"), str):
        raise ValueError("Summary response is missing the 'summary' field")

    return DebateSummary(
        summary=data["summary"].strip(),
        key_consensus_points=_string_list(data.get("keyConsensusPoints")),
        major_disagreements=_string_list(data.get("majorDisagreements")),
        recommendations=_string_list(data.get("recommendations")),
        next_steps=_string_list(data.get("nextSteps")),
    )


def fallback_summary(state: DebateState) -> DebateSummary:
    """Summary built from the transcript alone, used when generation fails."""
    participants = list(dict.fromkeys(m.persona.name for m in state.messages))
    rounds = state.current_round
    summary = (
        f'This debate on "{state.topic}" involved {len(participants)} executive '
        f"perspectives across {rounds} round{'s' if rounds != 1 else ''}."
    )

    consensus: list[str] = []
    disagreements: list[str] = []
    for message in state.messages:
        for other in message.agrees_with:
            point = f"{message.persona.name} agreed with {other}"
            if point not in consensus:
                consensus.append(point)
        for other in message.disagrees_with:
            point = f"{message.persona.name} disagreed with {other}"
            if point not in disagreements:
                disagreements.append(point)

    return DebateSummary(
        summary=summary,
        key_consensus_points=consensus,
        major_disagreements=disagreements,
        degraded=True,
    )


class DebateSummarizer:
    """Produces a ``DebateSummary`` for a finished debate. Never raises."""

    def __init__(
        self,
        completion: TextCompletion | None = None,
        *,
        timeout_seconds: float = 90.0,
        model: str | None = None,
    ) -> None:
        self._completion = completion
        self._timeout = timeout_seconds
        self._model = model

    async def summarize(self, state: DebateState) -> DebateSummary:
        if self._completion is None or not state.messages:
            return fallback_summary(state)

        try:
            async with asyncio.timeout(self._timeout):
                completion = await self._completion.complete(
                    SUMMARY_SYSTEM_PROMPT,
                    [ChatMessage(role="user", content=build_summary_prompt(state))],
                    model=self._model or state.model,
                )
            return parse_summary(completion.text)
        except TimeoutError:
            logger.warning("Summary generation timed out for debate %s", state.id)
        except CompletionError as exc:
            logger.warning("Summary generation failed for debate %s: %s", state.id, exc)
        except ValueError as exc:
            logger.warning("Unparseable summary for debate %s: %s", state.id, exc)
        except Exception:
            logger.exception("Summary generation crashed for debate %s", state.id)
        return fallback_summary(state)
