import json

import pytest
from conftest import FakeCompletion

from boardroom.errors import CompletionError
from boardroom.personas import get_persona_by_name
from boardroom.scheduler import DebateState, DebateTurnRecord, TurnStatus
from boardroom.selector import DebateMode
from boardroom.summary import DebateSummarizer, parse_summary

ANSWER = {
    "summary": "The board favours a phased rollout.",
    "keyConsensusPoints": ["Start with one region"],
    "majorDisagreements": ["Hiring pace"],
    "recommendations": ["Run a pilot"],
    "nextSteps": ["Draft the pilot budget"],
}


def _state(clock) -> DebateState:
    alex = get_persona_by_name("Alex")
    sam = get_persona_by_name("Sam")
    state = DebateState(
        topic="Should we expand into Europe next year?",
        mode=DebateMode.CUSTOM,
        personas=[alex, sam],
        max_rounds=1,
        model="mixtral-8x7b",
        current_round=1,
    )
    state.messages = [
        DebateTurnRecord(1, 1, alex, clock(), content="Expansion now.", status=TurnStatus.COMPLETED),
        DebateTurnRecord(
            1,
            2,
            sam,
            clock(),
            content="I agree with Alex.",
            status=TurnStatus.COMPLETED,
            agrees_with=["Alex (CEO)"],
        ),
    ]
    return state


def test_parse_summary_tolerates_surrounding_prose() -> None:
    summary = parse_summary(f"Here you go:\n{json.dumps(ANSWER)}\nThanks!")
    assert summary.summary == ANSWER["summary"]
    assert summary.next_steps == ["Draft the pilot budget"]
    assert summary.to_dict() == ANSWER


def test_parse_summary_requires_summary_field() -> None:
    with pytest.raises(ValueError):
        parse_summary('{"keyConsensusPoints": []}')
    with pytest.raises(ValueError):
        parse_summary("no json at all")


@pytest.mark.asyncio
async def test_summarizer_uses_completion(clock) -> None:
    completion = FakeCompletion(lambda system, prompt: json.dumps(ANSWER))
    summary = await DebateSummarizer(completion).summarize(_state(clock))

    assert summary.degraded is False
    assert summary.recommendations == ["Run a pilot"]
    assert "DEBATE TOPIC: Should we expand into Europe next year?" in completion.calls[0][1]
    assert "Sam (CTO)" in completion.calls[0][1]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "completion",
    [
        None,
        FakeCompletion(lambda system, prompt: "not json"),
        FakeCompletion(errors=[CompletionError("down")]),
        FakeCompletion(errors=[RuntimeError("provider down")]),
    ],
)
async def test_summarizer_degrades_instead_of_raising(clock, completion) -> None:
    summary = await DebateSummarizer(completion).summarize(_state(clock))

    assert summary.degraded is True
    assert "2 executive perspectives across 1 round." in summary.summary
    assert summary.key_consensus_points == ["Sam (CTO) agreed with Alex (CEO)"]
    assert summary.major_disagreements == []
    assert summary.recommendations == []
    assert summary.next_steps == []


@pytest.mark.asyncio
async def test_summarizer_times_out(clock) -> None:
    summarizer = DebateSummarizer(FakeCompletion(delay=5), timeout_seconds=0.05)
    summary = await summarizer.summarize(_state(clock))
    assert summary.degraded is True
