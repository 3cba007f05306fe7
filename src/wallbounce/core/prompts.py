"""Prompt builders for parallel rounds, sequential chains and the aggregator."""

from __future__ import annotations

from typing import Optional, Sequence

from wallbounce.core.models import ProviderInvocationResult, TaskTier
from wallbounce.core.sessions import SessionTurn

PREVIOUS_OUTPUT_LIMIT = 600
SUMMARY_LIMIT = 800
AGGREGATOR_RESPONSE_LIMIT = 1200
CONTINUATION_ANSWER_LIMIT = 600

SEQUENTIAL_INSTRUCTION = (
    "Build on the analysis so far: add new perspectives, correct mistakes and "
    "call out risks that earlier steps missed."
)

AGGREGATOR_INSTRUCTIONS = (
    "You are integrating independent answers to the same request.",
    "Keep points the answers agree on and resolve contradictions explicitly.",
    "Drop claims made by a single answer unless they are well supported.",
    "Reply with the final answer only.",
)

AGGREGATOR_SYSTEM_PROMPT = "You synthesize multiple AI responses into one coherent, accurate answer."


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)].rstrip() + "..."


def continuation_context(turns: Sequence[SessionTurn]) -> Optional[str]:
    """Render prior session turns (oldest first) as context for the next turn."""
    if not turns:
        return None
    lines = ["Conversation so far:"]
    for index, turn in enumerate(turns, start=1):
        lines.append(f"[{index}] User: {turn.request_text}")
        lines.append(f"[{index}] Answer: {truncate(turn.answer, CONTINUATION_ANSWER_LIMIT)}")
    return "\n".join(lines)


def update_summary(previous: str, provider_id: str, content: str, step: int) -> str:
    entry = f"[{provider_id}][step {step}] {truncate(content, PREVIOUS_OUTPUT_LIMIT)}"
    return f"{previous}\n\n{entry}" if previous else entry


def build_sequential_prompt(
    prompt: str,
    *,
    step: int,
    depth: int,
    previous: Optional[ProviderInvocationResult],
    summary: str,
) -> str:
    """Prompt for chain step ``step`` (1-based) of ``depth``."""
    if previous is None:
        previous_section = "(no analysis yet)"
    else:
        previous_section = f"[{previous.provider_id}]\n{truncate(previous.text, PREVIOUS_OUTPUT_LIMIT)}"
    history = f"\n\nNotes from earlier steps:\n{truncate(summary, SUMMARY_LIMIT)}" if summary else ""
    return (
        f"{prompt}\n\n"
        f"Analysis so far:\n{previous_section}{history}\n\n"
        f"[Progress: step {step}/{depth}]\n\n"
        f"Instructions:\n- {SEQUENTIAL_INSTRUCTION}"
    )


def build_aggregator_prompt(
    prompt: str,
    responses: Sequence[ProviderInvocationResult],
    *,
    tier: Optional[TaskTier] = None,
    depth: Optional[int] = None,
) -> str:
    header = "\n".join(f"- {line}" for line in AGGREGATOR_INSTRUCTIONS)
    sections = "\n\n".join(
        f"[{response.provider_id}]\n{truncate(response.text, AGGREGATOR_RESPONSE_LIMIT)}" for response in responses
    )
    info = ""
    if tier is not None:
        info += f"\nTask tier: {tier.value}"
    if depth:
        info += f"\nChain depth: {depth}"
    return f"{header}{info}\n\nOriginal request:\n{prompt}\n\nIndividual answers:\n{sections}"
