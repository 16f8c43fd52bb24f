"""Judge/evaluator detection and verdict parsing."""

import json
import logging
from typing import Any

from pydantic import ValidationError

from .models import JudgeVerdict
from .parser import first_balanced_object

logger = logging.getLogger(__name__)

JUDGE_KEYWORDS = (
    "judge",
    "evaluator",
    "critic",
    "compare",
    "comparison",
    "pick the best",
    "pick the winner",
    "pick a winner",
    "choose the best",
    "rate",
    "rating",
    "rank",
    "ranking",
    "score",
    "scoring",
    "evaluate",
    "evaluation",
    "assess",
    "assessment",
)

RESULT_MARKER = "RESULT:"
VERDICT_FIELDS = ("winner", "ranking", "winner_asset_url")

AGENT_RESULT_REQUIREMENT = """

IMPORTANT: After your analysis, you MUST end your response with a structured result in this EXACT format:

RESULT:
{
  "winner": "step_X",
  "winner_asset_url": "<copy the full URL of the winning asset here>",
  "ranking": ["step_X", "step_Y"],
  "reasoning_summary": "One sentence explaining why this won"
}

The RESULT block is MANDATORY - do not skip it."""

TASK_RESULT_REQUIREMENT = """

=== REQUIRED OUTPUT FORMAT ===
IMPORTANT: After your analysis, you MUST end your response with a structured result in this EXACT format:

RESULT:
{
  "winner": "Entry 1" or "Entry 2" etc,
  "winner_asset_url": "<copy the EXACT full https:// URL of the winning asset here>",
  "ranking": ["Entry 1", "Entry 2", ...],
  "reasoning_summary": "One sentence explaining why this won"
}

The RESULT block with winner_asset_url is MANDATORY - do not skip it. Copy the winning URL exactly from the task context."""


def is_judge_or_evaluator(*texts: str | None) -> bool:
    """True when any keyword appears in the combined, lower-cased texts.

    Matching is by substring, so "rate" also matches "generate".
    """
    combined = " ".join(t for t in texts if t).lower()
    return any(keyword in combined for keyword in JUDGE_KEYWORDS)


def with_result_requirement(system_prompt: str) -> str:
    """Append the RESULT block requirement unless the prompt already asks for one."""
    if RESULT_MARKER in system_prompt:
        return system_prompt
    return system_prompt + AGENT_RESULT_REQUIREMENT


def parse_judge_result(output: str | None) -> JudgeVerdict | None:
    """
    Parse the trailing ``RESULT:`` JSON block of a judge's output.

    Returns None when there is no such block, when it is not valid JSON, or
    when it names none of winner, ranking or winner_asset_url.
    """
    if not output:
        return None

    marker = output.rfind(RESULT_MARKER)
    if marker == -1:
        return None

    tail = output[marker + len(RESULT_MARKER) :]
    block = first_balanced_object(tail)
    if block is None:
        return None

    # Only a closing fence or whitespace may follow the block
    rest = tail[tail.find(block) + len(block) :]
    if rest.replace("`", "").strip():
        return None

    try:
        data: Any = json.loads(block)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or not any(data.get(name) for name in VERDICT_FIELDS):
        return None

    try:
        verdict = JudgeVerdict.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Judge result has unexpected shape: {e}")
        return None

    logger.info(f"Parsed judge result: winner={verdict.winner}, has_url={bool(verdict.winner_asset_url)}")
    return verdict
