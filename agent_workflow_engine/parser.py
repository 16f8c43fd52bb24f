"""
Planner output parsing.

Turns the free-text reply of a planning worker into a validated Command.
Replies are often wrapped in markdown fences or surrounded by prose, and now
and then use single quotes; all of that is tolerated. Parsing never raises:
failures come back as a ParseResult carrying an error the caller can send
back to the worker as corrective feedback.
"""

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from .models import AgentHandle, Command, Plan, PlanCommand, command_adapter

VALID_COMMAND_TYPES = (
    "plan",
    "delegate",
    "complete",
    "clarify",
    "continue",
    "discovery",
    "create_agent",
)

VALID_STEP_TYPES = ("create", "delegate", "action")

REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    "plan": ("goal", "steps", "message"),
    "delegate": ("step", "agent", "input", "message"),
    "complete": ("summary", "message"),
    "clarify": ("question", "message"),
    "continue": ("message",),
    "discovery": ("questions", "message"),
    "create_agent": ("system_prompt", "message"),
}

MIN_SYSTEM_PROMPT_LENGTH = 10
RAW_PREVIEW_LENGTH = 500

_CODE_FENCE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")


@dataclass
class ParseResult:
    """
    Outcome of parsing one planner reply.

    Attributes:
        success: True when ``command`` holds a validated command
        command: The validated command
        error: Why parsing or validation failed
        raw_text_preview: Start of the raw reply, for diagnostics
        data: The decoded JSON object, when decoding got that far
    """

    success: bool
    command: Command | None = None
    error: str | None = None
    raw_text_preview: str | None = None
    data: dict[str, Any] | None = None


def first_balanced_object(text: str) -> str | None:
    """Return the first ``{...}`` substring whose braces balance, ignoring braces in strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def _candidates(text: str) -> Iterable[str]:
    fence = _CODE_FENCE.search(text)
    if fence:
        yield fence.group(1).strip()
    balanced = first_balanced_object(text)
    if balanced:
        yield balanced

    # Salvage pass for replies written with single quotes
    salvaged = text.replace("'", '"')
    fence = _CODE_FENCE.search(salvaged)
    if fence:
        yield fence.group(1).strip()
    balanced = first_balanced_object(salvaged)
    if balanced:
        yield balanced


def extract_json(text: str) -> tuple[Any, str | None]:
    """
    Decode the first JSON object found in ``text``.

    Returns:
        (decoded object, None) on success, (None, error message) otherwise
    """
    first_error = None
    for candidate in _candidates(text):
        try:
            decoded = json.loads(candidate)
        except json.JSONDecodeError as e:
            first_error = first_error or str(e)
            continue
        if isinstance(decoded, dict):
            return decoded, None
        first_error = first_error or "Command must be an object"
    return None, first_error or "No JSON object found"


def _validate_step(index: int, step: Any) -> str | None:
    label = f"Step {index + 1}"
    if not isinstance(step, dict):
        return f"{label} must be an object"

    step_type = step.get("step_type")
    if not step_type:
        return f'{label} missing required field "step_type" (must be "create", "delegate", or "action")'
    if step_type not in VALID_STEP_TYPES:
        return f'{label} has invalid step_type "{step_type}". Must be: {", ".join(VALID_STEP_TYPES)}'
    if not step.get("step"):
        return f'{label} missing required "step" field'
    if isinstance(step["step"], bool) or not isinstance(step["step"], int):
        return f'{label} "step" must be a number'

    if step_type == "action":
        if not step.get("action"):
            return f'{label} is an "action" step but missing "action" field'
        params = step.get("params")
        if params is not None and not isinstance(params, dict):
            return f'{label} "params" must be an object'
    else:
        if not step.get("agent"):
            return f'{label} is a "{step_type}" step but missing "agent" field'
        if not step.get("task"):
            return f'{label} is a "{step_type}" step but missing "task" field'

    if step_type == "create":
        config = step.get("agent_config")
        if not isinstance(config, dict):
            return f'{label} is a "create" step but missing "agent_config"'
        name = config.get("name")
        if not name or not isinstance(name, str):
            return f'{label} agent_config missing or invalid "name"'
        prompt = config.get("system_prompt")
        if not isinstance(prompt, str) or len(prompt) < MIN_SYSTEM_PROMPT_LENGTH:
            return (
                f'{label} agent_config missing or invalid "system_prompt" '
                f"(must be at least {MIN_SYSTEM_PROMPT_LENGTH} characters)"
            )

    depends_on = step.get("depends_on")
    if depends_on is not None and not isinstance(depends_on, list):
        return f'{label} "depends_on" must be an array'
    return None


def validate_command(data: Any) -> str | None:
    """Check a decoded reply against the command tables; returns an error or None."""
    if not isinstance(data, dict):
        return "Command must be an object"

    kind = data.get("type")
    if not kind:
        return 'Command missing "type" field'
    if kind not in VALID_COMMAND_TYPES:
        return f'Invalid command type "{kind}". Valid types: {", ".join(VALID_COMMAND_TYPES)}'

    missing = [name for name in REQUIRED_FIELDS[kind] if name not in data]
    if missing:
        return f'Command type "{kind}" missing required fields: {", ".join(missing)}'

    if kind == "plan":
        steps = data["steps"]
        if not isinstance(steps, list):
            return 'Plan "steps" must be an array'
        for index, step in enumerate(steps):
            error = _validate_step(index, step)
            if error:
                return error
        numbers = [step["step"] for step in steps]
        if len(set(numbers)) != len(numbers):
            return "Plan step numbers must be unique"

    if kind == "delegate":
        if isinstance(data["step"], bool) or not isinstance(data["step"], int):
            return 'Delegate "step" must be a number'
        if not isinstance(data["agent"], str):
            return 'Delegate "agent" must be a string'

    return None


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"Invalid command field {location}: {first['msg']}"


def parse_orchestrator_output(output: Any) -> ParseResult:
    """
    Parse a planner reply into a validated Command.

    Tries, in order, a fenced code block, the first balanced ``{...}``
    substring, and the same with single quotes normalized to double quotes.

    Args:
        output: Raw reply text

    Returns:
        ParseResult; never raises
    """
    if not output or not isinstance(output, str):
        return ParseResult(success=False, error="Empty or invalid output")

    preview = output[:RAW_PREVIEW_LENGTH]
    data, error = extract_json(output.strip())
    if data is None:
        return ParseResult(success=False, error=f"Invalid JSON: {error}", raw_text_preview=preview)

    error = validate_command(data)
    if error:
        return ParseResult(success=False, error=error, raw_text_preview=preview, data=data)

    try:
        command = command_adapter.validate_python(data)
    except ValidationError as e:
        return ParseResult(success=False, error=_describe(e), raw_text_preview=preview, data=data)

    return ParseResult(success=True, command=command, data=data)


def format_agent_list(agents: list[AgentHandle]) -> str:
    """Agent list in the form injected into the planner prompt."""
    if not agents:
        return "No agents available."

    lines = []
    for agent in agents:
        line = f"- **{agent.slug}** ({agent.name})"
        if agent.description:
            line += f"\n  {agent.description}"
        if agent.tags:
            line += f"\n  Tags: {', '.join(agent.tags)}"
        lines.append(line)
    return "\n\n".join(lines)


def format_plan_for_display(plan: Plan | PlanCommand | None) -> str:
    if plan is None or not plan.steps:
        return "No plan available."

    text = f"**Goal:** {plan.goal}\n\n**Steps:**\n"
    for step in plan.steps:
        deps = f" (depends on: {', '.join(str(d) for d in step.depends_on)})" if step.depends_on else ""
        who = step.agent or step.action
        what = step.task or step.action
        text += f"{step.step}. **{who}**: {what}{deps}\n"

    if plan.message:
        text += f"\n{plan.message}"
    return text


def format_workflow_result(result: dict[str, Any] | None) -> str:
    if not result:
        return "No result available."

    text = ""
    if result.get("summary"):
        text += f"**Summary:** {result['summary']}\n\n"
    if result.get("message"):
        text += str(result["message"])

    outputs = result.get("outputs")
    if outputs:
        text += "\n\n**Outputs:**\n"
        for key, value in outputs.items():
            shown = json.dumps(value) if isinstance(value, (dict, list)) else value
            text += f"- {key}: {shown}\n"
    return text


def extract_message(command: Any) -> str:
    """Human-readable part of a command (or of a raw command dict)."""
    if command is None:
        return ""
    if isinstance(command, dict):
        return command.get("message") or ""
    return getattr(command, "message", "") or ""
