"""
Cross-step template references.

Step parameters and task text may reference earlier results:

- ``{{step_N}}`` is the full output of step N
- ``{{step_N.field}}`` is one field of step N's result, looked up in the
  judge verdict, then the action data, then the output parsed as JSON, and
  for ``url``/``*_url`` fields finally the first URL in the raw output
- ``{{winner_url}}`` is ``winner_asset_url`` of the most recent judge verdict

A reference that cannot be resolved is left in place verbatim and reported.
"""

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from .models import StepResult

logger = logging.getLogger(__name__)

STEP_REFERENCE = re.compile(r"\{\{step_(\d+)(?:\.(\w+))?\}\}")
WINNER_URL = re.compile(r"\{\{winner_url\}\}")
PLACEHOLDER = re.compile(r"\{\{[^{}]*\}\}")
URL = re.compile(r"https?://[^\s\"'<>\]]+")


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


def is_url_field(field: str) -> bool:
    return field == "url" or field.endswith("_url")


class TemplateResolver:
    """
    Resolves references against the results of one execution pass.

    Args:
        results: Step results keyed by step number, in execution order
    """

    def __init__(self, results: Mapping[int, StepResult]):
        self.results = results
        self.unresolved: list[str] = []

    def lookup(self, step_num: int, field: str | None) -> str | None:
        result = self.results.get(step_num)
        if result is None:
            logger.warning(f"Reference to step {step_num} not found")
            return None

        if field is None:
            return result.output or None

        if result.judge_result is not None:
            value = result.judge_result.lookup(field)
            if value is not None:
                return _as_text(value)

        if result.data and result.data.get(field) is not None:
            return _as_text(result.data[field])

        try:
            parsed = json.loads(result.output)
        except (json.JSONDecodeError, TypeError):
            parsed = None
        if isinstance(parsed, dict) and parsed.get(field) is not None:
            return _as_text(parsed[field])

        if is_url_field(field):
            match = URL.search(result.output or "")
            if match:
                logger.info(f"Extracted URL from step {step_num} output: {match.group(0)[:80]}")
                return match.group(0)

        logger.warning(f'Field "{field}" not found in step {step_num} result, keeping placeholder')
        return None

    def winner_url(self) -> str | None:
        for step_num, result in reversed(list(self.results.items())):
            verdict = result.judge_result
            if verdict is not None and verdict.winner_asset_url:
                logger.info(f"Resolved {{{{winner_url}}}} from step {step_num}")
                return verdict.winner_asset_url
        logger.warning("{{winner_url}} used but no judge result with winner_asset_url found")
        return None

    def resolve_text(self, text: str) -> str:
        def replace_step(match: re.Match) -> str:
            value = self.lookup(int(match.group(1)), match.group(2))
            if value is None:
                self.unresolved.append(match.group(0))
                return match.group(0)
            return value

        def replace_winner(match: re.Match) -> str:
            value = self.winner_url()
            if value is None:
                self.unresolved.append(match.group(0))
                return match.group(0)
            return value

        text = STEP_REFERENCE.sub(replace_step, text)
        return WINNER_URL.sub(replace_winner, text)

    def resolve(self, value: Any) -> Any:
        """Resolve references in a string, or recursively in a dict or list."""
        if isinstance(value, str):
            return self.resolve_text(value)
        if isinstance(value, dict):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        return value


def resolve_params(
    params: dict[str, Any], results: Mapping[int, StepResult]
) -> tuple[dict[str, Any], list[str]]:
    """Resolve every reference in ``params``; returns (resolved params, unresolved placeholders)."""
    resolver = TemplateResolver(results)
    return resolver.resolve(params), resolver.unresolved


def find_placeholders(value: Any) -> list[str]:
    """All ``{{...}}`` placeholders still present in ``value``."""
    if isinstance(value, str):
        return PLACEHOLDER.findall(value)
    if isinstance(value, dict):
        return [p for item in value.values() for p in find_placeholders(item)]
    if isinstance(value, list):
        return [p for item in value for p in find_placeholders(item)]
    return []
