"""Unit tests for judge detection and verdict parsing."""

import json

from agent_workflow_engine.judge import (
    AGENT_RESULT_REQUIREMENT,
    is_judge_or_evaluator,
    parse_judge_result,
    with_result_requirement,
)

VERDICT = {
    "winner": "Entry 2",
    "winner_asset_url": "https://cdn.example.com/2.png",
    "ranking": ["Entry 2", "Entry 1"],
    "reasoning_summary": "Sharper",
}


class TestDetection:
    def test_keywords(self):
        assert is_judge_or_evaluator("Image Judge")
        assert is_judge_or_evaluator(None, "Compare the two drafts")
        assert is_judge_or_evaluator("Quality", "", "Please pick the best option")
        assert not is_judge_or_evaluator("Poet", "Writes poems")

    def test_substring_matching(self):
        # "rate" is found inside "generate"
        assert is_judge_or_evaluator("Generate an image")

    def test_requirement_appended_once(self):
        prompt = with_result_requirement("You judge images.")

        assert prompt.endswith(AGENT_RESULT_REQUIREMENT)
        assert with_result_requirement(prompt) == prompt


class TestParsing:
    """Test parsing of trailing RESULT blocks."""

    def test_trailing_block(self):
        output = f"Entry 2 is better.\n\nRESULT:\n{json.dumps(VERDICT, indent=2)}"

        verdict = parse_judge_result(output)

        assert verdict.winner == "Entry 2"
        assert verdict.winner_asset_url == "https://cdn.example.com/2.png"
        assert verdict.ranking == ["Entry 2", "Entry 1"]

    def test_block_in_code_fence(self):
        output = f"RESULT:\n```json\n{json.dumps(VERDICT)}\n```\n"

        assert parse_judge_result(output).winner == "Entry 2"

    def test_last_marker_wins(self):
        first = json.dumps({"winner": "Entry 1"})
        output = f"RESULT: {first}\nOn reflection...\nRESULT: {json.dumps(VERDICT)}"

        assert parse_judge_result(output).winner == "Entry 2"

    def test_extra_fields_kept(self):
        verdict = parse_judge_result('RESULT: {"winner": "A", "score": 9}')

        assert verdict.lookup("score") == 9
        assert verdict.lookup("missing") is None

    def test_text_after_block_rejected(self):
        output = f"RESULT: {json.dumps(VERDICT)}\nHope that helps!"

        assert parse_judge_result(output) is None

    def test_block_without_verdict_fields(self):
        assert parse_judge_result('RESULT: {"reasoning_summary": "hard call"}') is None

    def test_no_marker_or_invalid_json(self):
        assert parse_judge_result("Entry 1 wins") is None
        assert parse_judge_result("RESULT: {winner: 1}") is None
        assert parse_judge_result(None) is None
