import json
import os
import unittest
from unittest.mock import patch

from pair_review_ai.config import ProviderConfigOverride
from pair_review_ai.extraction.json_extractor import EXTRACTION_FAILED_ERROR
from pair_review_ai.providers.claude import ClaudeProvider
from pair_review_ai.providers.codex import CodexProvider
from pair_review_ai.providers.copilot import CopilotProvider
from pair_review_ai.providers.cursor_agent import CursorAgentProvider
from pair_review_ai.providers.gemini import GeminiProvider
from pair_review_ai.providers.opencode import OpenCodeProvider
from pair_review_ai.providers.pi import PiProvider


def _jsonl(*events) -> str:
    return "\n".join(event if isinstance(event, str) else json.dumps(event) for event in events) + "\n"


def _clean_env():
    env = {key: value for key, value in os.environ.items() if not key.startswith("PAIR_REVIEW_")}
    return patch.dict("os.environ", env, clear=True)


class _ProviderCase(unittest.TestCase):
    provider_class = ClaudeProvider
    provider_kwargs: dict = {}

    def setUp(self):
        with _clean_env():
            self.provider = self.provider_class(**self.provider_kwargs)


class TestClaudeResponseParsing(_ProviderCase):
    def test_result_envelope_with_content_blocks(self):
        stdout = _jsonl(
            {"type": "system", "subtype": "init"},
            {"type": "result", "result": {"content": [{"type": "text", "text": '{"findings":[]}'}]}},
        )
        result = self.provider.parse_response(stdout, "1")
        self.assertTrue(result.success)
        self.assertEqual(result.data, {"findings": []})

    def test_result_string(self):
        stdout = _jsonl({"type": "result", "result": 'Done.\n```json\n{"summary": "ok"}\n```'})
        self.assertEqual(self.provider.parse_response(stdout).data, {"summary": "ok"})

    def test_structured_subresult_wins(self):
        stdout = _jsonl(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": '{"ignored": true}'}]}},
            {"type": "result", "result": {"subresult": {"findings": [1]}}},
        )
        self.assertEqual(self.provider.parse_response(stdout).data, {"findings": [1]})

    def test_first_result_event_wins(self):
        stdout = _jsonl(
            {"type": "result", "result": '{"first": 1}'},
            {"type": "result", "result": '{"second": 2}'},
        )
        self.assertEqual(self.provider.parse_response(stdout).data, {"first": 1})

    def test_assistant_text_resets_on_tool_use(self):
        stdout = _jsonl(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Let me check {stale}"}]}},
            {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Read", "input": {}}]}},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": '{"findings": []}'}]}},
        )
        result = self.provider.parse_response(stdout)
        self.assertTrue(result.success)
        self.assertEqual(result.data, {"findings": []})

    def test_garbage_lines_are_skipped(self):
        stdout = _jsonl(
            "garbage",
            {"type": "result", "result": {"content": [{"type": "text", "text": '{"findings":[]}'}]}},
            "{also not json",
        )
        self.assertEqual(self.provider.parse_response(stdout).data, {"findings": []})

    def test_no_text_content(self):
        result = self.provider.parse_response("not json at all\n", "1")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "No text content found in Claude response")

    def test_text_without_json(self):
        result = self.provider.parse_response(_jsonl({"type": "result", "result": "All good, nothing to report."}))
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Claude response text is not valid JSON")

    def test_empty_output(self):
        result = self.provider.parse_response("   ")
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Empty response")


class TestCodexResponseParsing(_ProviderCase):
    provider_class = CodexProvider

    def test_agent_messages_accumulate(self):
        stdout = _jsonl(
            {"type": "thread.started"},
            {"type": "item.completed", "item": {"type": "agent_message", "text": '{"findings": '}},
            {"type": "item.completed", "item": {"type": "command_execution", "command": "git diff"}},
            {"type": "item.completed", "item": {"type": "agent_message", "text": "[]}"}},
        )
        self.assertEqual(self.provider.parse_response(stdout).data, {"findings": []})

    def test_agent_message_without_json(self):
        stdout = _jsonl({"type": "item.completed", "item": {"type": "agent_message", "text": "no payload"}})
        result = self.provider.parse_response(stdout)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Agent message is not valid JSON")

    def test_falls_back_to_raw_stdout(self):
        stdout = 'Some preamble {"summary": "raw"}'
        self.assertEqual(self.provider.parse_response(stdout).data, {"summary": "raw"})


class TestGeminiResponseParsing(_ProviderCase):
    provider_class = GeminiProvider

    def test_text_accumulates_across_tool_calls(self):
        stdout = _jsonl(
            {"type": "init", "model": "gemini-2.5-pro"},
            {"type": "message", "role": "assistant", "content": '{"findings": ['},
            {"type": "tool_use", "tool_name": "read_file", "parameters": {}},
            {"type": "tool_result", "status": "success"},
            {"type": "message", "role": "assistant", "content": "]}"},
            {"type": "result", "status": "success"},
        )
        self.assertEqual(self.provider.parse_response(stdout).data, {"findings": []})

    def test_user_messages_are_ignored(self):
        stdout = _jsonl(
            {"type": "message", "role": "user", "content": '{"prompt": true}'},
            {"type": "message", "role": "assistant", "content": "nothing structured"},
        )
        result = self.provider.parse_response(stdout)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "Assistant text is not valid JSON")


class TestCursorAgentResponseParsing(_ProviderCase):
    provider_class = CursorAgentProvider

    def test_partial_deltas_are_skipped(self):
        stdout = _jsonl(
            {"type": "assistant", "timestamp_ms": 1, "message": {"content": [{"type": "text", "text": '{"a"'}]}},
            {"type": "assistant", "timestamp_ms": 2, "message": {"content": [{"type": "text", "text": ": 1}"}]}},
            {"type": "assistant", "message": {"content": [{"type": "text", "text": '{"a": 1}'}]}},
        )
        self.assertEqual(self.provider.parse_response(stdout).data, {"a": 1})

    def test_result_string_is_fallback(self):
        stdout = _jsonl(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Reviewing now."}]}},
            {"type": "result", "subtype": "success", "result": '{"summary": "from result"}'},
        )
        self.assertEqual(self.provider.parse_response(stdout).data, {"summary": "from result"})

    def test_neither_text_has_json(self):
        stdout = _jsonl(
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "hmm"}]}},
            {"type": "result", "result": "still hmm"},
        )
        result = self.provider.parse_response(stdout)
        self.assertFalse(result.success)
        self.assertEqual(result.error, "No valid JSON found in assistant or result text")


class TestOpenCodeResponseParsing(_ProviderCase):
    provider_class = OpenCodeProvider
    provider_kwargs = {
        "config": ProviderConfigOverride.model_validate({"models": [{"id": "anthropic/claude-sonnet-4", "tier": "balanced"}]})
    }

    def test_text_parts_are_collected(self):
        stdout = _jsonl(
            {"type": "step_start"},
            {"type": "text", "part": {"type": "text", "text": '{"findings": '}},
            {"type": "tool_use", "part": {"tool": "bash"}},
            {"type": "text", "part": {"type": "text", "text": "[]}"}},
        )
        self.assertEqual(self.provider.parse_response(stdout).data, {"findings": []})

    def test_parts_array(self):
        stdout = _jsonl({"type": "message", "parts": [{"type": "text", "text": '{"ok": true}'}]})
        self.assertEqual(self.provider.parse_response(stdout).data, {"ok": True})


class TestPiResponseParsing(_ProviderCase):
    provider_class = PiProvider

    def test_repeated_message_is_not_duplicated(self):
        message = {"role": "assistant", "content": [{"type": "text", "text": '{"findings": []}'}]}
        stdout = _jsonl(
            {"type": "message_end", "message": message},
            {"type": "turn_end", "message": message},
            {"type": "agent_end", "messages": [{"role": "user", "content": "prompt"}, message]},
        )
        result = self.provider.parse_response(stdout)
        self.assertTrue(result.success)
        self.assertEqual(result.data, {"findings": []})

    def test_user_messages_are_ignored(self):
        stdout = _jsonl(
            {"type": "message_end", "message": {"role": "user", "content": '{"prompt": 1}'}},
            {"type": "message_end", "message": {"role": "assistant", "content": '{"answer": 2}'}},
        )
        self.assertEqual(self.provider.parse_response(stdout).data, {"answer": 2})


class TestCopilotResponseParsing(_ProviderCase):
    provider_class = CopilotProvider

    def test_plain_text_output(self):
        stdout = 'I reviewed the change.\n\n```json\n{"findings": []}\n```\n'
        self.assertEqual(self.provider.parse_response(stdout).data, {"findings": []})

    def test_plain_text_without_json(self):
        result = self.provider.parse_response("Nothing to report.")
        self.assertFalse(result.success)
        self.assertEqual(result.error, EXTRACTION_FAILED_ERROR)
