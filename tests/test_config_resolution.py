import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from pair_review_ai.config import (
    ModelOverride,
    ProviderConfigOverride,
    ReviewConfig,
    apply_env_defaults,
    env_float,
    is_yolo_enabled,
    load_env_file,
    load_review_config,
)
from pair_review_ai.domain.contracts import SUPPRESS_MODEL_FLAG, ModelDefinition
from pair_review_ai.errors import ConfigError
from pair_review_ai.providers.claude import ClaudeProvider
from pair_review_ai.providers.codex import CodexProvider
from pair_review_ai.providers.copilot import CopilotProvider
from pair_review_ai.providers.cursor_agent import CursorAgentProvider
from pair_review_ai.providers.gemini import GeminiProvider
from pair_review_ai.providers.opencode import OpenCodeProvider
from pair_review_ai.providers.pi import PiProvider


def _clean_env(**extra):
    env = {key: value for key, value in os.environ.items() if not key.startswith("PAIR_REVIEW_")}
    env.update(extra)
    return patch.dict("os.environ", env, clear=True)


def _config(**raw) -> ProviderConfigOverride:
    return ProviderConfigOverride.model_validate(raw)


class _FlagProvider(ClaudeProvider):
    MODELS = (
        ModelDefinition(id="m", tier="fast", extra_args=("--flag", "builtin"), env={"K": "builtin", "B": "1"}),
    )


class TestModelConfigResolution(unittest.TestCase):
    def test_opus_uses_builtin_entry_and_effort_env(self):
        with _clean_env():
            provider = ClaudeProvider("opus")
        self.assertEqual(provider.model_config.cli_model, "opus")
        self.assertEqual(provider.model_config.cli_model_args, ("--model", "opus"))
        self.assertEqual(dict(provider.invocation.env), {"CLAUDE_CODE_EFFORT_LEVEL": "high"})

    def test_alias_resolves_to_canonical_entry(self):
        with _clean_env():
            provider = ClaudeProvider("opus-4.6-high")
        self.assertEqual(provider.model_config.cli_model_args, ("--model", "opus"))
        self.assertEqual(dict(provider.model_config.env), {"CLAUDE_CODE_EFFORT_LEVEL": "high"})

    def test_builtin_cli_model_overrides_id(self):
        with _clean_env():
            provider = ClaudeProvider("opus-4.5")
        self.assertEqual(provider.model_config.cli_model_args, ("--model", "claude-opus-4-5-20251101"))

    def test_unknown_model_passes_raw_id(self):
        with _clean_env():
            provider = ClaudeProvider("claude-experimental")
        self.assertEqual(provider.model_config.cli_model_args, ("--model", "claude-experimental"))

    def test_config_cli_model_beats_builtin(self):
        with _clean_env():
            provider = ClaudeProvider("opus-4.5", config=_config(models=[{"id": "opus-4.5", "cli_model": "custom"}]))
        self.assertEqual(provider.model_config.cli_model_args, ("--model", "custom"))

    def test_null_cli_model_suppresses_flag(self):
        with _clean_env():
            provider = ClaudeProvider("sonnet", config=_config(models=[{"id": "sonnet", "cli_model": None}]))
        self.assertIs(provider.model_config.cli_model, SUPPRESS_MODEL_FLAG)
        self.assertEqual(provider.model_config.cli_model_args, ())
        self.assertNotIn("--model", provider.invocation.args)

    def test_empty_string_cli_model_is_passed_through(self):
        with _clean_env():
            provider = ClaudeProvider("sonnet", config=_config(models=[{"id": "sonnet", "cli_model": ""}]))
        self.assertEqual(provider.model_config.cli_model_args, ("--model", ""))

    def test_absent_cli_model_key_falls_through(self):
        with _clean_env():
            provider = ClaudeProvider("opus-4.5", config=_config(models=[{"id": "opus-4.5", "env": {"X": "1"}}]))
        self.assertEqual(provider.model_config.cli_model_args, ("--model", "claude-opus-4-5-20251101"))

    def test_cli_model_args_are_empty_or_one_pair(self):
        with _clean_env():
            for model in ("haiku", "sonnet", "opus", "opus-4.6-1m", "anything"):
                args = ClaudeProvider(model).model_config.cli_model_args
                self.assertEqual(len(args), 2)
                self.assertEqual(args[0], "--model")
            pi = PiProvider("default")
        self.assertEqual(pi.model_config.cli_model_args, ())

    def test_env_three_way_merge_precedence(self):
        config = _config(env={"K": "provider", "P": "1"}, models=[{"id": "m", "env": {"K": "model"}}])
        with _clean_env():
            provider = _FlagProvider("m", config=config)
        self.assertEqual(dict(provider.model_config.env), {"K": "model", "B": "1", "P": "1"})

    def test_provider_env_beats_builtin(self):
        with _clean_env():
            provider = ClaudeProvider("opus", config=_config(env={"CLAUDE_CODE_EFFORT_LEVEL": "max"}))
        self.assertEqual(provider.invocation.env["CLAUDE_CODE_EFFORT_LEVEL"], "max")

    def test_extra_args_append_in_layer_order_keeping_duplicates(self):
        config = _config(extra_args=["--flag", "provider"], models=[{"id": "m", "extra_args": ["--flag", "model"]}])
        with _clean_env():
            provider = _FlagProvider("m", config=config)
        self.assertEqual(
            provider.model_config.extra_args,
            ("--flag", "builtin", "--flag", "provider", "--flag", "model"),
        )
        self.assertEqual(provider.invocation.args[-6:], provider.model_config.extra_args)

    def test_invocation_is_immutable(self):
        with _clean_env():
            provider = ClaudeProvider("sonnet")
        with self.assertRaises(Exception):
            provider.invocation.command = "other"  # type: ignore[misc]
        with self.assertRaises(TypeError):
            provider.invocation.env["X"] = "1"  # type: ignore[index]


class TestCommandResolution(unittest.TestCase):
    def test_default_command(self):
        with _clean_env():
            provider = GeminiProvider()
        self.assertEqual(provider.command, "gemini")
        self.assertFalse(provider.use_shell)

    def test_env_beats_config(self):
        with _clean_env(PAIR_REVIEW_GEMINI_CMD="/opt/gemini"):
            provider = GeminiProvider(config=_config(command="/usr/bin/gemini"))
        self.assertEqual(provider.command, "/opt/gemini")

    def test_config_beats_default(self):
        with _clean_env():
            provider = GeminiProvider(config=_config(command="/usr/bin/gemini"))
        self.assertEqual(provider.command, "/usr/bin/gemini")

    def test_multi_word_command_uses_shell(self):
        with _clean_env(PAIR_REVIEW_CODEX_CMD="docker run codex"):
            provider = CodexProvider()
            extraction = provider.get_extraction_config("gpt-5.1-codex-mini")
        self.assertTrue(provider.use_shell)
        self.assertTrue(provider.invocation.use_shell)
        self.assertEqual(extraction.command, "docker run codex")
        self.assertTrue(extraction.use_shell)


class TestProviderArgs(unittest.TestCase):
    def test_claude_args_and_permissions(self):
        with _clean_env():
            provider = ClaudeProvider("sonnet")
            yolo = ClaudeProvider("sonnet", yolo=True)
        self.assertEqual(provider.invocation.args[:5], ("-p", "--verbose", "--model", "sonnet", "--output-format"))
        self.assertIn("--allowedTools", provider.invocation.args)
        self.assertNotIn("--dangerously-skip-permissions", provider.invocation.args)
        self.assertIn("--dangerously-skip-permissions", yolo.invocation.args)
        self.assertNotIn("--allowedTools", yolo.invocation.args)

    def test_claude_budget_flag(self):
        with _clean_env(PAIR_REVIEW_MAX_BUDGET_USD="0.5"):
            args = ClaudeProvider("sonnet").invocation.args
        index = args.index("--max-budget-usd")
        self.assertEqual(args[index + 1], "0.5")

    def test_claude_invalid_budget_is_ignored_with_warning(self):
        for raw in ("abc", "-1", "0"):
            with _clean_env(PAIR_REVIEW_MAX_BUDGET_USD=raw):
                with self.assertLogs("pair_review_ai.providers.claude", level="WARNING") as logs:
                    args = ClaudeProvider("sonnet").invocation.args
            self.assertNotIn("--max-budget-usd", args)
            self.assertIn(f'PAIR_REVIEW_MAX_BUDGET_USD="{raw}"', "\n".join(logs.output))

    def test_claude_empty_budget_is_silently_ignored(self):
        with _clean_env(PAIR_REVIEW_MAX_BUDGET_USD=""):
            args = ClaudeProvider("sonnet").invocation.args
        self.assertNotIn("--max-budget-usd", args)

    def test_codex_args(self):
        with _clean_env():
            provider = CodexProvider()
            yolo = CodexProvider(yolo=True)
        self.assertEqual(
            provider.invocation.args,
            ("exec", "-m", "gpt-5.2-codex", "--json", "--sandbox", "workspace-write", "--full-auto", "-"),
        )
        self.assertIn("--dangerously-bypass-approvals-and-sandbox", yolo.invocation.args)
        self.assertNotIn("--sandbox", yolo.invocation.args)

    def test_gemini_args(self):
        with _clean_env():
            provider = GeminiProvider("gemini-3-flash")
            yolo = GeminiProvider(yolo=True)
        args = provider.invocation.args
        self.assertEqual(args[:4], ("-m", "gemini-3-flash", "-o", "stream-json"))
        self.assertTrue(args[args.index("--allowed-tools") + 1].startswith("list_directory,read_file"))
        self.assertIn("--yolo", yolo.invocation.args)
        self.assertNotIn("--allowed-tools", yolo.invocation.args)

    def test_copilot_args(self):
        with _clean_env():
            args = CopilotProvider().invocation.args
            yolo_args = CopilotProvider(yolo=True).invocation.args
        self.assertEqual(args[:2], ("--model", "gemini-3-pro-preview"))
        self.assertIn("shell(git diff)", args)
        self.assertIn("--deny-tool", args)
        self.assertEqual(args[-2:], ("--allow-all-paths", "-s"))
        self.assertNotIn("--deny-tool", yolo_args)
        self.assertIn("--allow-all-tools", yolo_args)

    def test_cursor_agent_args(self):
        with _clean_env():
            args = CursorAgentProvider().invocation.args
            yolo_args = CursorAgentProvider(yolo=True).invocation.args
        self.assertEqual(
            args,
            ("-p", "--output-format", "stream-json", "--stream-partial-output", "--model", "sonnet-4.5-thinking",
             "--sandbox", "enabled"),
        )
        self.assertEqual(yolo_args[-4:], ("--sandbox", "disabled", "-f", "--approve-mcps"))

    def test_opencode_requires_configured_model(self):
        with _clean_env():
            with self.assertRaises(ValueError):
                OpenCodeProvider()
            provider = OpenCodeProvider(
                config=_config(models=[{"id": "anthropic/claude-sonnet-4", "tier": "balanced", "default": True}])
            )
        self.assertEqual(provider.model, "anthropic/claude-sonnet-4")
        self.assertEqual(
            provider.invocation.args,
            ("run", "--model", "anthropic/claude-sonnet-4", "--format", "json"),
        )

    def test_config_only_model_without_tier_is_rejected(self):
        with _clean_env():
            with self.assertRaises(ValueError) as ctx:
                OpenCodeProvider("x", config=_config(models=[{"id": "x"}]))
        self.assertIn("missing required 'tier' field", str(ctx.exception))


class TestPiProvider(unittest.TestCase):
    def test_default_model_omits_model_flag(self):
        with _clean_env(PAIR_REVIEW_PI_RESOURCES="/res"):
            provider = PiProvider()
        args = provider.invocation.args
        self.assertNotIn("--model", args)
        self.assertEqual(args[:5], ("-p", "--mode", "json", "--tools", "read,bash,grep,find,ls"))
        self.assertIn("--no-session", args)
        self.assertEqual(args[args.index("-e") + 1], "/res/extensions/task")

    def test_provider_slash_model_splits(self):
        config = _config(models=[{"id": "flash", "tier": "fast", "cli_model": "google/gemini-2.5-flash"}])
        with _clean_env():
            provider = PiProvider("flash", config=config)
        self.assertEqual(
            provider.model_config.cli_model_args,
            ("--provider", "google", "--model", "gemini-2.5-flash"),
        )

    def test_multi_model_loads_guidance_skill(self):
        with _clean_env(PAIR_REVIEW_PI_RESOURCES="/res"):
            args = PiProvider("multi-model").invocation.args
        self.assertEqual(args[args.index("--skill") + 1], "/res/skills/review-model-guidance/SKILL.md")

    def test_session_env_and_yolo(self):
        with _clean_env(PAIR_REVIEW_PI_SESSION="1"):
            args = PiProvider(yolo=True).invocation.args
        self.assertNotIn("--no-session", args)
        self.assertNotIn("--tools", args)

    def test_env_carries_command_and_depth_limit(self):
        with _clean_env(PAIR_REVIEW_PI_CMD="devx pi --"):
            provider = PiProvider(config=_config(env={"A": "1"}))
        self.assertEqual(provider.invocation.env["PI_CMD"], "devx pi --")
        self.assertEqual(provider.invocation.env["PI_TASK_MAX_DEPTH"], "1")
        self.assertEqual(provider.invocation.env["A"], "1")
        self.assertTrue(provider.use_shell)

    def test_extraction_config_has_no_tools(self):
        with _clean_env():
            provider = PiProvider("multi-model", config=_config(extra_args=["--thinking", "off"]))
            extraction = provider.get_extraction_config("default")
        self.assertIn("--no-tools", extraction.args)
        self.assertNotIn("--skill", extraction.args)
        self.assertEqual(extraction.args[-2:], ("--thinking", "off"))
        self.assertEqual(extraction.env["PI_TASK_MAX_DEPTH"], "1")


class TestExtractionConfig(unittest.TestCase):
    def test_fast_tier_models(self):
        with _clean_env():
            self.assertEqual(ClaudeProvider("opus").get_fast_tier_model(), "haiku")
            self.assertEqual(CodexProvider().get_fast_tier_model(), "gpt-5.1-codex-mini")
            self.assertEqual(CursorAgentProvider().get_fast_tier_model(), "gpt-5.2-codex-fast")
            opencode = OpenCodeProvider(config=_config(models=[{"id": "big", "tier": "thorough"}]))
        self.assertEqual(opencode.get_fast_tier_model(), "big")

    def test_claude_extraction_uses_text_output_and_merged_env(self):
        config = _config(env={"PROVIDER_VAR": "yes"}, models=[{"id": "opus", "env": {"MODEL_VAR": "yes"}}])
        with _clean_env():
            extraction = ClaudeProvider("sonnet", config=config).get_extraction_config("opus")
        self.assertEqual(extraction.args, ("-p", "--model", "opus", "--output-format", "text"))
        self.assertEqual(
            dict(extraction.env),
            {"CLAUDE_CODE_EFFORT_LEVEL": "high", "PROVIDER_VAR": "yes", "MODEL_VAR": "yes"},
        )
        self.assertTrue(extraction.prompt_via_stdin)

    def test_codex_extraction_is_read_only(self):
        with _clean_env():
            extraction = CodexProvider().get_extraction_config("gpt-5.1-codex-mini")
        self.assertIn("read-only", extraction.args)
        self.assertIn("gpt-5.1-codex-mini", extraction.args)

    def test_copilot_extraction_is_silent(self):
        with _clean_env():
            extraction = CopilotProvider(config=_config(extra_args=["--x"])).get_extraction_config("gpt-5.1-codex-mini")
        self.assertEqual(extraction.args, ("--model", "gpt-5.1-codex-mini", "-s", "--x"))


class TestReviewConfigLoading(unittest.TestCase):
    def test_missing_file_returns_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            config = load_review_config(Path(tmp) / "missing.json")
        self.assertFalse(config.yolo)
        self.assertEqual(config.providers, {})

    def test_loads_provider_overrides(self):
        raw = {
            "yolo": True,
            "providers": {
                "claude": {
                    "command": "claude-beta",
                    "installInstructions": "see wiki",
                    "models": [{"id": "sonnet", "cli_model": None}],
                }
            },
        }
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text(json.dumps(raw), encoding="utf-8")
            config = load_review_config(path)
        claude = config.providers["claude"]
        self.assertTrue(config.yolo)
        self.assertEqual(claude.command, "claude-beta")
        self.assertEqual(claude.install_instructions, "see wiki")
        self.assertIs(claude.models[0].resolved_cli_model(), SUPPRESS_MODEL_FLAG)

    def test_invalid_json_raises_config_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_review_config(path)

    def test_invalid_shape_raises_config_error(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text(json.dumps({"providers": {"claude": {"models": "nope"}}}), encoding="utf-8")
            with self.assertRaises(ConfigError) as ctx:
                load_review_config(path)
        self.assertIn("Invalid config", str(ctx.exception))

    def test_config_path_env(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "custom.json"
            path.write_text(json.dumps({"yolo": True}), encoding="utf-8")
            with _clean_env(PAIR_REVIEW_CONFIG=str(path)):
                self.assertTrue(load_review_config().yolo)

    def test_yolo_from_env(self):
        with _clean_env(PAIR_REVIEW_YOLO="true"):
            self.assertTrue(is_yolo_enabled(ReviewConfig()))
        with _clean_env(PAIR_REVIEW_YOLO="1"):
            self.assertFalse(is_yolo_enabled(ReviewConfig()))


class TestModelOverride:
    def test_cli_model_key_presence(self):
        assert ModelOverride.model_validate({"id": "a"}).resolved_cli_model() is None
        assert ModelOverride.model_validate({"id": "a", "cli_model": None}).resolved_cli_model() is SUPPRESS_MODEL_FLAG
        assert ModelOverride.model_validate({"id": "a", "cli_model": ""}).resolved_cli_model() == ""

    def test_to_definition_infers_name(self):
        definition = ModelOverride.model_validate({"id": "anthropic/claude-sonnet-4", "tier": "premium"}).to_definition()
        assert definition.name == "Anthropic Claude Sonnet 4"
        assert definition.tier == "premium"


class TestEnvHelpers:
    def test_load_env_file_and_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / ".env"
            path.write_text("# comment\nA=1\nB = two\nnot-a-pair\n", encoding="utf-8")
            values = load_env_file(path)
        assert values == {"A": "1", "B": "two"}
        target = {"A": "existing"}
        applied = apply_env_defaults(values, target_env=target)
        assert applied == 1
        assert target == {"A": "existing", "B": "two"}

    def test_env_float_falls_back_on_invalid(self):
        with _clean_env(PAIR_REVIEW_EXTRACTION_TIMEOUT_SEC="abc"):
            assert env_float("PAIR_REVIEW_EXTRACTION_TIMEOUT_SEC", 60.0) == 60.0
        with _clean_env(PAIR_REVIEW_EXTRACTION_TIMEOUT_SEC="12.5"):
            assert env_float("PAIR_REVIEW_EXTRACTION_TIMEOUT_SEC", 60.0) == 12.5
