import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from pathlib import Path
from typing import List, Optional

from .config import (
    EXEC_TIMEOUT_ENV,
    apply_env_defaults,
    env_float,
    load_env_file,
    load_review_config,
)
from .domain.contracts import DEFAULT_EXEC_TIMEOUT_SEC, ExecutionOptions, StreamEvent, UnparsedOutput
from .errors import ConfigError, ProviderError, UnknownProviderError, detect_error_code, get_catalog_entry
from .providers.registry import ProviderRegistry, build_default_registry

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_UNPARSED = 2


def _configure_logging(level: str) -> None:
    level = (level or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _build_registry(config_path: Optional[str]) -> ProviderRegistry:
    registry = build_default_registry()
    registry.apply_config_overrides(load_review_config(Path(config_path).expanduser() if config_path else None))
    return registry


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def _print_stream_event(event: StreamEvent) -> None:
    print(f"[{event.kind}] {event.text}", file=sys.stderr, flush=True)


async def _check_all(registry: ProviderRegistry, provider_ids: List[str]) -> List[dict]:
    return list(await asyncio.gather(*(registry.test_provider_availability(pid) for pid in provider_ids)))


def _cmd_providers(registry: ProviderRegistry, args: argparse.Namespace) -> int:
    info = registry.get_all_providers_info()
    if args.check:
        statuses = asyncio.run(_check_all(registry, [item["id"] for item in info]))
        for item, status in zip(info, statuses):
            item["available"] = status["available"]
    _print_json(info)
    return EXIT_OK


def _cmd_resolve(registry: ProviderRegistry, args: argparse.Namespace) -> int:
    provider = registry.create_provider(args.provider, args.model)
    _print_json(provider.describe())
    return EXIT_OK


def _cmd_check(registry: ProviderRegistry, args: argparse.Namespace) -> int:
    status = asyncio.run(registry.test_provider_availability(args.provider, args.timeout))
    _print_json(status)
    return EXIT_OK if status["available"] else EXIT_ERROR


def _read_prompt(prompt_file: Optional[str]) -> str:
    if prompt_file:
        return Path(prompt_file).expanduser().read_text(encoding="utf-8")
    return sys.stdin.read()


def _cmd_run(registry: ProviderRegistry, args: argparse.Namespace) -> int:
    provider = registry.create_provider(args.provider, args.model)
    prompt = _read_prompt(args.prompt_file)
    options = ExecutionOptions(
        cwd=args.cwd,
        timeout_sec=args.timeout or env_float(EXEC_TIMEOUT_ENV, DEFAULT_EXEC_TIMEOUT_SEC),
        level=args.level,
        analysis_id=args.analysis_id or uuid.uuid4().hex,
        on_stream_event=_print_stream_event if args.stream else None,
        skip_extraction=args.raw,
    )
    try:
        payload = asyncio.run(provider.execute(prompt, options))
    except ProviderError as exc:
        entry = get_catalog_entry(exc.code if exc.code != "ERR_UNKNOWN" else detect_error_code(str(exc)))
        print(f"{entry.title}: {exc}", file=sys.stderr)
        if entry.hint:
            print(f"Hint: {entry.hint}", file=sys.stderr)
        return EXIT_ERROR
    if isinstance(payload, UnparsedOutput):
        _print_json(payload.to_dict())
        return EXIT_OK if args.raw else EXIT_UNPARSED
    _print_json(payload)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run AI coding-agent CLIs and extract structured review output")
    parser.add_argument("--config", default=None, help="Path to config.json (default: ~/.pair-review/config.json)")
    parser.add_argument("--env-file", default=None, help="Load missing environment variables from a .env file")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    sub = parser.add_subparsers(dest="command", required=True)

    providers = sub.add_parser("providers", help="List providers and their models")
    providers.add_argument("--check", action="store_true", help="Also probe each CLI for availability")

    resolve = sub.add_parser("resolve", help="Print the resolved invocation for a provider")
    resolve.add_argument("provider")
    resolve.add_argument("--model", default=None)

    check = sub.add_parser("check", help="Check whether a provider CLI is installed")
    check.add_argument("provider")
    check.add_argument("--timeout", type=float, default=None, help="Probe timeout in seconds")

    run = sub.add_parser("run", help="Send a prompt to a provider and print the extracted JSON")
    run.add_argument("provider")
    run.add_argument("--model", default=None)
    run.add_argument("--prompt-file", default=None, help="Read the prompt from a file instead of stdin")
    run.add_argument("--cwd", default=None, help="Working directory for the provider process")
    run.add_argument("--timeout", type=float, default=None, help="Execution timeout in seconds")
    run.add_argument("--level", default="cli", help="Log tag for this run")
    run.add_argument("--analysis-id", default=None)
    run.add_argument("--stream", action="store_true", help="Print progress events to stderr")
    run.add_argument("--raw", action="store_true", help="Skip JSON extraction and print the assistant text")
    return parser


def main(argv: Optional[list] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    if args.env_file:
        apply_env_defaults(load_env_file(Path(args.env_file).expanduser()))

    commands = {
        "providers": _cmd_providers,
        "resolve": _cmd_resolve,
        "check": _cmd_check,
        "run": _cmd_run,
    }
    try:
        registry = _build_registry(args.config)
        code = commands[args.command](registry, args)
    except (ConfigError, UnknownProviderError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        code = EXIT_ERROR
    sys.exit(code)


if __name__ == "__main__":
    main()
