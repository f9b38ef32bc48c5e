"""Error taxonomy for provider execution.

Rejections (raised to the caller of ``execute``):
  - NotInstalledError: the CLI could not be spawned (command not found).
  - ProviderTimeoutError: the process outlived its timeout and was terminated.
  - AnalysisCancelledError: signal-style exit while the analysis is marked cancelled.
  - ProcessFailedError: any other nonzero exit, or a failed prompt write.

Non-rejections:
  - MalformedOutputError: raised inside extraction only; ``execute`` converts it
    into an ``UnparsedOutput`` result.
  - CallbackError: wraps a progress-callback failure for logging; never raised
    past the stream normalizer.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


class ProviderError(Exception):
    code = "ERR_UNKNOWN"

    def __init__(self, message: str, level: str = "") -> None:
        super().__init__(message)
        self.level = level


class NotInstalledError(ProviderError):
    code = "ERR_CLI_NOT_FOUND"

    def __init__(self, message: str, install_instructions: str = "", level: str = "") -> None:
        super().__init__(message, level=level)
        self.install_instructions = install_instructions


class ProviderTimeoutError(ProviderError):
    code = "ERR_EXEC_TIMEOUT"

    def __init__(self, message: str, timeout_sec: float = 0.0, level: str = "") -> None:
        super().__init__(message, level=level)
        self.timeout_sec = timeout_sec


class AnalysisCancelledError(ProviderError):
    code = "ERR_CANCELLED"

    def __init__(self, message: str, analysis_id: str = "", level: str = "") -> None:
        super().__init__(message, level=level)
        self.analysis_id = analysis_id


class ProcessFailedError(ProviderError):
    code = "ERR_EXIT_NONZERO"

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
        level: str = "",
    ) -> None:
        super().__init__(message, level=level)
        self.returncode = returncode
        self.stderr = stderr


class MalformedOutputError(ProviderError):
    code = "ERR_MALFORMED_OUTPUT"

    def __init__(self, message: str, raw: str = "", level: str = "") -> None:
        super().__init__(message, level=level)
        self.raw = raw


class CallbackError(ProviderError):
    code = "ERR_CALLBACK"


class UnknownProviderError(KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class ErrorCatalogEntry:
    code: str
    title: str
    user_message: str
    triggers: List[str]
    hint: str = ""


ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        code="ERR_CLI_NOT_FOUND",
        title="Provider CLI not available",
        user_message="The runtime cannot find the provider executable.",
        triggers=["CLI not found"],
        hint="Install the CLI or set PAIR_REVIEW_<PROVIDER>_CMD.",
    ),
    ErrorCatalogEntry(
        code="ERR_EXEC_TIMEOUT",
        title="Execution timeout",
        user_message="The provider exceeded the allowed execution time.",
        triggers=["timed out after"],
        hint="Raise the timeout or pick a faster model tier.",
    ),
    ErrorCatalogEntry(
        code="ERR_CANCELLED",
        title="Analysis cancelled",
        user_message="The analysis was cancelled before completion.",
        triggers=["Analysis cancelled by user"],
    ),
    ErrorCatalogEntry(
        code="ERR_EXIT_NONZERO",
        title="Provider exited with error",
        user_message="The provider returned a non-zero exit code.",
        triggers=["exited with code", "Failed to write prompt to stdin"],
        hint="Inspect the captured stderr.",
    ),
    ErrorCatalogEntry(
        code="ERR_MALFORMED_OUTPUT",
        title="No structured payload",
        user_message="The provider output did not contain a JSON payload.",
        triggers=["not valid JSON", "Failed to extract JSON", "unparseable response"],
    ),
    ErrorCatalogEntry(
        code="ERR_UNKNOWN",
        title="Unknown execution error",
        user_message="An unknown error occurred.",
        triggers=[],
    ),
]


def detect_error_code(text: str) -> str:
    value = text or ""
    for entry in ERROR_CATALOG:
        if any(trigger in value for trigger in entry.triggers):
            return entry.code
    return "ERR_UNKNOWN"


def get_catalog_entry(code: str) -> ErrorCatalogEntry:
    for entry in ERROR_CATALOG:
        if entry.code == code:
            return entry
    return next(entry for entry in ERROR_CATALOG if entry.code == "ERR_UNKNOWN")
