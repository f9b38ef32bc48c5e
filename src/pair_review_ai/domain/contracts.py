from __future__ import annotations

import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence, Tuple, Union

DEFAULT_EXEC_TIMEOUT_SEC = 300.0

ASSISTANT_TEXT = "assistant_text"
TOOL_USE = "tool_use"


class _SuppressModelFlag:
    """Marker for a cli model that must omit the model flag entirely."""

    _instance: Optional["_SuppressModelFlag"] = None

    def __new__(cls) -> "_SuppressModelFlag":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SUPPRESS_MODEL_FLAG"

    def __bool__(self) -> bool:
        return False


SUPPRESS_MODEL_FLAG = _SuppressModelFlag()

# None means "unset": fall through to the next precedence layer.
CliModel = Union[str, _SuppressModelFlag, None]


@dataclass(frozen=True)
class ModelDefinition:
    id: str
    tier: str
    name: str = ""
    cli_model: CliModel = None
    extra_args: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    aliases: Tuple[str, ...] = ()
    default: bool = False
    description: str = ""

    def matches(self, model_id: str) -> bool:
        return model_id == self.id or model_id in self.aliases


@dataclass(frozen=True)
class ProviderDefinition:
    id: str
    name: str
    models: Tuple[ModelDefinition, ...]
    default_model: str
    install_instructions: str


@dataclass(frozen=True)
class ModelConfig:
    """Effective per-model settings after the three-way merge."""

    model_id: str
    builtin: Optional[ModelDefinition]
    cli_model: CliModel
    cli_model_args: Tuple[str, ...]
    extra_args: Tuple[str, ...]
    env: Mapping[str, str]


@dataclass(frozen=True)
class ResolvedInvocation:
    command: str
    args: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    use_shell: bool = False
    prompt_via_stdin: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(self.args))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "use_shell": self.use_shell,
            "prompt_via_stdin": self.prompt_via_stdin,
        }


@dataclass(frozen=True)
class StreamEvent:
    kind: str
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class ExtractionResult:
    success: bool
    data: Any = None
    raw_text: Optional[str] = None
    error: str = ""

    @classmethod
    def ok(cls, data: Any, raw_text: Optional[str] = None) -> "ExtractionResult":
        return cls(success=True, data=data, raw_text=raw_text)

    @classmethod
    def failed(cls, error: str, raw_text: Optional[str] = None) -> "ExtractionResult":
        return cls(success=False, error=error, raw_text=raw_text)


@dataclass(frozen=True)
class UnparsedOutput:
    """Successful run whose output held no extractable payload."""

    raw: str
    parsed: bool = False
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"raw": self.raw, "parsed": self.parsed}


class ProcessHandle(Protocol):
    pid: int

    @property
    def returncode(self) -> Optional[int]:
        ...

    def terminate(self) -> None:
        ...


StreamEventCallback = Callable[[StreamEvent], None]
ProcessRegistrar = Callable[[str, ProcessHandle], None]


@dataclass
class ExecutionOptions:
    cwd: Optional[str] = None
    timeout_sec: Optional[float] = DEFAULT_EXEC_TIMEOUT_SEC
    level: str = "unknown"
    analysis_id: Optional[str] = None
    on_stream_event: Optional[StreamEventCallback] = None
    register_process: Optional[ProcessRegistrar] = None
    skip_extraction: bool = False


class LineParser(Protocol):
    def __call__(self, line: str, cwd: Optional[str] = None) -> Optional[StreamEvent]:
        ...


class ExecutionRunner(Protocol):
    async def run(
        self,
        invocation: ResolvedInvocation,
        prompt: str,
        options: ExecutionOptions,
        line_parser: Optional[LineParser] = None,
        label: str = "CLI",
        install_instructions: str = "",
        check_cancel_on_clean_exit: bool = False,
    ) -> CommandResult:
        ...

    async def probe(self, invocation: ResolvedInvocation, timeout_sec: float) -> CommandResult:
        ...


class CancellationCheck(Protocol):
    def is_analysis_cancelled(self, analysis_id: str) -> bool:
        ...


def as_args(values: Optional[Sequence[str]]) -> Tuple[str, ...]:
    return tuple(str(value) for value in (values or ()))
