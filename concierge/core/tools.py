# concierge/core/tools.py
#
# Tool registry and dispatcher. Concrete external tools (email, calendar,
# web search, ...) plug in through ToolRegistry.register; the built-ins here
# cover the conversation archive and the gate reveal.

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
import json
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from concierge.config.settings import Settings
from concierge.core.errors import ChunkNotFoundError, ConciergeError, ToolArgumentError
from concierge.memory.chunk_store import ChunkStore, format_date_range
from concierge.memory.models import Attachment, Message, Role, ToolCall
from concierge.memory.summarizer import format_messages_for_search
from concierge.utils.logging import get_logger

logger = get_logger(__name__)

REVEAL_TOOL = "show_gated_tools"
MAX_PARALLEL_CALLS = 8

JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


class ToolErrorKind(str, Enum):
    INVALID_ARGUMENTS = "invalid_arguments"
    UNKNOWN_TOOL = "unknown_tool"
    NOT_AVAILABLE = "not_available"
    BUDGET_EXCEEDED = "budget_exceeded"
    EXECUTION_FAILED = "execution_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ToolParameter:
    type: str
    description: str = ""


@dataclass
class ToolResult:
    content: str
    attachments: Tuple[Attachment, ...] = ()


@dataclass
class ToolError:
    kind: ToolErrorKind
    message: str

    def render(self) -> str:
        return json.dumps({"error": self.message, "kind": self.kind.value}, ensure_ascii=False)


Handler = Callable[[Dict[str, Any]], Union[ToolResult, str]]


@dataclass
class ToolSpec:
    name: str
    description: str
    handler: Handler
    parameters: Dict[str, ToolParameter] = field(default_factory=dict)
    required: Tuple[str, ...] = ()
    gated: bool = False
    feature: Optional[str] = None   # "web_search", "email:imap", "email:gmail"

    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {
                        name: {"type": p.type, "description": p.description}
                        for name, p in self.parameters.items()
                    },
                    "required": list(self.required),
                },
            },
        }


@dataclass(frozen=True)
class ToolConfig:
    """Feature toggles that decide which registered tools exist at all."""
    email_backend: Optional[str] = None
    web_search_enabled: bool = False
    disabled_tools: frozenset = frozenset()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ToolConfig":
        return cls(
            email_backend=settings.email_backend,
            web_search_enabled=bool(settings.serper_api_key),
            disabled_tools=frozenset(settings.disabled_tools),
        )


@dataclass(frozen=True)
class GateState:
    """Per-turn gate; a new turn always starts with a closed gate."""
    revealed: bool = False

    def reveal(self) -> "GateState":
        return GateState(revealed=True)


def _feature_enabled(config: ToolConfig, feature: Optional[str]) -> bool:
    if feature is None:
        return True
    if feature == "web_search":
        return config.web_search_enabled
    if feature.startswith("email:"):
        return config.email_backend == feature.split(":", 1)[1]
    return False


def visible_tools(config: ToolConfig, gate: GateState, specs: Iterable[ToolSpec]) -> frozenset:
    """Names of the tools the model may see and call, given config and gate."""
    enabled = [s for s in specs if s.name not in config.disabled_tools and _feature_enabled(config, s.feature)]
    has_gated = any(s.gated for s in enabled)

    names = set()
    for spec in enabled:
        if spec.gated and not gate.revealed:
            continue
        if spec.name == REVEAL_TOOL and (gate.revealed or not has_gated):
            continue
        names.add(spec.name)
    return frozenset(names)


@dataclass
class ToolOutcome:
    call: ToolCall
    result: Optional[ToolResult] = None
    error: Optional[ToolError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def content(self) -> str:
        if self.error is not None:
            return self.error.render()
        return self.result.content if self.result else ""

    def to_message(self) -> Message:
        attachments = self.result.attachments if self.result else ()
        return Message(role=Role.TOOL, content=self.content, tool_call_id=self.call.id,
                       attachments=tuple(attachments))


@dataclass
class RoundResult:
    outcomes: List[ToolOutcome]
    gate: GateState


class ToolRegistry:
    def __init__(self) -> None:
        self._specs: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._specs:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._specs[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._specs.get(name)

    def specs(self) -> List[ToolSpec]:
        return list(self._specs.values())

    def __contains__(self, name: str) -> bool:
        return name in self._specs


def validate_arguments(spec: ToolSpec, arguments_json: str) -> Dict[str, Any]:
    """Parse the model's JSON arguments and check required parameters and types."""
    raw = (arguments_json or "").strip() or "{}"
    try:
        args = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ToolArgumentError(f"Arguments are not valid JSON: {e.msg}") from e
    if not isinstance(args, dict):
        raise ToolArgumentError("Arguments must be a JSON object.")

    missing = [name for name in spec.required if args.get(name) is None]
    if missing:
        raise ToolArgumentError(f"Missing required parameter(s): {', '.join(missing)}")

    for name, value in args.items():
        param = spec.parameters.get(name)
        if param is None or value is None:
            continue
        expected = JSON_TYPES.get(param.type)
        if expected is None:
            continue
        wrong_bool = isinstance(value, bool) and param.type in ("integer", "number")
        if wrong_bool or not isinstance(value, expected):
            raise ToolArgumentError(f"Parameter '{name}' must be of type {param.type}.")
    return args


class Dispatcher:
    def __init__(self, registry: ToolRegistry, config: ToolConfig) -> None:
        self.registry = registry
        self.config = config

    def visible(self, gate: GateState) -> frozenset:
        return visible_tools(self.config, gate, self.registry.specs())

    def schemas(self, gate: GateState) -> List[Dict[str, Any]]:
        names = self.visible(gate)
        return [s.schema() for s in self.registry.specs() if s.name in names]

    def execute(self, name: str, arguments_json: str, gate: GateState) -> Union[ToolResult, ToolError]:
        spec = self.registry.get(name)
        if spec is None:
            return ToolError(ToolErrorKind.UNKNOWN_TOOL, f"Unknown tool '{name}'.")

        if name not in self.visible(gate):
            return ToolError(ToolErrorKind.NOT_AVAILABLE, self._blocked_message(spec, gate))

        try:
            args = validate_arguments(spec, arguments_json)
        except ToolArgumentError as e:
            return ToolError(ToolErrorKind.INVALID_ARGUMENTS, str(e))

        try:
            result = spec.handler(args)
        except ToolArgumentError as e:
            return ToolError(ToolErrorKind.INVALID_ARGUMENTS, str(e))
        except ConciergeError as e:
            logger.warning("Tool %s failed: %s", name, e)
            return ToolError(ToolErrorKind.EXECUTION_FAILED, str(e))
        except Exception as e:
            logger.exception("Tool %s raised", name)
            return ToolError(ToolErrorKind.EXECUTION_FAILED, f"Tool '{name}' failed: {e}")

        if isinstance(result, str):
            result = ToolResult(content=result)
        return result

    def execute_round(
        self,
        calls: Sequence[ToolCall],
        gate: GateState,
        cancel_event: Optional[threading.Event] = None,
    ) -> RoundResult:
        """
        Run one round of tool calls concurrently; outcomes keep the emitted
        order. Calls not yet started when `cancel_event` is set are cancelled.
        Repeated call ids run once.
        """
        unique: List[ToolCall] = []
        seen = set()
        for call in calls:
            if call.id in seen:
                logger.warning("Skipping duplicate tool call id %s (%s)", call.id, call.name)
                continue
            seen.add(call.id)
            unique.append(call)

        if not unique:
            return RoundResult(outcomes=[], gate=gate)

        workers = min(MAX_PARALLEL_CALLS, len(unique))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tool") as pool:
            futures = [pool.submit(self._run_one, call, gate, cancel_event) for call in unique]
            outcomes = [f.result() for f in futures]

        if any(o.ok and o.call.name == REVEAL_TOOL for o in outcomes):
            gate = gate.reveal()
        return RoundResult(outcomes=outcomes, gate=gate)

    def refuse_round(self, calls: Sequence[ToolCall], kind: ToolErrorKind, message: str) -> RoundResult:
        """Answer every call with the same error without invoking anything."""
        outcomes: List[ToolOutcome] = []
        seen = set()
        for call in calls:
            if call.id in seen:
                continue
            seen.add(call.id)
            outcomes.append(ToolOutcome(call=call, error=ToolError(kind, message)))
        return RoundResult(outcomes=outcomes, gate=GateState())

    def _run_one(self, call: ToolCall, gate: GateState, cancel_event: Optional[threading.Event]) -> ToolOutcome:
        if cancel_event is not None and cancel_event.is_set():
            return ToolOutcome(call=call, error=ToolError(ToolErrorKind.CANCELLED, "Cancelled by the user."))
        outcome = self.execute(call.name, call.arguments, gate)
        if isinstance(outcome, ToolError):
            logger.info("Tool %s id=%s -> %s", call.name, call.id, outcome.kind.value)
            return ToolOutcome(call=call, error=outcome)
        return ToolOutcome(call=call, result=outcome)

    def _blocked_message(self, spec: ToolSpec, gate: GateState) -> str:
        if spec.gated and not gate.revealed:
            return (f"Tool '{spec.name}' is currently gated. Call {REVEAL_TOOL} first "
                    f"to unlock it for this turn.")
        if spec.name == REVEAL_TOOL and gate.revealed:
            return (f"Tool '{REVEAL_TOOL}' was already used in this turn and is no longer available. "
                    f"Continue with the unlocked tools.")
        return f"Tool '{spec.name}' is not available in this turn."


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------

def register_builtin_tools(registry: ToolRegistry, store: ChunkStore) -> None:
    def view_conversation_chunk(args: Dict[str, Any]) -> str:
        chunk_id = (args.get("chunk_id") or "").strip()
        if not chunk_id:
            chunks = store.list_summaries()
            if not chunks:
                return "No archived conversation chunks yet."
            lines = [f"{len(chunks)} archived chunk(s), oldest first:"]
            for c in chunks:
                lines.append(f"- {c.id} [{c.kind.value}, {c.size_label}, "
                             f"{format_date_range(c.start, c.end)}]: {c.summary}")
            return "\n".join(lines)
        query = (args.get("query") or "").strip()
        try:
            if query:
                excerpts = store.search_chunk(chunk_id, query)
                return json.dumps({"chunkId": chunk_id, "excerpts": excerpts}, ensure_ascii=False)
            messages = store.read_chunk_content(chunk_id)
        except ChunkNotFoundError as e:
            raise ToolArgumentError(f"{e}. Call view_conversation_chunk with no arguments to list ids.") from e
        return format_messages_for_search(messages)

    def search_conversation_archive(args: Dict[str, Any]) -> str:
        query = args["query"].strip()
        if not query:
            raise ToolArgumentError("Parameter 'query' must not be empty.")
        matches = store.search(query)
        return json.dumps(
            {"relevant_chunks": [{"chunkId": m.chunkId, "relevance": m.relevance} for m in matches]},
            ensure_ascii=False,
        )

    def show_gated_tools(args: Dict[str, Any]) -> str:
        gated = sorted(s.name for s in registry.specs() if s.gated)
        return "Unlocked for this turn: " + ", ".join(gated)

    registry.register(ToolSpec(
        name="view_conversation_chunk",
        description=(
            "Access long-term conversation memory. Call with no arguments to list the summaries "
            "of ALL archived chunks with their ids. Call with a chunk_id to read the complete "
            "messages of that chunk, or with a chunk_id and a query to get only the passages "
            "of that chunk that answer the query."
        ),
        handler=view_conversation_chunk,
        parameters={
            "chunk_id": ToolParameter(
                "string",
                "Optional. Returns the full messages of that chunk. Omit to list all chunk summaries.",
            ),
            "query": ToolParameter(
                "string",
                "Optional, needs chunk_id. Returns verbatim excerpts of that chunk that answer it.",
            ),
        },
    ))
    registry.register(ToolSpec(
        name="search_conversation_archive",
        description=(
            "Find which archived chunks are likely to discuss something, judged from their summaries. "
            "Returns candidate chunk ids; read them with view_conversation_chunk."
        ),
        handler=search_conversation_archive,
        parameters={"query": ToolParameter("string", "What to look for in past conversations.")},
        required=("query",),
    ))
    registry.register(ToolSpec(
        name=REVEAL_TOOL,
        description="Unlock the higher-risk tools for the rest of this turn. Only call it when the user's request needs them.",
        handler=show_gated_tools,
    ))
