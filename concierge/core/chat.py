# concierge/core/chat.py

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
import sqlite3
import threading
from typing import Callable, Optional, Sequence

from concierge.clients.openai_client import LLMClient, LLMResponse
from concierge.config.settings import Settings
from concierge.core.budget import BudgetGuard, SpendLimits
from concierge.core.context import ContextAssembler
from concierge.core.errors import ConciergeError, TransientUpstreamError, UpstreamError
from concierge.core.state import TurnState
from concierge.core.tools import (
    Dispatcher,
    GateState,
    ToolConfig,
    ToolErrorKind,
    ToolRegistry,
    register_builtin_tools,
)
from concierge.memory.chunk_store import ChunkStore, RecoveryReport
from concierge.memory.consolidator import Consolidator
from concierge.memory.db import init_db
from concierge.memory.live_window import LiveWindow
from concierge.memory.models import Attachment, Message, Role
from concierge.memory.summarizer import SummarizationContext, Summarizer
from concierge.utils.logging import get_logger

logger = get_logger(__name__)

# SAFEGUARD: bound a single inbound message
MAX_USER_TEXT_CHARS = 32000

TRANSIENT_FAILURE_REPLY = "Sorry, I can't reach the language model right now. Please try again in a moment."
FAILURE_REPLY = "Sorry, something went wrong while preparing my reply. Please try again."
ROUND_CAP_REPLY = ("Sorry, I stopped because this request needed more than {cap} rounds of tool calls. "
                   "Please narrow it down or ask me to continue.")
CANCELLED_REPLY = "Stopped."


@dataclass
class TurnResult:
    reply: str
    state: TurnState
    rounds: int = 0
    cost_usd: float = 0.0
    error: Optional[str] = None


@dataclass
class _Turn:
    cancel: threading.Event
    spend: float = 0.0      # summed LLM cost, charged once when the turn ends
    rounds: int = 0
    gate: GateState = field(default_factory=GateState)
    tools_allowed: bool = True

    def result(self, reply: str, state: TurnState, error: Optional[str] = None) -> TurnResult:
        return TurnResult(reply=reply, state=state, rounds=self.rounds, cost_usd=self.spend, error=error)


class ConciergeCore:
    """
    Turn orchestrator. One turn at a time (FIFO), each turn:
    append user message -> [assemble -> call LLM -> dispatch tools]* -> final
    text -> charge spend -> archival check -> consolidation.
    """

    def __init__(
        self,
        settings: Settings,
        llm: LLMClient,
        calendar_context: Optional[Callable[[], Optional[str]]] = None,
        email_context: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self.settings = settings
        self.llm = llm

        init_db(settings.db_path)
        self.live = LiveWindow(settings.db_path)
        self.budget = BudgetGuard(
            settings.db_path,
            SpendLimits(
                per_turn=settings.spend_limit_per_turn_usd,
                daily=settings.spend_limit_daily_usd,
                monthly=settings.spend_limit_monthly_usd,
            ),
            retention_days=settings.ledger_retention_days,
        )
        self.summarizer = Summarizer(llm, budget=self.budget)
        self.store = ChunkStore(
            settings.db_path,
            settings.archive_dir,
            self.summarizer,
            chunk_size=settings.chunk_size,
            archive_multiplier=settings.archive_multiplier,
            recovery_policy=settings.recovery_policy,
            recovery_attempts=settings.recovery_attempts,
            persona=SummarizationContext(
                persona_context=settings.user_context,
                assistant_name=settings.assistant_name,
                user_name=settings.user_name,
            ),
        )
        self.consolidator = Consolidator(self.store, group_size=settings.consolidation_group_size)

        self.tools = ToolRegistry()
        register_builtin_tools(self.tools, self.store)
        self.dispatcher = Dispatcher(self.tools, ToolConfig.from_settings(settings))
        self.assembler = ContextAssembler(settings, calendar_context=calendar_context,
                                          email_context=email_context)

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="turn")
        self._cancel_lock = threading.Lock()
        self._cancel: Optional[threading.Event] = None

    # ---------- lifecycle ----------

    def recover(self) -> RecoveryReport:
        """Reconcile pending chunks from a previous run; call before serving turns."""
        report = self.store.recover_on_startup()
        self._consolidate()
        return report

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def clear_memory(self) -> None:
        """Forget the live window and the whole archive (queued behind running turns)."""
        self._executor.submit(self.store.clear_all, self.live).result()

    # ---------- MAIN USER ENTRY POINT ----------

    def submit_user_message(
        self,
        text: str,
        attachments: Sequence[Attachment] = (),
        reply_to_id: Optional[str] = None,
    ) -> "Future[TurnResult]":
        cleaned = (text or "").strip()
        if not cleaned and not attachments:
            logger.warning("Received empty or whitespace-only user text; ignoring.")
            raise ValueError("No meaningful input was provided.")

        if len(cleaned) > MAX_USER_TEXT_CHARS:
            logger.warning("User text length %d exceeds MAX_USER_TEXT_CHARS=%d; truncating.",
                           len(cleaned), MAX_USER_TEXT_CHARS)
            cleaned = cleaned[:MAX_USER_TEXT_CHARS]

        message = Message(role=Role.USER, content=cleaned, attachments=tuple(attachments),
                          reply_to_id=reply_to_id)
        return self._executor.submit(self._run_turn, message)

    def process_user_message(
        self,
        text: str,
        attachments: Sequence[Attachment] = (),
        reply_to_id: Optional[str] = None,
    ) -> TurnResult:
        """Blocking variant of submit_user_message; waits behind queued turns."""
        return self.submit_user_message(text, attachments, reply_to_id).result()

    def stop(self) -> bool:
        """
        Cancel the turn in flight, if any. Returns True if one was running.
        Takes effect when the current LLM call returns; tool calls already
        started run to completion, the rest of the round is cancelled.
        """
        with self._cancel_lock:
            if self._cancel is None:
                return False
            self._cancel.set()
        logger.info("Stop requested; takes effect once the current LLM or tool call returns")
        return True

    # ---------- turn loop ----------

    def _run_turn(self, user_message: Message) -> TurnResult:
        turn = _Turn(cancel=threading.Event())
        with self._cancel_lock:
            self._cancel = turn.cancel

        result: Optional[TurnResult] = None
        try:
            try:
                self.live.append(user_message)
                result = self._loop(turn)
            except Exception:
                # Live window and index stay as they were; the next turn starts clean
                logger.exception("Turn failed unexpectedly (rounds=%d)", turn.rounds)
                result = turn.result(FAILURE_REPLY, TurnState.FAILED, error="internal")
            return result
        finally:
            with self._cancel_lock:
                self._cancel = None
            self.budget.record_spend(turn.spend)
            state = result.state if result else TurnState.FAILED
            logger.info("Turn ended state=%s rounds=%d cost_usd=%.6f", state.value, turn.rounds, turn.spend)
            if state == TurnState.DONE:
                self._archive()

    def _loop(self, turn: "_Turn") -> TurnResult:
        while True:
            if turn.cancel.is_set():
                return turn.result(CANCELLED_REPLY, TurnState.CANCELLED)

            # Assembling
            prompt = self.assembler.build(self.live.messages(), self.store.list_summaries())
            schemas = self.dispatcher.schemas(turn.gate) if turn.tools_allowed else []

            # Calling
            try:
                response: LLMResponse = self.llm.chat(prompt.system, prompt.messages, tools=schemas or None)
            except TransientUpstreamError as e:
                logger.error("Turn failed after retries (rounds=%d): %s", turn.rounds, e)
                return turn.result(TRANSIENT_FAILURE_REPLY, TurnState.FAILED, error=e.code)
            except UpstreamError as e:
                logger.error("Turn failed, model rejected the request (rounds=%d): %s", turn.rounds, e)
                return turn.result(FAILURE_REPLY, TurnState.FAILED, error=e.code)

            if response.usage.cost_usd:
                turn.spend += response.usage.cost_usd

            if turn.cancel.is_set():
                # Response of a cancelled call is discarded
                return turn.result(CANCELLED_REPLY, TurnState.CANCELLED)

            if not response.wants_tools:
                # Finalizing
                reply = response.text.strip()
                if reply:
                    self.live.append(Message(role=Role.ASSISTANT, content=reply))
                else:
                    logger.warning("Model returned neither text nor tool calls; empty reply.")
                return turn.result(reply, TurnState.DONE)

            if turn.rounds >= self.settings.max_tool_rounds:
                logger.error("Round cap %d exceeded; failing the turn", self.settings.max_tool_rounds)
                return turn.result(ROUND_CAP_REPLY.format(cap=self.settings.max_tool_rounds),
                                   TurnState.FAILED, error="round_cap")
            turn.rounds += 1

            # Dispatching
            call_message = Message(
                role=Role.ASSISTANT,
                content=response.text,
                tool_calls=response.tool_calls,
                reasoning=response.reasoning,
            )
            logger.info("Round %d: %s", turn.rounds, ", ".join(c.name for c in response.tool_calls))

            reason = self.budget.check(turn.spend)
            if reason:
                logger.warning("Refusing tool round %d: %s", turn.rounds, reason)
                outcome = self.dispatcher.refuse_round(
                    response.tool_calls,
                    ToolErrorKind.BUDGET_EXCEEDED,
                    f"Budget exceeded: {reason}. No more tools can be used now; "
                    "answer the user with what you already have.",
                )
                turn.tools_allowed = False
            else:
                outcome = self.dispatcher.execute_round(response.tool_calls, turn.gate, turn.cancel)
                turn.gate = outcome.gate

            self.live.extend([call_message] + [o.to_message() for o in outcome.outcomes])

    # ---------- archival ----------

    def _archive(self) -> None:
        try:
            created = self.store.archive_if_needed(self.live)
        except (ConciergeError, OSError, sqlite3.Error) as e:
            # Live window untouched; retried after the next turn
            logger.error("Archival failed: %s", e)
            return
        if created:
            self._consolidate()

    def _consolidate(self) -> None:
        try:
            self.consolidator.run(self.live)
        except (ConciergeError, OSError, sqlite3.Error) as e:
            logger.error("Consolidation failed: %s", e)


def create_core(settings: Settings, llm: Optional[LLMClient] = None) -> ConciergeCore:
    """Build a core with the live LLM client and run start-up recovery."""
    core = ConciergeCore(settings, llm or LLMClient(settings))
    report = core.recover()
    if report.unavailable:
        logger.warning("%d archived chunk(s) are unavailable", len(report.unavailable))
    return core
