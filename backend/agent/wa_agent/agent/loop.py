"""Agent loop: the core processing engine."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any

from loguru import logger

from wa_agent.agent.context import ContextBuilder
from wa_agent.agent.summarizer import ResultSummarizer
from wa_agent.agent.tools.base import ToolContext, error_result, is_error_result
from wa_agent.agent.tools.registry import ToolRegistry
from wa_agent.observability.metrics import MetricsStore
from wa_agent.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from wa_agent.session.store import ConversationStore, ProfileStore, Turn

FAILURE_MESSAGE = (
    "Sorry, something went wrong while handling your message. Please try again in a moment."
)
TASK_TOO_COMPLEX_MESSAGE = (
    "This task is too complex for me to finish in one go. "
    "Please simplify it or split it into smaller requests."
)
EMPTY_RESPONSE_MESSAGE = "I've completed processing but have no response to give."


class LoopState(str, Enum):
    """States of one inbound message."""

    START = "start"
    LOADING_CONTEXT = "loading_context"
    MODEL_CALL = "model_call"
    TOOL_EXECUTION = "tool_execution"
    FINALIZING = "finalizing"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"


class GatewayError(RuntimeError):
    """The model gateway failed on every model in the fallback chain."""


@dataclass
class MessageOutcome:
    """Result of processing one inbound message."""

    text: str
    state: LoopState
    iterations: int = 0
    tool_calls: int = 0
    trace: list[LoopState] = field(default_factory=list)


class AgentLoop:
    """
    The agent loop is the core processing engine.

    For each inbound message it:
    1. Loads recent history and the user's profile
    2. Builds the working transcript
    3. Calls the LLM, executing requested tools until a final answer
       or the iteration budget runs out
    4. Persists the user/assistant pair
    5. Returns exactly one reply text

    `handle_message` never raises; every failure becomes a fixed reply.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry,
        conversations: ConversationStore,
        profiles: ProfileStore,
        *,
        model: str | None = None,
        fallback_models: list[str] | None = None,
        max_iterations: int = 5,
        history_limit: int = 10,
        max_tokens: int = 1024,
        temperature: float = 0.3,
        llm_timeout: float = 60.0,
        tool_timeout: float = 30.0,
        serialize_per_user: bool = True,
        retry_tools: bool = True,
        context: ContextBuilder | None = None,
        summarizer: ResultSummarizer | None = None,
        metrics: MetricsStore | None = None,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.provider = provider
        self.tools = tools
        self.conversations = conversations
        self.profiles = profiles
        self.model = model or provider.get_default_model()
        models = [self.model]
        for raw in fallback_models or []:
            candidate = (raw or "").strip()
            if candidate and candidate not in models:
                models.append(candidate)
        self.model_chain = models
        self.max_iterations = max_iterations
        self.history_limit = history_limit
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.llm_timeout = llm_timeout
        self.tool_timeout = tool_timeout
        self.serialize_per_user = serialize_per_user
        self.retry_tools = retry_tools
        self.context = context or ContextBuilder()
        self.summarizer = summarizer or ResultSummarizer()
        self.metrics = metrics

        self._user_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def handle_message(self, user_id: str, text: str) -> str:
        """Process one inbound message and return the reply text."""
        try:
            outcome = await self.process(user_id, text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unhandled failure for {user_id}: {e}")
            return FAILURE_MESSAGE
        return outcome.text or FAILURE_MESSAGE

    async def process(self, user_id: str, text: str) -> MessageOutcome:
        """Process one message, returning the reply with its terminal state."""
        started = perf_counter()
        if self.serialize_per_user:
            async with self._user_lock(user_id):
                outcome = await self._process(user_id, text)
        else:
            outcome = await self._process(user_id, text)

        if self.metrics:
            self.metrics.record_message(
                outcome=outcome.state.value,
                iterations=outcome.iterations,
                tool_calls=outcome.tool_calls,
                latency_ms=(perf_counter() - started) * 1000.0,
            )
        return outcome

    async def _process(self, user_id: str, text: str) -> MessageOutcome:
        outcome = MessageOutcome(text="", state=LoopState.START, trace=[LoopState.START])
        logger.info(f"Processing message from {user_id}")

        try:
            self._transition(user_id, outcome, LoopState.LOADING_CONTEXT)
            history = await self.conversations.load_recent(user_id, self.history_limit)
            profile = await self.profiles.get(user_id)
            tool_ctx = ToolContext(user_id=user_id, timezone=self.context.timezone_for(profile))
            messages = self.context.build_messages(
                system_prompt=self.context.build_system_prompt(profile),
                history=history,
                current_message=text,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to load context for {user_id}: {e}")
            return self._finish(user_id, outcome, LoopState.ERRORED, FAILURE_MESSAGE)

        final_content: str | None = None
        try:
            while final_content is None:
                self._transition(user_id, outcome, LoopState.MODEL_CALL)
                if outcome.iterations >= self.max_iterations:
                    logger.warning(
                        f"Iteration budget ({self.max_iterations}) exhausted for {user_id}"
                    )
                    return self._finish(user_id, outcome, LoopState.ABORTED, TASK_TOO_COMPLEX_MESSAGE)
                outcome.iterations += 1

                response = await self._chat_with_model_failover(messages)

                if response.has_tool_calls:
                    tool_call_dicts = [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments),  # Must be JSON string
                            },
                        }
                        for tc in response.tool_calls
                    ]
                    messages = self.context.add_assistant_message(
                        messages, response.content, tool_call_dicts
                    )

                    self._transition(user_id, outcome, LoopState.TOOL_EXECUTION)
                    results = await asyncio.gather(
                        *(self._run_tool(tc, tool_ctx) for tc in response.tool_calls)
                    )
                    for tool_call, result in zip(response.tool_calls, results):
                        messages = self.context.add_tool_result(
                            messages,
                            tool_call.id,
                            tool_call.name,
                            json.dumps(result, ensure_ascii=False, default=str),
                        )
                    outcome.tool_calls += len(response.tool_calls)
                else:
                    final_content = (response.content or "").strip() or EMPTY_RESPONSE_MESSAGE
                    messages = self.context.add_assistant_message(messages, final_content)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Agent loop failed for {user_id}: {e}")
            return self._finish(user_id, outcome, LoopState.ERRORED, FAILURE_MESSAGE)

        self._transition(user_id, outcome, LoopState.FINALIZING)
        await self._persist_exchange(user_id, text, final_content)
        return self._finish(user_id, outcome, LoopState.DONE, final_content)

    def _transition(self, user_id: str, outcome: MessageOutcome, state: LoopState) -> None:
        logger.debug(f"[{user_id}] {outcome.state.value} -> {state.value}")
        outcome.state = state
        outcome.trace.append(state)

    def _finish(
        self, user_id: str, outcome: MessageOutcome, state: LoopState, text: str
    ) -> MessageOutcome:
        self._transition(user_id, outcome, state)
        outcome.text = text
        logger.info(
            f"Message from {user_id} finished as {state.value} "
            f"(iterations={outcome.iterations}, tool_calls={outcome.tool_calls})"
        )
        return outcome

    async def _persist_exchange(self, user_id: str, user_text: str, reply: str) -> None:
        """Append the user/assistant pair; failures lose memory but not the reply."""
        try:
            await self.conversations.append_exchange(
                user_id,
                [Turn(role="user", content=user_text), Turn(role="assistant", content=reply)],
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to persist history for {user_id}: {e}")

    def _user_lock(self, user_id: str) -> _UserLock:
        return _UserLock(self, user_id)

    async def _chat_with_model_failover(self, messages: list[dict[str, Any]]) -> LLMResponse:
        """Call provider chat with deterministic model fallback chain."""
        last_error = ""
        tools = self.tools.get_definitions() or None
        for index, model_name in enumerate(self.model_chain):
            llm_started = perf_counter()
            try:
                response = await asyncio.wait_for(
                    self.provider.chat(
                        messages=messages,
                        tools=tools,
                        model=model_name,
                        max_tokens=self.max_tokens,
                        temperature=self.temperature,
                        tool_choice="auto",
                    ),
                    timeout=self.llm_timeout,
                )
                failed = response.finish_reason == "error"
                error_text = (response.content or "") if failed else ""
            except asyncio.TimeoutError:
                response, failed, error_text = None, True, f"timed out after {self.llm_timeout}s"
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                response, failed, error_text = None, True, str(exc)

            latency_ms = (perf_counter() - llm_started) * 1000.0
            if not failed and response is not None:
                usage = response.usage if isinstance(response.usage, dict) else {}
                if self.metrics:
                    self.metrics.record_llm_call(
                        model=model_name,
                        success=True,
                        latency_ms=latency_ms,
                        prompt_tokens=int(usage.get("prompt_tokens", 0) or 0),
                        completion_tokens=int(usage.get("completion_tokens", 0) or 0),
                    )
                return response

            if self.metrics:
                self.metrics.record_llm_call(
                    model=model_name, success=False, latency_ms=latency_ms, error=error_text
                )
            last_error = error_text
            if index < len(self.model_chain) - 1 and self._should_failover_model(error_text):
                logger.warning(
                    f"LLM call failed on {model_name}; retrying with fallback "
                    f"{self.model_chain[index + 1]}"
                )
                continue
            break

        raise GatewayError(last_error or "LLM call failed without response")

    def _should_failover_model(self, error_text: str) -> bool:
        text = (error_text or "").lower()
        retry_markers = (
            "timeout",
            "timed out",
            "rate limit",
            "429",
            "500",
            "502",
            "503",
            "service unavailable",
            "overloaded",
            "connection",
            "internal_server_error",
        )
        return any(marker in text for marker in retry_markers)

    def _classify_retryable_tool_error(self, result: dict[str, Any]) -> str | None:
        """Return the retry class of an error result, or None when not retryable."""
        if not is_error_result(result):
            return None
        text = str(result.get("message", "")).lower()
        if any(marker in text for marker in ("429", "rate limit", "ratelimit", "quota exceeded")):
            return "rate_limit"
        network_markers = (
            "timed out",
            "timeout",
            "network error",
            "connection",
            "temporarily unavailable",
            "http 502",
            "http 503",
            "http 504",
        )
        if any(marker in text for marker in network_markers):
            return "network"
        return None

    def _retry_policy_for(self, kind: str) -> tuple[int, list[float]]:
        """Return retry attempts and sleep schedule for a retry class."""
        if kind == "rate_limit":
            return 3, [1.0, 2.0]
        if kind == "network":
            return 3, [0.5, 1.0]
        return 1, []

    async def _invoke_tool(self, tool_call: ToolCallRequest, ctx: ToolContext) -> dict[str, Any]:
        if tool_call.parse_error:
            return error_result(f"Could not parse arguments for {tool_call.name}: {tool_call.parse_error}")
        try:
            return await asyncio.wait_for(
                self.tools.execute(tool_call.name, tool_call.arguments, ctx),
                timeout=self.tool_timeout,
            )
        except asyncio.TimeoutError:
            return error_result(f"Tool {tool_call.name} timed out after {self.tool_timeout}s")

    async def _run_tool(self, tool_call: ToolCallRequest, ctx: ToolContext) -> dict[str, Any]:
        """Execute one tool call with retries, returning its summarized result. Never raises."""
        started = perf_counter()
        logger.debug(
            f"Executing tool: {tool_call.name} with arguments: {json.dumps(tool_call.arguments)}"
        )
        attempts = 1
        retry_kind = ""
        try:
            result = await self._invoke_tool(tool_call, ctx)
            kind = self._classify_retryable_tool_error(result) if self.retry_tools else None
            if kind:
                retry_kind = kind
                max_attempts, delays = self._retry_policy_for(kind)
                while attempts < max_attempts and self._classify_retryable_tool_error(result):
                    delay = delays[min(attempts - 1, len(delays) - 1)] if delays else 0.0
                    if delay > 0:
                        await asyncio.sleep(delay)
                    attempts += 1
                    logger.warning(
                        f"Retrying tool '{tool_call.name}' after {kind} error "
                        f"(attempt {attempts}/{max_attempts})"
                    )
                    result = await self._invoke_tool(tool_call, ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            result = error_result(f"Error executing {tool_call.name}: {str(e)}")

        failed = is_error_result(result)
        if self.metrics:
            self.metrics.record_tool_call(
                tool=tool_call.name,
                success=not failed,
                latency_ms=(perf_counter() - started) * 1000.0,
                attempts=attempts,
                retry_kind=retry_kind,
                error=str(result.get("message", "")) if failed else "",
            )
        if failed:
            logger.warning(f"Tool {tool_call.name} failed: {result.get('message', '')}")

        try:
            return self.summarizer.summarize(tool_call.name, result)
        except Exception as e:
            logger.error(f"Summarizer failed for {tool_call.name}: {e}")
            return error_result(f"Result of {tool_call.name} could not be summarized")


class _UserLock:
    """Async context manager serializing messages of one user; drops idle locks."""

    def __init__(self, loop: AgentLoop, user_id: str):
        self.loop = loop
        self.user_id = user_id

    async def __aenter__(self) -> None:
        lock = self.loop._user_locks.setdefault(self.user_id, asyncio.Lock())
        self.loop._lock_users[self.user_id] = self.loop._lock_users.get(self.user_id, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._release_ref()
            raise

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.loop._user_locks[self.user_id].release()
        self._release_ref()

    def _release_ref(self) -> None:
        remaining = self.loop._lock_users.get(self.user_id, 1) - 1
        if remaining <= 0:
            self.loop._lock_users.pop(self.user_id, None)
            self.loop._user_locks.pop(self.user_id, None)
        else:
            self.loop._lock_users[self.user_id] = remaining
