"""Function/tool-calling loop: call -> execute -> resubmit.

States:
    Initial -> AwaitingModel -> CallRequested -> (execute round) -> AwaitingModel
                             -> Terminal

One round executes every call of one response concurrently. A call whose
executor raises does not cancel its siblings; the failure is sent back to the
model as an error-shaped result. The loop stops at a response without calls,
or fails once ``max_rounds`` rounds have run and calls are still pending.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.models import FunctionCallRequest, Message, Response, TokenUsage

if TYPE_CHECKING:
    from aidriver.core.logging import LoggerProtocol

# (name, arguments, call_id) -> result; may be sync or async
FunctionExecutor = Callable[[str, dict[str, Any], str | None], Any]

SendFn = Callable[[Sequence[Message]], Awaitable[Response]]


def loop_totals(responses: Sequence[Response]) -> dict[str, Any]:
    """Usage of every model call in a loop, and their sum.

    ``total_cost`` is only present when every call was priced.
    """
    totals: dict[str, Any] = {
        "round_usage": tuple(response.usage for response in responses),
        "total_usage": sum((response.usage for response in responses), TokenUsage()),
    }
    costs = [response.cost for response in responses]
    if all(cost is not None for cost in costs):
        totals["total_cost"] = round(sum(cost.total_cost for cost in costs), 10)
    return totals


class FunctionCallingOrchestrator:
    """Drives the call/execute/resubmit loop for one conversation.

    Args:
        send: Sends a conversation and returns the model's response
        executor: Caller-owned function runner
        max_rounds: Execution rounds allowed before giving up
        logger: Optional logger
    """

    def __init__(
        self,
        send: SendFn,
        executor: FunctionExecutor,
        max_rounds: int = 5,
        logger: LoggerProtocol | None = None,
    ) -> None:
        if max_rounds < 1:
            raise ValueError(f"max_rounds must be at least 1, got {max_rounds}")
        self._send = send
        self._executor = executor
        self.max_rounds = max_rounds
        self._logger = logger

    async def run(self, messages: Sequence[Message], response: Response | None = None) -> Response:
        """Resolve every pending call and return the terminal response.

        The returned response keeps its own ``usage`` and ``cost``; its
        metadata adds ``function_call_rounds``, ``round_usage`` (one entry per
        model call), ``total_usage`` and, when every call was priced,
        ``total_cost``.

        Args:
            messages: Conversation that produced ``response``
            response: First model response; sent for when omitted

        Raises:
            ProviderError: ``FUNCTION_CALLING_LIMIT_EXCEEDED`` if calls are
                still pending after ``max_rounds`` rounds
        """
        conversation = list(messages)
        if response is None:
            response = await self._send(conversation)
        responses = [response]

        rounds = 0
        while response.has_function_calls:
            if rounds >= self.max_rounds:
                raise ProviderError.create(
                    ErrorKind.FUNCTION_CALLING_LIMIT_EXCEEDED,
                    f"Model still requested function calls after {rounds} round(s)",
                    provider=response.provider,
                    model=response.model,
                    details={
                        "rounds": rounds,
                        "pending_calls": [call.name for call in response.function_calls],
                    },
                )
            rounds += 1
            if self._logger:
                self._logger.debug(
                    f"Function round {rounds}: "
                    f"{', '.join(call.name for call in response.function_calls)}",
                    round=rounds,
                    calls=len(response.function_calls),
                )
            results = await self.execute_round(response.function_calls)
            conversation.extend([response.to_message(), *results])
            response = await self._send(conversation)
            responses.append(response)

        return replace(
            response,
            metadata={**response.metadata, "function_call_rounds": rounds, **loop_totals(responses)},
        )

    async def execute_round(self, calls: Sequence[FunctionCallRequest]) -> list[Message]:
        """Run all calls concurrently; results keep the order of ``calls``."""
        return list(await asyncio.gather(*(self._execute(call) for call in calls)))

    async def _execute(self, call: FunctionCallRequest) -> Message:
        try:
            result = self._executor(call.name, call.arguments, call.call_id)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            if self._logger:
                self._logger.warning(
                    f"Function '{call.name}' failed: {exc}",
                    function=call.name,
                    call_id=call.call_id,
                )
            return Message.function_result(call, error=str(exc) or type(exc).__name__)
        return Message.function_result(call, result)
