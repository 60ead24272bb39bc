# agent.py
# The external agent, seen only through its streaming-query contract.
#
#   query(prompt, history) → async stream of
#       TextDelta(text) | ToolStart(name) | FinalResult(text)
#
# The stream stays open until a FinalResult arrives. Nothing here knows how
# the agent reasons; OpenRouterAgent is one concrete backend.

import logging
import os
from typing import AsyncIterator, Callable, Protocol

from dotenv import load_dotenv
from openai import AsyncOpenAI

from plan_gate.models import AgentEvent, FinalResult, TextDelta, ToolStart

load_dotenv()

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-haiku"


class AgentClient(Protocol):
    def query(self, prompt: str, history: list[dict] | None = None) -> AsyncIterator[AgentEvent]: ...


class OpenRouterAgent:
    """
    Streams chat completions from an OpenRouter-hosted model.

    Example:
        agent = OpenRouterAgent("anthropic/claude-3.5-haiku")
        text = await collect_text(agent.query("List the files to touch."))
    """

    def __init__(self, model: str = DEFAULT_MODEL, api_key: str | None = None, system_prompt: str | None = None) -> None:
        self.model = model
        self._system_prompt = system_prompt
        self._client = AsyncOpenAI(
            base_url=OPENROUTER_BASE_URL,
            api_key=api_key or os.getenv("OPENROUTER_API_KEY"),
        )

    async def query(self, prompt: str, history: list[dict] | None = None) -> AsyncIterator[AgentEvent]:
        messages: list[dict] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        messages.extend(history or [])
        messages.append({"role": "user", "content": prompt})

        stream = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            stream=True,
        )

        text = ""
        announced: set[int] = set()
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            for call in delta.tool_calls or []:
                if call.index not in announced and call.function and call.function.name:
                    announced.add(call.index)
                    yield ToolStart(name=call.function.name)
            if delta.content:
                text += delta.content
                yield TextDelta(text=delta.content)

        logger.debug("Agent stream closed after %d chars", len(text))
        yield FinalResult(text=text)


async def collect_text(
    events: AsyncIterator[AgentEvent],
    on_delta: Callable[[str], None] | None = None,
    on_tool: Callable[[str], None] | None = None,
) -> str:
    """
    Consume a query stream and return the final text.

    Deltas are forwarded to `on_delta` as they arrive. A non-empty
    FinalResult wins over the concatenated deltas.
    """
    text = ""
    async for event in events:
        if isinstance(event, TextDelta):
            text += event.text
            if on_delta is not None:
                on_delta(event.text)
        elif isinstance(event, ToolStart):
            if on_tool is not None:
                on_tool(event.name)
        elif isinstance(event, FinalResult):
            return event.text or text
    return text
