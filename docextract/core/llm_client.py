"""LLM client used by the agent service.

Provides a single place for:
- Message building
- Cost tracking
- JSON parsing with repair fallback
- Per-call timeouts
- Retry and fallback via the litellm Router

Usage:
    client = LLMClient(cost_tracker=tracker)

    response = await client.complete(
        system_prompt="You classify document pages.",
        user_prompt="...",
        model="openrouter/openai/gpt-4o-mini",
        agent="classification",
        timeout=120,
    )
    data = response.content  # Parsed JSON dict

    # Structured call (returns validated pydantic model)
    plan = await client.complete_structured(
        system_prompt="...",
        user_prompt="...",
        model="openrouter/openai/gpt-4o-mini",
        response_model=IdentityPlanResponse,
        agent="planning",
    )
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, TypeVar

from docextract.core.config import LLMConfig
from docextract.core.cost_tracker import CostTracker
from docextract.core.llm_router import router

logger = logging.getLogger(__name__)

logging.getLogger("litellm").setLevel(logging.ERROR)
logging.getLogger("httpx").setLevel(logging.ERROR)

T = TypeVar("T")


@dataclass
class LLMResponse:
    """Parsed response from an LLM call.

    Attributes:
        content: Parsed JSON content (a dict for every schema this engine sends).
        raw_content: Raw string content from the LLM.
        model: Model identifier used for the call.
    """

    content: Any
    raw_content: str
    model: str


def parse_json_content(raw_content: str | None) -> Any:
    """Parse an LLM message as JSON, repairing it when strict parsing fails.

    Returns None for empty content.
    """
    if not raw_content:
        return None
    try:
        return json.loads(raw_content)
    except json.JSONDecodeError:
        from json_repair import repair_json
        logger.warning("JSON parse failed, attempting repair")
        return repair_json(raw_content, return_objects=True)


class LLMClient:
    """Client for making LLM API calls through the shared router."""

    def __init__(self, cost_tracker: CostTracker | None = None) -> None:
        """Initialize the client.

        Args:
            cost_tracker: Optional tracker for recording API token usage.
        """
        self.cost_tracker = cost_tracker

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        agent: str = "",
        temperature: float | None = None,
        response_format: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        """Make a single-turn completion call.

        Args:
            system_prompt: System message content.
            user_prompt: User message content.
            model: LLM model identifier.
            agent: Agent role for cost tracking.
            temperature: Sampling temperature. Defaults to 0.0.
            response_format: Response format dict. Defaults to JSON.
            timeout: Request timeout in seconds.

        Returns:
            LLMResponse with parsed JSON content.
        """
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        return await self._call_llm(messages, model, agent, temperature, response_format, timeout)

    async def complete_with_history(
        self,
        messages: list[dict[str, str]],
        model: str,
        agent: str = "",
        temperature: float | None = None,
        response_format: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> LLMResponse:
        """Make an LLM call with a full message list.

        Agent threads carry one system message followed by any number of
        user messages (page content, instructions), so they go through here.
        """
        return await self._call_llm(messages, model, agent, temperature, response_format, timeout)

    async def complete_structured(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        response_model: type[T],
        agent: str = "",
        temperature: float | None = None,
        max_retries: int = 2,
        timeout: float | None = None,
    ) -> T:
        """Make an LLM call that returns a validated pydantic model.

        Instructor sends validation errors back to the model so it can fix
        its own JSON before we give up.
        """
        import instructor

        instructor_client = instructor.from_litellm(router.acompletion)
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout

        result, raw_completion = (
            await instructor_client.chat.completions.create_with_completion(
                model=model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_model=response_model,
                temperature=temperature if temperature is not None else LLMConfig.TEMPERATURE,
                max_retries=max_retries,
                **kwargs,
            )
        )

        if self.cost_tracker:
            self.cost_tracker.record(model, raw_completion.usage, agent=agent)

        return result

    async def _call_llm(
        self,
        messages: list[dict[str, str]],
        model: str,
        agent: str,
        temperature: float | None,
        response_format: dict[str, str] | None,
        timeout: float | None,
    ) -> LLMResponse:
        """Perform the actual LLM call via the Router."""
        kwargs: dict[str, Any] = {}
        if timeout is not None:
            kwargs["timeout"] = timeout

        response = await router.acompletion(
            model=model,
            messages=messages,
            response_format=response_format or LLMConfig.RESPONSE_FORMAT,
            temperature=temperature if temperature is not None else LLMConfig.TEMPERATURE,
            **kwargs,
        )

        if self.cost_tracker:
            self.cost_tracker.record(model, response.usage, agent=agent)

        raw_content = response.choices[0].message.content
        return LLMResponse(
            content=parse_json_content(raw_content),
            raw_content=raw_content or "",
            model=model,
        )
