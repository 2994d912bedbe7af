"""Agent invocation contract and its LLM-backed implementation.

Every LLM-backed step builds an AgentThread (system prompt plus user
messages, page content included) and hands it to an AgentService together
with a response schema and a timeout:

    thread = (
        AgentThreadBuilder.named("Classify Page 3", agent="classification")
        .with_system(CLASSIFICATION_SYSTEM_PROMPT)
        .with_artifacts([page], store, include_json=False, include_meta=False)
        .with_message(prompt)
        .build()
    )
    result = await service.run(thread, schema, timeout=120)
    if result.completed:
        data = result.last_message_json

The service never raises for a failed call; it reports completed=False with
an error string and lets the caller decide whether that is fatal.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from docextract.core.config import DEFAULT_MODELS, FAST_MODEL, TimeoutConfig, clamp_timeout
from docextract.core.cost_tracker import CostTracker
from docextract.core.llm_client import LLMClient
from docextract.core.stores import EntityStore
from docextract.pydantic_models.entity_models import Artifact

logger = logging.getLogger(__name__)

ResponseSchema = dict[str, Any] | type[BaseModel]


@dataclass
class AgentThread:
    """One conversation sent to an agent."""

    name: str
    agent: str = ""
    system_prompt: str = ""
    messages: list[str] = field(default_factory=list)

    def to_messages(self, schema_instructions: str = "") -> list[dict[str, str]]:
        system = self.system_prompt
        if schema_instructions:
            system = f"{system}\n\n{schema_instructions}" if system else schema_instructions
        messages = [{"role": "system", "content": system}] if system else []
        messages.extend({"role": "user", "content": message} for message in self.messages)
        return messages

    @property
    def user_prompt(self) -> str:
        return "\n\n".join(self.messages)


@dataclass
class AgentRunResult:
    """Outcome of one agent run.

    Attributes:
        completed: False when the call failed, timed out or returned no JSON.
        last_message_json: Parsed JSON of the final message.
        error: Why the run did not complete.
        parsed: The validated model when a pydantic response schema was used.
    """

    completed: bool
    last_message_json: dict[str, Any] | None = None
    error: str | None = None
    parsed: BaseModel | None = None

    @classmethod
    def failed(cls, error: str) -> AgentRunResult:
        return cls(completed=False, error=error)


class AgentService(ABC):
    """Runs agent threads against a response schema."""

    @abstractmethod
    async def run(self, thread: AgentThread, response_schema: ResponseSchema, timeout: int | None = None) -> AgentRunResult:
        """Run the thread and return the final message's JSON."""


def schema_instructions(schema: dict[str, Any]) -> str:
    return (
        "Respond with a single JSON object that validates against this JSON schema:\n"
        f"{json.dumps(schema, indent=2)}"
    )


class LLMAgentService(AgentService):
    """AgentService over the shared litellm router.

    Pydantic response models go through instructor (validated, repaired by
    the model on failure). Plain JSON schemas are embedded in the system
    prompt and the reply is parsed with the json_repair fallback.
    """

    def __init__(
        self,
        models: dict[str, str] | None = None,
        cost_tracker: CostTracker | None = None,
        client: LLMClient | None = None,
    ):
        self.models = {**DEFAULT_MODELS, **(models or {})}
        self.client = client or LLMClient(cost_tracker=cost_tracker)

    def model_for(self, agent: str) -> str:
        return self.models.get(agent, FAST_MODEL)

    async def run(self, thread: AgentThread, response_schema: ResponseSchema, timeout: int | None = None) -> AgentRunResult:
        seconds = clamp_timeout(timeout, TimeoutConfig.EXTRACTION)
        model = self.model_for(thread.agent)

        try:
            if isinstance(response_schema, type) and issubclass(response_schema, BaseModel):
                parsed = await asyncio.wait_for(
                    self.client.complete_structured(
                        system_prompt=thread.system_prompt,
                        user_prompt=thread.user_prompt,
                        model=model,
                        response_model=response_schema,
                        agent=thread.agent,
                        timeout=seconds,
                    ),
                    timeout=seconds,
                )
                return AgentRunResult(completed=True, last_message_json=parsed.model_dump(), parsed=parsed)

            response = await asyncio.wait_for(
                self.client.complete_with_history(
                    messages=thread.to_messages(schema_instructions(response_schema)),
                    model=model,
                    agent=thread.agent,
                    timeout=seconds,
                ),
                timeout=seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Agent thread '{thread.name}' timed out after {seconds}s")
            return AgentRunResult.failed(f"Timed out after {seconds}s")
        except Exception as e:
            logger.warning(f"Agent thread '{thread.name}' failed: {type(e).__name__}: {e}")
            return AgentRunResult.failed(f"{type(e).__name__}: {e}")

        if not isinstance(response.content, dict):
            return AgentRunResult.failed("Response contained no JSON object")
        return AgentRunResult(completed=True, last_message_json=response.content)


# =============================================================================
# Thread building
# =============================================================================


def render_artifact(
    artifact: Artifact,
    store: EntityStore | None = None,
    include_text: bool = True,
    include_files: bool = True,
    include_json: bool = True,
    include_meta: bool = True,
) -> str:
    """Render one artifact as a prompt block headed by its page number."""
    header = f"--- Page {artifact.position} ---" if artifact.position is not None else f"--- {artifact.name} ---"
    parts = [header]

    if include_files and store is not None and artifact.stored_file_ids:
        filenames = ", ".join(f.filename for f in store.stored_files_of(artifact))
        parts.append(f"Files: {filenames}")
    if include_text and artifact.text_content:
        parts.append(artifact.text_content)
    if include_json and artifact.json_content:
        parts.append(f"JSON:\n{json.dumps(artifact.json_content, indent=2, default=str)}")
    if include_meta and artifact.meta:
        parts.append(f"Meta:\n{json.dumps(artifact.meta, indent=2, default=str)}")

    return "\n".join(parts)


class AgentThreadBuilder:
    """Fluent builder for AgentThread."""

    def __init__(self, name: str, agent: str = ""):
        self._thread = AgentThread(name=name, agent=agent)

    @classmethod
    def named(cls, name: str, agent: str = "") -> AgentThreadBuilder:
        return cls(name, agent)

    def with_system(self, prompt: str) -> AgentThreadBuilder:
        self._thread.system_prompt = prompt
        return self

    def with_artifacts(
        self,
        artifacts: list[Artifact],
        store: EntityStore | None = None,
        include_text: bool = True,
        include_files: bool = True,
        include_json: bool = True,
        include_meta: bool = True,
    ) -> AgentThreadBuilder:
        """Add one user message per artifact."""
        for artifact in artifacts:
            self._thread.messages.append(
                render_artifact(artifact, store, include_text, include_files, include_json, include_meta)
            )
        return self

    def with_message(self, message: str) -> AgentThreadBuilder:
        if message:
            self._thread.messages.append(message)
        return self

    def build(self) -> AgentThread:
        return self._thread
