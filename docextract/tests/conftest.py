"""Pytest configuration and shared fixtures.

Provides reusable test fixtures for:
- A scripted agent service (canned replies keyed by thread name)
- A two-level invoice schema with matching pages and agent script
- Engine contexts over in-memory stores
"""

import asyncio
import copy
from typing import Any, Callable

import pytest

from docextract.agents.agent_service import AgentRunResult, AgentService, AgentThread
from docextract.core.cost_tracker import CostTracker
from docextract.core.pipeline_logger import get_logger, reset_logger
from docextract.core.run_state import reset_lock_registry
from docextract.core.stores import (
    InMemoryCanonicalObjectStore,
    InMemoryEntityStore,
    NoTranscodeService,
    QueueDispatcher,
)
from docextract.phases.phase_base import EngineState, ExtractionConfig, ExtractionResources, PhaseContext
from docextract.pydantic_models.entity_models import Run


@pytest.fixture(autouse=True)
def _reset_globals():
    """Fresh lock registry and logger per test (locks are bound to one event loop)."""
    reset_lock_registry()
    reset_logger()
    yield
    reset_lock_registry()
    reset_logger()


# =============================================================================
# Scripted agent service
# =============================================================================


Reply = dict | AgentRunResult | Callable[[AgentThread, Any], Any]


class ScriptedAgentService(AgentService):
    """AgentService answering from a script of thread-name prefixes.

    A reply is a JSON dict, an AgentRunResult, or a callable taking the
    thread and the response schema. Threads without a scripted reply fail.
    """

    def __init__(self, script: dict[str, Reply] | None = None):
        self.script: dict[str, Reply] = dict(script or {})
        self.calls: list[AgentThread] = []

    def on(self, prefix: str, reply: Reply) -> "ScriptedAgentService":
        self.script[prefix] = reply
        return self

    def calls_named(self, prefix: str) -> list[AgentThread]:
        return [thread for thread in self.calls if thread.name.startswith(prefix)]

    async def run(self, thread, response_schema, timeout=None) -> AgentRunResult:
        self.calls.append(thread)
        # Longest prefix wins so "Extract Identity: Vendor" beats "Extract Identity"
        for prefix in sorted(self.script, key=len, reverse=True):
            if thread.name.startswith(prefix):
                reply = self.script[prefix]
                break
        else:
            return AgentRunResult.failed(f"No scripted reply for '{thread.name}'")

        if callable(reply):
            reply = reply(thread, response_schema)
        if isinstance(reply, AgentRunResult):
            return reply
        return AgentRunResult(completed=True, last_message_json=copy.deepcopy(reply))


def classify_everything(thread, response_schema) -> dict:
    """Mark every page relevant to every classification key."""
    return {key: True for key in response_schema.get("properties", {})}


# =============================================================================
# Invoice sample
# =============================================================================


INVOICE_SCHEMA = {
    "title": "Invoice",
    "type": "object",
    "properties": {
        "invoice_number": {"type": "string", "description": "Invoice number as printed"},
        "total": {"type": "number", "description": "Total amount due"},
        "vendor": {
            "type": "object",
            "title": "Vendor",
            "properties": {
                "name": {"type": "string"},
                "address": {"type": "string"},
            },
        },
    },
}

INVOICE_PAGES = [
    "INVOICE INV-1\nDate: 2024-03-01\nTotal due: 120.50",
    "Remit to: Acme Supplies\n1 Main St, Springfield",
]

IDENTITY_PLANS = {
    "Invoice": {
        "identity_fields": ["invoice_number"],
        "skim_fields": ["invoice_number"],
        "search_mode": "skim",
        "description": "Pages showing the invoice header",
    },
    "Vendor": {
        "identity_fields": ["name"],
        "skim_fields": ["name", "address"],
        "search_mode": "skim",
        "description": "Pages naming the vendor",
    },
}


def invoice_script() -> dict[str, Reply]:
    return {
        "Plan Identity": lambda thread, schema: IDENTITY_PLANS[thread.name.split(": ", 1)[1]],
        "Plan Remaining: Invoice": {
            "extraction_groups": [
                {"name": "Totals", "description": "Amounts due", "fields": ["total"], "search_mode": "exhaustive"},
            ],
        },
        "Classify Page": classify_everything,
        "Extract Identity: Invoice": {
            "data": {"invoice": {"invoice_number": "INV-1"}},
            "page_sources": {"invoice_number": 1},
            "confidence": {"invoice_number": 5},
        },
        "Extract Identity: Vendor": {
            "data": {"vendor": {"name": "Acme Supplies", "address": "1 Main St"}},
            "page_sources": {"name": 2, "address": 2},
            "confidence": {"name": 5, "address": 5},
        },
        "Group Data Extraction: Totals": {
            "data": {"total": 120.5},
            "page_sources": {"total": 1},
        },
    }


@pytest.fixture
def invoice_schema() -> dict:
    return copy.deepcopy(INVOICE_SCHEMA)


@pytest.fixture
def invoice_pages() -> list[str]:
    return list(INVOICE_PAGES)


@pytest.fixture
def invoice_agents() -> ScriptedAgentService:
    """Agent service scripted for a full run over the invoice sample."""
    return ScriptedAgentService(invoice_script())


# =============================================================================
# Engine context
# =============================================================================


@pytest.fixture
def make_context():
    """Factory for a PhaseContext over fresh in-memory stores."""

    def _make(agents: AgentService | None = None, config: ExtractionConfig | None = None, object_store=None) -> PhaseContext:
        resources = ExtractionResources(
            store=InMemoryEntityStore(),
            object_store=object_store or InMemoryCanonicalObjectStore(),
            agents=agents or ScriptedAgentService(),
            transcoder=NoTranscodeService(),
            dispatcher=QueueDispatcher(),
            semaphore=asyncio.Semaphore(5),
            logger=get_logger(),
            cost_tracker=CostTracker(),
        )
        return PhaseContext(resources=resources, config=config or ExtractionConfig(), state=EngineState())

    return _make


def _seed_run(context: PhaseContext, schema: dict, pages: list[str], name: str = "Invoice") -> Run:
    """Create a run with one stored file and one input artifact per page."""
    store = context.store
    run = store.create_run(name=name, schema_definition=schema)
    ids = []
    for number, text in enumerate(pages, start=1):
        stored_file = store.create_stored_file(filename=f"page_{number}.txt", page_number=number)
        artifact = store.create_artifact(
            run_id=None,
            name=f"Page {number}",
            position=number,
            text_content=text,
            stored_file_ids=[stored_file.id],
        )
        ids.append(artifact.id)
    return store.add_run_inputs(run.id, ids)


@pytest.fixture
def seeded(make_context, invoice_agents, invoice_schema, invoice_pages):
    """(context, run) for the invoice sample with the full agent script."""
    context = make_context(agents=invoice_agents)
    run = _seed_run(context, invoice_schema, invoice_pages)
    return context, run


async def _drive(context: PhaseContext, run_id: int, max_rounds: int = 50) -> int:
    """Advance and run dispatched work until nothing new is created; returns rounds."""
    from docextract.phases.state_machine import advance_to_next_phase
    from docextract.phases.task_runner import run_work_item

    await advance_to_next_phase(context, run_id)
    rounds = 0
    while rounds < max_rounds:
        batch = context.dispatcher.drain()
        if not batch:
            break
        rounds += 1
        await asyncio.gather(*(run_work_item(context, item) for item in batch))
        await advance_to_next_phase(context, run_id)
    return rounds


@pytest.fixture
def seed_run():
    """Function creating a seeded run: seed_run(context, schema, pages, name="Invoice")."""
    return _seed_run


@pytest.fixture
def drive():
    """Coroutine function running a context's run to quiescence: await drive(context, run_id)."""
    return _drive


@pytest.fixture
def make_agents():
    """Factory for a ScriptedAgentService: make_agents(script=None)."""
    return ScriptedAgentService
