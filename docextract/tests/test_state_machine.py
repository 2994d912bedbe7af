"""End-to-end tests for the phase state machine over the invoice sample.

The scripted agents answer every thread of a two-level run:

    level 0: Invoice identity (invoice_number), remaining group Totals (total)
    level 1: Vendor identity (name, address), nested under the invoice
"""

import pytest

from docextract.core.errors import ExtractionValidationError
from docextract.core.stores import InMemoryCanonicalObjectStore, ObjectScope
from docextract.phases.rollup_phase import rollup
from docextract.phases.state_machine import advance_to_next_phase, is_run_done
from docextract.pydantic_models.entity_models import Operation


EXPECTED_INVOICE_FIELDS = {"name": "INV-1", "invoice_number": "INV-1", "total": 120.5}


# =============================================================================
# Full run
# =============================================================================


class TestFullRun:
    """Drive the invoice sample from planning to done."""

    @pytest.mark.asyncio
    async def test_runs_to_completion(self, seeded, drive):
        context, run = seeded
        rounds = await drive(context, run.id)

        # plan identity, plan remaining, classify, L0 identity, L0 remaining, L1 identity
        assert rounds == 6
        assert is_run_done(context, run.id)
        assert context.errors.error_count == 0

        state = context.run(run.id).state
        assert state.extraction.current_level == 1
        assert state.planning.plan.max_level == 1
        assert state.classification.classification_schema is not None

    @pytest.mark.asyncio
    async def test_work_items_per_phase(self, seeded, drive):
        context, run = seeded
        await drive(context, run.id)

        counts = {
            operation: len(context.store.work_items_for(run.id, operation))
            for operation in Operation
        }
        assert counts[Operation.PLAN_IDENTIFY] == 2
        assert counts[Operation.PLAN_REMAINING] == 1
        assert counts[Operation.TRANSCODE] == 0
        assert counts[Operation.CLASSIFY] == 2
        assert counts[Operation.EXTRACT_IDENTITY] == 2
        assert counts[Operation.EXTRACT_REMAINING] == 1
        assert all(item.is_complete for item in context.store.work_items_for(run.id))

    @pytest.mark.asyncio
    async def test_agent_threads(self, seeded, drive, invoice_agents):
        context, run = seeded
        await drive(context, run.id)

        assert len(invoice_agents.calls_named("Plan Identity")) == 2
        assert len(invoice_agents.calls_named("Classify Page")) == 2
        assert len(invoice_agents.calls_named("Extract Identity")) == 2
        assert len(invoice_agents.calls_named("Group Data Extraction: Totals")) == 1
        # Nothing existed before, so no candidates needed comparing
        assert invoice_agents.calls_named("Duplicate Resolution") == []

    @pytest.mark.asyncio
    async def test_objects_and_relationships(self, seeded, drive):
        context, run = seeded
        await drive(context, run.id)
        objects = context.object_store

        invoice = objects.find_by_name(ObjectScope("Invoice"), "INV-1")[0]
        assert invoice.attributes == {"invoice_number": "INV-1", "total": 120.5}

        vendor = objects.find_by_name(ObjectScope("Vendor", parent_object_id=invoice.id), "Acme Supplies")[0]
        assert vendor.attributes == {"address": "1 Main St"}
        assert vendor.root_object_id == invoice.id
        assert objects.parents_of(vendor.id) == [(invoice.id, "vendor")]

        resolved = context.run(run.id).state.extraction
        assert resolved.resolved_ids("Invoice", 0) == [invoice.id]
        assert resolved.resolved_ids("Vendor", 1) == [vendor.id]

    @pytest.mark.asyncio
    async def test_rollup_nests_vendor(self, seeded, drive):
        context, run = seeded
        await drive(context, run.id)

        output = rollup(context, run.id)

        assert output["summary"] == {"total_objects": 2, "by_type": {"Invoice": 1, "Vendor": 1}}
        [invoice] = output["objects"]
        assert {key: invoice[key] for key in EXPECTED_INVOICE_FIELDS} == EXPECTED_INVOICE_FIELDS
        assert isinstance(invoice["vendor"], dict)
        assert invoice["vendor"]["name"] == "Acme Supplies"
        assert invoice["vendor"]["address"] == "1 Main St"


# =============================================================================
# Idempotence and waiting
# =============================================================================


class TestAdvance:
    """Tests for advance_to_next_phase() call semantics."""

    @pytest.mark.asyncio
    async def test_waits_on_outstanding_work(self, seeded):
        context, run = seeded

        created = await advance_to_next_phase(context, run.id)
        assert len(created) == 2
        assert await advance_to_next_phase(context, run.id) == []
        assert len(context.store.work_items_for(run.id)) == 2

    @pytest.mark.asyncio
    async def test_no_op_once_done(self, seeded, drive):
        context, run = seeded
        await drive(context, run.id)
        before = len(context.store.work_items_for(run.id))
        version = context.run(run.id).state.version

        assert await advance_to_next_phase(context, run.id) == []
        assert await advance_to_next_phase(context, run.id) == []
        assert len(context.store.work_items_for(run.id)) == before
        assert context.run(run.id).state.version == version

    @pytest.mark.asyncio
    async def test_plan_is_cached(self, seeded, drive, invoice_agents):
        context, run = seeded
        await drive(context, run.id)
        plan_hash = context.run(run.id).state.planning.plan_hash

        await advance_to_next_phase(context, run.id)

        assert context.run(run.id).state.planning.plan_hash == plan_hash
        assert len(invoice_agents.calls_named("Plan Identity")) == 2


# =============================================================================
# Failures
# =============================================================================


class TestFailures:
    """Fatal validation errors and failed work items."""

    @pytest.mark.asyncio
    async def test_schema_without_object_types(self, make_context, seed_run, invoice_pages):
        context = make_context()
        run = seed_run(context, {"type": "string"}, invoice_pages)

        with pytest.raises(ExtractionValidationError, match="no object types"):
            await advance_to_next_phase(context, run.id)

    @pytest.mark.asyncio
    async def test_run_without_pages(self, make_context, seed_run, invoice_agents, invoice_schema, drive):
        context = make_context(agents=invoice_agents)
        run = seed_run(context, invoice_schema, [])

        with pytest.raises(ExtractionValidationError, match="No input pages"):
            await drive(context, run.id)

    @pytest.mark.asyncio
    async def test_failed_item_leaves_state_unchanged(self, make_context, seed_run, invoice_agents, invoice_schema, invoice_pages, drive):
        del invoice_agents.script["Extract Identity: Invoice"]
        context = make_context(agents=invoice_agents)
        run = seed_run(context, invoice_schema, invoice_pages)

        await drive(context, run.id)

        [identity] = context.store.work_items_for(run.id, Operation.EXTRACT_IDENTITY)
        assert not identity.is_complete
        assert "error" in identity.meta
        assert context.errors.error_count == 1
        assert context.counters["work_items_failed"] == 1

        state = context.run(run.id).state
        assert state.extraction.progress(0).identity_complete is False
        assert state.extraction.resolved_objects == {}
        assert not is_run_done(context, run.id)
        # The failed item is still outstanding, so nothing new is created
        assert await advance_to_next_phase(context, run.id) == []


# =============================================================================
# Deduplication across runs
# =============================================================================


class TestSharedObjectStore:
    """Two runs over the same document resolve to the same canonical objects."""

    @pytest.mark.asyncio
    async def test_second_run_matches_existing_objects(self, make_context, seed_run, invoice_agents, invoice_schema, invoice_pages, drive):
        objects = InMemoryCanonicalObjectStore()

        first = make_context(agents=invoice_agents, object_store=objects)
        first_run = seed_run(first, invoice_schema, invoice_pages)
        await drive(first, first_run.id)

        second = make_context(agents=invoice_agents, object_store=objects)
        second_run = seed_run(second, invoice_schema, invoice_pages)
        await drive(second, second_run.id)

        assert len(objects.objects) == 2
        assert second.counters.get("objects_created", 0) == 0
        assert second.counters["objects_matched"] == 2
        assert invoice_agents.calls_named("Duplicate Resolution") == []


# =============================================================================
# Array object types
# =============================================================================


LINE_ITEM_SCHEMA = {
    "title": "Invoice",
    "type": "object",
    "properties": {
        "invoice_number": {"type": "string"},
        "line_items": {
            "type": "array",
            "items": {
                "type": "object",
                "title": "Line Item",
                "properties": {
                    "description": {"type": "string"},
                    "amount": {"type": "number"},
                },
            },
        },
    },
}

LINE_ITEM_PLANS = {
    "Invoice": {"identity_fields": ["invoice_number"], "skim_fields": ["invoice_number"], "search_mode": "exhaustive"},
    "Line Item": {"identity_fields": ["description"], "skim_fields": ["description"], "search_mode": "exhaustive"},
}


def line_item_script(seen_schemas: list) -> dict:
    def amounts(thread, schema):
        seen_schemas.append(schema)
        return {
            "data": {"line_items": [
                {"name": "Bolts", "description": "Bolts", "amount": 10},
                {"name": "Nuts", "description": "Nuts", "amount": 20},
            ]},
            "page_sources": {"line_items[0].amount": 1, "line_items[1].amount": 1},
        }

    return {
        "Plan Identity": lambda thread, schema: LINE_ITEM_PLANS[thread.name.split(": ", 1)[1]],
        "Plan Remaining: Line Item": {
            "extraction_groups": [
                {"name": "Amounts", "description": "Line amounts", "fields": ["amount"], "search_mode": "exhaustive"},
            ],
        },
        "Classify Page": lambda thread, schema: {key: True for key in schema.get("properties", {})},
        "Search Query Generation": {},
        "Extract Identity: Invoice": {"data": {"invoice": {"invoice_number": "INV-1"}}, "page_sources": {"invoice_number": 1}},
        "Extract Identity: Line Item": {
            "data": {"line_items": [{"description": "Bolts"}, {"description": "Nuts"}]},
            "page_sources": {"line_items[0].description": 1, "line_items[1].description": 1},
        },
        "Group Data Extraction: Amounts": amounts,
    }


class TestArrayRemaining:
    """Remaining fields reach every item of an array object type."""

    @pytest.mark.asyncio
    async def test_each_line_item_gets_its_amount(self, make_context, make_agents, seed_run, drive):
        seen_schemas: list = []
        agents = make_agents(line_item_script(seen_schemas))
        context = make_context(agents=agents)
        run = seed_run(context, LINE_ITEM_SCHEMA, ["INVOICE INV-1\nBolts 10.00\nNuts 20.00"])

        await drive(context, run.id)

        assert context.errors.error_count == 0
        assert context.errors.warnings == []
        scope = ObjectScope("Line Item", any_parent=True)
        bolts = context.object_store.find_by_name(scope, "Bolts")[0]
        nuts = context.object_store.find_by_name(scope, "Nuts")[0]
        assert bolts.attributes == {"description": "Bolts", "amount": 10}
        assert nuts.attributes == {"description": "Nuts", "amount": 20}

    @pytest.mark.asyncio
    async def test_items_are_asked_to_identify_themselves(self, make_context, make_agents, seed_run, drive):
        seen_schemas: list = []
        agents = make_agents(line_item_script(seen_schemas))
        context = make_context(agents=agents)
        run = seed_run(context, LINE_ITEM_SCHEMA, ["INVOICE INV-1\nBolts 10.00\nNuts 20.00"])

        await drive(context, run.id)

        calls = agents.calls_named("Group Data Extraction: Amounts")
        assert len(calls) == 2
        assert any("only for the Line Item 'Bolts'" in thread.user_prompt for thread in calls)
        assert any("only for the Line Item 'Nuts'" in thread.user_prompt for thread in calls)

        item = seen_schemas[0]["properties"]["data"]["properties"]["line_items"]["items"]
        assert list(item["properties"]) == ["amount", "name", "description"]
        assert list(seen_schemas[0]["properties"]["page_sources"]["properties"]) == ["amount"]
