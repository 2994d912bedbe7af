"""Tests for the extraction agents against a scripted agent service.

Covers:
- Page classification and its stored-file cache
- Identity extraction batching, skim early stop and conflict arbitration
- Remaining-group extraction
- Search query generation
"""

import pytest

from docextract.agents.agent_service import AgentRunResult
from docextract.agents.classifier_agent import classify_page
from docextract.agents.conflict_resolver import resolve_conflicts
from docextract.agents.group_extractor import extract_group
from docextract.agents.identity_extractor import extract_identity, resolve_object_name
from docextract.agents.search_query_agent import generate_search_queries
from docextract.core.errors import AgentRunError, ExtractionValidationError
from docextract.core.fragment_selector import build_selector_from_fields
from docextract.core.merge import FieldConflict
from docextract.core.stores import InMemoryEntityStore
from docextract.pydantic_models.entity_models import CanonicalObject
from docextract.pydantic_models.plan_models import IdentityGroup, RemainingGroup
from docextract.prompts.conflict_prompt import build_conflict_response_schema

CLASSIFICATION_SCHEMA = {
    "type": "object",
    "properties": {
        "invoice_identification": {"type": "boolean"},
        "totals": {"type": "boolean"},
    },
}


def replies(*responses):
    """Scripted reply returning the given responses in call order."""
    queue = list(responses)

    def _next(thread, schema):
        return queue.pop(0)

    return _next


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def pages(store, invoice_pages):
    artifacts = []
    for number, text in enumerate(invoice_pages, start=1):
        stored = store.create_stored_file(f"page_{number}.txt", page_number=number)
        artifacts.append(
            store.create_artifact(run_id=1, name=f"Page {number}", position=number, text_content=text, stored_file_ids=[stored.id])
        )
    return artifacts


@pytest.fixture
def identity_group(invoice_schema):
    return IdentityGroup(
        object_type="Invoice",
        identity_fields=["invoice_number"],
        skim_fields=["invoice_number"],
        search_mode="skim",
        fragment_selector=build_selector_from_fields("", ["invoice_number"], invoice_schema, False),
    )


@pytest.fixture
def totals_group(invoice_schema):
    return RemainingGroup(
        name="Totals",
        fields=["total"],
        search_mode="skim",
        object_type="Invoice",
        fragment_selector=build_selector_from_fields("", ["total"], invoice_schema, False),
    )


def identity_reply(number, page, confidence):
    return {
        "data": {"invoice": {"invoice_number": number}},
        "page_sources": {"invoice_number": page},
        "confidence": {"invoice_number": confidence},
    }


# =============================================================================
# Classification
# =============================================================================


class TestClassifyPage:
    """Tests for classify_page() and its cache."""

    @pytest.mark.asyncio
    async def test_coerces_to_schema_keys(self, store, pages, make_agents):
        agents = make_agents({"Classify Page": {"invoice_identification": 1, "shipping": True}})

        result = await classify_page(agents, store, pages[0], CLASSIFICATION_SCHEMA, schema_definition_id=1)

        assert result == {"invoice_identification": True, "totals": False}

    @pytest.mark.asyncio
    async def test_string_booleans_are_parsed(self, store, pages, make_agents):
        agents = make_agents({"Classify Page": {"invoice_identification": "false", "totals": "True"}})

        result = await classify_page(agents, store, pages[0], CLASSIFICATION_SCHEMA, schema_definition_id=1)

        assert result == {"invoice_identification": False, "totals": True}

    @pytest.mark.asyncio
    async def test_cached_per_stored_file(self, store, pages, make_agents):
        agents = make_agents({"Classify Page": {"invoice_identification": True, "totals": True}})

        first = await classify_page(agents, store, pages[0], CLASSIFICATION_SCHEMA, 1)
        second = await classify_page(agents, store, pages[0], CLASSIFICATION_SCHEMA, 1)

        assert first == second
        assert len(agents.calls) == 1
        assert "1" in store.stored_files_of(pages[0])[0].meta["classifications"]

    @pytest.mark.asyncio
    async def test_schema_change_invalidates_cache(self, store, pages, make_agents):
        agents = make_agents({"Classify Page": {"invoice_identification": True}})
        await classify_page(agents, store, pages[0], CLASSIFICATION_SCHEMA, 1)

        changed = {"type": "object", "properties": {"vendor_identification": {"type": "boolean"}}}
        result = await classify_page(agents, store, pages[0], changed, 1)

        assert result == {"vendor_identification": False}
        assert len(agents.calls) == 2

    @pytest.mark.asyncio
    async def test_requires_stored_file(self, store, make_agents):
        page = store.create_artifact(run_id=1, name="Page 1", position=1, text_content="text")
        with pytest.raises(ExtractionValidationError, match="No StoredFile"):
            await classify_page(make_agents(), store, page, CLASSIFICATION_SCHEMA, 1)

    @pytest.mark.asyncio
    async def test_failed_thread_raises(self, store, pages, make_agents):
        with pytest.raises(ExtractionValidationError, match="thread failed"):
            await classify_page(make_agents(), store, pages[0], CLASSIFICATION_SCHEMA, 1)


# =============================================================================
# Identity extraction
# =============================================================================


class TestResolveObjectName:
    """Tests for resolve_object_name()."""

    def test_name_field_wins(self):
        assert resolve_object_name({"name": " Acme ", "code": "A1"}, ["code"]) == "Acme"

    def test_first_filled_identity_field(self):
        assert resolve_object_name({"code": "", "number": "INV-1"}, ["code", "number"]) == "INV-1"

    def test_unidentifiable(self):
        assert resolve_object_name({"code": None}, ["code"]) is None


class TestExtractIdentity:
    """Tests for extract_identity()."""

    @pytest.mark.asyncio
    async def test_skim_stops_once_confident(self, store, pages, identity_group, invoice_schema, make_agents):
        agents = make_agents({"Extract Identity": replies(identity_reply("INV-1", 1, 5))})

        result = await extract_identity(agents, store, identity_group, pages, invoice_schema, batch_size=1)

        assert result.data == {"invoice_number": "INV-1"}
        assert result.page_sources == {"invoice_number": 1}
        assert result.batches_processed == 1
        assert len(agents.calls) == 1

    @pytest.mark.asyncio
    async def test_exhaustive_reads_every_batch(self, store, pages, identity_group, invoice_schema, make_agents):
        agents = make_agents({
            "Extract Identity": replies(identity_reply("INV-1", 1, 5), identity_reply("INV-1", 2, 5)),
        })

        result = await extract_identity(
            agents, store, identity_group, pages, invoice_schema, search_mode="exhaustive", batch_size=1
        )

        assert result.batches_processed == 2
        assert result.conflicts == []

    @pytest.mark.asyncio
    async def test_conflicting_batches_are_arbitrated(self, store, pages, identity_group, invoice_schema, make_agents):
        agents = make_agents({
            "Extract Identity": replies(identity_reply("INV-1", 1, 2), identity_reply("INV-7", 2, 4)),
            "Conflict Resolution": {
                "invoice_number": {"resolved_value": "INV-7", "source_page": 2, "explanation": "Printed header"},
            },
        })

        result = await extract_identity(agents, store, identity_group, pages, invoice_schema, batch_size=1)

        assert result.batches_processed == 2
        assert result.data == {"invoice_number": "INV-7"}
        assert len(agents.calls_named("Conflict Resolution")) == 1

    @pytest.mark.asyncio
    async def test_failed_call_is_fatal(self, store, pages, identity_group, invoice_schema, make_agents):
        with pytest.raises(ExtractionValidationError, match="Identity extraction for Invoice failed"):
            await extract_identity(make_agents(), store, identity_group, pages, invoice_schema)


# =============================================================================
# Group extraction
# =============================================================================


class TestExtractGroup:
    """Tests for extract_group()."""

    @pytest.fixture
    def invoice(self):
        return CanonicalObject(id=1, type="Invoice", name="INV-1")

    @pytest.mark.asyncio
    async def test_skim_stops_once_confident(self, store, pages, totals_group, invoice, invoice_schema, make_agents):
        agents = make_agents({
            "Group Data Extraction": replies(
                {"data": {"total": 120.5}, "page_sources": {"total": 1}, "confidence": {"total": 5}},
            ),
        })

        result = await extract_group(agents, store, totals_group, invoice, pages, invoice_schema, skim_batch_size=1)

        assert result.data == {"total": 120.5}
        assert result.batches_processed == 1

    @pytest.mark.asyncio
    async def test_exhaustive_single_call(self, store, pages, totals_group, invoice, invoice_schema, make_agents):
        agents = make_agents({"Group Data Extraction": {"data": {"total": 99}, "page_sources": {"total": 2}}})

        result = await extract_group(
            agents, store, totals_group, invoice, pages, invoice_schema, search_mode="exhaustive"
        )

        assert result.data == {"total": 99}
        assert result.page_sources == {"total": 2}
        assert len(agents.calls) == 1

    @pytest.mark.asyncio
    async def test_failed_call_is_empty(self, store, pages, totals_group, invoice, invoice_schema, make_agents):
        result = await extract_group(
            make_agents(), store, totals_group, invoice, pages, invoice_schema, search_mode="exhaustive"
        )
        assert result.is_empty


# =============================================================================
# Search queries and conflicts
# =============================================================================


class TestSearchQueries:
    """Tests for generate_search_queries()."""

    @pytest.mark.asyncio
    async def test_results_map_back_to_items(self, make_agents):
        def answer_first_only(thread, schema):
            first = next(iter(schema["properties"]))
            return {first: {"search_query": [{"sku": "A-1"}, {"sku": "%A-1%"}, {"sku": "%A%"}]}}

        agents = make_agents({"Search Query Generation": answer_first_only})

        queries = await generate_search_queries(agents, [{"sku": "A-1"}, {"sku": "B-2"}], ["sku"])

        assert queries[0][0] == {"sku": "A-1"}
        assert queries[1] is None

    @pytest.mark.asyncio
    async def test_batches(self, make_agents):
        agents = make_agents({"Search Query Generation": {}})
        queries = await generate_search_queries(agents, [{"sku": str(i)} for i in range(5)], ["sku"], batch_size=2)
        assert queries == [None] * 5
        assert len(agents.calls) == 3

    @pytest.mark.asyncio
    async def test_no_items(self, make_agents):
        agents = make_agents()
        assert await generate_search_queries(agents, [], ["sku"]) == []
        assert agents.calls == []

    @pytest.mark.asyncio
    async def test_failed_thread_raises(self, make_agents):
        agents = make_agents({"Search Query Generation": AgentRunResult.failed("timeout")})
        with pytest.raises(AgentRunError):
            await generate_search_queries(agents, [{"sku": "A-1"}], ["sku"])


class TestResolveConflicts:
    """Tests for resolve_conflicts() and its response schema."""

    @pytest.fixture
    def name_conflict(self):
        return FieldConflict(
            field_path="name", field_name="name",
            existing_value="A B C", existing_page=1, new_value="X Y Z", new_page=3,
        )

    def test_response_schema_has_one_property_per_conflict(self, name_conflict):
        schema = build_conflict_response_schema([name_conflict])

        assert list(schema["properties"]) == ["name"]
        assert schema["required"] == ["name"]
        assert schema["properties"]["name"]["required"] == ["resolved_value", "source_page"]

    def test_nested_conflict_is_keyed_by_path(self):
        conflict = FieldConflict("address.city", "city", "Paris", 1, "Lyon", 2)
        assert list(build_conflict_response_schema([conflict])["properties"]) == ["address.city"]

    @pytest.mark.asyncio
    async def test_only_conflict_pages_are_attached(self, store, make_agents, name_conflict):
        pages = [
            store.create_artifact(run_id=1, name=f"Page {n}", position=n, text_content=f"Text of page {n}")
            for n in (1, 2, 3)
        ]
        agents = make_agents({
            "Conflict Resolution": {"name": {"resolved_value": "X Y Z", "source_page": 3}, "other": {"resolved_value": 1}},
        })

        resolutions = await resolve_conflicts(agents, store, [name_conflict], pages)

        assert resolutions == {"name": {"resolved_value": "X Y Z", "source_page": 3}}
        prompt = agents.calls_named("Conflict Resolution")[0].user_prompt
        assert "Text of page 1" in prompt
        assert "Text of page 3" in prompt
        assert "Text of page 2" not in prompt

    @pytest.mark.asyncio
    async def test_nothing_to_resolve(self, make_agents):
        agents = make_agents()
        assert await resolve_conflicts(agents, None, [], []) == {}
        assert agents.calls == []
