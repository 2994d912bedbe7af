"""Tests for docextract.agents.duplicate_resolver.

Covers:
- Search query normalization and the LIKE fallback
- Exact identity matching (including date fields)
- Merge-on-match policy
- Full resolution: quick match, LLM match, invalid LLM ids, no candidates
"""

import pytest

from docextract.agents.agent_service import AgentRunResult
from docextract.agents.duplicate_resolver import (
    find_candidates,
    is_exact_match,
    merge_on_match,
    normalize_search_queries,
    resolve_duplicate,
)
from docextract.core.errors import ExtractionValidationError
from docextract.core.stores import InMemoryCanonicalObjectStore, ObjectScope

VENDOR_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "registered_on": {"type": "string", "format": "date"},
        "city": {"type": "string"},
    },
}

SCOPE = ObjectScope("Vendor", 1)


@pytest.fixture
def objects():
    return InMemoryCanonicalObjectStore()


@pytest.fixture
def acme(objects):
    return objects.create("Vendor", "Acme", schema_id=1, attributes={"city": "Paris", "registered_on": "2017-10-31"})


# =============================================================================
# Search queries
# =============================================================================


class TestNormalizeSearchQueries:
    """Tests for normalize_search_queries()."""

    def test_list_of_queries_kept(self):
        queries = [{"name": "Acme"}, {"name": "%acme%"}]
        assert normalize_search_queries(queries, {}, ["name"]) == queries

    def test_single_query_wrapped(self):
        assert normalize_search_queries({"name": "Acme"}, {}, ["name"]) == [{"name": "Acme"}]

    def test_fallback_uses_string_identity_values(self):
        extracted = {"name": " Acme ", "employees": 12, "city": ""}
        queries = normalize_search_queries(None, extracted, ["name", "employees", "city"])
        assert queries == [{"name": "%Acme%"}]

    def test_no_usable_values(self):
        assert normalize_search_queries("not a query", {"name": None}, ["name"]) == []


# =============================================================================
# Exact match
# =============================================================================


class TestIsExactMatch:
    """Tests for is_exact_match()."""

    def test_case_and_whitespace_ignored(self, acme):
        assert is_exact_match(acme, {"name": "  ACME "}, ["name"]) is True

    def test_date_fields_normalized(self, acme):
        extracted = {"name": "Acme", "registered_on": "10/31/2017"}
        assert is_exact_match(acme, extracted, ["name", "registered_on"], VENDOR_SCHEMA) is True

    def test_missing_on_both_sides_is_equal(self, acme):
        assert is_exact_match(acme, {"name": "Acme"}, ["name", "vat_number"]) is True

    def test_missing_on_one_side_differs(self, acme):
        assert is_exact_match(acme, {"name": "Acme", "vat_number": "FR1"}, ["name", "vat_number"]) is False

    def test_all_extracted_fields_without_identity_fields(self, acme):
        assert is_exact_match(acme, {"name": "Acme", "city": "paris"}, []) is True
        assert is_exact_match(acme, {"name": "Acme", "city": "Lyon"}, []) is False

    def test_nothing_to_compare(self, acme):
        assert is_exact_match(acme, {}, []) is False


class TestFindCandidates:
    """Tests for find_candidates()."""

    def test_name_match_short_circuits(self, objects, acme):
        search = find_candidates(objects, SCOPE, {"name": "acme"}, ["name"], [{"name": "%globex%"}])
        assert search.exact_match is acme

    def test_smallest_result_set_kept(self, objects, acme):
        objects.create("Vendor", "Acme Holdings", schema_id=1)
        search = find_candidates(
            objects, SCOPE, {"name": "Acme Group"}, ["name"],
            [{"name": "%acme%"}, {"name": "%holdings%"}],
        )
        assert search.exact_match is None
        assert [c.name for c in search.candidates] == ["Acme Holdings"]

    def test_similar_names_when_queries_find_nothing(self, objects, acme):
        objects.create("Vendor", "Globex", schema_id=1)
        search = find_candidates(objects, SCOPE, {"name": "Acme."}, ["name"], [{"name": "%initech%"}])
        assert search.exact_match is None
        assert search.candidates == [acme]


# =============================================================================
# Merge on match
# =============================================================================


class TestMergeOnMatch:
    """Tests for merge_on_match()."""

    def test_fills_missing_values(self, acme):
        assert merge_on_match(acme, {"name": "Acme", "phone": "555-0100"}) == {"phone": "555-0100"}

    def test_longer_string_wins(self, acme):
        assert merge_on_match(acme, {"city": "Paris, France"}) == {"city": "Paris, France"}

    def test_shorter_or_placeholder_ignored(self, acme):
        assert merge_on_match(acme, {"city": "P", "name": "N/A"}) == {}


# =============================================================================
# Resolution
# =============================================================================


class TestResolveDuplicate:
    """Tests for resolve_duplicate()."""

    @pytest.mark.asyncio
    async def test_quick_match_skips_llm(self, objects, acme, make_agents):
        agents = make_agents()
        result = await resolve_duplicate(agents, objects, SCOPE, {"name": "Acme", "zip": "75001"}, ["name"])

        assert result.is_duplicate is True
        assert result.quick_match is True
        assert result.existing_object_id == acme.id
        assert result.confidence == 1.0
        assert result.updated_values == {"zip": "75001"}
        assert agents.calls == []

    @pytest.mark.asyncio
    async def test_no_candidates(self, objects, make_agents):
        agents = make_agents()
        result = await resolve_duplicate(agents, objects, SCOPE, {"name": "Acme"}, ["name"])

        assert result.is_duplicate is False
        assert result.explanation == "No candidates found"
        assert agents.calls == []

    @pytest.mark.asyncio
    async def test_llm_match(self, objects, acme, make_agents):
        agents = make_agents({
            "Duplicate Resolution": {
                "is_duplicate": True,
                "matching_record_id": acme.id,
                "confidence": 0.9,
                "explanation": "Same supplier",
            }
        })
        result = await resolve_duplicate(
            agents, objects, SCOPE, {"name": "Acme Supplies", "city": "Paris"}, ["name"],
            search_query=[{"city": "paris"}],
        )

        assert result.is_duplicate is True
        assert result.quick_match is False
        assert result.existing_object is acme
        assert result.updated_values == {"name": "Acme Supplies"}
        assert len(agents.calls_named("Duplicate Resolution")) == 1

    @pytest.mark.asyncio
    async def test_llm_invalid_record_id(self, objects, acme, make_agents):
        agents = make_agents({
            "Duplicate Resolution": {"is_duplicate": True, "matching_record_id": 999, "confidence": 0.8}
        })
        result = await resolve_duplicate(
            agents, objects, SCOPE, {"name": "Acme Supplies"}, ["name"], search_query=[{"name": "%acme%"}],
        )

        assert result.is_duplicate is False
        assert "invalid record ID" in result.explanation

    @pytest.mark.asyncio
    async def test_llm_thread_failure_raises(self, objects, acme, make_agents):
        agents = make_agents({"Duplicate Resolution": AgentRunResult.failed("timeout")})

        with pytest.raises(ExtractionValidationError):
            await resolve_duplicate(
                agents, objects, SCOPE, {"name": "Acme Supplies"}, ["name"], search_query=[{"name": "%acme%"}],
            )
