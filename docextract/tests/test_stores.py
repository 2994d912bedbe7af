"""Tests for docextract.core.stores.

Covers:
- In-memory entity store: runs, work items, artifacts, compare-and-swap
- Search criteria (LIKE patterns, term lists, comparisons)
- Canonical object scoping, name lookup and ancestor chains
- Queue dispatcher
"""

import pytest

from docextract.core.stores import (
    InMemoryCanonicalObjectStore,
    InMemoryEntityStore,
    ObjectScope,
    QueueDispatcher,
    criterion_matches,
    like_to_regex,
)
from docextract.pydantic_models.entity_models import Operation
from docextract.pydantic_models.state_models import RunState


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def objects():
    return InMemoryCanonicalObjectStore()


# =============================================================================
# Entity store
# =============================================================================


class TestEntityStore:
    """Tests for InMemoryEntityStore."""

    def test_add_run_inputs_is_append_only(self, store):
        run = store.create_run("Invoice", {"type": "object"})
        store.add_run_inputs(run.id, [10, 11])
        store.add_run_inputs(run.id, [11, 12])
        assert store.get_run(run.id).input_artifact_ids == [10, 11, 12]

    def test_sync_input_artifacts_replaces_and_dedupes(self, store):
        run = store.create_run("Invoice", {"type": "object"})
        item = store.create_work_item(run.id, "Classify Page 1", Operation.CLASSIFY, input_artifact_ids=[1, 2])
        store.sync_input_artifacts(item.id, [3, 2, 3])
        assert store.get_work_item(item.id).input_artifact_ids == [3, 2]

    def test_compare_and_swap_run_state(self, store):
        run = store.create_run("Invoice", {"type": "object"})
        state = RunState()
        state.extraction.current_level = 1

        assert store.compare_and_swap_run_state(run.id, 0, state) is True
        assert store.get_run(run.id).state.version == 1
        assert store.get_run(run.id).state.extraction.current_level == 1
        # A stale version is refused
        assert store.compare_and_swap_run_state(run.id, 0, RunState()) is False
        assert store.get_run(run.id).state.extraction.current_level == 1

    def test_work_items_by_operation(self, store):
        run = store.create_run("Invoice", {"type": "object"})
        classify = store.create_work_item(run.id, "Classify Page 1", Operation.CLASSIFY)
        store.create_work_item(run.id, "Plan: Identify Invoice", Operation.PLAN_IDENTIFY)

        assert [item.id for item in store.work_items_for(run.id, Operation.CLASSIFY)] == [classify.id]
        assert len(store.work_items_for(run.id)) == 2

    def test_complete_work_item_keeps_first_timestamp(self, store):
        run = store.create_run("Invoice", {"type": "object"})
        item = store.create_work_item(run.id, "Classify Page 1", Operation.CLASSIFY)
        first = store.complete_work_item(item.id).completed_at
        assert store.complete_work_item(item.id).completed_at == first
        assert store.get_work_item(item.id).is_complete

    def test_work_item_level_from_meta(self, store):
        run = store.create_run("Invoice", {"type": "object"})
        item = store.create_work_item(run.id, "Identity", Operation.EXTRACT_IDENTITY, meta={"level": 2})
        assert item.level == 2

    def test_root_artifact_requires_output_marker(self, store):
        run = store.create_run("Invoice", {"type": "object"})
        store.create_artifact(run_id=run.id, name="Loose")
        assert store.root_artifact(run.id) is None

        root = store.create_artifact(run_id=run.id, name="Extraction Output", meta={"output_root": True})
        assert store.root_artifact(run.id).id == root.id

    def test_descendants_breadth_first(self, store):
        root = store.create_artifact(run_id=1, name="root")
        page = store.create_artifact(run_id=1, name="page", parent_artifact_id=root.id)
        output = store.create_artifact(run_id=1, name="output", parent_artifact_id=page.id)
        other = store.create_artifact(run_id=1, name="page 2", parent_artifact_id=root.id)

        assert [a.id for a in store.descendants_of(root.id)] == [page.id, other.id, output.id]

    def test_artifact_meta_compare_and_swap(self, store):
        artifact = store.create_artifact(run_id=1, name="page")
        assert store.compare_and_swap_artifact_meta(artifact.id, 0, {"a": 1}) is True
        assert store.compare_and_swap_artifact_meta(artifact.id, 0, {"a": 2}) is False
        assert store.get_artifact(artifact.id).meta == {"a": 1}

    def test_update_artifact_rejects_unknown_field(self, store):
        artifact = store.create_artifact(run_id=1, name="page")
        with pytest.raises(AttributeError):
            store.update_artifact(artifact.id, colour="red")

    def test_stored_files_of_artifact(self, store):
        stored = store.create_stored_file("page_1.txt", page_number=1)
        artifact = store.create_artifact(run_id=None, name="Page 1", position=1, stored_file_ids=[stored.id])
        assert [f.filename for f in store.stored_files_of(artifact)] == ["page_1.txt"]


# =============================================================================
# Search criteria
# =============================================================================


class TestCriteria:
    """Tests for criterion_matches and like_to_regex."""

    def test_like_patterns(self):
        assert like_to_regex("%acme%").match("the acme corp")
        assert like_to_regex("inv-_").match("INV-1")
        assert not like_to_regex("inv-_").match("INV-12")

    def test_string_criterion(self):
        assert criterion_matches("Acme Corp", "%acme%") is True
        assert criterion_matches("Acme Corp", "%globex%") is False
        assert criterion_matches(None, "%acme%") is False

    def test_date_string_matches_normalized(self):
        assert criterion_matches("2017-10-31", "10/31/2017") is True

    def test_term_list(self):
        assert criterion_matches("Acme Supplies Ltd", ["acme", "ltd"]) is True
        assert criterion_matches("Acme Supplies Ltd", ["acme", "inc"]) is False

    def test_comparisons(self):
        assert criterion_matches("1,200", {"operator": ">=", "value": 1000}) is True
        assert criterion_matches(5, {"operator": "between", "value": 1, "value2": 10}) is True
        assert criterion_matches("2024-03-01", {"operator": "<", "value": "2024-02-01"}) is False

    def test_missing_value_matches_everything(self):
        assert criterion_matches("anything", {"operator": "="}) is True

    def test_equality(self):
        assert criterion_matches(True, True) is True
        assert criterion_matches(42, 41) is False


# =============================================================================
# Canonical objects
# =============================================================================


class TestCanonicalObjectStore:
    """Tests for InMemoryCanonicalObjectStore."""

    def test_create_splits_columns_and_attributes(self, objects):
        obj = objects.create("Vendor", "Acme", schema_id=1, url="https://acme.test", attributes={"city": "Paris"})
        assert obj.url == "https://acme.test"
        assert obj.field_value("city") == "Paris"
        assert obj.flattened()["name"] == "Acme"

    def test_update_merges(self, objects):
        obj = objects.create("Vendor", "Acme", attributes={"city": "Paris"})
        objects.update(obj.id, {"description": "Supplier"}, {"zip": "75001", "city": None})
        assert obj.description == "Supplier"
        assert obj.attributes == {"city": "Paris", "zip": "75001"}

    def test_root_scope_excludes_children(self, objects):
        invoice = objects.create("Invoice", "INV-1", schema_id=1)
        nested = objects.create("Invoice", "INV-2", schema_id=1)
        objects.add_relationship(invoice.id, "credits", nested.id)

        root_scope = ObjectScope("Invoice", 1)
        assert [o.id for o in objects.in_scope(root_scope)] == [invoice.id]
        assert {o.id for o in objects.in_scope(ObjectScope("Invoice", 1, any_parent=True))} == {invoice.id, nested.id}

    def test_parent_scope(self, objects):
        first = objects.create("Invoice", "INV-1", schema_id=1)
        second = objects.create("Invoice", "INV-2", schema_id=1)
        vendor_a = objects.create("Vendor", "Acme", schema_id=1)
        vendor_b = objects.create("Vendor", "Acme", schema_id=1)
        objects.add_relationship(first.id, "vendor", vendor_a.id)
        objects.add_relationship(second.id, "vendor", vendor_b.id)

        scoped = objects.find_by_name(ObjectScope("Vendor", 1, parent_object_id=second.id), "ACME")
        assert [o.id for o in scoped] == [vendor_b.id]

    def test_schema_scope(self, objects):
        objects.create("Vendor", "Acme", schema_id=2)
        assert objects.in_scope(ObjectScope("Vendor", 1)) == []

    def test_search_ignores_empty_criteria(self, objects):
        acme = objects.create("Vendor", "Acme Supplies", schema_id=1, attributes={"city": "Paris"})
        objects.create("Vendor", "Globex", schema_id=1, attributes={"city": "Lyon"})

        found = objects.search(ObjectScope("Vendor", 1), {"name": "%acme%", "city": "", "zip": None})
        assert [o.id for o in found] == [acme.id]

    def test_similar_by_name(self, objects):
        acme = objects.create("Vendor", "Acme Supplies Ltd", schema_id=1)
        objects.create("Vendor", "Globex Corporation", schema_id=1)

        similar = objects.similar_by_name(ObjectScope("Vendor", 1), "acme supplies ltd.")
        assert [o.id for o in similar] == [acme.id]

    def test_relationships_dedupe(self, objects):
        parent = objects.create("Invoice", "INV-1")
        child = objects.create("Vendor", "Acme")
        objects.add_relationship(parent.id, "vendor", child.id)
        objects.add_relationship(parent.id, "vendor", child.id)
        assert objects.children_of(parent.id) == [child.id]
        assert objects.parents_of(child.id) == [(parent.id, "vendor")]

    def test_ancestors_root_first(self, objects):
        root = objects.create("Invoice", "INV-1")
        vendor = objects.create("Vendor", "Acme")
        contact = objects.create("Contact", "Jane")
        objects.add_relationship(root.id, "vendor", vendor.id)
        objects.add_relationship(vendor.id, "contacts", contact.id)

        chain = objects.ancestors_of(contact.id)
        assert [(obj.id, key) for obj, key in chain] == [(root.id, "vendor"), (vendor.id, "contacts")]

    def test_ancestors_stop_on_cycle(self, objects):
        a = objects.create("Node", "A")
        b = objects.create("Node", "B")
        objects.add_relationship(a.id, "next", b.id)
        objects.add_relationship(b.id, "next", a.id)
        assert [obj.id for obj, _ in objects.ancestors_of(a.id)] == [b.id]


class TestQueueDispatcher:
    """Tests for QueueDispatcher."""

    def test_drain_empties_queue(self, store):
        run = store.create_run("Invoice", {"type": "object"})
        item = store.create_work_item(run.id, "Classify Page 1", Operation.CLASSIFY)
        dispatcher = QueueDispatcher()
        dispatcher.dispatch([item])

        assert dispatcher.drain() == [item]
        assert dispatcher.drain() == []
