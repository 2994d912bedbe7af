"""Tests for per-level work item creation and remaining-item selection."""

import pytest

from docextract.core.errors import ErrorCategory, ErrorSeverity
from docextract.phases.classification_phase import page_artifacts, prepare_output_artifacts
from docextract.phases.level_processes import (
    all_levels_complete,
    build_process_name,
    create_identity_items,
    create_remaining_items,
    parent_object_ids,
    resolve_search_mode,
)
from docextract.phases.phase_base import ExtractionConfig
from docextract.phases.planning_phase import compile_plan
from docextract.phases.remaining_phase import RemainingRunner, select_object_item
from docextract.pydantic_models.entity_models import CanonicalObject, Operation
from docextract.pydantic_models.plan_models import ExtractionGroupPlan, IdentityPlan, ObjectTypePlan
from docextract.pydantic_models.state_models import LevelProgress, RunState


def invoice_plan(schema):
    return compile_plan(
        {
            "Invoice": ObjectTypePlan(
                object_type="Invoice",
                identity_group=IdentityPlan(identity_fields=["invoice_number"], skim_fields=["invoice_number"]),
                extraction_groups=[ExtractionGroupPlan(name="Totals", fields=["total"], search_mode="skim")],
            ),
            "Vendor": ObjectTypePlan(
                object_type="Vendor",
                path="vendor",
                level=1,
                parent_type="Invoice",
                identity_group=IdentityPlan(identity_fields=["name"], skim_fields=["name", "address"]),
            ),
        },
        schema,
    )


@pytest.fixture
def prepared(make_context, seed_run, invoice_schema, invoice_pages):
    """Context and run with output artifacts; page 1 is about totals, page 2 about nothing."""

    def _prepare(config=None):
        context = make_context(config=config)
        run = seed_run(context, invoice_schema, invoice_pages)
        prepare_output_artifacts(context, run)
        first, second = page_artifacts(context, run.id)
        context.store.update_artifact(
            first.id, meta={**first.meta, "classification": {"invoice_identification": True, "totals": True}}
        )
        context.store.update_artifact(
            second.id, meta={**second.meta, "classification": {"invoice_identification": False, "totals": False}}
        )
        return context, context.run(run.id), invoice_plan(invoice_schema)

    return _prepare


# =============================================================================
# Naming and modes
# =============================================================================


class TestBuildProcessName:
    """Tests for build_process_name()."""

    def test_fields_title_cased(self):
        assert build_process_name("Identity", 0, "Provider", ["name", "npi"]) == "Identity L0: Provider (Name, Npi)"

    def test_no_fields(self):
        assert build_process_name("Remaining", 2, "Contact", []) == "Remaining L2: Contact"

    def test_long_field_lists_truncated(self):
        name = build_process_name("Identity", 0, "Provider", [f"field_number_{i}" for i in range(10)])
        assert len(name) <= 60
        assert name.endswith("...)")

    def test_exact_fit_is_not_truncated(self):
        full = "Identity L0: Provider (Name, Npi)"
        assert build_process_name("Identity", 0, "Provider", ["name", "npi"], max_length=len(full)) == full

    def test_one_short_drops_the_last_field(self):
        name = build_process_name("Identity", 0, "Provider", ["name", "npi"], max_length=32)
        assert name == "Identity L0: Provider (Name...)"


class TestResolveSearchMode:
    """Tests for resolve_search_mode()."""

    @pytest.mark.parametrize("global_mode, group_mode, expected", [
        ("intelligent", "exhaustive", "exhaustive"),
        ("intelligent", None, "skim"),
        ("skim_only", "exhaustive", "skim"),
        ("exhaustive_only", "skim", "exhaustive"),
    ])
    def test_global_mode_overrides(self, global_mode, group_mode, expected):
        assert resolve_search_mode(global_mode, group_mode) == expected


class TestParentObjectIds:
    """Tests for parent_object_ids()."""

    def test_level_zero_has_no_parents(self):
        assert parent_object_ids(RunState(), 0) == []

    def test_previous_level_only(self):
        state = RunState()
        state.extraction.resolved_objects = {
            "Invoice": {0: [1, 2], 1: [9]},
            "Order": {0: [3]},
        }
        assert parent_object_ids(state, 1) == [1, 2, 3]
        assert parent_object_ids(state, 1, "Invoice") == [1, 2]
        assert parent_object_ids(state, 2) == [9]


# =============================================================================
# Work item creation
# =============================================================================


class TestCreateItems:
    """Tests for create_identity_items() and create_remaining_items()."""

    def test_identity_items_only_get_relevant_pages(self, prepared):
        context, run, plan = prepared()
        items = create_identity_items(context, run, plan, 0)

        assert len(items) == 1
        item = items[0]
        assert item.operation == Operation.EXTRACT_IDENTITY
        assert item.level == 0
        assert item.meta["search_mode"] == "skim"
        assert item.meta["parent_object_ids"] == []
        assert item.input_artifact_ids == [page_artifacts(context, run.id)[0].id]

    def test_group_without_pages_gets_no_item(self, prepared):
        context, run, plan = prepared()
        # Nothing is classified for vendor identification
        assert create_identity_items(context, run, plan, 1) == []

    def test_global_mode_applied(self, prepared):
        context, run, plan = prepared(ExtractionConfig(global_search_mode="exhaustive_only"))
        items = create_identity_items(context, run, plan, 0)
        assert items[0].meta["search_mode"] == "exhaustive"

    def test_remaining_items_per_resolved_object(self, prepared):
        context, run, plan = prepared()
        run.state.extraction.resolved_objects = {"Invoice": {0: [11, 12]}}

        items = create_remaining_items(context, run, plan, 0)

        assert [item.meta["object_id"] for item in items] == [11, 12]
        assert all(item.meta["extraction_group"]["name"] == "Totals" for item in items)
        assert all(item.meta["search_mode"] == "skim" for item in items)

    def test_remaining_needs_resolved_objects(self, prepared):
        context, run, plan = prepared()
        assert create_remaining_items(context, run, plan, 0) == []

    def test_level_outside_plan(self, prepared):
        context, run, plan = prepared()
        assert create_identity_items(context, run, plan, 5) == []
        assert create_remaining_items(context, run, plan, 5) == []


class TestLevelCompletion:
    """Tests for all_levels_complete()."""

    def test_requires_both_flags_on_every_level(self, invoice_schema):
        plan = invoice_plan(invoice_schema)
        state = RunState()
        state.extraction.level_progress = {
            0: LevelProgress(identity_complete=True, extraction_complete=True),
            1: LevelProgress(identity_complete=True),
        }
        assert all_levels_complete(state, plan) is False

        state.extraction.level_progress[1].extraction_complete = True
        assert all_levels_complete(state, plan) is True


# =============================================================================
# Remaining item selection
# =============================================================================


class TestSelectObjectItem:
    """Tests for select_object_item()."""

    @pytest.fixture
    def acme(self):
        return CanonicalObject(id=1, type="Vendor", name="Acme Supplies Ltd", attributes={"city": "Paris"})

    def test_exact_name(self, acme):
        items = [{"name": "Globex"}, {"name": "ACME SUPPLIES LTD"}]
        assert select_object_item(items, acme) == 1

    def test_single_item(self, acme):
        assert select_object_item([{"phone": "555-0100"}], acme) == 0

    def test_fuzzy_name(self, acme):
        items = [{"name": "Globex Corporation"}, {"name": "Acme Supplies Ltd."}]
        assert select_object_item(items, acme) == 1

    def test_known_value_overlap(self, acme):
        items = [{"city": "Lyon", "phone": "1"}, {"city": "paris", "phone": "2"}]
        assert select_object_item(items, acme) == 1

    def test_ambiguous(self, acme):
        assert select_object_item([{"phone": "1"}, {"phone": "2"}], acme) is None

    def test_no_dict_items(self, acme):
        assert select_object_item(["Acme", None], acme) is None


# =============================================================================
# Runner warnings
# =============================================================================


class TestRunnerWarn:
    """Tests for PhaseRunner.warn()."""

    def test_recorded_as_run_warning(self, make_context):
        context = make_context()
        RemainingRunner(context).warn("Object 7 not found, skipping 'Totals'", entity_name="Invoice")

        assert context.errors.error_count == 0
        assert context.errors.warning_count == 1
        warning = context.errors.warnings[0]
        assert warning.category == ErrorCategory.VALIDATION
        assert warning.severity == ErrorSeverity.WARNING
        assert warning.phase == "Extract Remaining"
        assert warning.entity_name == "Invoice"
