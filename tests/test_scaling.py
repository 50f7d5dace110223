import pytest

from portion_planner.errors import NoPersonsError, PlanNotFoundError, ProviderNotConfiguredError
from portion_planner.models import MealCategory
from portion_planner.scaling import (
    ScalingCalculator,
    ScalingMode,
    ScalingOrchestrator,
    calculate_day_scaling,
)
from portion_planner.store import PlanStore, SnapshotStore


class TestCalculateDayScaling:
    def test_scales_only_the_scalable_share(self):
        scaling = calculate_day_scaling([200], [500], 800)
        assert scaling.daily_base == 700
        assert not scaling.within_tolerance
        assert scaling.day_factor == pytest.approx(1.2)

    def test_within_tolerance_keeps_factor_one(self):
        scaling = calculate_day_scaling([200], [500], 720)
        assert scaling.within_tolerance
        assert scaling.day_factor == 1.0

    def test_tolerance_boundary_is_inclusive(self):
        assert calculate_day_scaling([], [1000], 1050).within_tolerance
        assert not calculate_day_scaling([], [1000], 1051).within_tolerance

    def test_custom_tolerance(self):
        assert calculate_day_scaling([], [1000], 1100, tolerance=100).within_tolerance

    def test_no_scalable_calories_is_degenerate(self):
        scaling = calculate_day_scaling([700], [], 1500)
        assert scaling.degenerate
        assert scaling.day_factor == 1.0

    def test_fixed_calories_above_target_clamp_to_min_factor(self):
        scaling = calculate_day_scaling([900], [300], 500, min_factor=0.1)
        assert scaling.clamped
        assert scaling.day_factor == pytest.approx(0.1)

    def test_scales_down(self):
        scaling = calculate_day_scaling([], [2000], 1500)
        assert scaling.day_factor == pytest.approx(0.75)


@pytest.fixture
def worked_day(session, add_recipe, make_plan):
    """One day: a 500 kcal scalable dinner and a 200 kcal fixed-portion loaf."""
    plan = make_plan(days=1)
    day = plan.days[0]
    store = PlanStore(session)
    pasta = add_recipe("Pasta Bake", "dinner", 500, protein=20.0, carbs=60.0, fat=15.0)
    loaf = add_recipe("Sourdough Loaf", "lunch", 200, do_not_scale=True)
    pasta_entry = store.add_entry(plan.id, day.id, pasta.id, "dinner", order=1)
    loaf_entry = store.add_entry(plan.id, day.id, loaf.id, "lunch", order=0)
    session.commit()
    return plan, pasta_entry, loaf_entry


class TestScalingCalculator:
    def test_fixed_entry_always_gets_one(self, worked_day):
        plan, pasta_entry, loaf_entry = worked_day
        scaling = ScalingCalculator().for_day(plan.days[0].entries, 800)
        assert scaling.factor_for(pasta_entry) == pytest.approx(1.2)
        assert scaling.factor_for(loaf_entry) == 1.0


class TestScalePlan:
    def test_worked_example(self, session, worked_day, add_raw_person, fake_scaler):
        plan, pasta_entry, loaf_entry = worked_day
        add_raw_person(plan, "Anna", 800)

        result = ScalingOrchestrator(session, fake_scaler).scale_plan(plan.id)

        assert result.scaled_count == 2
        assert result.warnings == []
        assert fake_scaler.calls == [("Pasta Bake", 1.2, MealCategory.DINNER)]

        snapshots = SnapshotStore(session)
        (pasta_snap,) = snapshots.list_for_entry(pasta_entry.id)
        assert pasta_snap.scaling_factor == pytest.approx(1.2)
        assert pasta_snap.scaled_calories == 600
        assert pasta_snap.scaled_protein == pytest.approx(24.0)
        assert pasta_snap.scaled_fat == pytest.approx(18.0)
        assert pasta_snap.scaled_ingredients == ["200 g pasta bake x1.20", "1 tsp salt x1.20"]

        (loaf_snap,) = snapshots.list_for_entry(loaf_entry.id)
        assert loaf_snap.scaling_factor == 1.0
        assert loaf_snap.scaled_calories == 200
        assert loaf_snap.scaled_ingredients == ["200 g sourdough loaf", "1 tsp salt"]

    def test_within_tolerance_makes_no_scaler_calls(
        self, session, worked_day, add_raw_person, fake_scaler
    ):
        plan, pasta_entry, _ = worked_day
        add_raw_person(plan, "Anna", 720)

        result = ScalingOrchestrator(session, fake_scaler).scale_plan(plan.id)

        assert result.scaled_count == 2
        assert fake_scaler.calls == []
        (pasta_snap,) = SnapshotStore(session).list_for_entry(pasta_entry.id)
        assert pasta_snap.scaling_factor == 1.0
        assert pasta_snap.scaled_calories == 500
        assert pasta_snap.scaled_ingredients == ["200 g pasta bake", "1 tsp salt"]

    def test_one_snapshot_per_entry_and_person(
        self, session, worked_day, add_raw_person, fake_scaler
    ):
        plan, pasta_entry, _ = worked_day
        add_raw_person(plan, "Anna", 800)
        add_raw_person(plan, "Ben", 1400)

        result = ScalingOrchestrator(session, fake_scaler).scale_plan(plan.id)

        assert result.scaled_count == 4
        by_person = {s.person.name: s for s in SnapshotStore(session).list_for_entry(pasta_entry.id)}
        assert by_person["Anna"].scaled_calories == 600
        assert by_person["Ben"].scaling_factor == pytest.approx(2.4)
        assert by_person["Ben"].scaled_calories == 1200

    def test_fill_missing_is_idempotent(self, session, worked_day, add_raw_person, fake_scaler):
        plan, _, _ = worked_day
        add_raw_person(plan, "Anna", 800)
        orchestrator = ScalingOrchestrator(session, fake_scaler)

        orchestrator.scale_plan(plan.id, ScalingMode.FILL_MISSING)
        calls_after_first = len(fake_scaler.calls)
        second = orchestrator.scale_plan(plan.id, ScalingMode.FILL_MISSING)

        assert second.scaled_count == 0
        assert second.skipped_count == 2
        assert len(fake_scaler.calls) == calls_after_first
        assert len(SnapshotStore(session).list_existing(plan.id)) == 2

    def test_fill_missing_only_adds_new_person(
        self, session, worked_day, add_raw_person, fake_scaler
    ):
        plan, _, _ = worked_day
        add_raw_person(plan, "Anna", 800)
        orchestrator = ScalingOrchestrator(session, fake_scaler)
        orchestrator.scale_plan(plan.id)

        add_raw_person(plan, "Ben", 1400)
        result = orchestrator.scale_plan(plan.id)

        assert result.scaled_count == 2
        assert result.skipped_count == 2
        assert len(SnapshotStore(session).list_existing(plan.id)) == 4

    def test_reset_recomputes_everything(self, session, worked_day, add_raw_person, fake_scaler):
        plan, _, _ = worked_day
        anna = add_raw_person(plan, "Anna", 800)
        orchestrator = ScalingOrchestrator(session, fake_scaler)
        orchestrator.scale_plan(plan.id)

        anna.target_calories = 1400
        session.commit()
        result = orchestrator.scale_plan(plan.id, ScalingMode.RESET)

        assert result.deleted_count == 2
        assert result.scaled_count == 2
        assert result.skipped_count == 0
        snapshots = SnapshotStore(session).list_existing(plan.id)
        assert len(snapshots) == 2
        assert sorted(s.scaled_calories for s in snapshots) == [200, 1200]

    def test_failed_scaling_falls_back_to_base_ingredients(
        self, session, worked_day, add_raw_person, scaler_factory
    ):
        plan, pasta_entry, _ = worked_day
        add_raw_person(plan, "Anna", 800)
        scaler = scaler_factory(fail_for={"Pasta Bake"})

        result = ScalingOrchestrator(session, scaler).scale_plan(plan.id)

        assert result.scaled_count == 2
        assert len(result.warnings) == 1
        assert "Pasta Bake" in result.warnings[0]
        assert "Anna" in result.warnings[0]
        (snap,) = SnapshotStore(session).list_for_entry(pasta_entry.id)
        assert snap.scaled_ingredients == ["200 g pasta bake", "1 tsp salt"]
        assert snap.scaled_calories == 600

    def test_scaler_exception_falls_back_to_base_ingredients(
        self, session, worked_day, add_raw_person
    ):
        plan, pasta_entry, _ = worked_day
        add_raw_person(plan, "Anna", 800)
        add_raw_person(plan, "Ben", 1400)

        class ExplodingScaler:
            def scale(self, recipe, factor, category):
                raise RuntimeError("connection reset")

        result = ScalingOrchestrator(session, ExplodingScaler()).scale_plan(plan.id)

        assert result.scaled_count == 4
        assert len(result.warnings) == 2
        assert all("connection reset" in w and "Pasta Bake" in w for w in result.warnings)
        assert len(SnapshotStore(session).list_existing(plan.id)) == 4
        snaps = SnapshotStore(session).list_for_entry(pasta_entry.id)
        assert [s.scaled_ingredients for s in snaps] == [["200 g pasta bake", "1 tsp salt"]] * 2
        assert all(s.scaling_factor != 1.0 for s in snaps)

    def test_day_without_scalable_recipes_warns(
        self, session, add_recipe, make_plan, add_raw_person, fake_scaler
    ):
        plan = make_plan(days=1)
        loaf = add_recipe("Sourdough Loaf", "lunch", 200, do_not_scale=True)
        PlanStore(session).add_entry(plan.id, plan.days[0].id, loaf.id, "lunch")
        add_raw_person(plan, "Anna", 1500)

        result = ScalingOrchestrator(session, fake_scaler).scale_plan(plan.id)

        assert result.scaled_count == 1
        assert fake_scaler.calls == []
        assert any("no scalable recipes" in w for w in result.warnings)

    def test_empty_days_are_skipped(self, session, make_plan, add_raw_person, fake_scaler):
        plan = make_plan(days=2)
        add_raw_person(plan, "Anna", 1800)

        result = ScalingOrchestrator(session, fake_scaler).scale_plan(plan.id)

        assert result.scaled_count == 0
        assert result.warnings == []


class TestScalePlanPreconditions:
    def test_missing_plan(self, session, fake_scaler):
        with pytest.raises(PlanNotFoundError):
            ScalingOrchestrator(session, fake_scaler).scale_plan(999)

    def test_no_persons(self, session, worked_day, fake_scaler):
        plan, _, _ = worked_day
        with pytest.raises(NoPersonsError, match="no persons"):
            ScalingOrchestrator(session, fake_scaler).scale_plan(plan.id)

    def test_no_scaler_nothing_deleted(self, session, worked_day, add_raw_person, fake_scaler):
        plan, _, _ = worked_day
        add_raw_person(plan, "Anna", 800)
        ScalingOrchestrator(session, fake_scaler).scale_plan(plan.id)

        with pytest.raises(ProviderNotConfiguredError):
            ScalingOrchestrator(session, None).scale_plan(plan.id, ScalingMode.RESET)
        assert len(SnapshotStore(session).list_existing(plan.id)) == 2


class TestScaleEntry:
    def test_uses_whole_day_factor(self, session, worked_day, add_raw_person, fake_scaler):
        plan, pasta_entry, loaf_entry = worked_day
        add_raw_person(plan, "Anna", 800)

        result = ScalingOrchestrator(session, fake_scaler).scale_entry(plan.id, pasta_entry.id)

        assert result.scaled_count == 1
        assert fake_scaler.calls == [("Pasta Bake", 1.2, MealCategory.DINNER)]
        assert SnapshotStore(session).list_for_entry(loaf_entry.id) == []

    def test_reset_replaces_entry_snapshots(
        self, session, worked_day, add_raw_person, fake_scaler
    ):
        plan, pasta_entry, _ = worked_day
        add_raw_person(plan, "Anna", 800)
        orchestrator = ScalingOrchestrator(session, fake_scaler)
        orchestrator.scale_plan(plan.id)

        result = orchestrator.scale_entry(plan.id, pasta_entry.id, ScalingMode.RESET)

        assert result.deleted_count == 1
        assert result.scaled_count == 1
        assert len(SnapshotStore(session).list_existing(plan.id)) == 2

    def test_progress_callback_counts_pairs(
        self, session, worked_day, add_raw_person, fake_scaler
    ):
        plan, _, _ = worked_day
        add_raw_person(plan, "Anna", 800)
        add_raw_person(plan, "Ben", 1400)
        seen = []

        ScalingOrchestrator(session, fake_scaler, on_progress=seen.append).scale_plan(plan.id)

        assert sum(seen) == 4
