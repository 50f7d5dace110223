"""Per-person portion scaling for meal plan days.

One linear factor per (day, person) brings the day's calories to the
person's target. Fixed-portion recipes keep factor 1.0 and their calories
are taken off the target before the factor is computed:

    factor = (target - fixed calories) / scalable calories

Days already within ``tolerance`` of the target are not scaled at all.
Each (entry, person) pair gets one persisted ``ScaledRecipe`` snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.orm import Session

from portion_planner.ai import IngredientScaler, ScaleOutcome
from portion_planner.config import DEFAULTS
from portion_planner.errors import EmptyPlanError, NoPersonsError, ProviderNotConfiguredError
from portion_planner.locking import PlanLockRegistry, plan_lock
from portion_planner.models import (
    MealCategory,
    MealPlan,
    MealPlanDay,
    MealPlanEntry,
    MealPlanPerson,
    Recipe,
    ScaledRecipe,
)
from portion_planner.store import PersonStore, PlanStore, SnapshotStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DayScaling:
    day_factor: float
    daily_base: int
    within_tolerance: bool
    degenerate: bool = False
    clamped: bool = False

    def factor_for(self, entry: MealPlanEntry) -> float:
        if entry.recipe.do_not_scale:
            return 1.0
        return self.day_factor


def calculate_day_scaling(
    fixed_calories: Iterable[int],
    scalable_calories: Iterable[int],
    target_calories: int,
    tolerance: int = 50,
    min_factor: float = 0.1,
) -> DayScaling:
    fixed = sum(fixed_calories)
    scalable = sum(scalable_calories)
    daily_base = fixed + scalable

    if abs(daily_base - target_calories) <= tolerance:
        return DayScaling(1.0, daily_base, within_tolerance=True)
    if scalable == 0:
        return DayScaling(1.0, daily_base, within_tolerance=False, degenerate=True)

    remaining = target_calories - fixed
    if remaining <= 0:
        return DayScaling(min_factor, daily_base, within_tolerance=False, clamped=True)
    return DayScaling(remaining / scalable, daily_base, within_tolerance=False)


class ScalingCalculator:
    def __init__(self, tolerance: int = 50, min_factor: float = 0.1) -> None:
        self.tolerance = tolerance
        self.min_factor = min_factor

    def for_day(self, entries: Iterable[MealPlanEntry], target_calories: int) -> DayScaling:
        fixed: list[int] = []
        scalable: list[int] = []
        for entry in entries:
            (fixed if entry.recipe.do_not_scale else scalable).append(entry.recipe.calories)
        return calculate_day_scaling(
            fixed, scalable, target_calories, self.tolerance, self.min_factor
        )


class ScalingMode(Enum):
    RESET = "reset"
    FILL_MISSING = "fill-missing"


@dataclass
class ScalingResult:
    scaled_count: int = 0
    skipped_count: int = 0
    deleted_count: int = 0
    warnings: list[str] = field(default_factory=list)


class ScalingOrchestrator:
    """Creates scaled snapshots for every (entry, person) pair of a plan.

    Commits after each snapshot so a failure part-way through keeps the
    pairs already done; a FILL_MISSING rerun then picks up the rest.
    """

    def __init__(
        self,
        session: Session,
        scaler: IngredientScaler | None,
        config: dict | None = None,
        locks: PlanLockRegistry | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> None:
        config = config or DEFAULTS
        self.session = session
        self.scaler = scaler
        self.locks = locks
        # Called with the number of (entry, person) pairs just handled
        self.on_progress = on_progress
        self.calculator = ScalingCalculator(
            tolerance=config["scaling"]["tolerance"],
            min_factor=config["scaling"]["min_factor"],
        )
        self.plans = PlanStore(session)
        self.persons = PersonStore(session, config)
        self.snapshots = SnapshotStore(session)

    def _check(self, plan_id: int) -> tuple[MealPlan, list[MealPlanPerson]]:
        plan = self.plans.require_plan(plan_id)
        if not plan.days:
            raise EmptyPlanError(f"Meal plan {plan_id} has no days")
        persons = self.persons.list_for_plan(plan_id)
        if not persons:
            raise NoPersonsError(plan_id)
        if self.scaler is None:
            raise ProviderNotConfiguredError("No ingredient scaler configured")
        return plan, persons

    def scale_plan(self, plan_id: int, mode: ScalingMode = ScalingMode.FILL_MISSING) -> ScalingResult:
        with plan_lock(plan_id, self.locks):
            plan, persons = self._check(plan_id)
            result = ScalingResult()

            if mode is ScalingMode.RESET:
                result.deleted_count = self.snapshots.delete_all(plan_id)
                self.session.commit()
                skip: set[tuple[int, int]] = set()
                logger.info("Deleted %d existing snapshots of plan %d", result.deleted_count, plan_id)
            else:
                skip = self.snapshots.existing_pairs(plan_id)

            logger.info(
                "Scaling plan '%s' for %d persons (%s)",
                plan.name,
                len(persons),
                mode.value,
            )
            for day in plan.days:
                entries = day.ordered_entries()
                for person in persons:
                    self._scale_day(day, entries, person, skip, result)

            logger.info(
                "Scaled %d recipes, skipped %d, %d warnings",
                result.scaled_count,
                result.skipped_count,
                len(result.warnings),
            )
            return result

    def scale_entry(
        self,
        plan_id: int,
        entry_id: int,
        mode: ScalingMode = ScalingMode.FILL_MISSING,
    ) -> ScalingResult:
        """Scale one entry for every person; the factor still comes from its whole day."""
        with plan_lock(plan_id, self.locks):
            _, persons = self._check(plan_id)
            entry = self.plans.get_entry(plan_id, entry_id)
            result = ScalingResult()

            if mode is ScalingMode.RESET:
                result.deleted_count = self.snapshots.delete_for_entry(entry_id)
                self.session.commit()
                skip: set[tuple[int, int]] = set()
            else:
                skip = {(s.entry_id, s.person_id) for s in self.snapshots.list_for_entry(entry_id)}

            day = entry.day
            day_entries = day.ordered_entries()
            for person in persons:
                scaling = self.calculator.for_day(day_entries, person.target_calories)
                if (entry.id, person.id) in skip:
                    result.skipped_count += 1
                    self._advance(1)
                    continue
                self._note_day(day, person, scaling, result)
                self._scale_pair(entry, person, scaling, result)
            return result

    def _scale_day(
        self,
        day: MealPlanDay,
        entries: list[MealPlanEntry],
        person: MealPlanPerson,
        skip: set[tuple[int, int]],
        result: ScalingResult,
    ) -> None:
        pending = [e for e in entries if (e.id, person.id) not in skip]
        result.skipped_count += len(entries) - len(pending)
        self._advance(len(entries) - len(pending))
        if not pending:
            return

        scaling = self.calculator.for_day(entries, person.target_calories)
        logger.debug(
            "%s / %s: base %d kcal, target %d kcal, factor %.2f",
            day.label,
            person.name,
            scaling.daily_base,
            person.target_calories,
            scaling.day_factor,
        )
        self._note_day(day, person, scaling, result)
        for entry in pending:
            self._scale_pair(entry, person, scaling, result)

    def _note_day(
        self,
        day: MealPlanDay,
        person: MealPlanPerson,
        scaling: DayScaling,
        result: ScalingResult,
    ) -> None:
        if scaling.degenerate:
            result.warnings.append(
                f"{day.label}: no scalable recipes for {person.name}, "
                f"keeping base portions ({scaling.daily_base} kcal)"
            )
        elif scaling.clamped:
            result.warnings.append(
                f"{day.label}: fixed-portion recipes exceed {person.name}'s target "
                f"of {person.target_calories} kcal, using factor {scaling.day_factor:.2f}"
            )

    def _scale_pair(
        self,
        entry: MealPlanEntry,
        person: MealPlanPerson,
        scaling: DayScaling,
        result: ScalingResult,
    ) -> None:
        recipe = entry.recipe
        recipe_name = recipe.name
        person_name = person.name
        factor = scaling.factor_for(entry)

        try:
            lines = recipe.ingredient_lines
            if factor != 1.0:
                outcome = self._call_scaler(recipe, factor, entry.category)
                if outcome.ok:
                    lines = outcome.ingredients
                else:
                    logger.warning(
                        "Scaling '%s' for %s failed: %s", recipe_name, person_name, outcome.error
                    )
                    result.warnings.append(
                        f"Could not scale '{recipe_name}' for {person_name} "
                        f"({outcome.error}), using base ingredients"
                    )

            self.snapshots.create(
                ScaledRecipe(
                    entry=entry,
                    person=person,
                    base_recipe=recipe,
                    scaling_factor=factor,
                    scaled_ingredients=list(lines),
                    scaled_calories=round(recipe.calories * factor),
                    scaled_protein=recipe.protein * factor,
                    scaled_carbs=recipe.carbs * factor,
                    scaled_fat=recipe.fat * factor,
                )
            )
            self.session.commit()
            result.scaled_count += 1
        except Exception as e:
            self.session.rollback()
            logger.error("Failed to scale '%s' for %s: %s", recipe_name, person_name, e)
            result.warnings.append(f"Failed to scale '{recipe_name}' for {person_name}: {e}")
        finally:
            self._advance(1)

    def _call_scaler(self, recipe: Recipe, factor: float, category: MealCategory) -> ScaleOutcome:
        if self.scaler is None:
            raise ProviderNotConfiguredError("No ingredient scaler configured")
        try:
            return self.scaler.scale(recipe, factor, category)
        except Exception as e:
            logger.exception("Ingredient scaler raised for '%s'", recipe.name)
            return ScaleOutcome.failure(str(e) or type(e).__name__)

    def _advance(self, count: int) -> None:
        if self.on_progress is not None and count:
            self.on_progress(count)
