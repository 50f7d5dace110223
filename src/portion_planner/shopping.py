"""Shopping list aggregation from a meal plan's (scaled) ingredients."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from portion_planner.ai import PseudoRecipe, ShoppingListGenerator
from portion_planner.errors import EmptyPlanError, ProviderNotConfiguredError, ShoppingListError
from portion_planner.locking import PlanLockRegistry, plan_lock
from portion_planner.models import MealPlan, MealPlanEntry, ShoppingList
from portion_planner.store import PersonStore, PlanStore, ShoppingListStore, SnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class ShoppingListResult:
    shopping_list: ShoppingList
    recipe_count: int
    item_count: int
    warnings: list[str] = field(default_factory=list)


class ShoppingListAggregator:
    """Builds day-chunked inputs, calls the generator and stores the list.

    With persons on the plan each entry contributes every person's scaled
    lines, so the list covers what everyone actually eats.
    """

    def __init__(
        self,
        session: Session,
        generator: ShoppingListGenerator | None,
        locks: PlanLockRegistry | None = None,
    ) -> None:
        self.session = session
        self.generator = generator
        self.locks = locks
        self.plans = PlanStore(session)
        self.persons = PersonStore(session)
        self.snapshots = SnapshotStore(session)
        self.lists = ShoppingListStore(session)

    def _pseudo_recipe(
        self, entry: MealPlanEntry, has_persons: bool, warnings: list[str]
    ) -> PseudoRecipe:
        recipe = entry.recipe
        ingredients = recipe.ingredients or ""

        if has_persons:
            snapshots = self.snapshots.list_for_entry(entry.id)
            if snapshots:
                lines = [line for s in snapshots for line in s.scaled_ingredients]
                ingredients = "\n".join(lines)
            else:
                logger.warning(
                    "No scaled snapshots for '%s' on %s, using base ingredients",
                    recipe.name,
                    entry.day.label,
                )
                warnings.append(
                    f"{entry.day.label}: '{recipe.name}' is not scaled yet, "
                    "base ingredients were used"
                )

        return PseudoRecipe(
            name=recipe.name,
            calories=recipe.calories,
            category=entry.category.value,
            ingredients=ingredients,
        )

    def build_chunks(self, plan: MealPlan, warnings: list[str]) -> dict[int, list[PseudoRecipe]]:
        """Map day ordinal (1-based, date order) to that day's pseudo-recipes."""
        has_persons = bool(self.persons.list_for_plan(plan.id))
        chunks: dict[int, list[PseudoRecipe]] = {}
        for number, day in enumerate(plan.days, start=1):
            recipes = [self._pseudo_recipe(e, has_persons, warnings) for e in day.ordered_entries()]
            if recipes:
                chunks[number] = recipes
        return chunks

    def generate(self, plan_id: int) -> ShoppingListResult:
        with plan_lock(plan_id, self.locks):
            plan = self.plans.require_plan(plan_id)
            if not plan.days:
                raise EmptyPlanError(f"Meal plan {plan_id} has no days")
            if not plan.all_entries():
                raise EmptyPlanError(f"Meal plan {plan_id} has no recipes")
            if self.generator is None:
                raise ProviderNotConfiguredError("No shopping list generator configured")

            warnings: list[str] = []
            chunks = self.build_chunks(plan, warnings)
            recipe_count = sum(len(c) for c in chunks.values())
            logger.info(
                "Generating shopping list for '%s': %d recipes in %d day chunks",
                plan.name,
                recipe_count,
                len(chunks),
            )

            response = self.generator.generate(chunks)
            if response is None or not response.items:
                raise ShoppingListError("Failed to generate shopping list")
            for day in response.failed_chunks:
                warnings.append(f"Day {day}: ingredients could not be aggregated and are missing")

            shopping_list = self.lists.upsert(plan_id, [item.to_dict() for item in response.items])
            self.session.commit()
            logger.info("Shopping list saved with %d items", len(response.items))

            return ShoppingListResult(
                shopping_list=shopping_list,
                recipe_count=recipe_count,
                item_count=len(response.items),
                warnings=warnings,
            )
