"""Recipe candidate selection and per-day filling."""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field

from portion_planner.models import MealCategory, MealPlanDay, Recipe
from portion_planner.store import PlanStore, RecipeStore

logger = logging.getLogger(__name__)


class CandidateSelector:
    """Read-only candidate queries over the recipe store."""

    def __init__(self, recipes: RecipeStore) -> None:
        self.recipes = recipes

    def by_category(
        self,
        category: MealCategory,
        count: int,
        exclude_ids: Iterable[int] = (),
    ) -> list[Recipe]:
        return self.recipes.random_by_category(category, count, exclude_ids)

    def by_category_and_calorie_range(
        self,
        category: MealCategory,
        min_calories: int,
        max_calories: int,
        exclude_ids: Iterable[int] = (),
    ) -> list[Recipe]:
        return self.recipes.by_category_and_calorie_range(
            category, max(0, min_calories), max_calories, exclude_ids
        )


@dataclass
class Shortfall:
    category: MealCategory
    missing: int

    def describe(self) -> str:
        return f"{self.category.value} (missing {self.missing})"


@dataclass
class DayFillResult:
    added: int = 0
    shortfalls: list[Shortfall] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class DayFiller:
    """Adds recipes to one plan day, either by count or toward a calorie target."""

    def __init__(
        self,
        selector: CandidateSelector,
        plans: PlanStore,
        rng: random.Random | None = None,
        top_k: int = 3,
        fallback_sample_size: int = 20,
    ) -> None:
        self.selector = selector
        self.plans = plans
        self.rng = rng or random.Random()
        self.top_k = top_k
        self.fallback_sample_size = fallback_sample_size

    def _add(self, day: MealPlanDay, recipe: Recipe, category: MealCategory) -> None:
        self.plans.add_recipe_to_day(day, recipe, category, order=len(day.entries))

    def fill_standard(
        self,
        day: MealPlanDay,
        categories: list[MealCategory],
        per_day: int,
    ) -> DayFillResult:
        """Top up each category to ``per_day`` entries with random recipes."""
        result = DayFillResult()

        for category in categories:
            existing = day.count_category(category)
            needed = per_day - existing
            if needed <= 0:
                logger.debug("%s %s: already has %d, skipping", day.label, category.value, existing)
                continue

            logger.debug("%s %s: has %d, adding %d", day.label, category.value, existing, needed)
            recipes = self.selector.by_category(category, needed)
            if len(recipes) < needed:
                result.shortfalls.append(Shortfall(category, needed - len(recipes)))

            for recipe in recipes:
                self._add(day, recipe, category)
                result.added += 1

        return result

    def _pick(self, candidates: list[Recipe], budget: int) -> Recipe:
        closest = sorted(candidates, key=lambda r: abs(r.calories - budget))[: self.top_k]
        return self.rng.choice(closest)

    def fill_calorie_optimized(
        self,
        day: MealPlanDay,
        categories: list[MealCategory],
        target_calories: int,
        margin: int,
        used_ids: set[int],
    ) -> DayFillResult:
        """Pick one recipe per category so the day lands near ``target_calories``.

        The target is split evenly across categories. For each category the
        ``top_k`` candidates closest to that budget are drawn from, at random.
        ``used_ids`` is shared across the whole run and updated in place so a
        recipe is used at most once.
        """
        result = DayFillResult()
        if not categories:
            return result

        budget = target_calories // len(categories)
        selected: list[tuple[Recipe, MealCategory]] = []
        total = 0

        for category in categories:
            candidates = self.selector.by_category_and_calorie_range(
                category, budget - margin, budget + margin, exclude_ids=used_ids
            )
            if not candidates:
                candidates = self.selector.by_category(
                    category, self.fallback_sample_size, exclude_ids=used_ids
                )
            # Stores filter too, but a shared set can grow between calls
            candidates = [r for r in candidates if r.id not in used_ids]
            if not candidates:
                logger.warning("%s: no unused recipes for %s", day.label, category.value)
                result.warnings.append(f"{day.label}: no unused recipes for {category.value}")
                continue

            recipe = self._pick(candidates, budget)
            selected.append((recipe, category))
            total += recipe.calories
            used_ids.add(recipe.id)
            logger.debug("%s %s: %s (%d kcal)", day.label, category.value, recipe.name, recipe.calories)

        deviation = total - target_calories
        logger.info("%s: %d kcal (%+d kcal)", day.label, total, deviation)

        for recipe, category in selected:
            self._add(day, recipe, category)
            result.added += 1

        if abs(deviation) > margin:
            result.warnings.append(
                f"{day.label}: total {total} kcal ({deviation:+d} kcal) is outside "
                f"{target_calories} ± {margin} kcal"
            )
        return result
