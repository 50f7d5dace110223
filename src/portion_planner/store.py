"""Persistence stores for recipes, plans, persons, scaled snapshots and shopping lists.

Each store wraps a SQLAlchemy session. Stores flush but never commit; the
operation that owns the unit of work decides when to commit.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from portion_planner.config import DEFAULTS
from portion_planner.errors import (
    DayNotFoundError,
    EntryNotFoundError,
    PersonNotFoundError,
    PlanNotFoundError,
    RecipeNotFoundError,
    ValidationError,
)
from portion_planner.models import (
    MealCategory,
    MealPlan,
    MealPlanDay,
    MealPlanEntry,
    MealPlanPerson,
    Recipe,
    ScaledRecipe,
    ShoppingList,
)

logger = logging.getLogger(__name__)

MAX_PLAN_DAYS = 31


def _delete(session: Session, obj: object) -> None:
    """Delete through the ORM cascades and drop stale in-memory collections."""
    session.delete(obj)
    session.flush()
    session.expire_all()


class RecipeStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, recipe_id: int) -> Recipe | None:
        return self.session.get(Recipe, recipe_id)

    def get_by_name(self, name: str) -> Recipe | None:
        stmt = select(Recipe).where(func.lower(Recipe.name) == name.strip().lower())
        return self.session.scalars(stmt).first()

    def list_all(self, category: MealCategory | None = None) -> list[Recipe]:
        stmt = select(Recipe).order_by(Recipe.name)
        if category is not None:
            stmt = stmt.where(_matches_category(category))
        return list(self.session.scalars(stmt))

    def add(self, recipe: Recipe) -> Recipe:
        self.session.add(recipe)
        self.session.flush()
        return recipe

    def delete(self, recipe_id: int) -> None:
        """Delete a recipe; entries using it and their snapshots go with it."""
        recipe = self.get(recipe_id)
        if recipe is None:
            raise RecipeNotFoundError(recipe_id)
        logger.info("Deleting recipe '%s' (%d plan entries)", recipe.name, len(recipe.entries))
        _delete(self.session, recipe)

    def is_referenced(self, recipe_id: int) -> bool:
        stmt = select(func.count(MealPlanEntry.id)).where(MealPlanEntry.recipe_id == recipe_id)
        return (self.session.scalar(stmt) or 0) > 0

    def random_by_category(
        self,
        category: MealCategory,
        count: int,
        exclude_ids: Iterable[int] = (),
    ) -> list[Recipe]:
        """Random sample (without replacement) of up to ``count`` recipes."""
        if count <= 0:
            return []
        stmt = select(Recipe).where(_matches_category(category))
        excluded = set(exclude_ids)
        if excluded:
            stmt = stmt.where(Recipe.id.not_in(excluded))
        stmt = stmt.order_by(func.random()).limit(count)
        return list(self.session.scalars(stmt))

    def by_category_and_calorie_range(
        self,
        category: MealCategory,
        min_calories: int,
        max_calories: int,
        exclude_ids: Iterable[int] = (),
    ) -> list[Recipe]:
        """All recipes of a category with calories in [min, max]."""
        stmt = select(Recipe).where(
            _matches_category(category),
            Recipe.calories >= max(0, min_calories),
            Recipe.calories <= max_calories,
        )
        excluded = set(exclude_ids)
        if excluded:
            stmt = stmt.where(Recipe.id.not_in(excluded))
        stmt = stmt.order_by(func.random())
        return list(self.session.scalars(stmt))


def _matches_category(category: MealCategory):  # type: ignore[no-untyped-def]
    return or_(Recipe.category == category, Recipe.alt_category == category)


class PlanStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_plan(
        self,
        name: str,
        start_date: dt.date,
        end_date: dt.date,
        number_of_days: int = 7,
    ) -> MealPlan:
        """Create a plan and its consecutive days starting at start_date."""
        if not name or not name.strip():
            raise ValidationError("Plan name is required")
        if start_date >= end_date:
            raise ValidationError("Start date must be before end date")
        if number_of_days < 1 or number_of_days > MAX_PLAN_DAYS:
            raise ValidationError(f"Number of days must be between 1 and {MAX_PLAN_DAYS}")

        plan = MealPlan(name=name.strip(), start_date=start_date, end_date=end_date)
        for offset in range(number_of_days):
            day_date = start_date + dt.timedelta(days=offset)
            plan.days.append(MealPlanDay(date=day_date, day_of_week=day_date.weekday()))

        self.session.add(plan)
        self.session.flush()
        logger.info("Created plan '%s' (id=%d, %d days)", plan.name, plan.id, number_of_days)
        return plan

    def get_plan(self, plan_id: int) -> MealPlan | None:
        return self.session.get(MealPlan, plan_id)

    def require_plan(self, plan_id: int) -> MealPlan:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan

    def list_plans(self) -> list[MealPlan]:
        stmt = select(MealPlan).order_by(MealPlan.start_date.desc(), MealPlan.id.desc())
        return list(self.session.scalars(stmt))

    def update_plan(
        self,
        plan_id: int,
        name: str | None = None,
        start_date: dt.date | None = None,
        end_date: dt.date | None = None,
        is_active: bool | None = None,
    ) -> MealPlan:
        plan = self.require_plan(plan_id)
        if name is not None and name.strip():
            plan.name = name.strip()
        if start_date is not None:
            plan.start_date = start_date
        if end_date is not None:
            plan.end_date = end_date
        if is_active is not None:
            plan.is_active = is_active
        if plan.start_date >= plan.end_date:
            raise ValidationError("Start date must be before end date")
        self.session.flush()
        return plan

    def delete_plan(self, plan_id: int) -> None:
        plan = self.require_plan(plan_id)
        logger.info("Deleting plan '%s' (id=%d)", plan.name, plan_id)
        _delete(self.session, plan)

    def require_day(self, plan_id: int, day_id: int) -> MealPlanDay:
        day = self.session.get(MealPlanDay, day_id)
        if day is None or day.plan_id != plan_id:
            raise DayNotFoundError(plan_id, day_id)
        return day

    def get_entry(self, plan_id: int, entry_id: int) -> MealPlanEntry:
        entry = self.session.get(MealPlanEntry, entry_id)
        if entry is None or entry.day.plan_id != plan_id:
            raise EntryNotFoundError(plan_id, entry_id)
        return entry

    def add_entry(
        self,
        plan_id: int,
        day_id: int,
        recipe_id: int,
        category: MealCategory | str,
        order: int = 0,
    ) -> MealPlanEntry:
        """Assign a recipe to a day; the entry category may differ from the recipe's."""
        self.require_plan(plan_id)
        day = self.require_day(plan_id, day_id)
        recipe = self.session.get(Recipe, recipe_id)
        if recipe is None:
            raise RecipeNotFoundError(recipe_id)
        return self.add_recipe_to_day(day, recipe, MealCategory.parse(category), order)

    def add_recipe_to_day(
        self,
        day: MealPlanDay,
        recipe: Recipe,
        category: MealCategory,
        order: int = 0,
    ) -> MealPlanEntry:
        with self.session.no_autoflush:
            entry = MealPlanEntry(recipe=recipe, category=category, order=order)
            day.entries.append(entry)
        self.session.flush()
        logger.debug("Added '%s' to %s (%s)", recipe.name, day.label, category.value)
        return entry

    def delete_entry(self, plan_id: int, entry_id: int) -> None:
        """Remove an entry; its scaled snapshots are deleted with it."""
        entry = self.get_entry(plan_id, entry_id)
        _delete(self.session, entry)

    def update_entry_order(self, plan_id: int, entry_id: int, new_order: int) -> MealPlanEntry:
        entry = self.get_entry(plan_id, entry_id)
        entry.order = new_order
        self.session.flush()
        return entry


class PersonStore:
    def __init__(self, session: Session, config: dict | None = None) -> None:
        self.session = session
        limits = (config or DEFAULTS)["persons"]
        self.max_per_plan: int = limits["max_per_plan"]
        self.min_calories: int = limits["min_calories"]
        self.max_calories: int = limits["max_calories"]

    def list_for_plan(self, plan_id: int) -> list[MealPlanPerson]:
        stmt = (
            select(MealPlanPerson)
            .where(MealPlanPerson.plan_id == plan_id)
            .order_by(MealPlanPerson.sort_order, MealPlanPerson.id)
        )
        return list(self.session.scalars(stmt))

    def _check_calories(self, target_calories: int) -> None:
        if target_calories < self.min_calories or target_calories > self.max_calories:
            raise ValidationError(
                f"Target calories must be between {self.min_calories} and {self.max_calories}"
            )

    def _check_name_free(
        self, persons: list[MealPlanPerson], name: str, except_id: int | None = None
    ) -> None:
        wanted = name.strip().casefold()
        for p in persons:
            if p.id != except_id and p.name.casefold() == wanted:
                raise ValidationError("Person with this name already exists in the plan")

    def add_person(self, plan_id: int, name: str, target_calories: int) -> MealPlanPerson:
        plan = self.session.get(MealPlan, plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        if not name or not name.strip():
            raise ValidationError("Person name is required")
        self._check_calories(target_calories)

        existing = self.list_for_plan(plan_id)
        if len(existing) >= self.max_per_plan:
            raise ValidationError(f"Maximum {self.max_per_plan} persons per meal plan")
        self._check_name_free(existing, name)

        person = MealPlanPerson(
            name=name.strip(),
            target_calories=target_calories,
            sort_order=len(existing),
        )
        plan.persons.append(person)
        self.session.flush()
        logger.info("Added person %s (%d kcal/day) to plan %d", person.name, target_calories, plan_id)
        return person

    def require_person(self, plan_id: int, person_id: int) -> MealPlanPerson:
        person = self.session.get(MealPlanPerson, person_id)
        if person is None or person.plan_id != plan_id:
            raise PersonNotFoundError(plan_id, person_id)
        return person

    def update_person(
        self,
        plan_id: int,
        person_id: int,
        name: str | None = None,
        target_calories: int | None = None,
    ) -> MealPlanPerson:
        """Rename or retarget a person.

        Existing snapshots keep the old portions until the plan is re-scaled
        in reset mode.
        """
        person = self.require_person(plan_id, person_id)
        if name is not None and name.strip():
            self._check_name_free(self.list_for_plan(plan_id), name, except_id=person_id)
            person.name = name.strip()
        if target_calories is not None:
            self._check_calories(target_calories)
            person.target_calories = target_calories
        self.session.flush()
        return person

    def delete_person(self, plan_id: int, person_id: int) -> None:
        """Remove a person and every snapshot scaled for them."""
        person = self.require_person(plan_id, person_id)
        logger.info("Deleting person %s from plan %d", person.name, plan_id)
        _delete(self.session, person)


class SnapshotStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, snapshot: ScaledRecipe) -> int:
        self.session.add(snapshot)
        self.session.flush()
        return snapshot.id

    def _plan_snapshots_stmt(self, plan_id: int):  # type: ignore[no-untyped-def]
        return (
            select(ScaledRecipe)
            .join(MealPlanEntry, ScaledRecipe.entry_id == MealPlanEntry.id)
            .join(MealPlanDay, MealPlanEntry.day_id == MealPlanDay.id)
            .where(MealPlanDay.plan_id == plan_id)
        )

    def list_existing(self, plan_id: int) -> list[ScaledRecipe]:
        return list(self.session.scalars(self._plan_snapshots_stmt(plan_id)))

    def existing_pairs(self, plan_id: int) -> set[tuple[int, int]]:
        """(entry_id, person_id) pairs that already have a snapshot."""
        return {(s.entry_id, s.person_id) for s in self.list_existing(plan_id)}

    def list_for_entry(self, entry_id: int) -> list[ScaledRecipe]:
        stmt = (
            select(ScaledRecipe)
            .join(MealPlanPerson, ScaledRecipe.person_id == MealPlanPerson.id)
            .where(ScaledRecipe.entry_id == entry_id)
            .order_by(MealPlanPerson.sort_order, MealPlanPerson.id)
        )
        return list(self.session.scalars(stmt))

    def delete_all(self, plan_id: int) -> int:
        """Delete every snapshot of the plan; returns how many were removed."""
        snapshots = self.list_existing(plan_id)
        for snapshot in snapshots:
            self.session.delete(snapshot)
        self.session.flush()
        self.session.expire_all()
        return len(snapshots)

    def delete_for_entry(self, entry_id: int) -> int:
        snapshots = self.list_for_entry(entry_id)
        for snapshot in snapshots:
            self.session.delete(snapshot)
        self.session.flush()
        self.session.expire_all()
        return len(snapshots)


class ShoppingListStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_for_plan(self, plan_id: int) -> ShoppingList | None:
        stmt = select(ShoppingList).where(ShoppingList.plan_id == plan_id)
        return self.session.scalars(stmt).first()

    def upsert(self, plan_id: int, items: list[dict]) -> ShoppingList:
        """Replace the plan's shopping list (one list per plan)."""
        plan = self.session.get(MealPlan, plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        shopping_list = plan.shopping_list
        if shopping_list is None:
            shopping_list = ShoppingList(items=items)
            plan.shopping_list = shopping_list
        else:
            shopping_list.items = items
            shopping_list.generated_at = dt.datetime.now()
        self.session.flush()
        return shopping_list
