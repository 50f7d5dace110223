"""Exception hierarchy for plan operations.

Precondition errors are raised before anything is written; everything that
can go wrong for a single day or (entry, person) pair is reported as a
warning on the result object instead.
"""

from __future__ import annotations


class PlannerError(Exception):
    """Base class for all portion_planner errors."""


class PreconditionError(PlannerError):
    """A required input or collaborator is missing; nothing was mutated."""


class PlanNotFoundError(PreconditionError):
    def __init__(self, plan_id: int) -> None:
        super().__init__(f"Meal plan {plan_id} not found")
        self.plan_id = plan_id


class DayNotFoundError(PreconditionError):
    def __init__(self, plan_id: int, day_id: int) -> None:
        super().__init__(f"Day {day_id} not found in meal plan {plan_id}")
        self.plan_id = plan_id
        self.day_id = day_id


class EntryNotFoundError(PreconditionError):
    def __init__(self, plan_id: int, entry_id: int) -> None:
        super().__init__(f"Entry {entry_id} not found in meal plan {plan_id}")
        self.plan_id = plan_id
        self.entry_id = entry_id


class PersonNotFoundError(PreconditionError):
    def __init__(self, plan_id: int, person_id: int) -> None:
        super().__init__(f"Person {person_id} not found in meal plan {plan_id}")
        self.plan_id = plan_id
        self.person_id = person_id


class RecipeNotFoundError(PreconditionError):
    def __init__(self, recipe_id: int) -> None:
        super().__init__(f"Recipe {recipe_id} not found")
        self.recipe_id = recipe_id


class EmptyPlanError(PreconditionError):
    """The plan has no days, or no entries where entries are required."""


class NoPersonsError(PreconditionError):
    def __init__(self, plan_id: int) -> None:
        super().__init__(f"Meal plan {plan_id} has no persons. Add persons first.")
        self.plan_id = plan_id


class ProviderNotConfiguredError(PreconditionError):
    """No active AI provider, or the active provider has no usable credential."""


class ValidationError(PlannerError, ValueError):
    """Invalid user input for a plan or person."""


class ShoppingListError(PlannerError):
    """The shopping-list generator produced no items."""
