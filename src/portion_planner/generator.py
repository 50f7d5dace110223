"""Automatic meal plan filling, optionally followed by portion scaling."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from portion_planner.ai import IngredientScaler, build_ingredient_scaler
from portion_planner.config import DEFAULTS
from portion_planner.errors import EmptyPlanError, PreconditionError
from portion_planner.locking import PlanLockRegistry, plan_lock
from portion_planner.models import MealCategory, MealPlan
from portion_planner.scaling import ScalingMode, ScalingOrchestrator
from portion_planner.selection import CandidateSelector, DayFiller, Shortfall
from portion_planner.store import PersonStore, PlanStore, RecipeStore

logger = logging.getLogger(__name__)


@dataclass
class AutoGenerateRequest:
    categories: list[str]
    per_day: int = 1
    use_calorie_target: bool = False
    target_calories: int = 1800
    calorie_margin: int = 200
    auto_scale: bool = True

    @classmethod
    def from_config(cls, config: dict, **overrides: object) -> AutoGenerateRequest:
        gen = config["generation"]
        values: dict = {
            "categories": list(gen["categories"]),
            "per_day": gen["per_day"],
            "target_calories": gen["target_calories"],
            "calorie_margin": gen["calorie_margin"],
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class AutoGenerateResult:
    added_count: int = 0
    scaled_count: int = 0
    warnings: list[str] = field(default_factory=list)
    plan: MealPlan | None = None

    @property
    def message(self) -> str:
        if self.warnings:
            return f"Added {self.added_count} recipes, with warnings"
        return f"Auto-generated {self.added_count} recipes"


def format_shortfalls(shortfalls: dict[str, list[Shortfall]]) -> list[str]:
    """Render per-day shortfalls as warning lines (header, one line per day, hint)."""
    if not shortfalls:
        return []
    lines = ["Not enough recipes found for some days:"]
    for day_label, missing in shortfalls.items():
        lines.append(f"  • {day_label}: {', '.join(s.describe() for s in missing)}")
    lines.append("Hint: add more recipes in these categories or duplicate existing ones.")
    return lines


def parse_categories(raw: list[str]) -> list[MealCategory]:
    categories = []
    for name in raw:
        try:
            categories.append(MealCategory.parse(name))
        except ValueError:
            logger.warning("Unknown category '%s', skipping", name)
    return categories


class PlanAutoGenerator:
    def __init__(
        self,
        session: Session,
        config: dict | None = None,
        scaler_factory: Callable[[], IngredientScaler] | None = None,
        rng: random.Random | None = None,
        locks: PlanLockRegistry | None = None,
    ) -> None:
        self.config = config or DEFAULTS
        self.session = session
        self.locks = locks
        self.scaler_factory = scaler_factory or (lambda: build_ingredient_scaler(self.config))
        self.plans = PlanStore(session)
        self.persons = PersonStore(session, self.config)
        gen = self.config["generation"]
        self.filler = DayFiller(
            CandidateSelector(RecipeStore(session)),
            self.plans,
            rng=rng,
            top_k=gen["top_k"],
            fallback_sample_size=gen["fallback_sample_size"],
        )

    def generate(self, plan_id: int, request: AutoGenerateRequest) -> AutoGenerateResult:
        with plan_lock(plan_id, self.locks):
            plan = self.plans.require_plan(plan_id)
            if not plan.days:
                raise EmptyPlanError(f"Meal plan {plan_id} has no days")

            persons = self.persons.list_for_plan(plan_id)
            use_calories = request.use_calorie_target
            target = request.target_calories
            if persons:
                target = max(p.target_calories for p in persons)
                use_calories = True
                logger.info(
                    "Plan has %d persons, optimising for the highest target (%d kcal)",
                    len(persons),
                    target,
                )

            categories = parse_categories(request.categories)
            result = AutoGenerateResult()
            shortfalls: dict[str, list[Shortfall]] = {}
            used_ids: set[int] = set()

            for day in plan.days:
                if use_calories:
                    filled = self.filler.fill_calorie_optimized(
                        day, categories, target, request.calorie_margin, used_ids
                    )
                else:
                    filled = self.filler.fill_standard(day, categories, request.per_day)
                self.session.commit()

                result.added_count += filled.added
                result.warnings.extend(filled.warnings)
                if filled.shortfalls:
                    shortfalls[day.label] = filled.shortfalls

            result.warnings.extend(format_shortfalls(shortfalls))
            logger.info("Auto-generation finished: %d recipes added", result.added_count)

            if persons and request.auto_scale and result.added_count > 0:
                self._auto_scale(plan_id, result)

            self.session.expire_all()
            result.plan = self.plans.get_plan(plan_id)
            return result

    def _auto_scale(self, plan_id: int, result: AutoGenerateResult) -> None:
        try:
            scaler = self.scaler_factory()
            orchestrator = ScalingOrchestrator(self.session, scaler, self.config, self.locks)
            scaled = orchestrator.scale_plan(plan_id, ScalingMode.FILL_MISSING)
        except PreconditionError as e:
            logger.warning("Automatic scaling skipped: %s", e)
            result.warnings.append(f"Automatic scaling skipped: {e}")
            return
        except Exception as e:
            self.session.rollback()
            logger.exception("Automatic scaling failed for plan %d", plan_id)
            result.warnings.append(f"Automatic scaling failed: {e}")
            return
        result.scaled_count = scaled.scaled_count
        result.warnings.extend(scaled.warnings)
