import datetime as dt

import pytest
from sqlalchemy.orm import sessionmaker

from portion_planner.ai import ScaleOutcome, ShoppingListItem, ShoppingListResponse
from portion_planner.db import init_db, make_engine
from portion_planner.models import MealCategory, MealPlanPerson, Recipe
from portion_planner.store import PlanStore

MONDAY = dt.date(2025, 1, 6)


@pytest.fixture
def session():
    engine = make_engine("sqlite://")
    init_db(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    s = factory()
    yield s
    s.close()
    engine.dispose()


@pytest.fixture
def add_recipe(session):
    """Factory fixture: add a recipe with sensible defaults."""

    def _add(
        name,
        category="dinner",
        calories=500,
        do_not_scale=False,
        alt_category=None,
        ingredients=None,
        protein=20.0,
        carbs=50.0,
        fat=10.0,
    ):
        recipe = Recipe(
            name=name,
            category=MealCategory.parse(category),
            alt_category=MealCategory.parse(alt_category) if alt_category else None,
            calories=calories,
            protein=protein,
            carbs=carbs,
            fat=fat,
            ingredients=ingredients if ingredients is not None else f"200 g {name.lower()}\n1 tsp salt",
            do_not_scale=do_not_scale,
        )
        session.add(recipe)
        session.commit()
        return recipe

    return _add


@pytest.fixture
def sample_recipes(add_recipe):
    """A small catalogue: three recipes per main meal, one fixed-portion dessert."""
    return [
        add_recipe("Oat Porridge", "breakfast", 400),
        add_recipe("Scrambled Eggs", "breakfast", 600),
        add_recipe("Greek Yogurt Bowl", "breakfast", 800),
        add_recipe("Caesar Salad", "lunch", 450),
        add_recipe("Lentil Soup", "lunch", 600),
        add_recipe("Chicken Wrap", "lunch", 700),
        add_recipe("Beef Stew", "dinner", 550),
        add_recipe("Salmon Rice Bowl", "dinner", 650),
        add_recipe("Veggie Curry", "dinner", 600),
        add_recipe("Apple Pie", "dessert", 350, do_not_scale=True),
    ]


@pytest.fixture
def make_plan(session):
    def _make(days=3, name="Test Week", start=MONDAY):
        plan = PlanStore(session).create_plan(name, start, start + dt.timedelta(days=days), days)
        session.commit()
        return plan

    return _make


@pytest.fixture
def add_raw_person(session):
    """Add a person without validation, for targets outside the allowed range."""

    def _add(plan, name, target_calories):
        person = MealPlanPerson(
            name=name, target_calories=target_calories, sort_order=len(plan.persons)
        )
        plan.persons.append(person)
        session.commit()
        return person

    return _add


class FakeScaler:
    """Records scale calls; multiplies the first number of every line."""

    def __init__(self, fail_for=()):
        self.calls = []
        self.fail_for = set(fail_for)

    def scale(self, recipe, factor, category):
        self.calls.append((recipe.name, round(factor, 4), category))
        if recipe.name in self.fail_for:
            return ScaleOutcome.failure("model unavailable")
        return ScaleOutcome(ingredients=[f"{line} x{factor:.2f}" for line in recipe.ingredient_lines])


class FakeShoppingGenerator:
    def __init__(self, items=None, failed_chunks=()):
        self.calls = []
        self.items = items
        self.failed_chunks = list(failed_chunks)

    def generate(self, chunks):
        self.calls.append(chunks)
        if self.items is None:
            return None
        return ShoppingListResponse(
            items=[ShoppingListItem(**item) for item in self.items],
            failed_chunks=self.failed_chunks,
        )


@pytest.fixture
def fake_scaler():
    return FakeScaler()


@pytest.fixture
def fake_generator():
    return FakeShoppingGenerator(
        items=[
            {"name": "Oats", "quantity": "200 g", "category": "pasta and grains"},
            {"name": "Salt", "quantity": "2 tsp", "category": "spices"},
        ]
    )


@pytest.fixture
def scaler_factory():
    return FakeScaler


@pytest.fixture
def generator_factory():
    return FakeShoppingGenerator
