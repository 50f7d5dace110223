"""Shared data models for meal plans, persons and scaled recipes."""

from __future__ import annotations

import datetime as dt
from enum import Enum

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

DAY_NAMES = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]


class MealCategory(Enum):
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"
    DESSERT = "dessert"
    DRINK = "drink"

    @classmethod
    def parse(cls, raw: str | MealCategory) -> MealCategory:
        """Parse a category name case-insensitively; raises ValueError if unknown."""
        if isinstance(raw, MealCategory):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            valid = ", ".join(c.value for c in cls)
            raise ValueError(f"Unknown meal category '{raw}'. Valid: {valid}")


def split_ingredient_lines(text: str | None) -> list[str]:
    """Split free-form ingredient text into non-empty stripped lines."""
    if not text:
        return []
    return [line.strip() for line in text.splitlines() if line.strip()]


class Base(DeclarativeBase):
    pass


class Recipe(Base):
    """Recipe with per-serving nutrition and free-form ingredient text."""

    __tablename__ = "recipe"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, index=True)
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[MealCategory] = mapped_column(SAEnum(MealCategory), index=True)
    # Second category the recipe may also be drawn for
    alt_category: Mapped[MealCategory | None] = mapped_column(
        SAEnum(MealCategory), nullable=True, index=True
    )
    calories: Mapped[int] = mapped_column(Integer, default=0, index=True)
    protein: Mapped[float] = mapped_column(Float, default=0.0)
    carbs: Mapped[float] = mapped_column(Float, default=0.0)
    fat: Mapped[float] = mapped_column(Float, default=0.0)
    ingredients: Mapped[str] = mapped_column(Text, default="")
    instructions: Mapped[str] = mapped_column(Text, default="")
    # Fixed-portion recipes (whole loaves, cakes) are never resized
    do_not_scale: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now)

    entries: Mapped[list[MealPlanEntry]] = relationship(
        back_populates="recipe", cascade="all, delete-orphan"
    )

    @property
    def ingredient_lines(self) -> list[str]:
        return split_ingredient_lines(self.ingredients)

    def __repr__(self) -> str:
        return f"Recipe(id={self.id!r}, name={self.name!r}, calories={self.calories!r})"


class MealPlan(Base):
    """Named plan covering a date range, with days and persons."""

    __tablename__ = "meal_plan"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    start_date: Mapped[dt.date] = mapped_column(Date)
    end_date: Mapped[dt.date] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=dt.datetime.now, onupdate=dt.datetime.now
    )

    days: Mapped[list[MealPlanDay]] = relationship(
        back_populates="plan", cascade="all, delete-orphan", order_by="MealPlanDay.date"
    )
    persons: Mapped[list[MealPlanPerson]] = relationship(
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="MealPlanPerson.sort_order",
    )
    shopping_list: Mapped[ShoppingList | None] = relationship(
        back_populates="plan", cascade="all, delete-orphan", uselist=False
    )

    def all_entries(self) -> list[MealPlanEntry]:
        return [entry for day in self.days for entry in day.ordered_entries()]


class MealPlanDay(Base):
    __tablename__ = "meal_plan_day"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("meal_plan.id", ondelete="CASCADE"), index=True
    )
    date: Mapped[dt.date] = mapped_column(Date)
    day_of_week: Mapped[int] = mapped_column(Integer)  # Monday=0 .. Sunday=6
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now)

    plan: Mapped[MealPlan] = relationship(back_populates="days")
    entries: Mapped[list[MealPlanEntry]] = relationship(
        back_populates="day", cascade="all, delete-orphan"
    )

    @property
    def day_name(self) -> str:
        if 0 <= self.day_of_week < len(DAY_NAMES):
            return DAY_NAMES[self.day_of_week]
        return f"Day {self.day_of_week}"

    @property
    def label(self) -> str:
        return f"{self.day_name} ({self.date.strftime('%d.%m')})"

    def ordered_entries(self) -> list[MealPlanEntry]:
        return sorted(self.entries, key=lambda e: (e.order, e.id or 0))

    def count_category(self, category: MealCategory) -> int:
        return sum(1 for e in self.entries if e.category == category)


class MealPlanEntry(Base):
    """One recipe assigned to one day under a meal category."""

    __tablename__ = "meal_plan_entry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    day_id: Mapped[int] = mapped_column(
        ForeignKey("meal_plan_day.id", ondelete="CASCADE"), index=True
    )
    recipe_id: Mapped[int] = mapped_column(
        ForeignKey("recipe.id", ondelete="CASCADE"), index=True
    )
    category: Mapped[MealCategory] = mapped_column(SAEnum(MealCategory))
    order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now)

    day: Mapped[MealPlanDay] = relationship(back_populates="entries")
    recipe: Mapped[Recipe] = relationship(back_populates="entries")
    scaled_recipes: Mapped[list[ScaledRecipe]] = relationship(
        back_populates="entry", cascade="all, delete-orphan"
    )


class MealPlanPerson(Base):
    """Person eating from the plan, with a daily calorie target."""

    __tablename__ = "meal_plan_person"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("meal_plan.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(100))
    target_calories: Mapped[int] = mapped_column(Integer)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now)

    plan: Mapped[MealPlan] = relationship(back_populates="persons")
    scaled_recipes: Mapped[list[ScaledRecipe]] = relationship(
        back_populates="person", cascade="all, delete-orphan"
    )


class ScaledRecipe(Base):
    """Person-specific scaled snapshot of one entry's recipe.

    Ingredient lines are stored verbatim as returned by the scaler (or the
    base recipe's lines when no scaling was needed) and never re-parsed.
    """

    __tablename__ = "scaled_recipe"
    __table_args__ = (
        UniqueConstraint("entry_id", "person_id", name="uq_scaled_recipe_entry_person"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    entry_id: Mapped[int] = mapped_column(
        ForeignKey("meal_plan_entry.id", ondelete="CASCADE"), index=True
    )
    person_id: Mapped[int] = mapped_column(
        ForeignKey("meal_plan_person.id", ondelete="CASCADE"), index=True
    )
    base_recipe_id: Mapped[int] = mapped_column(
        ForeignKey("recipe.id", ondelete="CASCADE"), index=True
    )
    scaling_factor: Mapped[float] = mapped_column(Float, default=1.0)
    scaled_ingredients: Mapped[list[str]] = mapped_column(JSON, default=list)
    scaled_calories: Mapped[int] = mapped_column(Integer, default=0)
    scaled_protein: Mapped[float] = mapped_column(Float, default=0.0)
    scaled_carbs: Mapped[float] = mapped_column(Float, default=0.0)
    scaled_fat: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now)

    entry: Mapped[MealPlanEntry] = relationship(back_populates="scaled_recipes")
    person: Mapped[MealPlanPerson] = relationship(back_populates="scaled_recipes")
    base_recipe: Mapped[Recipe] = relationship()


class ShoppingList(Base):
    """Aggregated shopping list; at most one per plan."""

    __tablename__ = "shopping_list"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_id: Mapped[int] = mapped_column(
        ForeignKey("meal_plan.id", ondelete="CASCADE"), unique=True
    )
    generated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.now)
    # [{"name": ..., "quantity": ..., "category": ...}, ...]
    items: Mapped[list[dict]] = mapped_column(JSON, default=list)

    plan: Mapped[MealPlan] = relationship(back_populates="shopping_list")
