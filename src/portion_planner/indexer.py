"""Recipe import: parse frontmatter markdown files into the recipe store."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

import frontmatter
from sqlalchemy.orm import Session

from portion_planner.models import MealCategory, Recipe
from portion_planner.store import RecipeStore

logger = logging.getLogger(__name__)


@dataclass
class RecipeFile:
    """Recipe fields read from one markdown file."""

    name: str
    category: MealCategory
    alt_category: MealCategory | None = None
    description: str = ""
    calories: int = 0
    protein: float = 0.0
    carbs: float = 0.0
    fat: float = 0.0
    ingredients: str = ""
    instructions: str = ""
    do_not_scale: bool = False

    def apply_to(self, recipe: Recipe) -> Recipe:
        recipe.name = self.name
        recipe.category = self.category
        recipe.alt_category = self.alt_category
        recipe.description = self.description
        recipe.calories = self.calories
        recipe.protein = self.protein
        recipe.carbs = self.carbs
        recipe.fat = self.fat
        recipe.ingredients = self.ingredients
        recipe.instructions = self.instructions
        recipe.do_not_scale = self.do_not_scale
        return recipe


@dataclass
class ImportStats:
    total_files: int = 0
    added: int = 0
    updated: int = 0
    unchanged_referenced: int = 0
    skipped: list[str] = field(default_factory=list)


def extract_section(content: str, heading: str) -> str | None:
    """Extract the text under a ``##``/``###`` heading matching ``heading``.

    Captures everything until the next heading of equal or higher level.
    """
    in_section = False
    section_level = 0
    result: list[str] = []

    for line in content.split("\n"):
        m = re.match(r"^(#{2,3})\s+(?:%s)\b" % heading, line, re.IGNORECASE)
        if m and not in_section:
            in_section = True
            section_level = len(m.group(1))
            continue

        if in_section:
            if re.match(r"^(#{1,%d})\s+" % section_level, line):
                break
            result.append(line)

    text = "\n".join(result).strip()
    return text or None


def extract_ingredients_section(content: str) -> str | None:
    return extract_section(content, "Ingredients")


def clean_ingredient_lines(text: str | None) -> str:
    """Drop list markers so each stored line is just the ingredient."""
    if not text:
        return ""
    lines = []
    for line in text.splitlines():
        line = re.sub(r"^\s*(?:[-*+]|\d+[.)])\s+", "", line).strip()
        if line:
            lines.append(line)
    return "\n".join(lines)


def parse_recipe_file(file_path: Path) -> RecipeFile | None:
    """Parse one recipe markdown file; None if it is not a usable recipe."""
    try:
        post = frontmatter.load(file_path)
    except Exception as e:
        logger.debug("Cannot read %s: %s", file_path.name, e)
        return None

    meta = post.metadata
    if meta.get("type") != "recipe":
        return None

    try:
        category = MealCategory.parse(meta.get("category", ""))
    except ValueError as e:
        logger.warning("%s: %s", file_path.name, e)
        return None

    alt_category = None
    if meta.get("alt_category"):
        try:
            alt_category = MealCategory.parse(meta["alt_category"])
        except ValueError as e:
            logger.warning("%s: ignoring alt_category: %s", file_path.name, e)

    instructions = extract_section(post.content, "Instructions|Directions|Method") or ""

    return RecipeFile(
        name=_to_str(meta.get("name")) or file_path.stem,
        category=category,
        alt_category=alt_category,
        description=_to_str(meta.get("description")) or "",
        calories=int(round(_to_float(meta.get("calories")) or 0)),
        protein=_to_float(meta.get("protein_g")) or 0.0,
        carbs=_to_float(meta.get("carbs_g")) or 0.0,
        fat=_to_float(meta.get("fat_g")) or 0.0,
        ingredients=clean_ingredient_lines(extract_ingredients_section(post.content)),
        instructions=instructions,
        do_not_scale=bool(meta.get("do_not_scale")),
    )


def _to_float(val: object) -> float | None:
    if val is None or val == "":
        return None
    try:
        return float(val)  # type: ignore[arg-type]
    except (ValueError, TypeError):
        return None


def _to_str(val: object) -> str | None:
    if val is None or val == "":
        return None
    return str(val).strip()


def discover_recipe_files(directory: Path, limit: int | None = None) -> list[Path]:
    """Find all .md files in the recipe directory."""
    files = sorted(directory.glob("*.md"))
    if limit:
        files = files[:limit]
    return files


def import_recipes(
    session: Session,
    directory: Path,
    limit: int | None = None,
    dry_run: bool = False,
) -> ImportStats:
    """Insert new recipes and update existing ones by name.

    A recipe already used by a plan entry is left untouched so existing
    plans and their scaled snapshots stay consistent.
    """
    store = RecipeStore(session)
    files = discover_recipe_files(directory, limit=limit)
    stats = ImportStats(total_files=len(files))

    for f in files:
        parsed = parse_recipe_file(f)
        if parsed is None:
            stats.skipped.append(f.name)
            logger.debug("SKIP (not a recipe or parse error): %s", f.name)
            continue

        existing = store.get_by_name(parsed.name)
        if existing is None:
            if not dry_run:
                store.add(parsed.apply_to(Recipe()))
            stats.added += 1
            logger.debug("ADD %s (%s, %d kcal)", parsed.name, parsed.category.value, parsed.calories)
        elif store.is_referenced(existing.id):
            stats.unchanged_referenced += 1
            logger.debug("KEEP %s (used by a meal plan)", parsed.name)
        else:
            if not dry_run:
                parsed.apply_to(existing)
            stats.updated += 1
            logger.debug("UPDATE %s", parsed.name)

    if not dry_run:
        session.flush()
    logger.info(
        "Imported %d files: %d added, %d updated, %d kept, %d skipped",
        stats.total_files,
        stats.added,
        stats.updated,
        stats.unchanged_referenced,
        len(stats.skipped),
    )
    return stats
