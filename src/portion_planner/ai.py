"""AI-backed ingredient scaling and shopping-list aggregation.

Two completion backends are supported: the ``claude`` CLI (subprocess) and
the Anthropic API. The active one is chosen by ``ai.provider`` and built
once per configuration. Every call goes through a shared pacing and retry
loop so consecutive requests stay under provider rate limits.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from portion_planner.errors import ProviderNotConfiguredError
from portion_planner.models import MealCategory, Recipe

logger = logging.getLogger(__name__)


class AIProvider(Enum):
    NONE = "none"
    CLAUDE_CLI = "claude-cli"
    ANTHROPIC = "anthropic"


class AICallError(Exception):
    """A single completion request failed (transport, exit status, empty reply)."""


@dataclass
class ScaleOutcome:
    """Result of one scaling request: the scaled lines, or why there are none."""

    ingredients: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.ingredients)

    @classmethod
    def failure(cls, error: str) -> ScaleOutcome:
        return cls(ingredients=[], error=error)


@dataclass
class PseudoRecipe:
    """Recipe-shaped input for the shopping-list generator."""

    name: str
    calories: int
    category: str
    ingredients: str


@dataclass
class ShoppingListItem:
    name: str
    quantity: str
    category: str

    def to_dict(self) -> dict:
        return {"name": self.name, "quantity": self.quantity, "category": self.category}


@dataclass
class ShoppingListResponse:
    items: list[ShoppingListItem] = field(default_factory=list)
    failed_chunks: list[int] = field(default_factory=list)


class IngredientScaler(Protocol):
    def scale(self, recipe: Recipe, factor: float, category: MealCategory) -> ScaleOutcome: ...


class ShoppingListGenerator(Protocol):
    def generate(self, chunks: dict[int, list[PseudoRecipe]]) -> ShoppingListResponse | None: ...


# --- completion backends -------------------------------------------------


def strip_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if present."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text[: text.rfind("```")]
        text = text.strip()
    return text


class CompletionBackend(Protocol):
    name: str

    def complete(self, prompt: str) -> str: ...


class ClaudeCliBackend:
    """Completion via the ``claude`` CLI in print mode."""

    name = "claude-cli"

    def __init__(self, model: str = "haiku", timeout: int = 120) -> None:
        self.model = model
        self.timeout = timeout

    def complete(self, prompt: str) -> str:
        try:
            result = subprocess.run(
                ["claude", "--model", self.model, "-p"],
                input=prompt,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise AICallError(f"claude CLI timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise AICallError("'claude' CLI not found. Install it first.") from e

        if result.returncode != 0:
            raise AICallError(f"claude CLI error: {result.stderr.strip()}")

        text = strip_fences(result.stdout)
        if not text:
            raise AICallError("Empty AI response")
        return text


class AnthropicBackend:
    """Completion via the Anthropic Messages API."""

    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 4096,
        timeout: int = 120,
    ) -> None:
        import anthropic

        self._anthropic = anthropic
        self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout)
        self.model = model
        self.max_tokens = max_tokens

    def complete(self, prompt: str) -> str:
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except self._anthropic.APIError as e:
            raise AICallError(f"Anthropic API error: {e}") from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        text = strip_fences(text)
        if not text:
            raise AICallError("Empty AI response")
        return text


class PacedCaller:
    """Spaces consecutive calls and retries failures with exponential backoff."""

    def __init__(
        self,
        backend: CompletionBackend,
        call_delay_seconds: float = 2.0,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.call_delay_seconds = call_delay_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._clock = clock
        self._last_call: float | None = None

    def _pace(self) -> None:
        if self._last_call is not None and self.call_delay_seconds > 0:
            wait = self.call_delay_seconds - (self._clock() - self._last_call)
            if wait > 0:
                self._sleep(wait)
        self._last_call = self._clock()

    def call(self, prompt: str) -> str:
        attempts = max(1, self.max_retries + 1)
        last_error: AICallError | None = None
        for attempt in range(attempts):
            self._pace()
            try:
                return self.backend.complete(prompt)
            except AICallError as e:
                last_error = e
                if attempt == attempts - 1:
                    break
                wait_time = self.backoff_seconds * (2**attempt)
                logger.warning(
                    "%s call failed (%s), retry %d/%d in %.1fs",
                    self.backend.name,
                    e,
                    attempt + 1,
                    attempts - 1,
                    wait_time,
                )
                self._sleep(wait_time)
        assert last_error is not None
        raise last_error


# --- ingredient scaling ----------------------------------------------------

SCALE_PROMPT = """\
You are a kitchen assistant. Scale the ingredients of this recipe by the given factor.

Recipe: {name}
Meal: {category}

Base ingredients:
{ingredients}

Scaling factor: {factor:.2f} ({percent:+.0f}%)

Rules:
- Multiply every quantity by {factor:.2f}
- Round to practical amounts: above 100 g round to 5 g or 10 g, below 100 g to 1 g or 5 g,
  liquids to 5 ml or 10 ml, whole pieces to halves (1.3 onions -> 1.5 onions)
- Keep the units of the original
- Leave "to taste" and "optional" lines unchanged
- Keep one output line per input line, in the same order

Return ONLY valid JSON, no markdown fences, no explanation:
{{"scaled_ingredients": ["first ingredient line", "second ingredient line"]}}
"""


def build_scale_prompt(recipe: Recipe, factor: float, category: MealCategory) -> str:
    return SCALE_PROMPT.format(
        name=recipe.name,
        category=category.value,
        ingredients=recipe.ingredients.strip(),
        factor=factor,
        percent=(factor - 1) * 100,
    )


def parse_scaled_ingredients(text: str) -> list[str]:
    """Extract the scaled ingredient lines from a model reply."""
    parsed = json.loads(strip_fences(text))
    if isinstance(parsed, dict):
        lines = parsed.get("scaled_ingredients") or parsed.get("scaledIngredients") or []
    else:
        lines = parsed
    if not isinstance(lines, list):
        return []
    return [str(line).strip() for line in lines if str(line).strip()]


class AIIngredientScaler:
    """Scales a recipe's ingredient text with one completion call."""

    def __init__(self, caller: PacedCaller) -> None:
        self.caller = caller

    def scale(self, recipe: Recipe, factor: float, category: MealCategory) -> ScaleOutcome:
        logger.info("Scaling '%s' by %.2f", recipe.name, factor)
        prompt = build_scale_prompt(recipe, factor, category)
        try:
            text = self.caller.call(prompt)
        except AICallError as e:
            return ScaleOutcome.failure(str(e))

        try:
            lines = parse_scaled_ingredients(text)
        except (TypeError, ValueError) as e:
            logger.debug("Unparseable scaling reply for '%s': %.200s", recipe.name, text)
            return ScaleOutcome.failure(f"JSON parse error: {e}")

        if not lines:
            return ScaleOutcome.failure("No ingredients in AI response")
        logger.debug("Scaled %d ingredient lines for '%s'", len(lines), recipe.name)
        return ScaleOutcome(ingredients=lines)


# --- shopping list -----------------------------------------------------------

SHOPPING_CATEGORIES = [
    "vegetables",
    "fruit",
    "meat",
    "fish",
    "dairy",
    "bakery",
    "pasta and grains",
    "pantry",
    "spices",
    "drinks",
    "household",
    "other",
]

SHOPPING_PROMPT = """\
You build shopping lists. Aggregate the ingredients of the recipes below into one list.

Rules:
- Merge only identical ingredients ("chicken breast" and "chicken thigh" stay separate)
- Sum amounts in the same unit; above 1000 g use kg, above 1000 ml use l
- If unsure whether two ingredients are the same, keep them separate
- Put each item in exactly one category: {categories}
- Round to practical amounts

Recipes for day {day}:

{recipes}
Return ONLY valid JSON, no markdown fences, no explanation:
{{"items": [{{"name": "onion", "quantity": "2 pcs", "category": "vegetables"}}]}}
"""


def build_shopping_prompt(day: int, recipes: list[PseudoRecipe]) -> str:
    parts = []
    for i, recipe in enumerate(recipes, start=1):
        parts.append(f"## Recipe {i}: {recipe.name} ({recipe.category}, {recipe.calories} kcal)")
        parts.append(recipe.ingredients.strip())
        parts.append("")
    return SHOPPING_PROMPT.format(
        categories=", ".join(SHOPPING_CATEGORIES),
        day=day,
        recipes="\n".join(parts),
    )


def parse_shopping_items(text: str) -> list[ShoppingListItem]:
    parsed = json.loads(strip_fences(text))
    raw_items = parsed.get("items", []) if isinstance(parsed, dict) else parsed
    if not isinstance(raw_items, list):
        return []
    items = []
    for raw in raw_items:
        if not isinstance(raw, dict) or not str(raw.get("name", "")).strip():
            continue
        items.append(
            ShoppingListItem(
                name=str(raw["name"]).strip(),
                quantity=str(raw.get("quantity", "") or "").strip(),
                category=str(raw.get("category", "") or "other").strip().lower(),
            )
        )
    return items


_QTY_RE = re.compile(r"^\s*(\d+(?:[.,]\d+)?)\s*([^\d\s].*)?$")


def split_quantity(quantity: str) -> tuple[float, str] | None:
    """Split "500g" / "1,5 kg" / "2" into (amount, unit); None if not numeric."""
    m = _QTY_RE.match(quantity or "")
    if not m:
        return None
    amount = float(m.group(1).replace(",", "."))
    unit = (m.group(2) or "").strip().lower()
    return amount, unit


def format_amount(amount: float) -> str:
    if amount == int(amount):
        return str(int(amount))
    return f"{amount:.2f}".rstrip("0").rstrip(".")


def merge_items(items: list[ShoppingListItem]) -> list[ShoppingListItem]:
    """Merge items across day chunks.

    Same name (case-insensitive), same category and a numeric quantity in
    the same unit are summed. Anything else stays a separate line.
    """
    merged: dict[tuple[str, str, str], tuple[ShoppingListItem, float]] = {}
    result: list[ShoppingListItem | tuple[str, str, str]] = []

    for item in items:
        split = split_quantity(item.quantity)
        if split is None:
            result.append(item)
            continue
        amount, unit = split
        key = (item.name.casefold(), item.category, unit)
        if key in merged:
            first, total = merged[key]
            merged[key] = (first, total + amount)
        else:
            merged[key] = (item, amount)
            result.append(key)

    out: list[ShoppingListItem] = []
    for entry in result:
        if isinstance(entry, ShoppingListItem):
            out.append(entry)
            continue
        first, total = merged[entry]
        unit = entry[2]
        quantity = f"{format_amount(total)} {unit}".strip()
        out.append(ShoppingListItem(name=first.name, quantity=quantity, category=first.category))
    return out


class AIShoppingListGenerator:
    """Generates one list per day chunk and merges the chunks."""

    def __init__(self, caller: PacedCaller) -> None:
        self.caller = caller

    def generate(self, chunks: dict[int, list[PseudoRecipe]]) -> ShoppingListResponse | None:
        all_items: list[ShoppingListItem] = []
        failed: list[int] = []

        for day in sorted(chunks):
            recipes = chunks[day]
            if not recipes:
                continue
            logger.info("Shopping list chunk for day %d (%d recipes)", day, len(recipes))
            try:
                text = self.caller.call(build_shopping_prompt(day, recipes))
                items = parse_shopping_items(text)
            except (AICallError, TypeError, ValueError) as e:
                logger.error("Shopping list chunk for day %d failed: %s", day, e)
                failed.append(day)
                continue
            if not items:
                logger.error("Shopping list chunk for day %d returned no items", day)
                failed.append(day)
                continue
            all_items.extend(items)

        if not all_items:
            return None
        return ShoppingListResponse(items=merge_items(all_items), failed_chunks=failed)


# --- construction ------------------------------------------------------------


def resolve_provider(config: dict) -> AIProvider:
    raw = config["ai"].get("provider") or "none"
    try:
        return AIProvider(str(raw).strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in AIProvider)
        raise ProviderNotConfiguredError(f"Unknown AI provider '{raw}'. Valid: {valid}")


# Default model per provider. The claude CLI takes short aliases, the
# Messages API needs full model ids.
DEFAULT_MODELS = {
    AIProvider.CLAUDE_CLI: "haiku",
    AIProvider.ANTHROPIC: "claude-3-5-haiku-latest",
}

CLI_MODEL_ALIASES = {
    "haiku": "claude-3-5-haiku-latest",
    "sonnet": "claude-sonnet-4-0",
    "opus": "claude-opus-4-0",
}


def resolve_model(provider: AIProvider, model: str | None) -> str:
    if not model:
        return DEFAULT_MODELS[provider]
    if provider is AIProvider.ANTHROPIC:
        return CLI_MODEL_ALIASES.get(model.strip().lower(), model)
    return model


def build_backend(config: dict) -> CompletionBackend:
    """Build the completion backend for the active provider.

    Raises ProviderNotConfiguredError when there is no active provider or
    its credential is missing.
    """
    ai = config["ai"]
    provider = resolve_provider(config)

    if provider is AIProvider.NONE:
        raise ProviderNotConfiguredError("No active AI provider configured")

    if provider is AIProvider.CLAUDE_CLI:
        if shutil.which("claude") is None:
            raise ProviderNotConfiguredError("'claude' CLI not found on PATH")
        return ClaudeCliBackend(
            model=resolve_model(provider, ai["model"]), timeout=ai["timeout_seconds"]
        )

    api_key = ai.get("api_key") or os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise ProviderNotConfiguredError(
            "API key not configured for the anthropic provider "
            "(set ai.api_key or ANTHROPIC_API_KEY)"
        )
    return AnthropicBackend(
        api_key=api_key,
        model=resolve_model(provider, ai["model"]),
        max_tokens=ai["max_tokens"],
        timeout=ai["timeout_seconds"],
    )


def build_caller(config: dict, backend: CompletionBackend | None = None) -> PacedCaller:
    ai = config["ai"]
    return PacedCaller(
        backend or build_backend(config),
        call_delay_seconds=ai["call_delay_seconds"],
        max_retries=ai["max_retries"],
        backoff_seconds=ai["backoff_seconds"],
    )


def build_ingredient_scaler(config: dict) -> AIIngredientScaler:
    return AIIngredientScaler(build_caller(config))


def build_shopping_list_generator(config: dict) -> AIShoppingListGenerator:
    return AIShoppingListGenerator(build_caller(config))
