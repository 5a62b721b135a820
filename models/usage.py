from collections.abc import Iterable

from pydantic import BaseModel, computed_field


class Usage(BaseModel):
    """Token and image cost consumed by one generation task.

    Every task returns its own Usage; callers fold them with `Usage.total()`
    once the tasks have settled. Instances are never shared between tasks.
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    image_cost: float = 0.0

    def __add__(self, other: "Usage") -> "Usage":
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            image_cost=round(self.image_cost + other.image_cost, 6),
        )

    @classmethod
    def total(cls, usages: Iterable["Usage"]) -> "Usage":
        return sum(usages, cls())

    @classmethod
    def from_completion(cls, usage) -> "Usage":
        """Build from an OpenAI ``CompletionUsage`` (or None)."""
        if usage is None:
            return cls()
        return cls(
            prompt_tokens=usage.prompt_tokens or 0,
            completion_tokens=usage.completion_tokens or 0,
            total_tokens=usage.total_tokens or 0,
        )


class CostReport(BaseModel):
    """Usage totals for a whole request, priced with the configured token rates."""

    usage: Usage
    price_input_per_million: float
    price_output_per_million: float

    @computed_field  # type: ignore[misc]
    @property
    def openai_input_price(self) -> float:
        return round(self.usage.prompt_tokens * self.price_input_per_million / 1_000_000, 6)

    @computed_field  # type: ignore[misc]
    @property
    def openai_output_price(self) -> float:
        return round(self.usage.completion_tokens * self.price_output_per_million / 1_000_000, 6)

    @computed_field  # type: ignore[misc]
    @property
    def openai_total_price(self) -> float:
        return round(self.openai_input_price + self.openai_output_price, 6)

    @computed_field  # type: ignore[misc]
    @property
    def total_cost(self) -> float:
        return round(self.openai_total_price + self.usage.image_cost, 6)
