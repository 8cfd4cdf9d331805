from __future__ import annotations

import math

from pydantic import BaseModel, ConfigDict, Field


class UsageDelta(BaseModel):
    """Token/cost increment reported by the agent source or an operation."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    reasoning_tokens: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.reasoning_tokens

    def is_empty(self) -> bool:
        return self.total_tokens == 0 and self.cost == 0


class UsageTotals(BaseModel):
    model_config = ConfigDict(frozen=True)

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    reasoning_tokens: int = Field(default=0, ge=0)
    cost: float = Field(default=0.0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.reasoning_tokens

    def merged(self, delta: UsageDelta) -> "UsageTotals":
        return UsageTotals(
            input_tokens=self.input_tokens + delta.input_tokens,
            output_tokens=self.output_tokens + delta.output_tokens,
            reasoning_tokens=self.reasoning_tokens + delta.reasoning_tokens,
            cost=self.cost + delta.cost,
        )


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4) if text else 0
