from __future__ import annotations

from dataclasses import dataclass, field

from planforge.util.coerce import as_int, as_optional_int, as_str


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_write_tokens": self.cache_write_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> TokenUsage:
        return cls(
            input_tokens=as_int(data.get("input_tokens")),
            output_tokens=as_int(data.get("output_tokens")),
            cache_read_tokens=as_int(data.get("cache_read_tokens")),
            cache_write_tokens=as_int(data.get("cache_write_tokens")),
        )

    def add(self, other: TokenUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_write_tokens += other.cache_write_tokens


@dataclass(slots=True)
class ModelUsage:
    model: str
    tokens: TokenUsage = field(default_factory=TokenUsage)

    def to_dict(self) -> dict[str, object]:
        return {"model": self.model, "tokens": self.tokens.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ModelUsage:
        raw_tokens = data.get("tokens")
        return cls(
            model=as_str(data.get("model"), "unknown"),
            tokens=(
                TokenUsage.from_dict(raw_tokens) if isinstance(raw_tokens, dict) else TokenUsage()
            ),
        )


@dataclass(slots=True)
class UsageMetrics:
    """Usage reported by an agent run: tokens, per-model breakdown, turns and wall time."""

    tokens: TokenUsage = field(default_factory=TokenUsage)
    model_breakdown: list[ModelUsage] = field(default_factory=list)
    turns: int | None = None
    tool_calls: int | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "tokens": self.tokens.to_dict(),
            "model_breakdown": [item.to_dict() for item in self.model_breakdown],
            "turns": self.turns,
            "tool_calls": self.tool_calls,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: object) -> UsageMetrics | None:
        if not isinstance(data, dict):
            return None
        raw_tokens = data.get("tokens")
        raw_breakdown = data.get("model_breakdown")
        breakdown = (
            [ModelUsage.from_dict(item) for item in raw_breakdown if isinstance(item, dict)]
            if isinstance(raw_breakdown, list)
            else []
        )
        return cls(
            tokens=(
                TokenUsage.from_dict(raw_tokens) if isinstance(raw_tokens, dict) else TokenUsage()
            ),
            model_breakdown=breakdown,
            turns=as_optional_int(data.get("turns")),
            tool_calls=as_optional_int(data.get("tool_calls")),
            duration_ms=as_optional_int(data.get("duration_ms")),
        )


def merge_metrics(current: UsageMetrics | None, extra: UsageMetrics | None) -> UsageMetrics | None:
    if extra is None:
        return current
    if current is None:
        return extra
    merged = UsageMetrics.from_dict(current.to_dict()) or UsageMetrics()
    merged.tokens.add(extra.tokens)
    by_model = {item.model: item for item in merged.model_breakdown}
    for item in extra.model_breakdown:
        if item.model in by_model:
            by_model[item.model].tokens.add(item.tokens)
        else:
            copy = ModelUsage.from_dict(item.to_dict())
            merged.model_breakdown.append(copy)
            by_model[copy.model] = copy
    for name in ("turns", "tool_calls", "duration_ms"):
        extra_value = getattr(extra, name)
        if extra_value is not None:
            setattr(merged, name, (getattr(merged, name) or 0) + extra_value)
    return merged
