"""
Token usage tracking for conductor.
Accumulates the usage reported by each model call, by model and by
operation (agent turns vs. history compression).
"""

from dataclasses import dataclass, field
from typing import Optional

from .schemas import Usage


@dataclass
class OperationUsage:
    """Token usage for one operation type."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    calls: int = 0
    model_breakdown: dict = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class UsageTracker:
    """Tracks token usage across a conversation."""

    def __init__(self):
        self.records: list[Usage] = []
        self.operations: dict[str, OperationUsage] = {}

    @property
    def total_tokens(self) -> int:
        return sum(u.total_tokens for u in self.records)

    @property
    def last(self) -> Optional[Usage]:
        return self.records[-1] if self.records else None

    def add(self, usage: Usage) -> None:
        """Record the usage of one model call."""
        self.records.append(usage)

        op = self.operations.setdefault(usage.operation_type, OperationUsage())
        op.prompt_tokens += usage.prompt_tokens
        op.completion_tokens += usage.completion_tokens
        op.calls += 1

        model = usage.model or "unknown"
        op.model_breakdown[model] = op.model_breakdown.get(model, 0) + usage.total_tokens

    def get_breakdown(self) -> dict:
        """Per-operation totals."""
        return {
            name: {
                "tokens": op.total_tokens,
                "calls": op.calls,
                "models": dict(op.model_breakdown),
            }
            for name, op in self.operations.items()
        }

    def format_summary(self) -> str:
        """Get a formatted usage summary."""
        lines = ["Usage Summary", "=" * 40]

        for name, data in self.get_breakdown().items():
            lines.append(f"\n{name}:")
            lines.append(f"  Calls: {data['calls']}")
            lines.append(f"  Tokens: {data['tokens']:,}")
            for model, tokens in data["models"].items():
                lines.append(f"    {model}: {tokens:,}")

        lines.append(f"\n{'=' * 40}")
        lines.append(f"TOTAL: {self.total_tokens:,} tokens")

        return "\n".join(lines)
