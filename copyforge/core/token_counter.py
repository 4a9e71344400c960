"""
Token usage reported by the model endpoint.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one completed call.

    Exact counts as reported upstream; nothing is estimated locally.
    """
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def zero(cls) -> "TokenUsage":
        """Usage recorded for an attempt that produced nothing billable."""
        return cls(prompt_tokens=0, completion_tokens=0)
