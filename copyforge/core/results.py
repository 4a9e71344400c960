"""
Result value objects returned by the orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple


class RunState(Enum):
    """Lifecycle of a generation run."""
    IDLE = "idle"
    GATED = "gated"
    GENERATING = "generating"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class BlockFailure:
    block: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"block": self.block, "error": self.error}


@dataclass(frozen=True)
class BlockGeneration:
    """Outcome of generating one block."""
    post_id: int
    block_type: str
    fields: Dict[str, object]
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    model: str
    generation_time: float
    log_id: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "postId": self.post_id,
            "blockType": self.block_type,
            "content": dict(self.fields),
            "metadata": {
                "promptTokens": self.prompt_tokens,
                "completionTokens": self.completion_tokens,
                "totalTokens": self.total_tokens,
                "cost": self.cost,
                "model": self.model,
                "generationTime": self.generation_time,
                "logId": self.log_id,
            },
        }


@dataclass(frozen=True)
class BulkGenerationResult:
    """Outcome of generating every block of a page.

    success_count + len(failed_blocks) always equals total_blocks.
    """
    post_id: int
    total_blocks: int
    success_count: int
    failed_blocks: Tuple[BlockFailure, ...] = field(default_factory=tuple)
    total_tokens: int = 0
    total_cost: float = 0.0
    total_time: float = 0.0
    state: RunState = RunState.COMPLETED

    def __post_init__(self):
        if self.success_count + len(self.failed_blocks) != self.total_blocks:
            raise ValueError("success_count + failed blocks must equal total_blocks")

    @property
    def success_rate(self) -> float:
        if self.total_blocks == 0:
            return 0.0
        return round(self.success_count / self.total_blocks * 100, 2)

    @property
    def fully_succeeded(self) -> bool:
        return not self.failed_blocks

    def failure_summary(self) -> str:
        return ", ".join(f"{f.block}: {f.error}" for f in self.failed_blocks)

    def to_dict(self) -> Dict[str, object]:
        failed: List[Dict[str, str]] = [f.to_dict() for f in self.failed_blocks]
        return {
            "postId": self.post_id,
            "totalBlocks": self.total_blocks,
            "successCount": self.success_count,
            "failedBlocks": failed,
            "totalTokens": self.total_tokens,
            "totalCost": round(self.total_cost, 6),
            "totalTime": round(self.total_time, 2),
            "successRate": self.success_rate,
            "state": self.state.value,
        }
