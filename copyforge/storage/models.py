"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional


class LogStatus(Enum):
    """Outcome of one generation attempt."""
    SUCCESS = "success"
    FAILED = "failed"


class QueueStatus(Enum):
    """Lifecycle of a queued page."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_QUEUE_STATUSES = (QueueStatus.PENDING, QueueStatus.PROCESSING)
TERMINAL_QUEUE_STATUSES = (QueueStatus.COMPLETED, QueueStatus.FAILED)


@dataclass(frozen=True)
class GenerationLogRow:
    """Immutable record of one generation attempt.

    Append-only rows that make up the spend ledger. Failed attempts are
    recorded too, with zero tokens and zero cost.
    """
    post_id: int
    block_type: str
    status: LogStatus
    created_at: datetime
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    model: str = ""
    error_message: Optional[str] = None
    user_id: int = 0
    id: Optional[int] = None


@dataclass
class QueueEntry:
    """A "generate this page" job."""
    post_id: int
    status: QueueStatus
    scheduled_time: datetime
    queued_at: datetime
    updated_at: Optional[datetime] = None
    error: Optional[str] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    blocks: Optional[List[str]] = None

    def to_dict(self) -> Dict:
        return {
            "post_id": self.post_id,
            "status": self.status.value,
            "scheduled_time": self.scheduled_time.isoformat(),
            "queued_at": self.queued_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "error": self.error,
            "last_error": self.last_error,
            "retry_count": self.retry_count,
            "blocks": list(self.blocks) if self.blocks is not None else None,
        }


@dataclass
class Page:
    """A generated landing page and its block field values."""
    id: int
    title: str
    focus_keyword: str = ""
    topic: str = ""
    status: str = "draft"
    fields: Dict[str, object] = field(default_factory=dict)
    block_order: Optional[List[str]] = None
    block_timestamps: Dict[str, str] = field(default_factory=dict)
    auto_generated: bool = False
    generation_date: Optional[datetime] = None
    blocks_generated: int = 0
    blocks_failed: int = 0


@dataclass(frozen=True)
class ImageRecord:
    """A tagged media library image. Read-only to the matcher."""
    id: int
    tags: FrozenSet[str]
    title: str = ""
    is_library: bool = True
    is_default: bool = False
