"""
Generation orchestrator.

Composes the prompt builder, client, parser, page store, image matcher and
spend ledger into the single-block and whole-page generation paths, and
drives queued pages through them.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .errors import CopyforgeError, GenerationError, PageNotFoundError, UnknownBlockError
from .gate import ConcurrencyGate, ProgressTracker, RateTimer
from .images import ImageMatcher
from .ledger import SpendLedger
from .parser import ContentParser
from .prompts import PromptBuilder
from .queue import GenerationQueue
from .results import BlockFailure, BlockGeneration, BulkGenerationResult, RunState
from .token_counter import TokenUsage
from ..config.catalog import BlockCatalog
from ..config.loader import Settings
from ..sdk.openai_client import GenerationClient
from ..storage.db import initialize_schema
from ..storage.models import LogStatus, QueueEntry, QueueStatus
from ..storage.pages import SqliteMediaStore, SqlitePageStore
from ..storage.queue_store import SqliteJobStore
from ..storage.repository import GenerationLogRepository

logger = logging.getLogger(__name__)

SEO_BLOCK = "seo_metadata"


class GenerationOrchestrator:
    """Runs block generation for pages.

    Every collaborator is injected; `from_settings` wires the SQLite-backed
    defaults.
    """

    def __init__(
        self,
        pages,
        catalog: BlockCatalog,
        client: GenerationClient,
        ledger: SpendLedger,
        queue: GenerationQueue,
        parser: Optional[ContentParser] = None,
        prompts: Optional[PromptBuilder] = None,
        matcher: Optional[ImageMatcher] = None,
        gate: Optional[ConcurrencyGate] = None,
        progress: Optional[ProgressTracker] = None,
        rate_timer: Optional[RateTimer] = None,
        clock: Callable[[], datetime] = datetime.now,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.pages = pages
        self.catalog = catalog
        self.client = client
        self.ledger = ledger
        self.queue = queue
        self.parser = parser or ContentParser()
        self.prompts = prompts or PromptBuilder(catalog)
        self.matcher = matcher
        self.gate = gate or ConcurrencyGate(queue.store, clock=clock)
        self.progress = progress or ProgressTracker(queue.store, clock=clock)
        self.rate_timer = rate_timer or RateTimer(queue.store)
        self.clock = clock
        self.timer = timer

    @classmethod
    def from_settings(cls, settings: Settings) -> "GenerationOrchestrator":
        """Build an orchestrator over the SQLite stores named in settings."""
        db_path = settings.db_path
        initialize_schema(db_path)
        catalog = BlockCatalog(settings.catalog_path)
        matcher = None
        if settings.images.auto_assign:
            matcher = ImageMatcher(
                SqliteMediaStore(db_path),
                default_image_id=settings.images.default_image_id,
            )
        job_store = SqliteJobStore(db_path)
        return cls(
            pages=SqlitePageStore(db_path),
            catalog=catalog,
            client=GenerationClient(settings.openai),
            ledger=SpendLedger(GenerationLogRepository(db_path), settings.budget),
            queue=GenerationQueue(
                job_store,
                pacing_seconds=settings.queue.pacing_seconds,
                max_retries=settings.queue.max_retries,
                stale_seconds=settings.bulk.marker_ttl_seconds,
            ),
            prompts=PromptBuilder(catalog, settings.business),
            matcher=matcher,
            gate=ConcurrencyGate(
                job_store,
                max_active=settings.bulk.max_concurrent,
                ttl_seconds=settings.bulk.marker_ttl_seconds,
            ),
            progress=ProgressTracker(job_store, ttl_seconds=settings.bulk.marker_ttl_seconds),
        )

    def _load_page(self, post_id: int):
        page = self.pages.get(post_id)
        if page is None:
            raise PageNotFoundError(f"Page {post_id} not found")
        return page

    def resolve_block_order(self, page, blocks: Optional[List[str]] = None) -> List[str]:
        """Explicit blocks, else the page's own order, else the catalog default.

        seo_metadata is always generated first.
        """
        if blocks:
            order = list(blocks)
        elif page.block_order:
            order = list(page.block_order)
        else:
            order = self.catalog.default_order()
        if SEO_BLOCK not in order:
            order.insert(0, SEO_BLOCK)
        return order

    def generate_block(
        self,
        post_id: int,
        block_type: str,
        context: Optional[Dict[str, str]] = None,
        user_id: int = 0,
    ) -> BlockGeneration:
        """Generate, parse, persist and log one block.

        Raises:
            PageNotFoundError: If the page doesn't exist
            BudgetExceeded: If the monthly budget is spent (nothing is logged)
            CopyforgeError: Any failure after the budget check, after a
                failed row has been logged
        """
        page = self._load_page(post_id)
        self.ledger.check_budget()

        started = self.timer()
        try:
            if not self.parser.supports(block_type):
                raise UnknownBlockError(f"Unknown block type: {block_type}")
            page_context = self.prompts.build_context(page, context)
            prompt = self.prompts.render(block_type, page_context)
            reply = self.client.generate(prompt["user"], system_message=prompt["system"])
            fields = self.parser.parse(block_type, reply.content)
            fields.update(self._assign_images(page, block_type, fields, page_context))
            self.pages.save_block_fields(post_id, block_type, fields, self.clock())
            cost = self.ledger.cost(reply.prompt_tokens, reply.completion_tokens, reply.model)
        except CopyforgeError as e:
            self._log_failure(post_id, block_type, e.message, user_id)
            raise
        except Exception as e:
            self._log_failure(post_id, block_type, str(e), user_id)
            raise GenerationError(f"Failed to generate {block_type}: {e}") from e

        log_id = self.ledger.log(
            post_id,
            block_type,
            LogStatus.SUCCESS,
            usage=TokenUsage(reply.prompt_tokens, reply.completion_tokens),
            cost=cost,
            model=reply.model,
            user_id=user_id,
        )
        elapsed = round(self.timer() - started, 2)
        logger.info(
            "event=block.generated | post_id=%s | block=%s | tokens=%d | cost=%.6f | seconds=%.2f",
            post_id, block_type, reply.total_tokens, cost, elapsed,
        )
        return BlockGeneration(
            post_id=post_id,
            block_type=block_type,
            fields=fields,
            prompt_tokens=reply.prompt_tokens,
            completion_tokens=reply.completion_tokens,
            total_tokens=reply.total_tokens,
            cost=cost,
            model=reply.model,
            generation_time=elapsed,
            log_id=log_id,
        )

    def _log_failure(self, post_id: int, block_type: str, message: str, user_id: int) -> None:
        logger.error(
            "event=block.failed | post_id=%s | block=%s | error=%s",
            post_id, block_type, message,
        )
        self.ledger.log(
            post_id,
            block_type,
            LogStatus.FAILED,
            model=self.client.config.model,
            error_message=message,
            user_id=user_id,
        )

    def _assign_images(self, page, block_type: str, fields: Dict, context: Dict[str, str]) -> Dict:
        """Pick library images for image-bearing blocks that have none yet."""
        if self.matcher is None:
            return {}

        assigned: Dict = {}
        if block_type == "hero" and not page.fields.get("hero_image"):
            match_context = {
                "focus_keyword": context.get("focus_keyword", ""),
                "topic": page.topic,
                "page_title": page.title,
            }
            image_id = self.matcher.find_match(match_context)
            if image_id is not None:
                assigned["hero_image"] = image_id
                assigned["hero_image_alt"] = self.matcher.alt_text(image_id, match_context)

        elif block_type == "process":
            for step in fields.get("process_steps", []):
                if step.get("step_image"):
                    continue
                step_context = {
                    "focus_keyword": context.get("focus_keyword", ""),
                    "topic": step.get("step_title", ""),
                    "page_title": page.title,
                }
                image_id = self.matcher.find_match(step_context)
                if image_id is not None:
                    step["step_image"] = image_id
                    step["step_image_alt"] = self.matcher.alt_text(image_id, step_context)

        return assigned

    def generate_all_blocks(
        self,
        post_id: int,
        user_id: int = 0,
        blocks: Optional[List[str]] = None,
    ) -> BulkGenerationResult:
        """Generate every block of a page in order, continuing past failures.

        Raises:
            PageNotFoundError: If the page doesn't exist
            RateLimitError: If the user already has the maximum number of
                concurrent runs (nothing is logged)
            BudgetExceeded: If the monthly budget is spent (nothing is logged)
        """
        page = self._load_page(post_id)

        self._mark_state(post_id, user_id, RunState.GATED)
        try:
            token = self.gate.acquire(user_id, post_id)
        except CopyforgeError as e:
            self._mark_state(post_id, user_id, RunState.BLOCKED, e.message)
            raise
        try:
            self.ledger.check_budget()
        except CopyforgeError as e:
            self.gate.release(user_id, token)
            self._mark_state(post_id, user_id, RunState.BLOCKED, e.message)
            logger.warning("event=bulk.blocked | post_id=%s | user_id=%s", post_id, user_id)
            raise

        order = self.resolve_block_order(page, blocks)
        total = len(order)
        started = self.timer()
        completed: List[str] = []
        failures: List[BlockFailure] = []
        total_tokens = 0
        total_cost = 0.0
        logger.info("event=bulk.started | post_id=%s | blocks=%d", post_id, total)

        try:
            for index, block_type in enumerate(order):
                self._report(post_id, user_id, block_type, index, total, started, completed, failures)
                try:
                    generation = self.generate_block(post_id, block_type, user_id=user_id)
                except CopyforgeError as e:
                    failures.append(BlockFailure(block_type, e.message))
                    continue
                completed.append(block_type)
                total_tokens += generation.total_tokens
                total_cost += generation.cost
            self._report(post_id, user_id, None, total, total, started, completed, failures)
        finally:
            self.gate.release(user_id, token)
            self.progress.clear(post_id, user_id)

        result = BulkGenerationResult(
            post_id=post_id,
            total_blocks=total,
            success_count=len(completed),
            failed_blocks=tuple(failures),
            total_tokens=total_tokens,
            total_cost=round(total_cost, 6),
            total_time=round(self.timer() - started, 2),
            state=RunState.PARTIALLY_FAILED if failures else RunState.COMPLETED,
        )
        logger.info(
            "event=bulk.finished | post_id=%s | success=%d | failed=%d | cost=%.6f",
            post_id, result.success_count, len(failures), result.total_cost,
        )
        return result

    def _report(self, post_id, user_id, current, index, total, started, completed, failures) -> None:
        elapsed = self.timer() - started
        done = len(completed) + len(failures)
        remaining = total - done
        eta = round(elapsed / done * remaining) if done else None
        self.progress.update(post_id, user_id, {
            "state": RunState.GENERATING.value,
            "currentBlock": current,
            "currentBlockIndex": index,
            "totalBlocks": total,
            "completionPercentage": round(done / total * 100) if total else 100,
            "timeElapsed": round(elapsed),
            "estimatedTimeRemaining": eta,
            "completedBlocks": list(completed),
            "failedBlocks": [f.to_dict() for f in failures],
        })

    def _mark_state(self, post_id, user_id, state: RunState, error: Optional[str] = None) -> None:
        """Record a non-running state unless another run of the page is generating."""
        current = self.progress.get(post_id, user_id)
        if current and current.get("state") == RunState.GENERATING.value:
            return
        record = {"state": state.value}
        if error:
            record["error"] = error
        self.progress.update(post_id, user_id, record)

    def get_progress(self, post_id: int, user_id: int = 0) -> Optional[dict]:
        return self.progress.get(post_id, user_id)

    def process_queued_page(self, post_id: int) -> Optional[QueueEntry]:
        """Run one queued job.

        Returns:
            The job after processing, or None if no job exists for post_id
        """
        entry = self.queue.entry(post_id)
        if entry is None:
            logger.warning("event=queue.missing_job | post_id=%s", post_id)
            return None

        now = self.clock()
        pacing = self.queue.pacing_seconds
        if self.queue.is_paused():
            self.queue.reschedule(post_id, now + timedelta(seconds=pacing))
            return self.queue.entry(post_id)

        ready, wait = self.rate_timer.ready(now, pacing)
        if not ready:
            self.queue.reschedule(post_id, now + timedelta(seconds=wait))
            return self.queue.entry(post_id)

        page = self.pages.get(post_id)
        if page is None:
            self.queue.set_status(post_id, QueueStatus.FAILED, "Page not found")
            return self.queue.entry(post_id)
        if not (page.focus_keyword or "").strip():
            self.queue.set_status(post_id, QueueStatus.FAILED, "Page has no focus keyword")
            return self.queue.entry(post_id)

        self.queue.set_status(post_id, QueueStatus.PROCESSING)
        self.rate_timer.mark(now)
        try:
            result = self.generate_all_blocks(post_id, user_id=0, blocks=entry.blocks)
            if result.fully_succeeded:
                self.pages.mark_generated(
                    post_id,
                    self.clock(),
                    blocks_generated=result.success_count,
                    blocks_failed=0,
                )
                self.queue.set_status(post_id, QueueStatus.COMPLETED)
            else:
                self.queue.set_status(
                    post_id,
                    QueueStatus.FAILED,
                    f"Generation failed: {result.failure_summary()}",
                )
        except Exception as e:
            logger.error("event=queue.job_failed | post_id=%s | error=%s", post_id, e)
            self.queue.set_status(post_id, QueueStatus.FAILED, str(e))
        return self.queue.entry(post_id)

    def run_due(self, now: Optional[datetime] = None) -> List[QueueEntry]:
        """Process every job that is due. One scheduler tick."""
        processed = []
        for entry in self.queue.due(now):
            outcome = self.process_queued_page(entry.post_id)
            if outcome is not None:
                processed.append(outcome)
        return processed
