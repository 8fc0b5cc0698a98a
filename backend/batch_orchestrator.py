"""
Batch Job Orchestrator.

Turns a stream of normalized entries into persisted WorkItem chunks and
runs the stages that consume them as an ordered chain:

- ChunkWriter buffers entries per destination group and writes a WorkItem
  every chunk_size entries, so memory stays bounded by
  (number of open groups x chunk_size) no matter how large the source is.
- StageChain runs stages strictly one after another. The first stage that
  raises stops the chain and the single failure handler is invoked; later
  stages never start.
- CancellationToken lets a running fetch, decode loop or chain stop at the
  next checkpoint.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterator, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from config import ImportSettings
from exceptions import SyncCancelledError
from models import WorkItem

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared by every step of one run."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Sync was cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SyncCancelledError(self.reason or "Sync was cancelled")


@dataclass
class PipelineContext:
    """State shared by all stages of one sync or mapping run."""
    session: Session
    state: Any  # SyncStateMachine
    batch_no: str
    settings: ImportSettings
    token: CancellationToken = field(default_factory=CancellationToken)
    # Free-form values handed from one stage to the next (counts, flags)
    values: dict = field(default_factory=dict)


class Stage(ABC):
    """One step of a chain. Subclasses implement run()."""

    name: str = "stage"

    @abstractmethod
    async def run(self, ctx: PipelineContext) -> None:
        """Execute the stage. Raise to abort the chain."""
        pass

    def __repr__(self):
        return f"<{self.__class__.__name__}({self.name})>"


@dataclass
class ChainResult:
    """Outcome of running a StageChain."""
    success: bool
    stages_run: int = 0
    failed_stage: Optional[str] = None
    error: Optional[str] = None


FailureHandler = Callable[[Exception], Awaitable[None] | None]


class StageChain:
    """
    Ordered list of stages with one shared failure handler.

    At most one stage runs at a time and a stage starts only after the
    previous one returned. Failure of any stage (including cancellation)
    aborts the remaining stages and calls on_failure exactly once.
    """

    def __init__(
        self,
        stages: Optional[list[Stage]] = None,
        on_failure: Optional[FailureHandler] = None,
        label: str = "chain",
    ):
        self.stages: list[Stage] = list(stages or [])
        self.on_failure = on_failure
        self.label = label

    def add(self, stage: Stage) -> "StageChain":
        self.stages.append(stage)
        return self

    def extend(self, stages: list[Stage]) -> "StageChain":
        self.stages.extend(stages)
        return self

    def __len__(self) -> int:
        return len(self.stages)

    async def run(self, ctx: PipelineContext) -> ChainResult:
        logger.info(f"[{self.label}] Starting chain with {len(self.stages)} stages (batch {ctx.batch_no})")
        stages_run = 0
        for index, stage in enumerate(self.stages, start=1):
            try:
                ctx.token.raise_if_cancelled()
                logger.debug(f"[{self.label}] Stage {index}/{len(self.stages)}: {stage.name}")
                await stage.run(ctx)
                stages_run += 1
            except Exception as e:
                logger.exception(f"[{self.label}] Stage {stage.name} failed: {e}")
                await self._handle_failure(e)
                return ChainResult(
                    success=False,
                    stages_run=stages_run,
                    failed_stage=stage.name,
                    error=str(e),
                )

        logger.info(f"[{self.label}] Chain finished ({stages_run} stages)")
        return ChainResult(success=True, stages_run=stages_run)

    async def _handle_failure(self, error: Exception) -> None:
        if self.on_failure is None:
            return
        result = self.on_failure(error)
        if asyncio.iscoroutine(result):
            await result


class ChunkWriter:
    """
    Buffers entries per key and persists them as WorkItems of chunk_size.

    Each key carries its own variables (group id, group name, ...), stored on
    every WorkItem written for it.
    """

    def __init__(
        self,
        session: Session,
        batch_no: str,
        chunk_size: int,
        title: str = "Processing import",
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self._session = session
        self.batch_no = batch_no
        self.chunk_size = chunk_size
        self.title = title
        self._buffers: dict[Any, list[dict]] = {}
        self._variables: dict[Any, dict] = {}
        self.items_written = 0
        self.entries_written = 0

    def add(self, key: Any, entry: dict, variables: Optional[dict] = None) -> None:
        """Buffer one entry; write a WorkItem once the key's buffer is full."""
        buffer = self._buffers.setdefault(key, [])
        if variables is not None:
            self._variables[key] = variables
        buffer.append(entry)
        if len(buffer) >= self.chunk_size:
            self.flush(key)

    def flush(self, key: Any) -> None:
        buffer = self._buffers.get(key)
        if not buffer:
            return
        variables = self._variables.get(key, {})
        item = WorkItem(
            title=f"{self.title}: {variables.get('group_name', key)}",
            batch_no=self.batch_no,
        )
        item.set_payload(buffer)
        item.set_variables(variables)
        self._session.add(item)
        self._session.commit()
        self.items_written += 1
        self.entries_written += len(buffer)
        self._buffers[key] = []

    def close(self) -> int:
        """Flush every partially filled buffer. Returns the number of WorkItems written."""
        for key in list(self._buffers):
            self.flush(key)
        self._buffers.clear()
        return self.items_written


def count_work_items(session: Session, batch_no: str) -> int:
    return session.scalar(
        select(func.count(WorkItem.id)).where(WorkItem.batch_no == batch_no)
    ) or 0


def iter_work_item_id_batches(session: Session, batch_no: str, size: int) -> Iterator[list[int]]:
    """Yield WorkItem ids of a batch in lists of at most size, in creation order."""
    batch: list[int] = []
    stmt = select(WorkItem.id).where(WorkItem.batch_no == batch_no).order_by(WorkItem.id)
    for item_id in session.scalars(stmt.execution_options(yield_per=500)):
        batch.append(item_id)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def load_work_items(session: Session, item_ids: list[int]) -> list[WorkItem]:
    if not item_ids:
        return []
    stmt = select(WorkItem).where(WorkItem.id.in_(item_ids)).order_by(WorkItem.id)
    return list(session.scalars(stmt))


def delete_work_items(session: Session, batch_no: str) -> int:
    """Remove whatever is left of a batch (used after failures)."""
    result = session.execute(delete(WorkItem).where(WorkItem.batch_no == batch_no))
    session.commit()
    return result.rowcount or 0
