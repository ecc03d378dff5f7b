from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence
from loguru import logger

from playsync.backend import Options
from playsync.config import Config
from playsync.connection import Backend
from playsync.dispatcher import RequestQueue
from playsync.errors import BackendUnavailable, UnmatchedEntity
from playsync.functions import now_ts
from playsync.mapper import Mapper
from playsync.storage import save_state
from playsync.watched import Observation


class RunMode(str, Enum):
    IMPORT = "import"
    EXPORT = "export"
    SYNC = "sync"


class RunState(str, Enum):
    FETCH = "fetch"
    MERGE = "merge"
    DIFF = "diff"
    DISPATCH = "dispatch"
    COMMIT = "commit"
    DONE = "done"


@dataclass
class RunReport:
    mode: RunMode
    status: bool = True
    state: RunState = RunState.FETCH
    backends: list[str] = field(default_factory=list)
    unavailable: list[str] = field(default_factory=list)
    full_resync: list[str] = field(default_factory=list)
    added: int = 0
    merged: int = 0
    diffs: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    dry_run: int = 0

    def summary(self) -> str:
        return (
            f"{self.mode.value} pass {'finished' if self.status else 'failed'}: "
            f"backends: {len(self.backends)}, unavailable: {len(self.unavailable)}, "
            f"new: {self.added}, merged: {self.merged}, diffs: {self.diffs}, "
            f"succeeded: {self.succeeded}, failed: {self.failed}, skipped: {self.skipped}"
            + (f", dry run: {self.dry_run}" if self.dry_run else "")
        )


def _item_id(item: Any) -> str | None:
    if isinstance(item, Observation):
        return item.id
    if isinstance(item, dict) and item.get("id") is not None:
        return str(item["id"])
    return None


class Orchestrator:
    """Runs one pass: fetch -> merge -> diff -> dispatch -> commit."""

    def __init__(self, config: Config, mapper: Mapper, backends: Sequence[Backend], state_file: str | None = None) -> None:
        self.config = config
        self.mapper = mapper
        self.backends = list(backends)
        self.state_file = state_file

    def fetch(self, backend: Backend) -> list[Any]:
        items: list[Any] = []
        token = None
        pages = 0
        while True:
            try:
                page = backend.client.fetch_library(backend.context, token)
            except Exception as e:
                raise BackendUnavailable(backend.name, f"Failed to fetch library: {e}") from e

            items.extend(page.items)
            pages += 1
            if not page.next_page_token:
                break
            token = page.next_page_token

        logger.info(f"[{backend.name}] Fetched {len(items)} items in {pages} pages")
        return items

    def run(self, mode: RunMode | str = RunMode.SYNC, dry_run: bool | None = None, force_full: bool = False) -> RunReport:
        mode = RunMode(mode)
        report = RunReport(mode=mode)
        dry_run = self.config.dry_run if dry_run is None else dry_run
        available = list(self.backends)

        logger.info(f"[System] Starting {mode.value} pass{' [DRYRUN]' if dry_run else ''} for {len(available)} backends")

        if mode in (RunMode.IMPORT, RunMode.SYNC):
            report.state = RunState.FETCH
            fetched: dict[str, list[Any]] = {}
            for backend in self.backends:
                try:
                    fetched[backend.name] = self.fetch(backend)
                except BackendUnavailable as e:
                    logger.error(f"{e}. Excluding it from this pass.")
                    report.unavailable.append(backend.name)
            available = [b for b in self.backends if b.name in fetched]
        report.backends = [b.name for b in available]

        if not available:
            logger.error(f"[System] No backends available, {mode.value} pass aborted")
            report.status = False
            report.state = RunState.DONE
            return report

        if mode in (RunMode.IMPORT, RunMode.SYNC):
            report.state = RunState.MERGE
            now = now_ts()
            for backend in available:
                items = fetched[backend.name]
                ingest = self.mapper.ingest(backend.name, items)
                report.added += ingest.added
                report.merged += ingest.merged
                report.skipped += ingest.skipped
                self.mapper.mark_missing(backend.name, [i for i in map(_item_id, items) if i], now)

        if mode in (RunMode.EXPORT, RunMode.SYNC):
            for backend in available:
                self._export(backend, report, dry_run, force_full)

        report.state = RunState.COMMIT
        if self.state_file and not dry_run:
            save_state(self.state_file, self.mapper.export_state())

        report.state = RunState.DONE
        logger.info(f"[System] {report.summary()}")
        return report

    def _export(self, backend: Backend, report: RunReport, dry_run: bool, force_full: bool) -> None:
        report.state = RunState.DIFF
        plan = self.mapper.plan_export(backend.name, self.config.export_threshold, force_full)
        report.diffs += plan.changes
        if plan.full:
            report.full_resync.append(backend.name)

        if not plan.items:
            logger.info(f"[{backend.name}] No changes needed")
            return

        report.state = RunState.DISPATCH
        queue = RequestQueue(max_workers=self.config.max_threads, timeout=self.config.run_timeout)
        opts = {Options.DRY_RUN: dry_run, Options.FULL_RESYNC: plan.full}
        response = backend.client.update_state(backend.context, plan.items, queue, opts)
        if not response.status:
            message = response.error.message if response.error else "unknown error"
            logger.error(f"[{backend.name}] Failed to prepare state changes: {message}")
            report.failed += len(plan.items)
            return

        report.skipped += response.extra.get("skipped", 0)
        report.dry_run += response.extra.get("dry_run", 0)

        outcomes = queue.run()

        report.state = RunState.COMMIT
        for outcome in outcomes:
            context = outcome.request.context
            title = context.get("item", {}).get("title")
            if not outcome.success:
                report.failed += 1
                logger.error(f"[{backend.name}] Failed to mark '{title}' as '{context.get('play_state')}': {outcome.error.message if outcome.error else ''}")
                continue

            try:
                self.mapper.commit(context["handle"], backend.name, context["watched"], context.get("progress"))
            except UnmatchedEntity as e:
                logger.warning(f"[{backend.name}] {e}")
                report.skipped += 1
                continue

            report.succeeded += 1
            logger.success(f"[{backend.name}] Marked '{title}' as '{context.get('play_state')}'")
