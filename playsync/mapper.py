from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping
from loguru import logger
from pydantic import ValidationError

from playsync.errors import UnmatchedEntity
from playsync.functions import now_ts
from playsync.storage import (
    StateSnapshot,
    entity_from_record,
    record_from_entity,
)
from playsync.watched import (
    PROGRESS_MARGIN,
    Entity,
    GuidPair,
    Observation,
    WatchedPolicy,
    fold,
    identity_pairs,
    merge,
    new_entity,
    preferred_pair,
)


@dataclass
class IngestReport:
    backend: str
    added: int = 0
    merged: int = 0
    stale: int = 0
    skipped: int = 0
    conflicts: int = 0
    unmatched: int = 0
    duplicates: int = 0
    joined: int = 0

    @property
    def total(self) -> int:
        return self.added + self.merged + self.stale + self.duplicates


@dataclass
class DiffItem:
    handle: int
    entity: Entity
    watched: bool
    progress: int | None = None


@dataclass
class ExportPlan:
    backend: str
    full: bool
    changes: int
    items: list[DiffItem] = field(default_factory=list)


@dataclass
class PruneReport:
    records: int = 0
    entities: int = 0


class Mapper:
    """
    In-memory reconciliation store.

    Entities live in an arena keyed by integer handle. Two auxiliary indexes point
    into it: (scheme, value) -> handle for cross-backend identity, and
    (backend, item id) -> handle for re-scans of the same backend.
    """

    def __init__(
        self,
        policy: WatchedPolicy = WatchedPolicy.PLAYED_SINCE_RESET,
        sync_progress: bool = False,
        episodes_disable_guid: bool = True,
    ) -> None:
        self.policy = policy
        self.sync_progress = sync_progress
        self.episodes_disable_guid = episodes_disable_guid

        self._entities: dict[int, Entity] = {}
        self._next_handle = 1
        self._guid_index: dict[GuidPair, int] = {}
        self._local_index: dict[tuple[str, str], int] = {}
        self._keys: set[str] = set()

    @classmethod
    def from_config(cls, config: Any) -> "Mapper":
        return cls(
            policy=config.watched_policy,
            sync_progress=config.sync_progress,
            episodes_disable_guid=config.episodes_disable_guid,
        )

    def __len__(self) -> int:
        return len(self._entities)

    def __iter__(self) -> Iterator[tuple[int, Entity]]:
        return iter(list(self._entities.items()))

    def get(self, handle: int) -> Entity | None:
        return self._entities.get(handle)

    def find(self, backend: str, item_id: str) -> int | None:
        return self._local_index.get((backend, str(item_id)))

    # ---------------------------------------------------------
    # INGEST
    # ---------------------------------------------------------
    def ingest(self, backend: str, observations: Iterable[Observation | Mapping[str, Any]]) -> IngestReport:
        report = IngestReport(backend=backend)

        for raw in observations:
            try:
                observation = raw if isinstance(raw, Observation) else Observation.model_validate(raw)
            except ValidationError as e:
                report.skipped += 1
                logger.debug(f"[{backend}] Skipping malformed item: {e.errors()[0].get('msg')}")
                continue

            self._ingest_one(backend, observation, report)

        if report.skipped:
            logger.warning(f"[{backend}] Skipped {report.skipped} malformed items")
        if report.conflicts:
            logger.warning(f"[{backend}] {report.conflicts} items matched an entity of a different kind and were kept separate")
        if report.joined:
            logger.info(f"[{backend}] Joined {report.joined} entities that turned out to be the same media")

        logger.info(
            f"[{backend}] Ingested {report.total} items "
            f"(new: {report.added}, merged: {report.merged}, stale: {report.stale}, duplicates: {report.duplicates}, no guids: {report.unmatched})"
        )
        return report

    def _ingest_one(self, backend: str, observation: Observation, report: IngestReport) -> None:
        pairs = identity_pairs(observation, self.episodes_disable_guid)

        handle = self._local_index.get((backend, observation.id))
        if handle is not None and self._entities[handle].kind != observation.kind:
            # Backend reused the id for a different kind of item
            self._unlink(handle, backend, observation.id)
            handle = None

        hits = sorted({self._guid_index[p] for p in pairs if p in self._guid_index})
        same = [h for h in hits if self._entities[h].kind == observation.kind]

        if handle is None and hits and not same:
            other = self._entities[hits[0]]
            logger.warning(
                f"[{backend}] '{observation.title}' shares a guid with '{other.name()}' "
                f"but is a {observation.kind.value}, not a {other.kind.value}. Keeping it separate."
            )
            key = self._make_key(pairs, backend, observation.id, isolated=True)
            self._add(new_entity(key, backend, observation, isolated=True), backend, observation.id)
            report.conflicts += 1
            report.added += 1
            return

        if handle is None or not self._entities[handle].isolated:
            # The observation may bridge entities that were only known under different guids
            candidates = sorted(set(same) | ({handle} if handle is not None else set()))
            if candidates:
                handle = candidates[0]
                for other in candidates[1:]:
                    self._fold(handle, other)
                    report.joined += 1

        if handle is None:
            key = self._make_key(pairs, backend, observation.id)
            handle = self._add(new_entity(key, backend, observation), backend, observation.id)
            self._register(handle, pairs)
            report.added += 1
            if not pairs:
                report.unmatched += 1
            return

        entity = self._entities[handle]
        meta = entity.per_backend.get(backend)
        if meta is not None and meta.id != observation.id and meta.missing_since is None:
            # Another copy of the same media on this backend (e.g. 4K and 1080p). The first copy is the record.
            self._local_index[(backend, observation.id)] = handle
            report.duplicates += 1
            return

        if meta is not None and meta.id == observation.id and observation.observed_at < meta.observed_at:
            meta.missing_since = None
            report.stale += 1
            return

        merge(entity, observation, backend, self.policy)
        self._local_index[(backend, observation.id)] = handle
        if not entity.isolated:
            self._register(handle, pairs)
        report.merged += 1

    def _add(self, entity: Entity, backend: str | None = None, item_id: str | None = None) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._entities[handle] = entity
        self._keys.add(entity.key)
        if backend is not None and item_id is not None:
            self._local_index[(backend, item_id)] = handle
        return handle

    def _register(self, handle: int, pairs: Iterable[GuidPair]) -> None:
        for pair in pairs:
            self._guid_index.setdefault(pair, handle)

    def _fold(self, handle: int, other: int) -> None:
        """Join entity other into handle and point both indexes at handle."""
        entity = self._entities[handle]
        source = self._entities[other]
        logger.debug(f"[System] Joining '{source.name()}' ({source.key}) into '{entity.name()}' ({entity.key})")

        fold(entity, source, self.policy)
        for local, h in list(self._local_index.items()):
            if h == other:
                self._local_index[local] = handle
        for pair, h in list(self._guid_index.items()):
            if h == other:
                self._guid_index[pair] = handle
        self._remove(other)

    def _unlink(self, handle: int, backend: str, item_id: str) -> None:
        entity = self._entities[handle]
        self._local_index.pop((backend, item_id), None)
        meta = entity.per_backend.get(backend)
        if meta is not None and meta.id == item_id:
            del entity.per_backend[backend]
        if not entity.per_backend:
            self._remove(handle)

    def _remove(self, handle: int) -> None:
        entity = self._entities.pop(handle)
        self._keys.discard(entity.key)
        for pair in [p for p, h in self._guid_index.items() if h == handle]:
            del self._guid_index[pair]
        for local in [k for k, h in self._local_index.items() if h == handle]:
            del self._local_index[local]

    def _make_key(self, pairs: list[GuidPair], backend: str, item_id: str, isolated: bool = False) -> str:
        pair = preferred_pair(pairs)
        key = f"{pair[0]}://{pair[1]}" if pair else f"{backend}/{item_id}"
        if isolated or key in self._keys:
            key = f"{key}@{backend}/{item_id}"

        candidate, n = key, 1
        while candidate in self._keys:
            n += 1
            candidate = f"{key}#{n}"
        return candidate

    def mark_missing(self, backend: str, seen_ids: Iterable[str], now: int | None = None) -> int:
        """Flag records a complete scan of backend no longer lists. Returns newly flagged count."""
        now = now if now is not None else now_ts()
        seen = {str(x) for x in seen_ids}
        flagged = 0
        for entity in self._entities.values():
            meta = entity.per_backend.get(backend)
            if meta is None:
                continue
            if meta.id in seen:
                meta.missing_since = None
            elif meta.missing_since is None:
                meta.missing_since = now
                flagged += 1

        if flagged:
            logger.debug(f"[{backend}] {flagged} items are no longer listed by the backend")
        return flagged

    # ---------------------------------------------------------
    # DIFF
    # ---------------------------------------------------------
    def diff(self, target: str, include_missing: bool = False, full: bool = False) -> list[DiffItem]:
        """
        Items whose state on target differs from canonical state.

        Guidless and isolated entities never take part. include_missing also emits
        matched entities that target has no record for; full emits every matched
        entity target knows about, changed or not.
        """
        items: list[DiffItem] = []
        for handle, entity in self._entities.items():
            if entity.isolated or not identity_pairs(entity, self.episodes_disable_guid):
                continue

            progress = None
            if self.sync_progress and not entity.watched and entity.progress >= PROGRESS_MARGIN:
                progress = entity.progress

            meta = entity.per_backend.get(target)
            if meta is None:
                if include_missing:
                    items.append(DiffItem(handle, entity, entity.watched, progress))
                continue

            if meta.missing_since is not None:
                continue

            if full or meta.watched != entity.watched:
                items.append(DiffItem(handle, entity, entity.watched, progress))
                continue

            if progress is not None and abs(meta.progress - progress) >= PROGRESS_MARGIN:
                items.append(DiffItem(handle, entity, entity.watched, progress))

        return items

    def plan_export(self, target: str, threshold: int, force_full: bool = False) -> ExportPlan:
        changes = self.diff(target)
        if force_full or (threshold > 0 and len(changes) >= threshold):
            if not force_full:
                logger.info(
                    f"[{target}] {len(changes)} changes reached the export threshold ({threshold}). Running full resync."
                )
            return ExportPlan(target, True, len(changes), self.diff(target, include_missing=True, full=True))

        return ExportPlan(target, False, len(changes), changes)

    def commit(self, handle: int, backend: str, watched: bool, progress: int | None = None, now: int | None = None) -> Entity:
        """Record a successful push. Only call after the backend accepted the change."""
        entity = self._entities.get(handle)
        if entity is None:
            raise UnmatchedEntity(f"Unknown entity handle {handle}")

        meta = entity.per_backend.get(backend)
        if meta is None:
            raise UnmatchedEntity(f"[{backend}] '{entity.name()}' has no record for this backend")

        meta.watched = watched
        meta.observed_at = now if now is not None else now_ts()
        if progress is not None:
            meta.progress = progress
        elif watched:
            meta.progress = 0
        return entity

    # ---------------------------------------------------------
    # MAINTENANCE
    # ---------------------------------------------------------
    def prune(self, backends: Iterable[str], now: int | None = None, grace: int = 259_200) -> PruneReport:
        """Drop records of removed backends and items missing for longer than grace seconds."""
        now = now if now is not None else now_ts()
        configured = set(backends)
        report = PruneReport()

        for handle in list(self._entities):
            entity = self._entities[handle]
            for name in list(entity.per_backend):
                meta = entity.per_backend[name]
                expired = meta.missing_since is not None and now - meta.missing_since > grace
                if name in configured and not expired:
                    continue

                del entity.per_backend[name]
                self._local_index.pop((name, meta.id), None)
                report.records += 1
                logger.debug(
                    f"[{name}] Pruned '{entity.name()}' "
                    f"({'backend removed' if name not in configured else 'not found since ' + str(meta.missing_since)})"
                )

            if not entity.per_backend:
                self._remove(handle)
                report.entities += 1

        logger.info(f"[System] Pruned {report.records} backend records and {report.entities} entities")
        return report

    def reindex(self) -> int:
        """Rebuild both indexes from the arena. Returns the number of guid pairs indexed."""
        self._guid_index.clear()
        self._local_index.clear()
        self._keys = {entity.key for entity in self._entities.values()}

        for handle in sorted(self._entities):
            entity = self._entities[handle]
            for name, meta in entity.per_backend.items():
                self._local_index.setdefault((name, meta.id), handle)
            if not entity.isolated:
                self._register(handle, identity_pairs(entity, self.episodes_disable_guid))

        logger.debug(f"[System] Indexed {len(self._guid_index)} guid pairs for {len(self._entities)} entities")
        return len(self._guid_index)

    # ---------------------------------------------------------
    # PERSISTENCE
    # ---------------------------------------------------------
    def export_state(self) -> StateSnapshot:
        return StateSnapshot(records=[record_from_entity(self._entities[h]) for h in sorted(self._entities)])

    def import_state(self, snapshot: StateSnapshot) -> int:
        self._entities.clear()
        self._next_handle = 1
        for record in snapshot.records:
            self._add(entity_from_record(record))

        self.reindex()
        logger.info(f"[System] Loaded {len(self._entities)} entities from state")
        return len(self._entities)
