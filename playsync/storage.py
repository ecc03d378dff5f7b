import os
import json
import shutil
from datetime import datetime
from typing import Dict, List
from loguru import logger
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from playsync.watched import BackendMetadata, Entity, MediaKind

STATE_VERSION = "v01"

_metadata_adapter = TypeAdapter(Dict[str, BackendMetadata])


class PersistedRecord(BaseModel):
    """One row per entity. Per-backend metadata is stored as a serialized blob."""
    id: str
    kind: MediaKind
    title: str | None = None
    year: int | None = None
    show_title: str | None = None
    season: int | None = None
    episode: int | None = None
    guids: Dict[str, str] = Field(default_factory=dict)
    show_guids: Dict[str, str] = Field(default_factory=dict)
    watched: bool = False
    progress: int = 0
    updated_at: int = 0
    watched_at: int = 0
    unwatched_at: int = 0
    isolated: bool = False
    metadata: str = "{}"


class StateSnapshot(BaseModel):
    version: str = STATE_VERSION
    records: List[PersistedRecord] = Field(default_factory=list)


def record_from_entity(entity: Entity) -> PersistedRecord:
    return PersistedRecord(
        id=entity.key,
        kind=entity.kind,
        title=entity.title,
        year=entity.year,
        show_title=entity.show_title,
        season=entity.season,
        episode=entity.episode,
        guids=dict(entity.guids),
        show_guids=dict(entity.show_guids),
        watched=entity.watched,
        progress=entity.progress,
        updated_at=entity.updated_at,
        watched_at=entity.watched_at,
        unwatched_at=entity.unwatched_at,
        isolated=entity.isolated,
        metadata=_metadata_adapter.dump_json(entity.per_backend).decode("utf-8"),
    )


def entity_from_record(record: PersistedRecord) -> Entity:
    return Entity(
        key=record.id,
        kind=record.kind,
        title=record.title,
        year=record.year,
        show_title=record.show_title,
        season=record.season,
        episode=record.episode,
        guids=dict(record.guids),
        show_guids=dict(record.show_guids),
        watched=record.watched,
        progress=record.progress,
        updated_at=record.updated_at,
        watched_at=record.watched_at,
        unwatched_at=record.unwatched_at,
        isolated=record.isolated,
        per_backend=_metadata_adapter.validate_json(record.metadata or "{}"),
    )


# ---------------------------------------------------------
# STATE FILE
# ---------------------------------------------------------
def load_state(path: str) -> StateSnapshot:
    if not os.path.exists(path):
        return StateSnapshot()

    # Check for empty file
    if os.path.getsize(path) == 0:
        logger.warning(f"[System] State file {path} is empty. Returning empty state.")
        return StateSnapshot()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return StateSnapshot(**data)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"[System] Failed to decode state file: {e}")
        # Backup corrupted file
        backup_file = path + ".corrupted"
        try:
            shutil.copy2(path, backup_file)
            logger.info(f"[System] Corrupted state file backed up to {backup_file}")
        except OSError as backup_error:
            logger.error(f"[System] Failed to backup corrupted state file: {backup_error}")
        return StateSnapshot()


def save_state(path: str, snapshot: StateSnapshot) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    # Direct write to avoid Docker bind mount issues (Errno 16 Device or resource busy)
    with open(path, "w", encoding="utf-8") as f:
        f.write(snapshot.model_dump_json(indent=4))
    logger.debug(f"[System] Saved {len(snapshot.records)} records to {path}")


def backup_state(path: str, backup_dir: str, now: datetime | None = None) -> str | None:
    if not os.path.exists(path):
        logger.warning(f"[System] Nothing to back up, {path} does not exist")
        return None

    now = now or datetime.now()
    os.makedirs(backup_dir, exist_ok=True)
    name, ext = os.path.splitext(os.path.basename(path))
    target = os.path.join(backup_dir, f"{name}.{now.strftime('%Y%m%d%H%M%S')}{ext or '.json'}")
    shutil.copy2(path, target)
    logger.info(f"[System] State backed up to {target}")
    return target
