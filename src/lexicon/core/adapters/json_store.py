"""File-backed document store.

Persists scan results, aggregate counters and player profiles as plain JSON
files under ``config.data_dir``:

- ``sessions/<session>.json``: the session's records, newest first
- ``analytics.json``: ``total_results``, ``total_scans`` and ``top_sources``
- ``players.json``: display names keyed by session id

Reads are forgiving, in the same way the old gallery loader was: a missing
or corrupt file reads as empty, and entries that no longer validate as a
:class:`PipelineResult` are skipped rather than failing the whole list.
Writes go through a temporary file and ``os.replace`` so a crash never leaves
a half-written document behind.

All file I/O runs in a worker thread.  Writes are serialised by one
:class:`asyncio.Lock` per store, which is enough because the store is only
ever shared between coroutines of a single event loop.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from lexicon.core.collaborators import DocumentStore, adapter_registry
from lexicon.core.config import LexiconConfig
from lexicon.core.errors import PersistenceError
from lexicon.core.models import (
    Analytics,
    LeaderboardEntry,
    PipelineResult,
    PlayerProfile,
)

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_-]")


def _session_filename(session_id: str) -> str:
    """Map an arbitrary session id onto a safe, collision-free filename."""
    readable = _SAFE_NAME.sub("_", session_id)[:48]
    digest = hashlib.blake2b(session_id.encode("utf-8"), digest_size=6).hexdigest()
    return f"{readable}-{digest}.json"


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError):
        logger.warning("Unreadable document %s; treating as empty.", path)
        return default
    if not isinstance(data, type(default)):
        return default
    return data


def _write_json(path: Path, data: Any) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)
    os.replace(tmp_path, path)


class JsonDocumentStore(DocumentStore):
    """JSON-file document store rooted at ``config.data_dir``."""

    name = "json"

    def __init__(self, config: LexiconConfig, *, root: Path | None = None) -> None:
        self._root = Path(root) if root is not None else config.data_dir
        self._sessions_dir = self._root / "sessions"
        self._analytics_path = self._root / "analytics.json"
        self._players_path = self._root / "players.json"
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _session_path(self, session_id: str) -> Path:
        return self._sessions_dir / _session_filename(session_id)

    def _load_records(self, session_id: str) -> list[dict]:
        raw = _read_json(self._session_path(session_id), [])
        return [entry for entry in raw if isinstance(entry, dict)]

    def _save_record_sync(self, session_id: str, record: PipelineResult) -> None:
        self._sessions_dir.mkdir(parents=True, exist_ok=True)

        entries = self._load_records(session_id)
        entries = [e for e in entries if e.get("id") != record.id]
        entries.insert(0, record.model_dump(mode="json"))
        _write_json(self._session_path(session_id), entries)

        stats = _read_json(self._analytics_path, {})
        top_sources = stats.get("top_sources")
        if not isinstance(top_sources, dict):
            top_sources = {}
        source = record.attributes.source_label
        top_sources[source] = int(top_sources.get(source, 0)) + 1
        _write_json(
            self._analytics_path,
            {
                "total_results": int(stats.get("total_results", 0)) + 1,
                "total_scans": int(stats.get("total_scans", 0)) + 1,
                "top_sources": top_sources,
            },
        )

    async def save_record(self, session_id: str, record: PipelineResult) -> None:
        async with self._lock:
            try:
                await asyncio.to_thread(self._save_record_sync, session_id, record)
            except OSError as exc:
                raise PersistenceError(f"Failed to save record {record.id}: {exc}") from exc
        logger.info("Saved record %s for session %s", record.id, session_id)

    def _list_records_sync(self, session_id: str) -> list[PipelineResult]:
        records: list[PipelineResult] = []
        for entry in self._load_records(session_id):
            try:
                records.append(PipelineResult.model_validate(entry))
            except ValidationError:
                logger.warning("Skipping malformed record in session %s", session_id)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    async def list_records(self, session_id: str) -> list[PipelineResult]:
        try:
            return await asyncio.to_thread(self._list_records_sync, session_id)
        except OSError as exc:
            raise PersistenceError(f"Failed to list records: {exc}") from exc

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def get_analytics(self) -> Analytics:
        data = await asyncio.to_thread(_read_json, self._analytics_path, {})
        try:
            return Analytics.model_validate(data)
        except ValidationError:
            return Analytics()

    # ------------------------------------------------------------------
    # Players
    # ------------------------------------------------------------------

    def _set_player_name_sync(self, session_id: str, player_name: str) -> PlayerProfile:
        self._root.mkdir(parents=True, exist_ok=True)
        players = _read_json(self._players_path, {})
        players[session_id] = player_name
        _write_json(self._players_path, players)
        return PlayerProfile(
            session_id=session_id,
            player_name=player_name,
            result_count=len(self._load_records(session_id)),
        )

    async def set_player_name(self, session_id: str, player_name: str) -> PlayerProfile:
        async with self._lock:
            try:
                return await asyncio.to_thread(
                    self._set_player_name_sync, session_id, player_name
                )
            except OSError as exc:
                raise PersistenceError(f"Failed to save player name: {exc}") from exc

    def _get_player_profile_sync(self, session_id: str) -> PlayerProfile | None:
        players = _read_json(self._players_path, {})
        count = len(self._load_records(session_id))
        if session_id not in players and count == 0:
            return None
        return PlayerProfile(
            session_id=session_id,
            player_name=str(players.get(session_id) or "Anonymous"),
            result_count=count,
        )

    async def get_player_profile(self, session_id: str) -> PlayerProfile | None:
        return await asyncio.to_thread(self._get_player_profile_sync, session_id)

    def _get_leaderboard_sync(self, limit: int) -> list[LeaderboardEntry]:
        players = _read_json(self._players_path, {})
        ranked = []
        for session_id, player_name in players.items():
            ranked.append((len(self._load_records(session_id)), str(player_name)))
        # Highest count first; ties broken alphabetically for a stable order.
        ranked.sort(key=lambda item: (-item[0], item[1]))
        return [
            LeaderboardEntry(rank=index, player_name=name, result_count=count)
            for index, (count, name) in enumerate(ranked[:limit], start=1)
        ]

    async def get_leaderboard(self, limit: int) -> list[LeaderboardEntry]:
        return await asyncio.to_thread(self._get_leaderboard_sync, limit)


adapter_registry.register("document", "json", JsonDocumentStore)
