"""
chatusage - File Usage Store

Legacy JSON layout, one directory per session:

    <base>/session_mapping.json            {"counter", "mapping", "last_updated"}
    <base>/daily_usage_stats.json          {"YYYY-MM-DD": {...}}
    <base>/session_001/2024-01-15_10-30-00_msg-abcdef12.json
    <base>/session_001/session_summary.json

Folder names come from a counter keyed by session id and stored in the
mapping document, so they survive restarts. Every document is written to
a temporary file and renamed into place. Re-persisting the same turn
replaces its entry in the session summary instead of counting it twice.
"""

import asyncio
import json
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.errors import PersistenceError
from ..observability.logging import get_logger
from ..usage.aggregator import (
    DailyUsageStats,
    MessageSummary,
    SessionAnalytics,
    SessionSummary,
)
from ..usage.models import UsageLog, utcnow
from .base import DEFAULT_SESSION_LOG_LIMIT, AggregatingUsageStore


logger = get_logger(__name__)

MAPPING_FILE = "session_mapping.json"
SUMMARY_FILE = "session_summary.json"
DAILY_STATS_FILE = "daily_usage_stats.json"
SESSION_DIR_PATTERN = re.compile(r"^session_\d{3,}$")


def log_file_name(log: UsageLog) -> str:
    """YYYY-MM-DD_HH-MM-SS_msg-<first 8 of message id>.json"""
    stamp = log.timestamp.strftime("%Y-%m-%d_%H-%M-%S")
    return f"{stamp}_msg-{log.message_id[:8]}.json"


def _read_json(path: Path) -> Optional[Any]:
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


class FileUsageStore(AggregatingUsageStore):
    """
    Usage store writing per-turn JSON documents.

    Usage:
        store = FileUsageStore("logs/chat-usage")
        await store.persist(log)
        analytics = await store.session_analytics(log.session_id)
    """

    name = "file"

    def __init__(self, base_path: str = "logs/chat-usage", **kwargs):
        super().__init__(**kwargs)
        self.base_path = Path(base_path)
        self._lock = asyncio.Lock()

    # ============================================================
    # Session mapping
    # ============================================================

    def _load_mapping(self) -> Dict[str, Any]:
        data = _read_json(self.base_path / MAPPING_FILE) or {}
        return {
            "counter": int(data.get("counter", 0)),
            "mapping": dict(data.get("mapping") or {}),
        }

    def _session_folder(self, session_id: str) -> str:
        """Folder for a session, allocating the next number if new."""
        state = self._load_mapping()
        folder = state["mapping"].get(session_id)
        if folder:
            return folder

        counter = state["counter"] + 1
        folder = f"session_{counter:03d}"
        state["mapping"][session_id] = folder
        _write_json_atomic(self.base_path / MAPPING_FILE, {
            "counter": counter,
            "mapping": state["mapping"],
            "last_updated": utcnow().isoformat(),
        })
        return folder

    def get_session_mapping(self) -> Dict[str, str]:
        """Session id to folder name."""
        return self._load_mapping()["mapping"]

    # ============================================================
    # Writes
    # ============================================================

    async def persist(self, log: UsageLog) -> str:
        async with self._lock:
            try:
                await asyncio.to_thread(self._persist_sync, log)
            except OSError as e:
                raise PersistenceError(self.name, f"Failed to write usage log: {e}") from e
        return log.id

    def _persist_sync(self, log: UsageLog) -> None:
        session_dir = self.base_path / self._session_folder(log.session_id)
        log_path = session_dir / log_file_name(log)
        _write_json_atomic(log_path, log.to_dict())
        self._update_session_summary(session_dir, log)
        logger.debug("Chat usage log written", path=str(log_path))

    def _update_session_summary(self, session_dir: Path, log: UsageLog) -> None:
        existing = self._read_summary(session_dir)
        messages = [m for m in existing.messages if m.message_id != log.message_id] if existing else []
        messages.append(MessageSummary.from_log(log))
        summary = SessionSummary.from_messages(log.session_id, messages)
        _write_json_atomic(session_dir / SUMMARY_FILE, summary.to_dict())

    def _read_summary(self, session_dir: Path) -> Optional[SessionSummary]:
        data = _read_json(session_dir / SUMMARY_FILE)
        if not data:
            return None
        return SessionSummary.from_messages(
            data.get("session_id", ""),
            [MessageSummary.from_dict(m) for m in data.get("messages") or []],
        )

    async def delete_log(self, log_id: str) -> bool:
        async with self._lock:
            return await asyncio.to_thread(self._delete_sync, log_id)

    def _delete_sync(self, log_id: str) -> bool:
        for session_dir in self._session_dirs():
            for path in self._log_files(session_dir):
                data = self._read_log_file(path)
                if data is None or data.get("id") != log_id:
                    continue
                path.unlink()
                log = UsageLog.from_dict(data)
                existing = self._read_summary(session_dir)
                remaining = [
                    m for m in (existing.messages if existing else [])
                    if m.message_id != log.message_id
                ]
                summary = SessionSummary.from_messages(log.session_id, remaining)
                _write_json_atomic(session_dir / SUMMARY_FILE, summary.to_dict())
                return True
        return False

    # ============================================================
    # Reads
    # ============================================================

    def _session_dirs(self) -> List[Path]:
        if not self.base_path.exists():
            return []
        return sorted(
            p for p in self.base_path.iterdir()
            if p.is_dir() and SESSION_DIR_PATTERN.match(p.name)
        )

    def _log_files(self, session_dir: Path) -> List[Path]:
        return sorted(
            p for p in session_dir.glob("*_msg-*.json")
            if p.name != SUMMARY_FILE
        )

    def _read_log_file(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            return _read_json(path)
        except (OSError, ValueError) as e:
            logger.warning("Skipping unreadable usage log", path=str(path), error=str(e))
            return None

    def _load_logs_sync(self, session_dir: Optional[Path] = None) -> List[UsageLog]:
        dirs = [session_dir] if session_dir is not None else self._session_dirs()
        logs = []
        for directory in dirs:
            for path in self._log_files(directory):
                data = self._read_log_file(path)
                if data is None:
                    continue
                try:
                    logs.append(UsageLog.from_dict(data))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed usage log", path=str(path), error=str(e))
        return logs

    async def _load_logs(self) -> List[UsageLog]:
        return await asyncio.to_thread(self._load_logs_sync)

    async def session_analytics(
        self,
        session_id: str,
        limit: int = DEFAULT_SESSION_LOG_LIMIT,
    ) -> SessionAnalytics:
        """Logs from the session's folder plus its stored summary document."""
        mapping = await asyncio.to_thread(self.get_session_mapping)
        folder = mapping.get(session_id)
        if folder is None:
            return SessionAnalytics(session_id=session_id)

        session_dir = self.base_path / folder
        logs = await asyncio.to_thread(self._load_logs_sync, session_dir)
        logs.sort(key=lambda log: log.timestamp)
        summary = await asyncio.to_thread(self._read_summary, session_dir)

        return SessionAnalytics(
            session_id=session_id,
            logs=logs[-limit:] if limit > 0 else [],
            summary=summary or self.aggregator.session_summary(session_id, logs),
        )

    async def _save_daily_stats(self, stats: DailyUsageStats) -> None:
        async with self._lock:
            await asyncio.to_thread(self._save_daily_stats_sync, stats)

    def _save_daily_stats_sync(self, stats: DailyUsageStats) -> None:
        path = self.base_path / DAILY_STATS_FILE
        data = _read_json(path) or {}
        entry = stats.to_dict()
        entry["updated_at"] = datetime.now().astimezone().isoformat()
        data[stats.day.isoformat()] = entry
        _write_json_atomic(path, data)
