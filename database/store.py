"""
Report stores — where finished sessions go.

Implementations:
  - InMemoryReportStore (dict-based, single-process, no persistence)
  - FileReportStore     (one JSON document per session on disk)

The orchestrator only calls ``save_session`` once, at the end of a
session; nothing is read back mid-session.
"""
from __future__ import annotations

import asyncio
import structlog
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from models.schemas import ConversationTurn, SessionReport, TelemetrySample

logger = structlog.get_logger()


class ReportStore(ABC):
    """Interface that all report store backends must implement."""

    @abstractmethod
    async def save_session(self, report: SessionReport) -> None:
        """Persist the report together with its transcript and telemetry."""
        ...

    @abstractmethod
    async def get_report(self, session_id: str) -> Optional[SessionReport]:
        ...

    @abstractmethod
    async def list_reports(self, limit: int = 50) -> list[SessionReport]:
        """Most recent first."""
        ...

    async def get_conversation(self, session_id: str) -> list[ConversationTurn]:
        report = await self.get_report(session_id)
        return list(report.conversation_history) if report else []

    async def get_telemetry(self, session_id: str) -> list[TelemetrySample]:
        report = await self.get_report(session_id)
        return list(report.emotional_telemetry) if report else []


class InMemoryReportStore(ReportStore):

    def __init__(self):
        self._reports: dict[str, SessionReport] = {}

    async def save_session(self, report: SessionReport) -> None:
        self._reports[report.session_id] = report
        logger.info("session_report_saved", session_id=report.session_id,
                    backend="memory", score=report.score)

    async def get_report(self, session_id: str) -> Optional[SessionReport]:
        return self._reports.get(session_id)

    async def list_reports(self, limit: int = 50) -> list[SessionReport]:
        reports = sorted(self._reports.values(), key=lambda r: r.ended_at, reverse=True)
        return reports[:limit]


class FileReportStore(ReportStore):
    """
    Data layout:
      {data_dir}/
        {session_id}.json
    """

    def __init__(self, data_dir: str = "./data/reports"):
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        logger.info("file_report_store_initialized", data_dir=str(self._data_dir))

    def _file_path(self, session_id: str) -> Path:
        safe = "".join(c for c in session_id if c.isalnum() or c in "-_")
        if not safe:
            raise ValueError(f"invalid session id: {session_id!r}")
        return self._data_dir / f"{safe}.json"

    async def save_session(self, report: SessionReport) -> None:
        path = self._file_path(report.session_id)
        payload = report.model_dump_json(indent=2)
        await asyncio.to_thread(self._write, path, payload)
        logger.info("session_report_saved", session_id=report.session_id,
                    backend="file", path=str(path))

    @staticmethod
    def _write(path: Path, payload: str) -> None:
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(path)

    def _load(self, path: Path) -> Optional[SessionReport]:
        try:
            return SessionReport.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("report_load_error", path=str(path), error=str(e))
            return None

    async def get_report(self, session_id: str) -> Optional[SessionReport]:
        path = self._file_path(session_id)
        if not path.exists():
            return None
        return await asyncio.to_thread(self._load, path)

    async def list_reports(self, limit: int = 50) -> list[SessionReport]:
        def load_all() -> list[SessionReport]:
            reports = [self._load(p) for p in self._data_dir.glob("*.json")]
            return [r for r in reports if r is not None]

        reports = await asyncio.to_thread(load_all)
        reports.sort(key=lambda r: r.ended_at, reverse=True)
        return reports[:limit]


def create_report_store(backend: str = "memory", data_dir: str = "./data/reports") -> ReportStore:
    if backend == "file":
        return FileReportStore(data_dir)
    if backend == "memory":
        return InMemoryReportStore()
    raise ValueError(f"Unknown storage backend: {backend}")
