"""
Persistence layer — finished session reports.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (one JSON document per session on disk)

Quick start:
  from database import create_report_store
  store = create_report_store("file", "./data/reports")
  await store.save_session(report)
"""
from database.store import (
    ReportStore, InMemoryReportStore, FileReportStore, create_report_store,
)

__all__ = [
    "ReportStore", "InMemoryReportStore", "FileReportStore", "create_report_store",
]
