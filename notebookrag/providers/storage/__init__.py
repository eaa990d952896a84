"""aiosqlite-backed stores sharing one SQLite database file."""

from notebookrag.providers.storage.sqlite_chat_store import SQLiteChatStore
from notebookrag.providers.storage.sqlite_document_store import SQLiteDocumentStore
from notebookrag.providers.storage.sqlite_job_store import SQLiteJobStore
from notebookrag.providers.storage.sqlite_report_store import SQLiteReportStore

__all__ = ["SQLiteChatStore", "SQLiteDocumentStore", "SQLiteJobStore", "SQLiteReportStore"]
