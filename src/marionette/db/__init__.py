"""Database models and session management."""

from marionette.db.connection import (
    SessionFactory,
    create_tables,
    dispose_engine,
    get_engine,
    get_session,
    make_session_factory,
)
from marionette.db.models import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    Account,
    AccountStatus,
    Client,
    ExecutionReport,
    ClientStatus,
    InstallerDownload,
    Job,
    JobStatus,
    JobType,
    MicroAction,
    MicroActionType,
    Platform,
    Workflow,
    WorkflowType,
    utcnow_naive,
)

__all__ = [
    "CANCELLABLE_STATUSES",
    "TERMINAL_STATUSES",
    "Account",
    "AccountStatus",
    "Client",
    "ExecutionReport",
    "ClientStatus",
    "InstallerDownload",
    "Job",
    "JobStatus",
    "JobType",
    "MicroAction",
    "MicroActionType",
    "Platform",
    "SessionFactory",
    "Workflow",
    "WorkflowType",
    "create_tables",
    "dispose_engine",
    "get_engine",
    "get_session",
    "make_session_factory",
    "utcnow_naive",
]
