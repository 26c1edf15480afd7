"""SQLModel schemas for Marionette storage.

This module defines the tables for:
- Job queue records
- Workflow and micro action catalogue (global, admin-owned)
- Remote agent clients and their install-time key material
- Linked social platform accounts
- Execution reports submitted by clients after each run

Ownership:
- Job, Client, Account, InstallerDownload, ExecutionReport are scoped by owner_id
- Workflow and MicroAction are global
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Index, String, Text, text
from sqlmodel import Field, SQLModel


def utcnow_naive() -> datetime:
    """Get current UTC time as naive datetime (for TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(UTC).replace(tzinfo=None)


# =============================================================================
# Enums
# =============================================================================


class JobStatus(StrEnum):
    """Lifecycle status of a queued job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


CANCELLABLE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobType(StrEnum):
    """Kinds of work a job carries."""

    AUTH = "auth"
    VERIFY_ACCOUNT = "verify_account"
    ACTION = "action"


class Platform(StrEnum):
    """Supported social platforms."""

    TWITTER = "twitter"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"


class WorkflowType(StrEnum):
    """Workflow families."""

    AUTH = "auth"
    POST = "post"
    LIKE = "like"
    COMMENT = "comment"
    FOLLOW = "follow"
    UNFOLLOW = "unfollow"
    SHARE = "share"
    REACT = "react"
    STORY = "story"
    CUSTOM = "custom"


class MicroActionType(StrEnum):
    """Primitive step kinds understood by the agent runtime."""

    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    WAIT = "wait"
    SCROLL = "scroll"
    UPLOAD = "upload"
    EXTRACT = "extract"
    SCREENSHOT = "screenshot"
    SUBMIT = "submit"
    ASSERT = "assert"


class ClientStatus(StrEnum):
    """Status a client reports in its heartbeat."""

    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"


class AccountStatus(StrEnum):
    """Verification state of a linked platform account."""

    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    LOGIN_FAILED = "login_failed"
    NEEDS_REAUTH = "needs_reauth"


# =============================================================================
# Base Mixin
# =============================================================================


class TimestampMixin(SQLModel):
    """Mixin for created/updated timestamps."""

    created_at: datetime = Field(
        default_factory=utcnow_naive,
        description="When this record was created",
    )
    updated_at: datetime = Field(
        default_factory=utcnow_naive,
        description="When this record was last updated",
        sa_column_kwargs={"onupdate": utcnow_naive},
    )


# =============================================================================
# Job - Queue record
# =============================================================================


class Job(TimestampMixin, table=True):
    """A unit of work executed by exactly one remote client."""

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_owner_status_created", "owner_id", "status", "created_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: UUID = Field(index=True, description="User who owns this job")
    job_type: str = Field(
        default=JobType.ACTION.value,
        max_length=64,
        index=True,
        description="Kind of work (auth, verify_account, action)",
    )
    status: str = Field(
        default=JobStatus.QUEUED.value,
        sa_column=Column(
            String(32),
            nullable=False,
            index=True,
            server_default=text("'queued'"),
        ),
        description="Job lifecycle status",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
        description="Work envelope: workflow_id, account_id, client_id, params",
    )
    workflow_id: UUID | None = Field(
        default=None,
        index=True,
        description="Workflow referenced by the payload (denormalized for lookups)",
    )
    client_id: str | None = Field(
        default=None,
        max_length=64,
        index=True,
        description="client_id the job is pinned to, or null for any client of the owner",
    )
    retry_of: UUID | None = Field(
        default=None, description="Job this one was manually retried from"
    )
    claimed_by: str | None = Field(
        default=None,
        max_length=64,
        index=True,
        description="client_id of the client that claimed this job",
    )
    retry_count: int = Field(default=0, ge=0, description="Number of retries consumed")
    max_retries: int = Field(default=3, ge=0, description="Retry budget")

    scheduled_for: datetime | None = Field(
        default=None, description="Earliest time the job may be claimed"
    )
    expires_at: datetime | None = Field(default=None, description="Job is dead after this time")
    claimed_at: datetime | None = Field(default=None, description="Last claim time")
    processed_at: datetime | None = Field(
        default=None, description="When the job reached a terminal status"
    )

    result: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
        description="Outcome reported by the agent",
    )
    error_kind: str | None = Field(default=None, max_length=32, description="ErrorKind on failure")
    error_message: str | None = Field(
        default=None,
        sa_type=Text,
        description="Sanitized failure description",
    )

    @property
    def account_id(self) -> str | None:
        value = self.payload.get("account_id")
        return str(value) if value else None

    def __repr__(self) -> str:
        return f"<Job {self.id} type={self.job_type} status={self.status}>"


# =============================================================================
# Workflow catalogue
# =============================================================================


class MicroAction(TimestampMixin, table=True):
    """A reusable primitive browser step."""

    __tablename__ = "micro_actions"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=255, index=True, description="Human readable name")
    description: str | None = Field(default=None, sa_type=Text)
    type: str = Field(max_length=32, description="MicroActionType")
    platform: str | None = Field(
        default=None, max_length=32, index=True, description="Platform, or null for generic"
    )
    params: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
        description="Default step parameters (selector, text, url, ...)",
    )
    version: int = Field(default=1, ge=1, description="Bumped on every update")
    is_active: bool = Field(default=True, index=True)

    def __repr__(self) -> str:
        return f"<MicroAction {self.name} type={self.type}>"


class Workflow(TimestampMixin, table=True):
    """An ordered list of micro action references for one platform task."""

    __tablename__ = "workflows"
    __table_args__ = (Index("ix_workflows_platform_type", "platform", "type"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str = Field(max_length=255, index=True)
    description: str | None = Field(default=None, sa_type=Text)
    platform: str = Field(max_length=32, description="Platform")
    type: str = Field(max_length=32, description="WorkflowType")
    steps: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
        description="[{micro_action_id, params_override}]",
    )
    requires_auth: bool = Field(default=False, description="Run the auth workflow first")
    auth_workflow_id: UUID | None = Field(
        default=None, description="Workflow used as an authentication prelude"
    )
    is_active: bool = Field(default=True, index=True)

    def __repr__(self) -> str:
        return f"<Workflow {self.name} platform={self.platform} type={self.type}>"


# =============================================================================
# Clients - remote agent processes
# =============================================================================


class Client(TimestampMixin, table=True):
    """A registered remote agent process owned by a user."""

    __tablename__ = "clients"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: UUID = Field(index=True, description="User who installed this client")
    client_id: str = Field(
        max_length=64,
        unique=True,
        index=True,
        description="Public client identifier (client_<hex>)",
    )
    client_name: str = Field(max_length=255)
    platform: str = Field(max_length=32, description="Operating system family")
    os_version: str | None = Field(default=None, max_length=64)
    agent_version: str | None = Field(default=None, max_length=32)

    api_token_hash: str = Field(max_length=64, description="SHA-256 hex of the API token")
    token_expires_at: datetime = Field(description="API token expiry")

    status: str = Field(default=ClientStatus.OFFLINE.value, max_length=32)
    last_seen: datetime | None = Field(default=None)
    last_heartbeat: datetime | None = Field(default=None)

    wrapped_encryption_key: str | None = Field(
        default=None,
        sa_type=Text,
        description="Client key wrapped under a session key (never plaintext)",
    )
    wrapped_key_session: str | None = Field(
        default=None,
        max_length=64,
        description="Fingerprint of the session the cached wrapped key belongs to",
    )
    total_jobs: int = Field(default=0, ge=0)

    def __repr__(self) -> str:
        return f"<Client {self.client_id} status={self.status}>"


class InstallerDownload(TimestampMixin, table=True):
    """Install-time record carrying the client's plaintext key material."""

    __tablename__ = "installer_downloads"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: UUID = Field(index=True)
    client_id: str = Field(max_length=64, index=True)
    platform: str = Field(max_length=32)
    meta: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False),
        description="Installer metadata, including encryption_key (base64)",
    )


# =============================================================================
# Accounts - linked social platform identities
# =============================================================================


class Account(TimestampMixin, table=True):
    """A social platform account whose secret only a client can decrypt."""

    __tablename__ = "accounts"
    __table_args__ = (
        Index("ix_accounts_owner_platform_username", "owner_id", "platform", "username", unique=True),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: UUID = Field(index=True)
    platform: str = Field(max_length=32)
    username: str = Field(max_length=255)
    encrypted_secret: str = Field(
        sa_type=Text,
        description="Account password encrypted under the client key",
    )
    client_id: str = Field(max_length=64, index=True, description="Client holding the key")
    status: str = Field(default=AccountStatus.PENDING_VERIFICATION.value, max_length=32)
    last_verified_at: datetime | None = Field(default=None)

    def __repr__(self) -> str:
        return f"<Account {self.platform}:{self.username} status={self.status}>"


# =============================================================================
# Execution reports - per-run step timings submitted by clients
# =============================================================================


class ExecutionReport(SQLModel, table=True):
    """Step-by-step record of one run of a job on a client."""

    __tablename__ = "execution_reports"
    __table_args__ = (
        Index("ix_execution_reports_owner_started", "owner_id", "started_at"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_id: UUID = Field(index=True)
    owner_id: UUID = Field(index=True)
    client_id: str = Field(max_length=64, index=True)
    workflow_id: UUID | None = Field(default=None, index=True)
    platform: str | None = Field(default=None, max_length=32, index=True)
    workflow_type: str | None = Field(default=None, max_length=32)
    agent_version: str | None = Field(default=None, max_length=32)

    success: bool = Field(default=False, index=True)
    started_at: datetime
    finished_at: datetime
    duration_ms: float = Field(default=0.0, ge=0)
    total_steps: int = Field(default=0, ge=0)
    successful_steps: int = Field(default=0, ge=0)
    failed_steps: int = Field(default=0, ge=0)

    steps: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
        description="[{phase, index, name, type, duration_ms, success, code, error}]",
    )
    error: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON, nullable=True),
        description="{kind, code, message} of the failure that ended the run",
    )
    created_at: datetime = Field(default_factory=utcnow_naive)

    @property
    def success_rate(self) -> float:
        if not self.total_steps:
            return 0.0
        return round(self.successful_steps / self.total_steps * 100, 2)

    def __repr__(self) -> str:
        return f"<ExecutionReport {self.id} job={self.job_id} success={self.success}>"
