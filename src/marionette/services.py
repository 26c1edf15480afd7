"""Service wiring.

All services share one session factory; the API and the arq worker build
the same graph through ``build_services``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from marionette.accounts.service import AccountService
from marionette.clients.registry import ClientRegistry
from marionette.config import Settings, settings as default_settings
from marionette.crypto.broker import CredentialBroker
from marionette.db.connection import SessionFactory, get_session
from marionette.jobs.queue import JobQueue
from marionette.reports.service import ExecutionReportService
from marionette.workflows.resolver import WorkflowResolver


@dataclass
class Services:
    registry: ClientRegistry
    queue: JobQueue
    resolver: WorkflowResolver
    accounts: AccountService
    broker: CredentialBroker
    reports: ExecutionReportService


def build_services(
    session_factory: SessionFactory | None = None,
    settings: Settings | None = None,
) -> Services:
    cfg = settings or default_settings
    factory = session_factory or get_session

    registry = ClientRegistry(
        factory,
        staleness_threshold=timedelta(seconds=cfg.client_staleness_seconds),
        token_ttl=timedelta(days=cfg.client_token_ttl_days),
    )
    queue = JobQueue(
        factory,
        registry,
        default_ttl=timedelta(days=cfg.job_ttl_days),
        default_max_retries=cfg.job_max_retries,
    )
    resolver = WorkflowResolver(factory)
    accounts = AccountService(
        factory, queue, resolver, verification_ttl=timedelta(days=cfg.job_ttl_days)
    )
    return Services(
        registry=registry,
        queue=queue,
        resolver=resolver,
        accounts=accounts,
        broker=CredentialBroker(factory),
        reports=ExecutionReportService(factory),
    )
