"""Execution reports submitted by clients."""

from marionette.reports.service import ExecutionReportService

__all__ = ["ExecutionReportService"]
