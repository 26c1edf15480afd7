"""Linked social platform accounts."""

from marionette.accounts.service import AccountService

__all__ = ["AccountService"]
