"""Marionette runner: the remote agent process that executes browser workflows."""

__version__ = "0.1.0"
