"""Marionette: job coordination for remote browser-automation agents."""

__version__ = "0.1.0"
