"""
RLS Guard - Error Types

Tool-fatal errors abort a run before any verdict is reported. Security
findings are never raised; they are collected into reports instead.
"""

from __future__ import annotations


class ToolFatalError(RuntimeError):
    """The tool could not produce a trustworthy verdict."""


class ConfigurationError(ToolFatalError):
    """Required configuration (env vars, paths) is missing or invalid."""


class DatabaseUnavailableError(ToolFatalError):
    """The database could not be reached, or the connection was lost mid-run."""


class DocumentError(ToolFatalError):
    """A JSON artifact (registry, snapshot) is missing or malformed."""


class MigrationSourceError(ToolFatalError):
    """Migration scripts could not be enumerated (missing dir, git failure)."""
