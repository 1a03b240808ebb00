"""
RLS Guard - Security governance gates for Supabase Postgres.

Shared library behind the migration linter, the invariant checker, the
policy drift detector, the definer registry reconciler and the destructive
attack harness in ``tools/``.
"""

__version__ = "0.4.0"
