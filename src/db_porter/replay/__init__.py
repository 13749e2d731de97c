"""Statement replay: split a script and execute it statement by statement.

Usage:
    from db_porter.replay import replay_script, split_statements, execute_statements
"""

from db_porter.replay.executor import (
    ReplayResult,
    StatementError,
    execute_statements,
    replay_script,
)
from db_porter.replay.splitter import split_statements

__all__ = [
    "split_statements",
    "execute_statements",
    "replay_script",
    "ReplayResult",
    "StatementError",
]
