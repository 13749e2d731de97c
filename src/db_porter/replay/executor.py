"""Execute split statements one by one against a target database.

Each statement runs on its own (autocommit), so a failure is recorded and
the replay moves on.  Statements that fail because the object already
exists are counted as skipped, which makes replaying the same script twice
harmless.

Usage:
    async with await open_connection(url) as conn:
        result = await replay_script(Path("schema.sql").read_text(), conn)
    print(result.format_report())
"""

import logging
import re
from collections.abc import Iterable

import psycopg
from psycopg import AsyncConnection
from pydantic import BaseModel, Field

from db_porter.replay.splitter import split_statements
from db_porter.sql import error_summary

logger = logging.getLogger(__name__)

# duplicate_table, duplicate_object
ALREADY_EXISTS_CODES = frozenset({"42P07", "42710"})

STATEMENT_PREFIX_LENGTH = 100

# Primary keys are created inline with the table; a standalone one conflicts.
_STANDALONE_PRIMARY_KEY = re.compile(
    r"^ALTER\s+TABLE\b[^;]*\bADD\s+CONSTRAINT\b[^;]*\bPRIMARY\s+KEY\b",
    re.IGNORECASE,
)


class StatementError(BaseModel):
    """A statement that failed during replay."""

    statement: str  # first STATEMENT_PREFIX_LENGTH characters
    message: str
    code: str | None = None


class ReplayResult(BaseModel):
    """Outcome of replaying a script.

    Attributes:
        executed_count: Statements that ran successfully.
        skipped_count: Statements skipped (object already exists, or a
            standalone primary key).
        errors: Every other failure, in execution order.
    """

    executed_count: int = 0
    skipped_count: int = 0
    errors: list[StatementError] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def format_report(self, max_errors: int = 5) -> str:
        """Summarize counts and the first *max_errors* failures."""
        lines = [
            f"Executed: {self.executed_count}",
            f"Skipped: {self.skipped_count}",
            f"Errors: {len(self.errors)}",
        ]
        for error in self.errors[:max_errors]:
            code = f" [{error.code}]" if error.code else ""
            lines.append(f"  - {error.statement}...{code}: {error.message}")
        if len(self.errors) > max_errors:
            lines.append(f"  ... and {len(self.errors) - max_errors} more")
        return "\n".join(lines)


def is_standalone_primary_key(statement: str) -> bool:
    return bool(_STANDALONE_PRIMARY_KEY.match(statement))


def is_already_exists(error: psycopg.Error) -> bool:
    """True when *error* reports an object that already exists."""
    return error.sqlstate in ALREADY_EXISTS_CODES or "already exists" in str(error)


async def execute_statements(
    statements: Iterable[str],
    conn: AsyncConnection,
) -> ReplayResult:
    """Run *statements* in order, one at a time.

    The connection should be in autocommit mode so that each statement
    commits or fails on its own.

    Args:
        statements: Output of ``split_statements()``.
        conn: Open psycopg async connection to the target.

    Returns:
        ``ReplayResult`` with executed, skipped and failed statements.

    Raises:
        ConnectionError: If the connection is lost during replay.
    """
    result = ReplayResult()

    for statement in statements:
        if is_standalone_primary_key(statement):
            logger.debug("Skipping standalone primary key: %s", statement[:STATEMENT_PREFIX_LENGTH])
            result.skipped_count += 1
            continue

        try:
            await conn.execute(statement)
        except psycopg.Error as e:
            if conn.closed:
                raise ConnectionError(f"Lost connection to target database: {e}") from e
            if is_already_exists(e):
                logger.debug("Already exists: %s", statement[:STATEMENT_PREFIX_LENGTH])
                result.skipped_count += 1
                continue
            message = error_summary(e)
            logger.warning("Statement failed: %s", message)
            result.errors.append(
                StatementError(
                    statement=statement[:STATEMENT_PREFIX_LENGTH],
                    message=message,
                    code=e.sqlstate,
                )
            )
            continue

        result.executed_count += 1

    logger.info(
        "Replay finished: %d executed, %d skipped, %d errors",
        result.executed_count, result.skipped_count, len(result.errors),
    )
    return result


async def replay_script(script: str, conn: AsyncConnection) -> ReplayResult:
    """Split *script* and execute every statement."""
    return await execute_statements(split_statements(script), conn)
