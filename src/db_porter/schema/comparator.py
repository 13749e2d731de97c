"""Schema comparison using set operations.

Checks that a restored target has every table and column of its source.
Pure logic -- no I/O, no database connections.

Usage:
    from db_porter.schema.comparator import validate_schema

    async with SchemaIntrospector(source_url) as source:
        expected = await source.get_column_names()
    async with SchemaIntrospector(target_url) as target:
        actual = await target.get_column_names()

    result = validate_schema(actual, expected)
    print(result.format_report())
"""

from db_porter.schema.models import ColumnDiff, SchemaValidationResult


def validate_schema(
    actual_columns: dict[str, set[str]],
    expected_columns: dict[str, set[str]],
) -> SchemaValidationResult:
    """Compare the target's columns (*actual*) with the source's (*expected*).

    Performs pure set operations to find:
    - Missing tables: Tables in *expected_columns* but not in *actual_columns*
    - Missing columns: Columns in *expected_columns* but not in the actual table
    - Extra tables: Tables in *actual_columns* but not in *expected_columns*
      (warning only -- does not affect ``valid`` status)

    Args:
        actual_columns: Dict mapping table name to set of column names in
            the target, as returned by ``introspector.get_column_names()``.
        expected_columns: The same mapping for the source.

    Returns:
        ``SchemaValidationResult``; ``valid`` is ``True`` when nothing is
        missing.

    Examples:
        >>> result = validate_schema(
        ...     {"users": {"id"}},
        ...     {"users": {"id", "name"}},
        ... )
        >>> result.valid
        False
        >>> result.missing_columns[0].column
        'name'
    """
    actual_tables: set[str] = set(actual_columns.keys())
    expected_tables: set[str] = set(expected_columns.keys())

    missing_tables: list[str] = sorted(expected_tables - actual_tables)
    extra_tables: list[str] = sorted(actual_tables - expected_tables)

    missing_columns: list[ColumnDiff] = []
    for table_name in sorted(expected_tables & actual_tables):
        for col_name in sorted(expected_columns[table_name] - actual_columns[table_name]):
            missing_columns.append(
                ColumnDiff(
                    table=table_name,
                    column=col_name,
                    message=f"Column '{col_name}' missing from table '{table_name}'",
                )
            )

    return SchemaValidationResult(
        valid=not missing_tables and not missing_columns,
        missing_tables=missing_tables,
        missing_columns=missing_columns,
        extra_tables=extra_tables,
    )
