"""Row dumping and restore: value codec plus the table transporter.

Usage:
    from db_porter.data import DataTransporter, restore_data, encode_value
"""

from db_porter.data.codec import ColumnKind, build_insert, column_kind, encode_value
from db_porter.data.transporter import (
    DataDump,
    DataTransporter,
    TableDump,
    order_columns,
    restore_data,
)

__all__ = [
    "ColumnKind",
    "build_insert",
    "column_kind",
    "encode_value",
    "DataDump",
    "DataTransporter",
    "TableDump",
    "order_columns",
    "restore_data",
]
