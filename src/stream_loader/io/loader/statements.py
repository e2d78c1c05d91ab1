"""SQL text for staging and applying one batch to the target table."""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from stream_loader.io.loader.models import Operation
from stream_loader.io.loader.sql_utils import (
    changed_condition,
    column_list,
    match_condition,
    quote_ident,
    quote_qualified,
)

# Label attached to each statement's rowcount
INSERTED = "inserted"
UPDATED = "updated"
DELETED = "deleted"
# Staged rows that found at least one target row
MATCHED = "matched"


@dataclass(frozen=True)
class Statement:
    label: str
    sql: str


def build_create_stage_sql(stage_table: str, target: str, columns: Sequence[str]) -> str:
    """Temp staging table with the target's column types and no rows."""
    return (
        f"CREATE TEMP TABLE IF NOT EXISTS {quote_ident(stage_table)} AS "
        f"SELECT {column_list(columns)} FROM {target} WITH NO DATA"
    )


def build_copy_sql(stage_table: str, columns: Sequence[str]) -> str:
    return (
        f"COPY {quote_ident(stage_table)} ({column_list(columns)}) "
        "FROM STDIN WITH (FORMAT csv, DELIMITER ',', QUOTE '\"', ESCAPE E'\\\\')"
    )


def build_load_statements(
    operation: Operation,
    schema: Optional[str],
    table: str,
    stage_table: str,
    columns: Sequence[str],
    keys: Sequence[str],
    count_unchanged_as_updated: bool = True,
) -> List[Statement]:
    """
    Build the ordered statements applying the staging table to the target.

    Returns:
        Statements whose rowcounts are accumulated under their label

    Raises:
        ValueError: If keys are required but missing
    """
    target = quote_qualified(schema, table)
    stage = quote_ident(stage_table)
    cols = column_list(columns)
    stage_cols = column_list(columns, alias="s")

    if operation is Operation.INSERT:
        return [
            Statement(INSERTED, f"INSERT INTO {target} ({cols}) SELECT {stage_cols} FROM {stage} AS s")
        ]

    match = match_condition(keys)
    non_keys = [c for c in columns if c not in keys]

    if operation is Operation.DELETE:
        return [Statement(DELETED, f"DELETE FROM {target} AS t USING {stage} AS s WHERE {match}")]

    statements: List[Statement] = []
    if non_keys:
        set_clause = ", ".join(f"{quote_ident(c)} = s.{quote_ident(c)}" for c in non_keys)
        where = match
        if not count_unchanged_as_updated:
            where = f"{match} AND ({changed_condition(non_keys)})"
        statements.append(
            Statement(UPDATED, f"UPDATE {target} AS t SET {set_clause} FROM {stage} AS s WHERE {where}")
        )

    if operation is Operation.UPSERT:
        statements.append(
            Statement(
                INSERTED,
                f"INSERT INTO {target} ({cols}) SELECT {stage_cols} FROM {stage} AS s "
                f"WHERE NOT EXISTS (SELECT 1 FROM {target} AS t WHERE {match})",
            )
        )
    return statements


def build_match_count_sql(
    operation: Operation,
    schema: Optional[str],
    table: str,
    stage_table: str,
    columns: Sequence[str],
    keys: Sequence[str],
    count_unchanged_as_updated: bool = True,
) -> Optional[str]:
    """
    Count staged rows the operation will act on, before it runs.

    Keys need not be unique, so one staged row may touch several target rows;
    statement rowcounts then overstate how many staged rows matched. Returns
    None for INSERT, and for UPSERT without non-key columns, where matched
    rows are left untouched.
    """
    if operation is Operation.INSERT:
        return None
    non_keys = [c for c in columns if c not in keys]
    if operation is Operation.UPSERT and not non_keys:
        return None

    target = quote_qualified(schema, table)
    where = match_condition(keys)
    if operation is not Operation.DELETE and not count_unchanged_as_updated:
        where = f"{where} AND ({changed_condition(non_keys)})"
    return (
        f"SELECT count(*) FROM {quote_ident(stage_table)} AS s "
        f"WHERE EXISTS (SELECT 1 FROM {target} AS t WHERE {where})"
    )


def build_describe_sql() -> str:
    return (
        "SELECT column_name, data_type FROM information_schema.columns "
        "WHERE table_schema = COALESCE(%s, current_schema()) AND table_name = %s "
        "ORDER BY ordinal_position"
    )
