from typing import Optional, Sequence


def quote_ident(name: str) -> str:
    """
    Quote PostgreSQL identifier with double quotes and escape internal quotes.

    Args:
        name: Identifier to quote (table, column name)

    Returns:
        Properly quoted identifier

    Raises:
        ValueError: If name is empty or too long
    """
    if not name or not isinstance(name, str):
        raise ValueError("Identifier name must be non-empty string")

    if len(name) > 63:  # PostgreSQL limit
        raise ValueError("Identifier too long (max 63 characters)")

    escaped = name.replace('"', '""')
    return f'"{escaped}"'


def quote_qualified(schema: Optional[str], table: str) -> str:
    """
    Quote PostgreSQL identifier with optional schema qualification.

    Examples:
        >>> quote_qualified("public", "Load Test Spaces")
        '"public"."Load Test Spaces"'
        >>> quote_qualified(None, "orders")
        '"orders"'
    """
    if not table or not isinstance(table, str):
        raise ValueError("Table name must be non-empty string")

    if schema and str(schema).strip():
        return f"{quote_ident(str(schema))}.{quote_ident(table)}"
    return quote_ident(table)


def column_list(columns: Sequence[str], alias: Optional[str] = None) -> str:
    """Comma separated quoted column list, optionally alias-qualified."""
    prefix = f"{alias}." if alias else ""
    return ", ".join(f"{prefix}{quote_ident(c)}" for c in columns)


def match_condition(keys: Sequence[str], left: str = "t", right: str = "s") -> str:
    """Equality join over key columns: ``t."k" = s."k" AND ...``."""
    if not keys:
        raise ValueError("At least one key column is required")
    return " AND ".join(
        f"{left}.{quote_ident(k)} = {right}.{quote_ident(k)}" for k in keys
    )


def changed_condition(columns: Sequence[str], left: str = "t", right: str = "s") -> str:
    """True when any of ``columns`` differs between the two sides (NULL-safe)."""
    return " OR ".join(
        f"{left}.{quote_ident(c)} IS DISTINCT FROM {right}.{quote_ident(c)}"
        for c in columns
    )
