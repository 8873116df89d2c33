"""
Identifier and literal quoting for generated T-SQL.

Every name and value that reaches generated T-SQL goes through one of these
helpers; statements never concatenate raw input.
"""

from __future__ import annotations


def quote_name(identifier: str) -> str:
    """Bracket-quote an identifier the way QUOTENAME() does."""
    return "[" + identifier.replace("]", "]]") + "]"


def n_literal(value: str) -> str:
    """Render a Unicode string literal."""
    return "N'" + value.replace("'", "''") + "'"


def qualified(*parts: str) -> str:
    """Render a multi-part name such as [server].[master].[dbo].[proc]."""
    return ".".join(quote_name(part) for part in parts)
