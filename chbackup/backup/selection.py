"""
Table selection for freeze and restore.

Patterns are shell-style globs matched against "database.table". They only
filter: results follow the catalog's iteration order, never pattern order.
"""

from fnmatch import fnmatchcase
from typing import Collection, List, Mapping, Sequence

from ..models import BackupTable, Table


def select_for_freeze(tables: Sequence[Table], patterns: Sequence[str]) -> List[Table]:
    """
    Select live tables to freeze.

    An empty pattern list selects every table. A table is repeated once per
    pattern it matches; use unique_tables() to collapse repeats.

    Args:
        tables: Catalog of live tables, in catalog order
        patterns: Glob patterns matched against "database.table"

    Returns:
        Matching tables in catalog order
    """
    if not patterns:
        return list(tables)

    result = []
    for table in tables:
        for pattern in patterns:
            if fnmatchcase(table.full_name, pattern):
                result.append(table)
    return result


def unique_tables(tables: Sequence[Table]) -> List[Table]:
    """Drop repeated tables, keeping the first occurrence."""
    seen = set()
    result = []
    for table in tables:
        if table not in seen:
            seen.add(table)
            result.append(table)
    return result


def select_for_restore(
    catalog: Mapping[str, BackupTable],
    patterns: Sequence[str],
    increments: Collection[int] = ()
) -> List[BackupTable]:
    """
    Select backed up table snapshots to restore.

    Args:
        catalog: Backup tables keyed by identifier, in catalog order
        patterns: Glob patterns; empty means "*"
        increments: Increments to restore; empty means any increment

    Returns:
        Matching backup tables in catalog order
    """
    if not patterns:
        patterns = ['*']
    wanted = set(increments)

    result = []
    for table in catalog.values():
        if not any(fnmatchcase(table.full_name, pattern) for pattern in patterns):
            continue
        if wanted and table.increment not in wanted:
            continue
        result.append(table)
    return result
