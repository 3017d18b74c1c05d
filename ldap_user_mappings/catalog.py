"""
Catalogs of user-profile metadata field names.

A field catalog lists the distinct metadata field names present in the
user-profile store.
"""

import re
import logging
from typing import List, Iterable

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


class FieldCatalogError(Exception):
    """Raised when field names cannot be listed."""
    pass


class StaticFieldCatalog:
    """Field catalog over a fixed list of names."""

    def __init__(self, names: Iterable[str]):
        self.names = list(names)

    def list_distinct_meta_field_names(self) -> List[str]:
        return list(dict.fromkeys(self.names))


class SQLFieldCatalog:
    """
    Field catalog reading distinct field names from a database table.

    Works with any DB-API 2.0 connection.
    """

    def __init__(self, connection, table: str = 'usermeta', column: str = 'meta_key'):
        for identifier in (table, column):
            if not _IDENTIFIER.match(identifier):
                raise FieldCatalogError(f"Invalid SQL identifier: {identifier!r}")
        self.connection = connection
        self.table = table
        self.column = column

    def list_distinct_meta_field_names(self) -> List[str]:
        sql = f"SELECT DISTINCT {self.column} FROM {self.table}"
        cursor = self.connection.cursor()
        try:
            cursor.execute(sql)
            rows = cursor.fetchall()
        except Exception as e:
            raise FieldCatalogError(f"Failed to list field names from {self.table}: {e}")
        finally:
            cursor.close()

        names = [row[0] for row in rows if row and row[0] is not None]
        logger.debug(f"Field catalog returned {len(names)} names from {self.table}.{self.column}")
        return names
