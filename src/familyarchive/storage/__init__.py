"""
Storage backends for live data, photos and rollback snapshots.

The data store backend is chosen by create_data_store(). Set the
FAMILYARCHIVE_DB_BACKEND environment variable to select it:
    - FAMILYARCHIVE_DB_BACKEND=sqlite (default)
    - FAMILYARCHIVE_DB_BACKEND=sqlserver
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from ..core.data_store import DataStore
from .file_assets import LocalAssetStore
from .snapshot_store import FileSnapshotStore, get_encryption_key
from .sql_store import SqlDataStore
from .sqlite_store import SqliteDataStore


logger = logging.getLogger(__name__)


# Lazy import so pyodbc is only needed for the SQL Server backend
def _get_sqlserver_store():
    from .sqlserver_store import SqlServerDataStore
    return SqlServerDataStore


def create_data_store(
    backend: Optional[str] = None,
    # SQLite options
    db_path: Optional[Union[str, Path]] = None,
    # SQL Server options
    connection_string: Optional[str] = None,
    host: str = "localhost",
    port: int = 1433,
    database: str = "FamilyArchive",
    username: str = "sa",
    password: Optional[str] = None,
    driver: str = "ODBC Driver 18 for SQL Server",
    schema: str = "family",
    trust_server_certificate: bool = True,
    auto_init: bool = True,
) -> DataStore:
    """
    Factory function to create the configured data store.

    Args:
        backend: Backend type ('sqlite' or 'sqlserver'). Defaults to
            FAMILYARCHIVE_DB_BACKEND env var or 'sqlite'.

        SQLite options:
            db_path: Path to SQLite database file (or ':memory:')

        SQL Server options:
            connection_string: Full ODBC connection string
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            schema: Schema name for tables
            trust_server_certificate: Trust self-signed certs
            auto_init: Auto-create schema/tables

    Returns:
        DataStore instance

    Raises:
        ValueError: If backend is not recognized
        ImportError: If required dependencies are missing
    """
    if backend is None:
        backend = os.environ.get("FAMILYARCHIVE_DB_BACKEND", "sqlite")
    backend = backend.lower()

    if backend == "sqlite":
        if db_path is None:
            db_path = Path("local/data/familyarchive.db")
        return SqliteDataStore(db_path=db_path, auto_init=auto_init)

    elif backend == "sqlserver":
        SqlServerDataStore = _get_sqlserver_store()

        if password is None:
            password = os.environ.get("FAMILYARCHIVE_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")

        if connection_string is None:
            connection_string = os.environ.get("FAMILYARCHIVE_SQLSERVER_CONN_STR")

        return SqlServerDataStore(
            connection_string=connection_string,
            host=host,
            port=port,
            database=database,
            username=username,
            password=password,
            driver=driver,
            schema=schema,
            auto_init=auto_init,
            trust_server_certificate=trust_server_certificate,
        )

    else:
        raise ValueError(
            f"Unknown backend: {backend}. "
            "Supported backends: 'sqlite' (default), 'sqlserver'"
        )


__all__ = [
    "create_data_store",
    "SqlDataStore",
    "SqliteDataStore",
    "LocalAssetStore",
    "FileSnapshotStore",
    "get_encryption_key",
]
