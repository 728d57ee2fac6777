"""
Pipeline store implementations.

SQLite (SqlitePipelineStore) is the default for local runs and tests.
SQL Server (SqlServerPipelineStore) is the production backend and needs pyodbc.

To select backend, set the PIPELINE_DB_BACKEND environment variable:
    - PIPELINE_DB_BACKEND=sqlite (default)
    - PIPELINE_DB_BACKEND=sqlserver
"""

import os
from pathlib import Path
from typing import Optional, Union

from ..core.logging import LoggerLike
from .base import PipelineStore
from .sqlite_store import SqlitePipelineStore
from .vector_writer import VectorWriter


def _get_sqlserver_store():
    from .sqlserver_store import SqlServerPipelineStore
    return SqlServerPipelineStore


def create_store(
    backend: Optional[str] = None,
    # SQLite options
    db_path: Optional[Union[str, Path]] = None,
    # SQL Server options
    connection_string: Optional[str] = None,
    host: str = "localhost",
    port: int = 1433,
    database: str = "Memories",
    username: str = "sa",
    password: Optional[str] = None,
    driver: str = "ODBC Driver 18 for SQL Server",
    schema: str = "pipeline",
    trust_server_certificate: bool = True,
    auto_init: bool = True,
    logger: Optional[LoggerLike] = None,
) -> PipelineStore:
    """
    Factory function to create the store for the configured backend.

    Args:
        backend: 'sqlite' or 'sqlserver'. Defaults to PIPELINE_DB_BACKEND or 'sqlite'.
        db_path: SQLite database file
        connection_string: Full ODBC connection string (SQL Server)
        password: Database password; falls back to PIPELINE_SQLSERVER_PASSWORD
        auto_init: Create schema/tables on startup

    Returns:
        PipelineStore instance

    Raises:
        ValueError: If backend is not recognized
        ImportError: If pyodbc is missing for the SQL Server backend
    """
    if backend is None:
        backend = os.environ.get("PIPELINE_DB_BACKEND", "sqlite")
    backend = backend.lower()

    if backend == "sqlite":
        if db_path is None:
            db_path = Path("local/state/pipeline.db")
        return SqlitePipelineStore(db_path=db_path, auto_init=auto_init, logger=logger)

    elif backend == "sqlserver":
        SqlServerPipelineStore = _get_sqlserver_store()

        if password is None:
            password = os.environ.get("PIPELINE_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")
        if connection_string is None:
            connection_string = os.environ.get("PIPELINE_SQLSERVER_CONN_STR")

        return SqlServerPipelineStore(
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
            logger=logger,
        )

    else:
        raise ValueError(
            f"Unknown backend: {backend}. "
            "Supported backends: 'sqlite' (default), 'sqlserver'"
        )


__all__ = ["PipelineStore", "SqlitePipelineStore", "VectorWriter", "create_store"]
