"""
Azure SQL Database client for executing read-only reporting queries.

Connections authenticate with an Azure AD access token from
``DefaultAzureCredential``; each client owns one connection for the
lifetime of its ``async with`` block.
"""

import logging
import re
import struct
from typing import Any

import aioodbc
from azure.identity import DefaultAzureCredential

logger = logging.getLogger(__name__)

SQL_COPT_SS_ACCESS_TOKEN = 1256
_TOKEN_SCOPE = "https://database.windows.net/.default"


def get_azure_sql_token(client_id: str | None = None) -> bytes:
    """
    Get an Azure AD token for SQL Database authentication.

    Args:
        client_id: User-assigned managed identity client ID, if any.

    Returns:
        Token bytes formatted for the ODBC driver
    """
    if client_id:
        credential = DefaultAzureCredential(managed_identity_client_id=client_id)
    else:
        credential = DefaultAzureCredential()

    token = credential.get_token(_TOKEN_SCOPE)
    logger.info("SQL token acquired, expires_on=%s", token.expires_on)

    token_bytes = token.token.encode("utf-16-le")
    return struct.pack(f"<I{len(token_bytes)}s", len(token_bytes), token_bytes)


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, str, bool)):
        return value
    return str(value)


def _failure(error: str) -> dict[str, Any]:
    return {"success": False, "error": error, "columns": [], "rows": [], "row_count": 0}


class AzureSqlClient:
    """
    Async context manager for Azure SQL Database reads.

    Usage:
        async with AzureSqlClient(server, database) as client:
            result = await client.execute_query("SELECT TOP 10 id FROM rpt.Patient")
    """

    # Keywords that are not allowed in queries for safety
    DANGEROUS_KEYWORDS = (
        "INSERT",
        "UPDATE",
        "DELETE",
        "MERGE",
        "DROP",
        "ALTER",
        "CREATE",
        "TRUNCATE",
        "EXEC",
        "EXECUTE",
        "GRANT",
        "REVOKE",
    )

    def __init__(self, server: str, database: str, *, client_id: str | None = None):
        self.server = server
        self.database = database
        self.client_id = client_id
        self._connection: aioodbc.Connection | None = None

    async def __aenter__(self):
        """Establish the database connection."""
        if not self.server:
            raise ValueError("AZURE_SQL_SERVER environment variable is required")

        connection_string = (
            f"DRIVER={{ODBC Driver 18 for SQL Server}};"
            f"SERVER={self.server};"
            f"DATABASE={self.database};"
        )
        token_struct = get_azure_sql_token(self.client_id)
        self._connection = await aioodbc.connect(
            dsn=connection_string,
            attrs_before={SQL_COPT_SS_ACCESS_TOKEN: token_struct},
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close the database connection."""
        if self._connection:
            await self._connection.close()

    def validate_query(self, query: str) -> tuple[bool, str | None]:
        """
        Check that a query is a single read-only statement.

        Returns:
            Tuple of (is_valid, error_message). error_message is None if valid.
        """
        query_upper = query.strip().upper()
        if not query_upper.startswith(("SELECT", "WITH")):
            return False, "Only SELECT queries are allowed. Query must start with SELECT or WITH."

        for keyword in self.DANGEROUS_KEYWORDS:
            if re.search(rf"\b{keyword}\b", query_upper):
                return (
                    False,
                    f"Query contains forbidden keyword: {keyword}. "
                    "Only read-only SELECT queries are allowed.",
                )
        return True, None

    async def execute_query(self, query: str) -> dict[str, Any]:
        """
        Execute a SQL query and return results.

        Returns:
            A dictionary containing:
            - success: Whether the query executed successfully
            - columns: List of column names in the result
            - rows: List of dictionaries, one per row
            - row_count: Number of rows returned
            - error: Error message if the query failed
        """
        logger.info("Executing SQL query: %s", query[:200])

        is_valid, error = self.validate_query(query)
        if not is_valid:
            return _failure(error or "Query rejected")

        if not self._connection:
            return _failure(
                "Database connection not established. Use 'async with' context manager."
            )

        try:
            async with self._connection.cursor() as cursor:
                await cursor.execute(query)
                columns = [column[0] for column in cursor.description] if cursor.description else []
                raw_rows = await cursor.fetchall()
        except Exception as e:
            logger.error("SQL execution error: %s", e)
            return _failure(str(e))

        rows = [{col: _json_safe(row[i]) for i, col in enumerate(columns)} for row in raw_rows]
        logger.info("Query executed successfully. Returned %d rows.", len(rows))
        return {
            "success": True,
            "columns": columns,
            "rows": rows,
            "row_count": len(rows),
            "error": None,
        }
