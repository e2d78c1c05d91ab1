"""
stream-loader - Streaming bulk loader for PostgreSQL.

Rows are submitted one at a time, buffered into staged CSV files, uploaded to
a staging area and applied to one target table with set-based INSERT, UPSERT,
MODIFY or DELETE statements.
"""

__version__ = "0.1.0"
