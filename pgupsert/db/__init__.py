from pgupsert.db.pool import DatabasePool
from pgupsert.db.fetch import fetch_records

__all__ = ["DatabasePool", "fetch_records"]
