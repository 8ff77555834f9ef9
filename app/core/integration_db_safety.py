from __future__ import annotations

import re
from dataclasses import dataclass

from sqlalchemy.engine import make_url

TEST_DB_NAME_RE = re.compile(r"test", re.IGNORECASE)
ALLOWED_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "postgres", "referrals_postgres"})


@dataclass(frozen=True, slots=True)
class IntegrationDbSafetyResult:
    is_safe: bool
    reason: str
    database_name: str
    host: str


def assess_integration_db_safety(database_url: str) -> IntegrationDbSafetyResult:
    """Integration tests truncate every table, so only local PostgreSQL *test* databases qualify."""
    parsed = make_url(database_url)
    database_name = (parsed.database or "").strip()
    host = (parsed.host or "").strip().lower()

    if parsed.get_backend_name() != "postgresql":
        reason = "only PostgreSQL databases are supported"
    elif not database_name:
        reason = "database name is empty"
    elif TEST_DB_NAME_RE.search(database_name) is None:
        reason = "database name must contain 'test'"
    elif host not in ALLOWED_LOCAL_HOSTS:
        reason = f"host '{host}' is not a local integration-test host"
    else:
        reason = "ok"

    return IntegrationDbSafetyResult(
        is_safe=reason == "ok",
        reason=reason,
        database_name=database_name,
        host=host,
    )
