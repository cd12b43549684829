"""
Service composition.

``AccessControlServices`` wires the database, store adapter, audit logs,
authorization engine and administrator together with an explicit
open/close lifecycle. Callers receive the services by reference; nothing
is created implicitly on first use.

Usage:
    services = AccessControlServices.open("sqlite:///:memory:")
    try:
        services.engine.check_permission("u1", ResourceType.TICKETS, ActionType.READ, {...})
    finally:
        services.close()
"""

import logging
from typing import Optional

from models.database import Database
from . import config
from .admin import AccessAdministrator
from .audit import AccessAttemptLog, MutationAuditLog
from .engine import AuthorizationEngine
from .store import RoleStore, SqlRoleStore

logger = logging.getLogger(__name__)


class AccessControlServices:
    """The running set of access control services over one database."""

    def __init__(
        self,
        database: Database,
        store: RoleStore,
        attempt_log: AccessAttemptLog,
        mutation_log: MutationAuditLog
    ):
        self.database = database
        self.store = store
        self.attempt_log = attempt_log
        self.mutation_log = mutation_log
        self.engine = AuthorizationEngine(store, attempt_log)
        self.admin = AccessAdministrator(store, mutation_log)
        self.closed = False

    @classmethod
    def open(
        cls,
        database_url: Optional[str] = None,
        max_entries: Optional[int] = None,
        store_timeout: Optional[float] = None,
        echo: Optional[bool] = None
    ) -> "AccessControlServices":
        """
        Connect, create missing tables and load both audit windows.

        Args:
            database_url: SQLAlchemy URL (default: config.DATABASE_URL)
            max_entries: Retained entries per audit log (default: config.MAX_AUDIT_ENTRIES)
            store_timeout: Bound in seconds on waiting for the database
                (default: config.STORE_TIMEOUT_SECONDS)
            echo: Log emitted SQL (default: config.SQL_ECHO)
        """
        database = Database(
            database_url or config.DATABASE_URL,
            timeout=store_timeout if store_timeout is not None else config.STORE_TIMEOUT_SECONDS,
            echo=config.SQL_ECHO if echo is None else echo
        )
        database.init_db()

        attempt_log = AccessAttemptLog(database, max_entries)
        mutation_log = MutationAuditLog(database, max_entries)
        attempt_log.init()
        mutation_log.init()

        logger.info(f"Access control services opened on {database.url}")
        return cls(database, SqlRoleStore(database), attempt_log, mutation_log)

    def close(self) -> None:
        """Release the in-memory audit windows and the connection pool."""
        if self.closed:
            return
        self.attempt_log.close()
        self.mutation_log.close()
        self.database.dispose()
        self.closed = True
        logger.info("Access control services closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
