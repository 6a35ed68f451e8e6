"""
Per-domain data collection for a single user's backup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from studio_backup import datastore
from studio_backup.datastore import UserDataStore
from studio_backup.models import BackupConfig, BackupData, CredentialRef
from studio_backup.storage import StorageClient, user_prefix

logger = logging.getLogger(__name__)

CREDENTIAL_REF_COLUMNS = ("id", "user_id", "provider", "created_at", "last_used")


@dataclass
class CollectionResult:
    data: BackupData
    items_count: int = 0
    errors: list[str] = field(default_factory=list)


class Collector:
    """
    Reads every backed-up domain for one user.

    Each domain is fetched independently: a failure is logged and recorded in
    ``CollectionResult.errors`` and the remaining domains are still collected.
    Every row is re-checked against the requesting user before it is kept.
    """

    def __init__(
        self,
        data_store: UserDataStore,
        storage: StorageClient,
        *,
        audit_log_limit: int = 1000,
    ):
        self.data_store = data_store
        self.storage = storage
        self.audit_log_limit = audit_log_limit

    def fetch_profile(self, user_id: str) -> Optional[dict]:
        profile = self.data_store.get_profile(user_id)
        if profile and str(profile.get("id")) != str(user_id):
            logger.warning("Dropping profile %s returned for user %s", profile.get("id"), user_id)
            return None
        return profile

    def fetch_projects(self, user_id: str) -> list[dict]:
        return self._scoped(datastore.PROJECTS, user_id, self.data_store.list_rows(datastore.PROJECTS, user_id))

    def fetch_generations(self, user_id: str) -> list[dict]:
        return self._scoped(
            datastore.GENERATIONS, user_id, self.data_store.list_rows(datastore.GENERATIONS, user_id)
        )

    def fetch_templates(self, user_id: str) -> list[dict]:
        return self._scoped(datastore.TEMPLATES, user_id, self.data_store.list_rows(datastore.TEMPLATES, user_id))

    def fetch_credential_refs(self, user_id: str) -> list[CredentialRef]:
        # Only metadata columns are read; key material never leaves the store.
        rows = self.data_store.list_rows(datastore.API_KEYS, user_id, columns=CREDENTIAL_REF_COLUMNS)
        return [CredentialRef.from_row(row) for row in self._scoped(datastore.API_KEYS, user_id, rows)]

    def fetch_audit_logs(self, user_id: str) -> list[dict]:
        rows = self.data_store.list_rows(
            datastore.AUDIT_LOGS,
            user_id,
            limit=self.audit_log_limit,
            newest_first=True,
        )
        return self._scoped(datastore.AUDIT_LOGS, user_id, rows)

    def list_files(self, user_id: str) -> list[str]:
        """Asset paths relative to the user's prefix."""
        prefix = user_prefix(user_id)
        return [
            path[len(prefix):]
            for path in self.storage.list_paths(prefix)
            if path.startswith(prefix) and len(path) > len(prefix)
        ]

    def read_file(self, user_id: str, path: str) -> bytes:
        return self.storage.get_bytes(f"{user_prefix(user_id)}{path}")

    def collect(self, user_id: str, config: BackupConfig) -> CollectionResult:
        """Collect every row-based domain enabled by ``config``. Files are handled by the caller."""
        result = CollectionResult(data=BackupData())

        if config.include_user_data:
            profile = self._attempt("profile", user_id, result, self.fetch_profile)
            if profile:
                result.data.profile = profile
                result.items_count += 1
            self._collect_list("templates", user_id, result, self.fetch_templates)
            self._collect_list("credential_refs", user_id, result, self.fetch_credential_refs)

        if config.include_projects:
            self._collect_list("projects", user_id, result, self.fetch_projects)
            self._collect_list("generations", user_id, result, self.fetch_generations)

        if config.include_audit_logs:
            self._collect_list("audit_logs", user_id, result, self.fetch_audit_logs)

        return result

    def _collect_list(
        self,
        name: str,
        user_id: str,
        result: CollectionResult,
        fetch: Callable[[str], list],
    ) -> None:
        rows = self._attempt(name, user_id, result, fetch)
        if rows is None:
            return
        setattr(result.data, name, rows)
        result.items_count += len(rows)

    def _attempt(self, name: str, user_id: str, result: CollectionResult, fetch: Callable):
        try:
            return fetch(user_id)
        except Exception:
            logger.exception("[%s] Failed to collect %s", user_id, name)
            result.errors.append(name)
            return None

    def _scoped(self, table: str, user_id: str, rows: list[dict]) -> list[dict]:
        kept = [row for row in rows if str(row.get("user_id")) == str(user_id)]
        if len(kept) != len(rows):
            logger.warning(
                "Dropped %d %s rows not owned by user %s", len(rows) - len(kept), table, user_id
            )
        return kept
