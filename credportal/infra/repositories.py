from __future__ import annotations

import re
from collections import defaultdict
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Iterable
from uuid import uuid4

from credportal.config import Settings, settings as default_settings
from credportal.domain.errors import RepositoryError
from credportal.domain.states import ContractStatus
from credportal.infra.supabase_client import get_supabase_client
from credportal.logging_config import get_logger

logger = get_logger("infra.repositories")

OPEN_CONTRACT_STATUSES = tuple(s.value for s in ContractStatus if s != ContractStatus.SUPERSEDED)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _extract_missing_column_name(message: str) -> str | None:
    # "Could not find the 'viewed_at' column of 'contracts' in the schema cache"
    patterns = [
        r"'([^']+)'\s+column",
        r"column\s+'([^']+)'",
        r'Could not find the "([^"]+)" column',
    ]
    for pat in patterns:
        m = re.search(pat, message, flags=re.IGNORECASE)
        if m:
            return m.group(1)
    return None


def _is_unique_violation(exc: Exception) -> bool:
    text = str(exc)
    return "23505" in text or "duplicate key" in text.lower()


class CredentialingRepository:
    """Store contract shared by the in-memory and Supabase backends.

    Status writes are compare-and-set: they return ``None`` when the row is no
    longer in one of the expected statuses, and the caller decides what that
    means for its operation.
    """

    # applications
    def create_application(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_application(self, application_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_applications(self, status: str | None = None, limit: int = 500) -> list[dict[str, Any]]:
        raise NotImplementedError

    def update_application_status(
        self,
        application_id: str,
        expected: str,
        target: str,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    # decisions
    def record_decision(
        self,
        application_id: str,
        expected_status: str,
        target_status: str,
        decision_row: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]] | None:
        raise NotImplementedError

    def list_decisions(self, application_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def latest_decision(self, application_id: str) -> dict[str, Any] | None:
        rows = self.list_decisions(application_id)
        return rows[0] if rows else None

    # contract templates
    def create_contract_template(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_contract_template(self, template_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def latest_active_template(self) -> dict[str, Any] | None:
        raise NotImplementedError

    # contracts
    def create_contract(self, row: dict[str, Any]) -> dict[str, Any] | None:
        raise NotImplementedError

    def get_contract(self, contract_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def find_contract_by_provider_document(self, provider_document_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_contracts(
        self,
        application_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def update_contract(
        self,
        contract_id: str,
        updates: dict[str, Any],
        expected_statuses: Iterable[str] | None = None,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    def contract_number_exists(self, contract_number: str) -> bool:
        raise NotImplementedError

    def mark_webhook_processed(self, key: str) -> bool:
        """Insert-if-absent; ``False`` means the key was already recorded."""
        raise NotImplementedError

    def release_webhook_key(self, key: str) -> None:
        """Forget a key whose delivery was not applied, so a redelivery is processed."""
        raise NotImplementedError

    # providers
    def create_provider(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_provider(self, provider_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def find_provider_by_application(self, application_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def update_provider(
        self,
        provider_id: str,
        updates: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    def add_provider_status_change(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_provider_status_changes(self, provider_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    # sanctions
    def create_sanction(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_sanction(self, sanction_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def update_sanction(
        self,
        sanction_id: str,
        updates: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_sanctions(
        self,
        provider_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    # certificates
    def create_certificate(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def find_certificate_by_code(self, verification_code: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def list_certificates(self, provider_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    # roles
    def list_user_roles(self, user_id: str) -> list[str]:
        raise NotImplementedError

    def grant_role(self, user_id: str, role: str) -> None:
        raise NotImplementedError

    def list_users_with_roles(self, roles: Iterable[str]) -> list[str]:
        raise NotImplementedError

    # audit / notifications / workflow messages
    def create_audit_event(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_audit_events(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_notification(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_notifications(self, user_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def create_workflow_message(self, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def list_workflow_messages(self, application_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    # geocoding cache
    def get_geocode(self, address_hash: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def put_geocode(self, address_hash: str, row: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def next_sequence(self, name: str) -> int:
        raise NotImplementedError


class InMemoryRepository(CredentialingRepository):
    def __init__(self) -> None:
        self._lock = RLock()
        self._tables: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self._webhook_keys: set[str] = set()
        self._roles: dict[str, set[str]] = defaultdict(set)
        self._sequences: dict[str, int] = defaultdict(int)

    def _insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        now = _utc_now()
        item = {
            "id": row.get("id") or str(uuid4()),
            "created_at": row.get("created_at") or now,
            **row,
        }
        self._tables[table][str(item["id"])] = item
        return dict(item)

    def _get(self, table: str, row_id: str) -> dict[str, Any] | None:
        row = self._tables[table].get(row_id)
        return dict(row) if row else None

    def _rows(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        rows = [
            r for r in self._tables[table].values()
            if all(str(r.get(k)) == str(v) for k, v in filters.items() if v is not None)
        ]
        return [dict(r) for r in rows]

    def _compare_and_set(
        self,
        table: str,
        row_id: str,
        updates: dict[str, Any],
        expected: Iterable[str] | None,
    ) -> dict[str, Any] | None:
        existing = self._tables[table].get(row_id)
        if not existing:
            raise RepositoryError(f"{table} row not found: {row_id}")
        if expected is not None and str(existing.get("status")) not in set(expected):
            return None
        existing.update(updates)
        existing["updated_at"] = _utc_now()
        return dict(existing)

    @staticmethod
    def _newest_first(rows: list[dict[str, Any]], key: str = "created_at") -> list[dict[str, Any]]:
        return sorted(rows, key=lambda r: str(r.get(key, "")), reverse=True)

    def create_application(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._insert("applications", row)

    def get_application(self, application_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._get("applications", application_id)

    def list_applications(self, status: str | None = None, limit: int = 500) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._newest_first(self._rows("applications", status=status), key="updated_at")
            return rows[:limit]

    def update_application_status(
        self,
        application_id: str,
        expected: str,
        target: str,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        with self._lock:
            return self._compare_and_set(
                "applications", application_id, {**(extra or {}), "status": target}, [expected]
            )

    def record_decision(
        self,
        application_id: str,
        expected_status: str,
        target_status: str,
        decision_row: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]] | None:
        with self._lock:
            application = self._compare_and_set(
                "applications", application_id, {"status": target_status}, [expected_status]
            )
            if application is None:
                return None
            decision = self._insert("decisions", {**decision_row, "application_id": application_id})
            return decision, application

    def list_decisions(self, application_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return self._newest_first(self._rows("decisions", application_id=application_id), key="decided_at")

    def create_contract_template(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._insert("contract_templates", row)

    def get_contract_template(self, template_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._get("contract_templates", template_id)

    def latest_active_template(self) -> dict[str, Any] | None:
        with self._lock:
            rows = [r for r in self._rows("contract_templates") if r.get("is_active")]
            rows = self._newest_first(rows)
            return rows[0] if rows else None

    def create_contract(self, row: dict[str, Any]) -> dict[str, Any] | None:
        with self._lock:
            open_rows = self.list_contracts(row["application_id"], OPEN_CONTRACT_STATUSES)
            if open_rows:
                return None
            return self._insert("contracts", {"updated_at": _utc_now(), **row})

    def get_contract(self, contract_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._get("contracts", contract_id)

    def find_contract_by_provider_document(self, provider_document_id: str) -> dict[str, Any] | None:
        with self._lock:
            rows = self._newest_first(self._rows("contracts", provider_document_id=provider_document_id))
            return rows[0] if rows else None

    def list_contracts(
        self,
        application_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._rows("contracts", application_id=application_id)
            if statuses is not None:
                wanted = set(statuses)
                rows = [r for r in rows if r.get("status") in wanted]
            return self._newest_first(rows)

    def update_contract(
        self,
        contract_id: str,
        updates: dict[str, Any],
        expected_statuses: Iterable[str] | None = None,
    ) -> dict[str, Any] | None:
        with self._lock:
            return self._compare_and_set("contracts", contract_id, updates, expected_statuses)

    def contract_number_exists(self, contract_number: str) -> bool:
        with self._lock:
            return bool(self._rows("contracts", contract_number=contract_number))

    def mark_webhook_processed(self, key: str) -> bool:
        with self._lock:
            if key in self._webhook_keys:
                return False
            self._webhook_keys.add(key)
            return True

    def release_webhook_key(self, key: str) -> None:
        with self._lock:
            self._webhook_keys.discard(key)

    def create_provider(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._insert("providers", {"updated_at": _utc_now(), **row})

    def get_provider(self, provider_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._get("providers", provider_id)

    def find_provider_by_application(self, application_id: str) -> dict[str, Any] | None:
        with self._lock:
            rows = self._rows("providers", application_id=application_id)
            return rows[0] if rows else None

    def update_provider(
        self,
        provider_id: str,
        updates: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        with self._lock:
            expected = [expected_status] if expected_status else None
            return self._compare_and_set("providers", provider_id, updates, expected)

    def add_provider_status_change(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._insert("provider_status_history", row)

    def list_provider_status_changes(self, provider_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return self._newest_first(self._rows("provider_status_history", provider_id=provider_id))

    def create_sanction(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._insert("sanctions", {"updated_at": _utc_now(), **row})

    def get_sanction(self, sanction_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._get("sanctions", sanction_id)

    def update_sanction(
        self,
        sanction_id: str,
        updates: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        with self._lock:
            expected = [expected_status] if expected_status else None
            return self._compare_and_set("sanctions", sanction_id, updates, expected)

    def list_sanctions(
        self,
        provider_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._rows("sanctions", provider_id=provider_id)
            if statuses is not None:
                wanted = set(statuses)
                rows = [r for r in rows if r.get("status") in wanted]
            return self._newest_first(rows)

    def create_certificate(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._insert("certificates", row)

    def find_certificate_by_code(self, verification_code: str) -> dict[str, Any] | None:
        with self._lock:
            rows = self._rows("certificates", verification_code=verification_code)
            return rows[0] if rows else None

    def list_certificates(self, provider_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return self._newest_first(self._rows("certificates", provider_id=provider_id))

    def list_user_roles(self, user_id: str) -> list[str]:
        with self._lock:
            return sorted(self._roles.get(user_id, set()))

    def grant_role(self, user_id: str, role: str) -> None:
        with self._lock:
            self._roles[user_id].add(role)

    def list_users_with_roles(self, roles: Iterable[str]) -> list[str]:
        wanted = set(roles)
        with self._lock:
            return sorted(uid for uid, granted in self._roles.items() if granted & wanted)

    def create_audit_event(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._insert("audit_events", row)

    def list_audit_events(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._rows("audit_events", entity_type=entity_type, entity_id=entity_id)
            return self._newest_first(rows)[:limit]

    def create_notification(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._insert("notifications", row)

    def list_notifications(self, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return self._newest_first(self._rows("notifications", user_id=user_id))

    def create_workflow_message(self, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._insert("workflow_messages", row)

    def list_workflow_messages(self, application_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._rows("workflow_messages", application_id=application_id)
            return sorted(rows, key=lambda r: str(r.get("created_at", "")))

    def get_geocode(self, address_hash: str) -> dict[str, Any] | None:
        with self._lock:
            return self._get("geocode_cache", address_hash)

    def put_geocode(self, address_hash: str, row: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._insert("geocode_cache", {**row, "id": address_hash})

    def next_sequence(self, name: str) -> int:
        with self._lock:
            self._sequences[name] += 1
            return self._sequences[name]


class SupabaseRepository(CredentialingRepository):
    def __init__(self, client: Any) -> None:
        self.client = client

    def _insert_one(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        payload = dict(row)
        if "id" not in payload:
            payload["id"] = str(uuid4())
        # Retry by dropping unknown columns reported by PostgREST schema cache.
        for _ in range(20):
            try:
                res = self.client.table(table).insert(payload).execute()
                if not res.data:
                    raise RepositoryError(f"Insert failed for {table}")
                return dict(res.data[0])
            except RepositoryError:
                raise
            except Exception as exc:
                missing_col = _extract_missing_column_name(str(exc))
                if missing_col and missing_col in payload:
                    logger.warning(
                        "Dropping column unknown to store schema",
                        extra={"table": table, "column": missing_col},
                    )
                    payload.pop(missing_col, None)
                    continue
                raise
        raise RepositoryError(f"Insert failed for {table}: too many schema-mismatch retries")

    def _insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        try:
            return self._insert_one(table, row)
        except RepositoryError:
            raise
        except Exception as exc:
            raise RepositoryError(f"Insert failed for {table}: {exc}") from exc

    def _select(self, table: str, limit: int | None = None, order: str | None = "created_at", **filters: Any) -> list[dict[str, Any]]:
        try:
            query = self.client.table(table).select("*")
            for key, value in filters.items():
                if value is not None:
                    query = query.eq(key, value)
            if order:
                query = query.order(order, desc=True)
            if limit:
                query = query.limit(limit)
            res = query.execute()
        except Exception as exc:
            raise RepositoryError(f"Select failed for {table}: {exc}") from exc
        return [dict(r) for r in (res.data or [])]

    def _first(self, table: str, order: str | None = "created_at", **filters: Any) -> dict[str, Any] | None:
        rows = self._select(table, limit=1, order=order, **filters)
        return rows[0] if rows else None

    def _compare_and_set(
        self,
        table: str,
        row_id: str,
        updates: dict[str, Any],
        expected: Iterable[str] | None,
    ) -> dict[str, Any] | None:
        payload = {**updates, "updated_at": _utc_now()}
        try:
            query = self.client.table(table).update(payload).eq("id", row_id)
            if expected is not None:
                query = query.in_("status", list(expected))
            res = query.execute()
        except Exception as exc:
            raise RepositoryError(f"Update failed for {table} {row_id}: {exc}") from exc
        if not res.data:
            if self._first(table, order=None, id=row_id) is None:
                raise RepositoryError(f"{table} row not found: {row_id}")
            return None
        return dict(res.data[0])

    def _rpc(self, fn: str, params: dict[str, Any]) -> Any:
        try:
            return self.client.rpc(fn, params).execute().data
        except Exception as exc:
            raise RepositoryError(f"Stored procedure {fn} failed: {exc}") from exc

    def create_application(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("applications", row)

    def get_application(self, application_id: str) -> dict[str, Any] | None:
        return self._first("applications", id=application_id)

    def list_applications(self, status: str | None = None, limit: int = 500) -> list[dict[str, Any]]:
        return self._select("applications", limit=limit, order="updated_at", status=status)

    def update_application_status(
        self,
        application_id: str,
        expected: str,
        target: str,
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        return self._compare_and_set(
            "applications", application_id, {**(extra or {}), "status": target}, [expected]
        )

    def record_decision(
        self,
        application_id: str,
        expected_status: str,
        target_status: str,
        decision_row: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]] | None:
        # Decision insert and status compare-and-set run in one transaction.
        data = self._rpc(
            "record_application_decision",
            {
                "p_application_id": application_id,
                "p_expected_status": expected_status,
                "p_target_status": target_status,
                "p_decision": decision_row,
            },
        )
        if isinstance(data, list):
            data = data[0] if data else None
        if not data or not data.get("decision"):
            return None
        return dict(data["decision"]), dict(data["application"])

    def list_decisions(self, application_id: str) -> list[dict[str, Any]]:
        return self._select("decisions", order="decided_at", application_id=application_id)

    def create_contract_template(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("contract_templates", row)

    def get_contract_template(self, template_id: str) -> dict[str, Any] | None:
        return self._first("contract_templates", id=template_id)

    def latest_active_template(self) -> dict[str, Any] | None:
        return self._first("contract_templates", is_active=True)

    def create_contract(self, row: dict[str, Any]) -> dict[str, Any] | None:
        # A partial unique index on contracts(application_id) where status <> 'superseded'
        # rejects a second open contract.
        try:
            return self._insert_one("contracts", row)
        except RepositoryError:
            raise
        except Exception as exc:
            if _is_unique_violation(exc):
                return None
            raise RepositoryError(f"Insert failed for contracts: {exc}") from exc

    def get_contract(self, contract_id: str) -> dict[str, Any] | None:
        return self._first("contracts", id=contract_id)

    def find_contract_by_provider_document(self, provider_document_id: str) -> dict[str, Any] | None:
        return self._first("contracts", provider_document_id=provider_document_id)

    def list_contracts(
        self,
        application_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        rows = self._select("contracts", application_id=application_id)
        if statuses is not None:
            wanted = set(statuses)
            rows = [r for r in rows if r.get("status") in wanted]
        return rows

    def update_contract(
        self,
        contract_id: str,
        updates: dict[str, Any],
        expected_statuses: Iterable[str] | None = None,
    ) -> dict[str, Any] | None:
        return self._compare_and_set("contracts", contract_id, updates, expected_statuses)

    def contract_number_exists(self, contract_number: str) -> bool:
        return self._first("contracts", contract_number=contract_number) is not None

    def mark_webhook_processed(self, key: str) -> bool:
        try:
            self.client.table("webhook_deliveries").insert({"id": key, "created_at": _utc_now()}).execute()
            return True
        except Exception as exc:
            if _is_unique_violation(exc):
                return False
            raise RepositoryError(f"Insert failed for webhook_deliveries: {exc}") from exc

    def release_webhook_key(self, key: str) -> None:
        try:
            self.client.table("webhook_deliveries").delete().eq("id", key).execute()
        except Exception as exc:
            raise RepositoryError(f"Delete failed for webhook_deliveries: {exc}") from exc

    def create_provider(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("providers", row)

    def get_provider(self, provider_id: str) -> dict[str, Any] | None:
        return self._first("providers", id=provider_id)

    def find_provider_by_application(self, application_id: str) -> dict[str, Any] | None:
        return self._first("providers", application_id=application_id)

    def update_provider(
        self,
        provider_id: str,
        updates: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        expected = [expected_status] if expected_status else None
        return self._compare_and_set("providers", provider_id, updates, expected)

    def add_provider_status_change(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("provider_status_history", row)

    def list_provider_status_changes(self, provider_id: str) -> list[dict[str, Any]]:
        return self._select("provider_status_history", provider_id=provider_id)

    def create_sanction(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("sanctions", row)

    def get_sanction(self, sanction_id: str) -> dict[str, Any] | None:
        return self._first("sanctions", id=sanction_id)

    def update_sanction(
        self,
        sanction_id: str,
        updates: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        expected = [expected_status] if expected_status else None
        return self._compare_and_set("sanctions", sanction_id, updates, expected)

    def list_sanctions(
        self,
        provider_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[dict[str, Any]]:
        rows = self._select("sanctions", provider_id=provider_id)
        if statuses is not None:
            wanted = set(statuses)
            rows = [r for r in rows if r.get("status") in wanted]
        return rows

    def create_certificate(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("certificates", row)

    def find_certificate_by_code(self, verification_code: str) -> dict[str, Any] | None:
        return self._first("certificates", verification_code=verification_code)

    def list_certificates(self, provider_id: str) -> list[dict[str, Any]]:
        return self._select("certificates", provider_id=provider_id)

    def list_user_roles(self, user_id: str) -> list[str]:
        rows = self._select("user_roles", order=None, user_id=user_id)
        return sorted({str(r.get("role")) for r in rows if r.get("role")})

    def grant_role(self, user_id: str, role: str) -> None:
        if role not in self.list_user_roles(user_id):
            self._insert("user_roles", {"user_id": user_id, "role": role})

    def list_users_with_roles(self, roles: Iterable[str]) -> list[str]:
        try:
            res = self.client.table("user_roles").select("user_id").in_("role", list(roles)).execute()
        except Exception as exc:
            raise RepositoryError(f"Select failed for user_roles: {exc}") from exc
        return sorted({str(r["user_id"]) for r in (res.data or [])})

    def create_audit_event(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("audit_events", row)

    def list_audit_events(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]:
        return self._select("audit_events", limit=limit, entity_type=entity_type, entity_id=entity_id)

    def create_notification(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("notifications", row)

    def list_notifications(self, user_id: str) -> list[dict[str, Any]]:
        return self._select("notifications", user_id=user_id)

    def create_workflow_message(self, row: dict[str, Any]) -> dict[str, Any]:
        return self._insert("workflow_messages", row)

    def list_workflow_messages(self, application_id: str) -> list[dict[str, Any]]:
        rows = self._select("workflow_messages", application_id=application_id)
        return list(reversed(rows))

    def get_geocode(self, address_hash: str) -> dict[str, Any] | None:
        return self._first("geocode_cache", order=None, id=address_hash)

    def put_geocode(self, address_hash: str, row: dict[str, Any]) -> dict[str, Any]:
        try:
            res = self.client.table("geocode_cache").upsert({**row, "id": address_hash}).execute()
        except Exception as exc:
            raise RepositoryError(f"Upsert failed for geocode_cache: {exc}") from exc
        return dict(res.data[0]) if res.data else {**row, "id": address_hash}

    def next_sequence(self, name: str) -> int:
        data = self._rpc("next_sequence", {"p_name": name})
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict):
            data = next(iter(data.values()), None)
        if data is None:
            raise RepositoryError(f"Sequence {name} returned no value")
        return int(data)


def build_repository(config: Settings | None = None) -> tuple[CredentialingRepository, bool, str | None]:
    client, err = get_supabase_client(config or default_settings)
    if client is None:
        return InMemoryRepository(), False, f"{err}; using in-memory repository."

    try:
        # Connectivity + schema compatibility check.
        client.table("applications").select("id").limit(1).execute()
        return SupabaseRepository(client), True, None
    except Exception as exc:
        logger.warning("Supabase unreachable; falling back to memory", extra={"error": str(exc)})
        return (
            InMemoryRepository(),
            False,
            f"Supabase unavailable or schema mismatch ({exc}). Using in-memory repository.",
        )
