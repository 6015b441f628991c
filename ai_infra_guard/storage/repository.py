"""
Repository pattern for data access.

Handles database operations and data persistence logic for cost ledgers,
usage analytics, feature flags, A/B tests and API keys.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    ABTest,
    ABTestAssignment,
    ABTestVariant,
    APIKeyRecord,
    CostTrackingRecord,
    FeatureFlag,
    UsageAnalytics,
    UsageAnalyticsRecord,
)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value is not None else None


def _date_conditions(
    column: str,
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    conditions: List[str],
    params: List[Any]
) -> None:
    """Append inclusive date range conditions for ``column``."""
    if start_date is not None:
        conditions.append(f"{column} >= ?")
        params.append(start_date.isoformat())
    if end_date is not None:
        conditions.append(f"{column} <= ?")
        params.append(end_date.isoformat())


class CostTrackingRepository:
    """Append-only ledgers for cost records and usage analytics.

    No UPDATE or DELETE operations are ever performed on these tables.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def insert_cost_record(self, record: CostTrackingRecord) -> None:
        """Insert a single cost record into the ledger.

        Args:
            record: The cost record to persist
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO cost_tracking
                (timestamp, provider, model, feature, prompt_tokens,
                 completion_tokens, total_tokens, estimated_cost,
                 user_id, organization_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.timestamp.isoformat(),
                record.provider,
                record.model,
                record.feature,
                record.prompt_tokens,
                record.completion_tokens,
                record.total_tokens,
                record.estimated_cost,
                record.user_id,
                record.organization_id
            ))
            conn.commit()
        finally:
            conn.close()

    def insert_usage_record(self, record: UsageAnalyticsRecord) -> None:
        """Insert a single usage analytics row.

        Args:
            record: The usage record to persist
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO usage_analytics
                (timestamp, feature, provider, model, success, request_count,
                 response_time_ms, tokens_used, cost, error_code,
                 user_id, organization_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.timestamp.isoformat(),
                record.feature,
                record.provider,
                record.model,
                1 if record.success else 0,
                record.request_count,
                record.response_time_ms,
                record.tokens_used,
                record.cost,
                record.error_code,
                record.user_id,
                record.organization_id
            ))
            conn.commit()
        finally:
            conn.close()

    def fetch_cost_records(
        self,
        organization_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[CostTrackingRecord]:
        """Fetch cost records filtered by organization and inclusive date range.

        Args:
            organization_id: Optional organization filter
            start_date: Optional inclusive lower bound on timestamp
            end_date: Optional inclusive upper bound on timestamp

        Returns:
            Matching records ordered by timestamp (oldest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT timestamp, provider, model, feature, prompt_tokens,
                       completion_tokens, total_tokens, estimated_cost,
                       user_id, organization_id
                FROM cost_tracking
            """
            conditions: List[str] = []
            params: List[Any] = []

            if organization_id is not None:
                conditions.append("organization_id = ?")
                params.append(organization_id)
            _date_conditions("timestamp", start_date, end_date, conditions, params)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY timestamp ASC"

            cursor = conn.execute(query, params)
            return [
                CostTrackingRecord(
                    timestamp=datetime.fromisoformat(row[0]),
                    provider=row[1],
                    model=row[2],
                    feature=row[3],
                    prompt_tokens=row[4],
                    completion_tokens=row[5],
                    total_tokens=row[6],
                    estimated_cost=row[7],
                    user_id=row[8],
                    organization_id=row[9]
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def aggregate_usage(
        self,
        organization_id: Optional[str] = None,
        feature: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[UsageAnalytics]:
        """Aggregate usage rows grouped by feature, provider and model.

        Args:
            organization_id: Optional organization filter
            feature: Optional feature filter
            start_date: Optional inclusive lower bound on timestamp
            end_date: Optional inclusive upper bound on timestamp

        Returns:
            One UsageAnalytics entry per (feature, provider, model) group
        """
        conn = get_connection(self.db_path)
        try:
            query = """
                SELECT
                    feature,
                    provider,
                    model,
                    SUM(request_count) AS request_count,
                    SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END) AS success_count,
                    SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END) AS failure_count,
                    AVG(response_time_ms) AS average_response_time,
                    SUM(cost) AS total_cost,
                    SUM(tokens_used) AS total_tokens,
                    MIN(timestamp) AS period_start,
                    MAX(timestamp) AS period_end
                FROM usage_analytics
            """
            conditions: List[str] = []
            params: List[Any] = []

            if organization_id is not None:
                conditions.append("organization_id = ?")
                params.append(organization_id)
            if feature is not None:
                conditions.append("feature = ?")
                params.append(feature)
            _date_conditions("timestamp", start_date, end_date, conditions, params)

            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " GROUP BY feature, provider, model ORDER BY feature, provider, model"

            cursor = conn.execute(query, params)
            return [
                UsageAnalytics(
                    feature=row[0],
                    provider=row[1],
                    model=row[2],
                    request_count=int(row[3] or 0),
                    success_count=int(row[4] or 0),
                    failure_count=int(row[5] or 0),
                    average_response_time=float(row[6] or 0),
                    total_cost=float(row[7] or 0),
                    total_tokens=int(row[8] or 0),
                    period_start=datetime.fromisoformat(row[9]),
                    period_end=datetime.fromisoformat(row[10])
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


class FeatureFlagRepository:
    """Read/write access to feature flags keyed by unique name."""

    _COLUMNS = """
        name, enabled, description, target_users, target_organizations,
        rollout_percentage, conditions, created_at, updated_at
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    @staticmethod
    def _row_to_flag(row) -> FeatureFlag:
        return FeatureFlag(
            name=row[0],
            enabled=bool(row[1]),
            description=row[2],
            target_users=json.loads(row[3]) if row[3] else [],
            target_organizations=json.loads(row[4]) if row[4] else [],
            rollout_percentage=row[5],
            conditions=json.loads(row[6]) if row[6] else {},
            created_at=datetime.fromisoformat(row[7]),
            updated_at=datetime.fromisoformat(row[8])
        )

    def get(self, name: str) -> Optional[FeatureFlag]:
        """Fetch a flag by name, or None if it does not exist."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {self._COLUMNS} FROM feature_flag WHERE name = ?",
                (name,)
            )
            row = cursor.fetchone()
            return self._row_to_flag(row) if row else None
        finally:
            conn.close()

    def save(self, flag: FeatureFlag) -> FeatureFlag:
        """Insert or replace a flag by name.

        The original ``created_at`` of an existing flag is preserved.

        Returns:
            The flag as stored
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO feature_flag ({self._COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    enabled = excluded.enabled,
                    description = excluded.description,
                    target_users = excluded.target_users,
                    target_organizations = excluded.target_organizations,
                    rollout_percentage = excluded.rollout_percentage,
                    conditions = excluded.conditions,
                    updated_at = excluded.updated_at
            """, (
                flag.name,
                1 if flag.enabled else 0,
                flag.description,
                json.dumps(list(flag.target_users)),
                json.dumps(list(flag.target_organizations)),
                flag.rollout_percentage,
                json.dumps(dict(flag.conditions)),
                flag.created_at.isoformat(),
                flag.updated_at.isoformat()
            ))
            conn.commit()
        finally:
            conn.close()
        return self.get(flag.name)

    def list_all(self) -> List[FeatureFlag]:
        """Return every flag ordered by name."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {self._COLUMNS} FROM feature_flag ORDER BY name ASC"
            )
            return [self._row_to_flag(row) for row in cursor.fetchall()]
        finally:
            conn.close()


class ABTestRepository:
    """Storage for A/B test definitions and sticky assignments."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    @staticmethod
    def _row_to_test(row) -> ABTest:
        variants = [
            ABTestVariant(id=v["id"], name=v.get("name", ""), config=v.get("config", {}))
            for v in json.loads(row[2])
        ]
        return ABTest(
            id=row[0],
            name=row[1],
            variants=variants,
            traffic_split=json.loads(row[3]),
            start_date=datetime.fromisoformat(row[4]),
            end_date=_from_iso(row[5]),
            is_active=bool(row[6]),
            metrics=json.loads(row[7]) if row[7] else [],
            description=row[8],
            created_at=datetime.fromisoformat(row[9])
        )

    def get_test(self, test_id: str) -> Optional[ABTest]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, name, variants, traffic_split, start_date, end_date,
                       is_active, metrics, description, created_at
                FROM ab_test WHERE id = ?
            """, (test_id,))
            row = cursor.fetchone()
            return self._row_to_test(row) if row else None
        finally:
            conn.close()

    def list_active(self) -> List[ABTest]:
        """Return tests flagged active, regardless of their date window."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT id, name, variants, traffic_split, start_date, end_date,
                       is_active, metrics, description, created_at
                FROM ab_test WHERE is_active = 1 ORDER BY created_at ASC
            """)
            return [self._row_to_test(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def save_test(self, test: ABTest) -> None:
        """Insert or replace a test definition.

        Existing assignments are left untouched.
        """
        variants = [
            {"id": v.id, "name": v.name, "config": v.config} for v in test.variants
        ]
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO ab_test
                (id, name, variants, traffic_split, start_date, end_date,
                 is_active, metrics, description, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                test.id,
                test.name,
                json.dumps(variants),
                json.dumps(list(test.traffic_split)),
                test.start_date.isoformat(),
                _to_iso(test.end_date),
                1 if test.is_active else 0,
                json.dumps(list(test.metrics)),
                test.description,
                test.created_at.isoformat()
            ))
            conn.commit()
        finally:
            conn.close()

    def get_assignment(self, user_id: str, test_id: str) -> Optional[ABTestAssignment]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT user_id, organization_id, test_id, variant_id, assigned_at
                FROM ab_test_assignment WHERE user_id = ? AND test_id = ?
            """, (user_id, test_id))
            row = cursor.fetchone()
            if row is None:
                return None
            return ABTestAssignment(
                user_id=row[0],
                organization_id=row[1],
                test_id=row[2],
                variant_id=row[3],
                assigned_at=datetime.fromisoformat(row[4])
            )
        finally:
            conn.close()

    def insert_assignment(self, assignment: ABTestAssignment) -> ABTestAssignment:
        """Persist an assignment unless one already exists for (user, test).

        Returns:
            The assignment that is stored, which is the pre-existing one
            if another writer got there first
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR IGNORE INTO ab_test_assignment
                (user_id, organization_id, test_id, variant_id, assigned_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                assignment.user_id,
                assignment.organization_id,
                assignment.test_id,
                assignment.variant_id,
                assignment.assigned_at.isoformat()
            ))
            conn.commit()
        finally:
            conn.close()
        return self.get_assignment(assignment.user_id, assignment.test_id)


class APIKeyRepository:
    """Storage for hashed provider API keys."""

    _COLUMNS = """
        id, organization_id, provider, key_hash, key_prefix, name,
        is_active, expires_at, last_used_at, created_at
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    @staticmethod
    def _row_to_key(row) -> APIKeyRecord:
        return APIKeyRecord(
            id=row[0],
            organization_id=row[1],
            provider=row[2],
            key_hash=row[3],
            key_prefix=row[4],
            name=row[5],
            is_active=bool(row[6]),
            expires_at=_from_iso(row[7]),
            last_used_at=_from_iso(row[8]),
            created_at=datetime.fromisoformat(row[9])
        )

    def _fetch(self, where: str, params: tuple) -> List[APIKeyRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {self._COLUMNS} FROM api_key WHERE {where}", params
            )
            return [self._row_to_key(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def find_active(self, organization_id: str, provider: str) -> Optional[APIKeyRecord]:
        """Most recently created active key for an organization and provider."""
        rows = self._fetch(
            "organization_id = ? AND provider = ? AND is_active = 1 "
            "ORDER BY created_at DESC LIMIT 1",
            (organization_id, provider)
        )
        return rows[0] if rows else None

    def find_by_hash(
        self,
        organization_id: str,
        provider: str,
        key_hash: str,
        active_only: bool = False
    ) -> Optional[APIKeyRecord]:
        where = "organization_id = ? AND provider = ? AND key_hash = ?"
        if active_only:
            where += " AND is_active = 1"
        rows = self._fetch(where, (organization_id, provider, key_hash))
        return rows[0] if rows else None

    def list_for_organization(self, organization_id: str) -> List[APIKeyRecord]:
        return self._fetch(
            "organization_id = ? ORDER BY created_at DESC", (organization_id,)
        )

    def insert(self, record: APIKeyRecord) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO api_key ({self._COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.organization_id,
                record.provider,
                record.key_hash,
                record.key_prefix,
                record.name,
                1 if record.is_active else 0,
                _to_iso(record.expires_at),
                _to_iso(record.last_used_at),
                record.created_at.isoformat()
            ))
            conn.commit()
        finally:
            conn.close()

    def _update(self, sql: str, params: tuple) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def touch(self, key_id: str, used_at: datetime) -> None:
        """Record the last time a key was handed out."""
        self._update(
            "UPDATE api_key SET last_used_at = ? WHERE id = ?",
            (used_at.isoformat(), key_id)
        )

    def deactivate(self, key_id: str, organization_id: str) -> int:
        """Mark a key inactive. Returns the number of rows changed."""
        return self._update(
            "UPDATE api_key SET is_active = 0 WHERE id = ? AND organization_id = ?",
            (key_id, organization_id)
        )

    def delete(self, key_id: str, organization_id: str) -> int:
        """Delete a key. Returns the number of rows removed."""
        return self._update(
            "DELETE FROM api_key WHERE id = ? AND organization_id = ?",
            (key_id, organization_id)
        )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every table used by the package if it doesn't exist.

    ``cost_tracking`` and ``usage_analytics`` are append-only ledgers.
    ``ab_test_assignment`` carries a unique (user_id, test_id) index so
    assignments can never be duplicated.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS cost_tracking (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                feature TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                estimated_cost REAL NOT NULL,
                user_id TEXT,
                organization_id TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_cost_tracking_org_ts
                ON cost_tracking (organization_id, timestamp);

            CREATE TABLE IF NOT EXISTS usage_analytics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                feature TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                success INTEGER NOT NULL,
                request_count INTEGER NOT NULL DEFAULT 1,
                response_time_ms REAL,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                cost REAL NOT NULL DEFAULT 0,
                error_code TEXT,
                user_id TEXT,
                organization_id TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_usage_analytics_org_ts
                ON usage_analytics (organization_id, timestamp);

            CREATE TABLE IF NOT EXISTS feature_flag (
                name TEXT PRIMARY KEY,
                enabled INTEGER NOT NULL DEFAULT 0,
                description TEXT,
                target_users TEXT,
                target_organizations TEXT,
                rollout_percentage INTEGER,
                conditions TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ab_test (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                variants TEXT NOT NULL,
                traffic_split TEXT NOT NULL,
                start_date TEXT NOT NULL,
                end_date TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                metrics TEXT,
                description TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ab_test_assignment (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                organization_id TEXT,
                test_id TEXT NOT NULL,
                variant_id TEXT NOT NULL,
                assigned_at TEXT NOT NULL
            );
            CREATE UNIQUE INDEX IF NOT EXISTS idx_ab_assignment_user_test
                ON ab_test_assignment (user_id, test_id);

            CREATE TABLE IF NOT EXISTS api_key (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                provider TEXT NOT NULL,
                key_hash TEXT NOT NULL,
                key_prefix TEXT NOT NULL,
                name TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                expires_at TEXT,
                last_used_at TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_api_key_org_provider
                ON api_key (organization_id, provider);
        """)
        conn.commit()
    finally:
        conn.close()
