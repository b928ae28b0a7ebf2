"""DuckDB storage for devices, user preferences, time rules and decisions.

DuckDB is chosen for:
- Single-file database (simple deployment next to the media server)
- Real transactions, so preset replacement is all-or-nothing
- SQL interface for the audit log and maintenance queries

Timestamps are stored as naive UTC and returned as aware UTC datetimes.
"""

import json
import logging
import shutil
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import duckdb

from streamgate.exceptions import NotFoundError, StoreUnavailableError, ValidationError
from streamgate.models import (
    AccessVerdict,
    AdmissionRequest,
    ApprovalStatus,
    Device,
    IPAccessPolicy,
    NetworkPolicy,
    TimeRule,
    UserPreference,
)
from streamgate.policies import network, schedule, temporary_access
from streamgate.storage.cache import DEFAULT_HAS_RULES_TTL, RuleCache

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

GLOBAL_DEFAULT_BLOCK_KEY = "default_block"

DEVICE_COLUMNS = (
    "user_id, device_identifier, username, device_name, device_platform, "
    "device_product, device_version, status, ip_address, current_session_key, "
    "session_count, first_seen, last_seen, temporary_access_until, "
    "temporary_access_granted_at, temporary_access_duration_minutes"
)

RULE_COLUMNS = (
    "id, user_id, device_identifier, rule_name, enabled, day_of_week, "
    "start_time, end_time, created_at"
)


def _to_db(moment: Optional[datetime]) -> Optional[datetime]:
    """Convert to naive UTC for storage."""
    if moment is None:
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


def _from_db(moment: Optional[datetime]) -> Optional[datetime]:
    """Convert a stored naive UTC timestamp to an aware datetime."""
    if moment is None:
        return None
    return moment.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessStore:
    """DuckDB-backed state store for the access decision engine."""

    def __init__(
        self,
        db_path: Path,
        read_only: bool = False,
        default_block: Optional[bool] = None,
        has_rules_ttl: int = DEFAULT_HAS_RULES_TTL,
    ) -> None:
        """Initialize the access store.

        Args:
            db_path: Path to the DuckDB database file. Use ":memory:" for in-memory.
            read_only: If True, open in read-only mode (allows concurrent readers).
            default_block: Global default used when the settings table has none
            has_rules_ttl: Soft TTL (seconds) for the "has schedule" display flag
        """
        self.db_path = db_path
        self.read_only = read_only
        self.default_block = default_block
        self.cache = RuleCache(has_rules_ttl=has_rules_ttl)
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._temp_db_path: Optional[Path] = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        db_str = str(self.db_path) if self.db_path != Path(":memory:") else ":memory:"

        try:
            if self.read_only and self.db_path != Path(":memory:"):
                try:
                    self._conn = duckdb.connect(db_str, read_only=True)
                except duckdb.IOException:
                    # Database is locked by a writer, read from a copy instead.
                    # Both the .db and .wal files are needed for complete data.
                    temp_dir = tempfile.mkdtemp(prefix="streamgate_")
                    self._temp_db_path = Path(temp_dir) / self.db_path.name
                    shutil.copy2(self.db_path, self._temp_db_path)
                    wal_path = Path(str(self.db_path) + ".wal")
                    if wal_path.exists():
                        shutil.copy2(wal_path, Path(str(self._temp_db_path) + ".wal"))
                    self._conn = duckdb.connect(str(self._temp_db_path), read_only=True)
            else:
                self._conn = duckdb.connect(db_str, read_only=self.read_only)
        except (duckdb.Error, OSError) as e:
            raise StoreUnavailableError(
                f"Cannot open access database {self.db_path}: {e}",
                details={"db_path": str(self.db_path)},
            ) from e

        if not self.read_only:
            self._ensure_schema()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
        if self._temp_db_path and self._temp_db_path.exists():
            shutil.rmtree(self._temp_db_path.parent, ignore_errors=True)
            self._temp_db_path = None
        self.cache.clear()

    def __enter__(self) -> "AccessStore":
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get the database connection, raising if not connected."""
        if self._conn is None:
            raise StoreUnavailableError("AccessStore not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Surface database failures as StoreUnavailableError."""
        try:
            yield
        except duckdb.Error as e:
            logger.error(f"Access store failure during {operation}: {e}")
            raise StoreUnavailableError(
                f"Access store failure during {operation}: {e}",
                details={"operation": operation},
            ) from e

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[None]:
        """Run a block in one transaction, rolling back on any error."""
        with self._guard(operation):
            self.conn.execute("BEGIN TRANSACTION")
            try:
                yield
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def _fetch_dicts(self, sql: str, params: Optional[list] = None) -> list[dict]:
        result = self.conn.execute(sql, params or []).fetchall()
        columns = [desc[0] for desc in self.conn.description]
        return [dict(zip(columns, row)) for row in result]

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._guard("schema setup"):
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            result = self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ).fetchone()
            current_version = result[0] if result and result[0] else 0

            if current_version < SCHEMA_VERSION:
                self._apply_schema()
                self.conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    [SCHEMA_VERSION]
                )

    def _apply_schema(self) -> None:
        """Apply the database schema."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS user_devices (
                user_id VARCHAR NOT NULL,
                device_identifier VARCHAR NOT NULL,
                username VARCHAR,
                device_name VARCHAR,
                device_platform VARCHAR,
                device_product VARCHAR,
                device_version VARCHAR,
                status VARCHAR NOT NULL DEFAULT 'pending',
                ip_address VARCHAR,
                current_session_key VARCHAR,
                session_count BIGINT DEFAULT 0,
                first_seen TIMESTAMP NOT NULL,
                last_seen TIMESTAMP NOT NULL,

                -- Temporary access grant (until >= granted_at when both set)
                temporary_access_until TIMESTAMP,
                temporary_access_granted_at TIMESTAMP,
                temporary_access_duration_minutes INTEGER,

                PRIMARY KEY (user_id, device_identifier)
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS user_preferences (
                user_id VARCHAR PRIMARY KEY,
                username VARCHAR,
                default_block BOOLEAN,  -- NULL = inherit the global default
                network_policy VARCHAR NOT NULL DEFAULT 'both',
                ip_access_policy VARCHAR NOT NULL DEFAULT 'all',
                allowed_ips VARCHAR NOT NULL DEFAULT '[]',  -- JSON list, entry order kept
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.execute("CREATE SEQUENCE IF NOT EXISTS time_rule_ids START 1")
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS time_rules (
                id INTEGER PRIMARY KEY,
                user_id VARCHAR NOT NULL,
                device_identifier VARCHAR,  -- NULL = all of the user's devices
                rule_name VARCHAR NOT NULL DEFAULT '',
                enabled BOOLEAN NOT NULL DEFAULT TRUE,
                day_of_week INTEGER NOT NULL CHECK (day_of_week >= 0 AND day_of_week <= 6),
                start_time VARCHAR NOT NULL,
                end_time VARCHAR NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS app_settings (
                key VARCHAR PRIMARY KEY,
                value VARCHAR,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS access_decisions (
                id VARCHAR PRIMARY KEY,
                timestamp TIMESTAMP NOT NULL,
                user_id VARCHAR NOT NULL,
                device_identifier VARCHAR NOT NULL,
                source_ip VARCHAR,
                allowed BOOLEAN NOT NULL,
                reason VARCHAR NOT NULL,
                stop_code VARCHAR,
                detail VARCHAR DEFAULT '',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_decisions_timestamp
            ON access_decisions (timestamp)
        """)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_device(row: dict) -> Device:
        try:
            status = ApprovalStatus(row["status"])
        except ValueError:
            logger.warning(f"Unknown device status {row['status']!r}, treating as pending")
            status = ApprovalStatus.PENDING

        return Device(
            user_id=row["user_id"],
            device_identifier=row["device_identifier"],
            status=status,
            temporary_access_until=_from_db(row["temporary_access_until"]),
            temporary_access_granted_at=_from_db(row["temporary_access_granted_at"]),
            temporary_access_duration_minutes=row["temporary_access_duration_minutes"],
            username=row["username"],
            device_name=row["device_name"],
            device_platform=row["device_platform"],
            device_product=row["device_product"],
            device_version=row["device_version"],
            ip_address=row["ip_address"],
            current_session_key=row["current_session_key"],
            session_count=row["session_count"] or 0,
            first_seen=_from_db(row["first_seen"]),
            last_seen=_from_db(row["last_seen"]),
        )

    @staticmethod
    def _row_to_preference(row: dict) -> UserPreference:
        try:
            allowed_ips = json.loads(row["allowed_ips"] or "[]")
        except json.JSONDecodeError:
            logger.warning(f"Corrupt allowed_ips for {row['user_id']}, treating as empty")
            allowed_ips = []
        if not isinstance(allowed_ips, list):
            logger.warning(f"allowed_ips for {row['user_id']} is not a list, treating as empty")
            allowed_ips = []

        # Unknown enum values are passed through; the engine coerces them
        try:
            network_policy = NetworkPolicy(row["network_policy"])
        except ValueError:
            network_policy = row["network_policy"]
        try:
            ip_access_policy = IPAccessPolicy(row["ip_access_policy"])
        except ValueError:
            ip_access_policy = row["ip_access_policy"]

        return UserPreference(
            user_id=row["user_id"],
            username=row["username"],
            default_block=row["default_block"],
            network_policy=network_policy,
            ip_access_policy=ip_access_policy,
            allowed_ips=list(allowed_ips),
        )

    @staticmethod
    def _row_to_rule(row: dict) -> TimeRule:
        return TimeRule(
            id=row["id"],
            user_id=row["user_id"],
            device_identifier=row["device_identifier"],
            rule_name=row["rule_name"],
            enabled=row["enabled"],
            day_of_week=row["day_of_week"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            created_at=_from_db(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Read contract
    # ------------------------------------------------------------------

    def get_device(self, user_id: str, device_identifier: str) -> Optional[Device]:
        """Look up one device, or None if it has never been seen."""
        with self._guard("get_device"):
            rows = self._fetch_dicts(
                f"SELECT {DEVICE_COLUMNS} FROM user_devices "
                "WHERE user_id = ? AND device_identifier = ?",
                [user_id, device_identifier],
            )
        return self._row_to_device(rows[0]) if rows else None

    def list_devices(
        self,
        status: Optional[ApprovalStatus] = None,
        user_id: Optional[str] = None,
    ) -> list[Device]:
        """List devices, optionally filtered by status and/or owner."""
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(ApprovalStatus(status).value)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._guard("list_devices"):
            rows = self._fetch_dicts(
                f"SELECT {DEVICE_COLUMNS} FROM user_devices {where} "
                "ORDER BY user_id, last_seen DESC",
                params,
            )
        return [self._row_to_device(row) for row in rows]

    def get_user_preference(self, user_id: str) -> Optional[UserPreference]:
        """Look up a user's preference, or None if none was ever written."""
        with self._guard("get_user_preference"):
            rows = self._fetch_dicts(
                "SELECT * FROM user_preferences WHERE user_id = ?", [user_id]
            )
        return self._row_to_preference(rows[0]) if rows else None

    def get_time_rules(
        self, user_id: str, device_identifier: Optional[str] = None
    ) -> list[TimeRule]:
        """Rules for exactly one scope: a device, or user-wide when None.

        Results are memoized until the next write for this user.
        """
        cached = self.cache.get_rules(user_id, device_identifier)
        if cached is not None:
            return cached

        with self._guard("get_time_rules"):
            rows = self._fetch_dicts(
                f"SELECT {RULE_COLUMNS} FROM time_rules "
                "WHERE user_id = ? AND device_identifier IS NOT DISTINCT FROM ? "
                "ORDER BY day_of_week, start_time, id",
                [user_id, device_identifier],
            )
        rules = [self._row_to_rule(row) for row in rows]
        self.cache.set_rules(user_id, device_identifier, rules)
        return [replace(rule) for rule in rules]

    def get_all_time_rules(self, user_id: Optional[str] = None) -> list[TimeRule]:
        """Every rule for a user across all scopes (or for all users)."""
        where = "WHERE user_id = ?" if user_id is not None else ""
        params = [user_id] if user_id is not None else []
        with self._guard("get_all_time_rules"):
            rows = self._fetch_dicts(
                f"SELECT {RULE_COLUMNS} FROM time_rules {where} "
                "ORDER BY user_id, device_identifier NULLS FIRST, day_of_week, start_time, id",
                params,
            )
        return [self._row_to_rule(row) for row in rows]

    def get_time_rule(self, user_id: str, rule_id: int) -> TimeRule:
        """Fetch one rule owned by a user.

        Raises:
            NotFoundError: If the rule does not exist for this user
        """
        with self._guard("get_time_rule"):
            rows = self._fetch_dicts(
                f"SELECT {RULE_COLUMNS} FROM time_rules WHERE id = ? AND user_id = ?",
                [rule_id, user_id],
            )
        if not rows:
            raise NotFoundError(
                "Time rule not found", details={"user_id": user_id, "rule_id": rule_id}
            )
        return self._row_to_rule(rows[0])

    def has_schedule(self, user_id: str) -> bool:
        """Whether a user has any enabled rule, for display badges.

        Served from a soft-TTL cache; never used for admission decisions.
        """
        cached = self.cache.get_has_rules(user_id)
        if cached is not None:
            return cached

        with self._guard("has_schedule"):
            result = self.conn.execute(
                "SELECT COUNT(*) FROM time_rules WHERE user_id = ? AND enabled",
                [user_id],
            ).fetchone()
        value = bool(result and result[0])
        self.cache.set_has_rules(user_id, value)
        return value

    def get_global_default_block(self) -> Optional[bool]:
        """Global default block setting, falling back to the configured value."""
        with self._guard("get_global_default_block"):
            result = self.conn.execute(
                "SELECT value FROM app_settings WHERE key = ?",
                [GLOBAL_DEFAULT_BLOCK_KEY],
            ).fetchone()
        if result is None or result[0] is None:
            return self.default_block
        return str(result[0]).strip().lower() == "true"

    # ------------------------------------------------------------------
    # Device writes
    # ------------------------------------------------------------------

    def _require_device(self, user_id: str, device_identifier: str) -> Device:
        device = self.get_device(user_id, device_identifier)
        if device is None:
            raise NotFoundError(
                f"Device not found: {user_id}/{device_identifier}",
                details={"user_id": user_id, "device_identifier": device_identifier},
            )
        return device

    def upsert_device_observation(
        self,
        user_id: str,
        device_identifier: str,
        now: Optional[datetime] = None,
        ip_address: Optional[str] = None,
        session_key: Optional[str] = None,
        username: Optional[str] = None,
        device_name: Optional[str] = None,
        device_platform: Optional[str] = None,
        device_product: Optional[str] = None,
        device_version: Optional[str] = None,
    ) -> tuple[Device, bool]:
        """Record a session seen from a device.

        Unknown devices are created as pending. Known devices get their
        last-seen details refreshed; the session count goes up when the
        session key changes.

        Returns:
            Tuple of (Device, created) where created is True for a new device
        """
        now = now or _utcnow()

        with self._transaction("upsert_device_observation"):
            existing = self.get_device(user_id, device_identifier)

            if existing is None:
                self.conn.execute(f"""
                    INSERT INTO user_devices ({DEVICE_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL)
                """, [
                    user_id,
                    device_identifier,
                    username,
                    device_name,
                    device_platform,
                    device_product,
                    device_version,
                    ApprovalStatus.PENDING.value,
                    ip_address,
                    session_key,
                    1 if session_key else 0,
                    _to_db(now),
                    _to_db(now),
                ])
                created = True
            else:
                new_session = bool(session_key) and session_key != existing.current_session_key
                self.conn.execute("""
                    UPDATE user_devices SET
                        last_seen = ?,
                        ip_address = COALESCE(?, ip_address),
                        username = COALESCE(?, username),
                        device_platform = COALESCE(?, device_platform),
                        device_product = COALESCE(?, device_product),
                        device_version = COALESCE(?, device_version),
                        device_name = COALESCE(device_name, ?),
                        current_session_key = COALESCE(?, current_session_key),
                        session_count = session_count + ?
                    WHERE user_id = ? AND device_identifier = ?
                """, [
                    _to_db(now),
                    ip_address,
                    username,
                    device_platform,
                    device_product,
                    device_version,
                    device_name,
                    session_key,
                    1 if new_session else 0,
                    user_id,
                    device_identifier,
                ])
                created = False

        if created:
            logger.info(f"New device observed: {user_id}/{device_identifier} (pending)")

        device = self.get_device(user_id, device_identifier)
        return device, created

    def _set_device_status(
        self, user_id: str, device_identifier: str, status: ApprovalStatus
    ) -> Device:
        device = self._require_device(user_id, device_identifier)
        with self._guard("set_device_status"):
            self.conn.execute(
                "UPDATE user_devices SET status = ? WHERE user_id = ? AND device_identifier = ?",
                [status.value, user_id, device_identifier],
            )
        logger.info(f"Device {user_id}/{device_identifier}: {device.status.value} -> {status.value}")
        return replace(device, status=status)

    def approve_device(self, user_id: str, device_identifier: str) -> Device:
        return self._set_device_status(user_id, device_identifier, ApprovalStatus.APPROVED)

    def reject_device(self, user_id: str, device_identifier: str) -> Device:
        return self._set_device_status(user_id, device_identifier, ApprovalStatus.REJECTED)

    def toggle_device(self, user_id: str, device_identifier: str) -> Device:
        """Flip an approved device to rejected; anything else becomes approved."""
        device = self._require_device(user_id, device_identifier)
        target = (
            ApprovalStatus.REJECTED
            if device.status == ApprovalStatus.APPROVED
            else ApprovalStatus.APPROVED
        )
        return self._set_device_status(user_id, device_identifier, target)

    def rename_device(self, user_id: str, device_identifier: str, name: str) -> Device:
        """Set the display name of a device.

        Raises:
            ValidationError: If the name is blank
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Device name must not be empty")

        device = self._require_device(user_id, device_identifier)
        with self._guard("rename_device"):
            self.conn.execute(
                "UPDATE user_devices SET device_name = ? WHERE user_id = ? AND device_identifier = ?",
                [name, user_id, device_identifier],
            )
        logger.info(f"Device {user_id}/{device_identifier} renamed to {name!r}")
        return replace(device, device_name=name)

    def delete_device(self, user_id: str, device_identifier: str) -> None:
        """Delete a device together with its device-scoped time rules."""
        self._require_device(user_id, device_identifier)
        try:
            with self._transaction("delete_device"):
                self.conn.execute(
                    "DELETE FROM time_rules WHERE user_id = ? AND device_identifier = ?",
                    [user_id, device_identifier],
                )
                self.conn.execute(
                    "DELETE FROM user_devices WHERE user_id = ? AND device_identifier = ?",
                    [user_id, device_identifier],
                )
        finally:
            self.cache.invalidate_user(user_id)
        logger.info(f"Device {user_id}/{device_identifier} deleted")

    # ------------------------------------------------------------------
    # Temporary access
    # ------------------------------------------------------------------

    def _write_grant(self, device: Device) -> None:
        # One statement so the grant is never observable half written
        self.conn.execute("""
            UPDATE user_devices SET
                temporary_access_until = ?,
                temporary_access_granted_at = ?,
                temporary_access_duration_minutes = ?
            WHERE user_id = ? AND device_identifier = ?
        """, [
            _to_db(device.temporary_access_until),
            _to_db(device.temporary_access_granted_at),
            device.temporary_access_duration_minutes,
            device.user_id,
            device.device_identifier,
        ])

    def grant_temporary_access(
        self,
        user_id: str,
        device_identifier: str,
        duration_minutes: int,
        now: Optional[datetime] = None,
    ) -> Device:
        """Grant a device temporary access for duration_minutes from now.

        Raises:
            ValidationError: If the duration is outside [1, 525600] minutes
            NotFoundError: If the device does not exist
        """
        temporary_access.validate_duration(duration_minutes)
        device = self._require_device(user_id, device_identifier)
        granted = temporary_access.grant(device, duration_minutes, now or _utcnow())

        try:
            with self._guard("grant_temporary_access"):
                self._write_grant(granted)
        finally:
            self.cache.invalidate_user(user_id)

        logger.info(
            f"Temporary access granted to {user_id}/{device_identifier} "
            f"for {duration_minutes} min (until {granted.temporary_access_until.isoformat()})"
        )
        return granted

    def revoke_temporary_access(self, user_id: str, device_identifier: str) -> Device:
        """End a device's temporary access immediately."""
        device = self._require_device(user_id, device_identifier)
        revoked = temporary_access.revoke(device)

        try:
            with self._guard("revoke_temporary_access"):
                self._write_grant(revoked)
        finally:
            self.cache.invalidate_user(user_id)

        logger.info(f"Temporary access revoked for {user_id}/{device_identifier}")
        return revoked

    def clear_expired_temporary_access(self, now: Optional[datetime] = None) -> int:
        """Clear expiry timestamps that have passed. Returns devices touched.

        Hygiene only: an expired grant is already ignored by decisions.
        """
        cutoff = _to_db(now or _utcnow())
        with self._transaction("clear_expired_temporary_access"):
            rows = self.conn.execute(
                "SELECT DISTINCT user_id FROM user_devices "
                "WHERE temporary_access_until IS NOT NULL AND temporary_access_until <= ?",
                [cutoff],
            ).fetchall()
            count = self.conn.execute(
                "SELECT COUNT(*) FROM user_devices "
                "WHERE temporary_access_until IS NOT NULL AND temporary_access_until <= ?",
                [cutoff],
            ).fetchone()[0]
            self.conn.execute(
                "UPDATE user_devices SET temporary_access_until = NULL "
                "WHERE temporary_access_until IS NOT NULL AND temporary_access_until <= ?",
                [cutoff],
            )

        for (user_id,) in rows:
            self.cache.invalidate_user(user_id)
        if count:
            logger.info(f"Cleared {count} expired temporary access grants")
        return count

    # ------------------------------------------------------------------
    # User preferences
    # ------------------------------------------------------------------

    def _upsert_preference(self, user_id: str, columns: dict[str, Any]) -> UserPreference:
        """Create the preference row if needed and set the given columns."""
        now = _to_db(_utcnow())
        names = list(columns)
        placeholders = ", ".join("?" for _ in names)
        updates = ", ".join(f"{name} = EXCLUDED.{name}" for name in names)

        with self._guard("update_user_preference"):
            self.conn.execute(f"""
                INSERT INTO user_preferences (user_id, {', '.join(names)}, created_at, updated_at)
                VALUES (?, {placeholders}, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    {updates},
                    updated_at = EXCLUDED.updated_at
            """, [user_id, *columns.values(), now, now])

        self.cache.invalidate_user(user_id)
        return self.get_user_preference(user_id)

    def set_default_block(self, user_id: str, default_block: Optional[bool]) -> UserPreference:
        """Set a user's default policy; None inherits the global default."""
        if default_block is not None and not isinstance(default_block, bool):
            raise ValidationError(
                "default_block must be true, false or null",
                details={"default_block": default_block},
            )
        logger.info(f"Updating default block for {user_id} to {default_block}")
        return self._upsert_preference(user_id, {"default_block": default_block})

    def set_network_policy(self, user_id: str, policy: str) -> UserPreference:
        """Restrict a user to LAN, WAN or both.

        Raises:
            ValidationError: If the policy is not one of both/lan/wan
        """
        try:
            network_policy = NetworkPolicy(policy)
        except ValueError as e:
            raise ValidationError(
                f"Network policy must be one of: {', '.join(p.value for p in NetworkPolicy)}",
                details={"network_policy": policy},
            ) from e

        logger.info(f"Updating network policy for {user_id} to {network_policy.value}")
        return self._upsert_preference(user_id, {"network_policy": network_policy.value})

    def set_ip_access_policy(
        self,
        user_id: str,
        policy: str,
        allowed_ips: Optional[list[str]] = None,
    ) -> UserPreference:
        """Set a user's IP policy and allow-list.

        Under "all" the allow-list is stored but not enforced. Under
        "restricted" it must hold at least one valid entry.

        Raises:
            ValidationError: On an unknown policy, an invalid entry, or an
                empty list under "restricted"
        """
        try:
            ip_policy = IPAccessPolicy(policy)
        except ValueError as e:
            raise ValidationError(
                f"IP access policy must be one of: {', '.join(p.value for p in IPAccessPolicy)}",
                details={"ip_access_policy": policy},
            ) from e

        entries = network.normalize_allow_list(allowed_ips or [])
        if ip_policy == IPAccessPolicy.RESTRICTED and not entries:
            raise ValidationError(
                "A restricted IP policy needs at least one allowed IP address or range"
            )

        logger.info(f"Updating IP policy for {user_id} to {ip_policy.value} ({len(entries)} entries)")
        return self._upsert_preference(
            user_id,
            {"ip_access_policy": ip_policy.value, "allowed_ips": json.dumps(entries)},
        )

    # ------------------------------------------------------------------
    # Time rules
    # ------------------------------------------------------------------

    def _insert_rule(self, rule: TimeRule, now: datetime) -> TimeRule:
        rule_id = self.conn.execute("SELECT nextval('time_rule_ids')").fetchone()[0]
        self.conn.execute(f"""
            INSERT INTO time_rules ({RULE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            rule_id,
            rule.user_id,
            rule.device_identifier,
            rule.rule_name,
            rule.enabled,
            rule.day_of_week,
            rule.start_time,
            rule.end_time,
            _to_db(now),
        ])
        return replace(rule, id=rule_id, created_at=now)

    def create_time_rule(self, rule: TimeRule) -> TimeRule:
        """Validate and save a new rule.

        Raises:
            ValidationError: On a bad day/window or an overlap within the scope
        """
        schedule.validate_rule(rule)
        candidate = replace(rule, id=None)
        schedule.check_no_overlap(
            candidate, self.get_time_rules(rule.user_id, rule.device_identifier)
        )

        try:
            with self._guard("create_time_rule"):
                saved = self._insert_rule(candidate, _utcnow())
        finally:
            self.cache.invalidate_user(rule.user_id)

        logger.info(
            f"Time rule {saved.id} created for {saved.user_id}"
            f"{'/' + saved.device_identifier if saved.device_identifier else ''}: "
            f"{schedule.day_name(saved.day_of_week)} {saved.start_time}-{saved.end_time}"
        )
        return saved

    def _save_rule(self, rule: TimeRule) -> None:
        self.conn.execute("""
            UPDATE time_rules SET
                rule_name = ?,
                enabled = ?,
                day_of_week = ?,
                start_time = ?,
                end_time = ?
            WHERE id = ? AND user_id = ?
        """, [
            rule.rule_name,
            rule.enabled,
            rule.day_of_week,
            rule.start_time,
            rule.end_time,
            rule.id,
            rule.user_id,
        ])

    def update_time_rule(
        self,
        user_id: str,
        rule_id: int,
        rule_name: Optional[str] = None,
        day_of_week: Optional[int] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> TimeRule:
        """Change fields of an existing rule, re-validating the result.

        Raises:
            NotFoundError: If the rule does not exist for this user
            ValidationError: If the updated rule is invalid or overlaps
        """
        existing = self.get_time_rule(user_id, rule_id)
        changes = {
            key: value
            for key, value in {
                "rule_name": rule_name,
                "day_of_week": day_of_week,
                "start_time": start_time,
                "end_time": end_time,
                "enabled": enabled,
            }.items()
            if value is not None
        }
        updated = replace(existing, **changes)

        schedule.validate_rule(updated)
        schedule.check_no_overlap(
            updated, self.get_time_rules(user_id, existing.device_identifier)
        )

        try:
            with self._guard("update_time_rule"):
                self._save_rule(updated)
        finally:
            self.cache.invalidate_user(user_id)

        logger.info(f"Time rule {rule_id} updated for {user_id}")
        return updated

    def toggle_time_rule(self, user_id: str, rule_id: int) -> TimeRule:
        """Enable or disable a rule. Enabling is rejected if it would overlap."""
        existing = self.get_time_rule(user_id, rule_id)
        toggled = replace(existing, enabled=not existing.enabled)
        schedule.check_no_overlap(
            toggled, self.get_time_rules(user_id, existing.device_identifier)
        )

        try:
            with self._guard("toggle_time_rule"):
                self._save_rule(toggled)
        finally:
            self.cache.invalidate_user(user_id)

        logger.info(f"Time rule {rule_id} {'enabled' if toggled.enabled else 'disabled'} for {user_id}")
        return toggled

    def delete_time_rule(self, user_id: str, rule_id: int) -> None:
        self.get_time_rule(user_id, rule_id)
        try:
            with self._guard("delete_time_rule"):
                self.conn.execute(
                    "DELETE FROM time_rules WHERE id = ? AND user_id = ?", [rule_id, user_id]
                )
        finally:
            self.cache.invalidate_user(user_id)
        logger.info(f"Time rule {rule_id} deleted for {user_id}")

    def apply_preset(
        self,
        user_id: str,
        preset: str,
        device_identifier: Optional[str] = None,
    ) -> list[TimeRule]:
        """Replace every rule in a scope with a preset, in one transaction.

        Either the whole new rule set is stored or the old one is left
        untouched.

        Raises:
            ValidationError: If the preset name is unknown
        """
        rules = schedule.build_preset(preset, user_id, device_identifier)
        for index, rule in enumerate(rules):
            schedule.validate_rule(rule)
            schedule.check_no_overlap(rule, rules[:index])

        now = _utcnow()
        saved: list[TimeRule] = []
        try:
            with self._transaction("apply_preset"):
                self.conn.execute(
                    "DELETE FROM time_rules "
                    "WHERE user_id = ? AND device_identifier IS NOT DISTINCT FROM ?",
                    [user_id, device_identifier],
                )
                for rule in rules:
                    saved.append(self._insert_rule(rule, now))
        finally:
            self.cache.invalidate_user(user_id)

        scope = device_identifier or "all devices"
        logger.info(f"Preset {preset} applied for {user_id} ({scope}): {len(saved)} rules")
        return saved

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def set_global_default_block(self, default_block: bool) -> None:
        with self._guard("set_global_default_block"):
            self.conn.execute("""
                INSERT INTO app_settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    updated_at = EXCLUDED.updated_at
            """, [GLOBAL_DEFAULT_BLOCK_KEY, "true" if default_block else "false", _to_db(_utcnow())])
        logger.info(f"Global default block set to {default_block}")

    # ------------------------------------------------------------------
    # Audit log and maintenance
    # ------------------------------------------------------------------

    def record_decision(self, request: AdmissionRequest, verdict: AccessVerdict) -> str:
        """Append a verdict to the audit log and return its ID."""
        decision_id = str(uuid.uuid4())
        with self._guard("record_decision"):
            self.conn.execute("""
                INSERT INTO access_decisions (
                    id, timestamp, user_id, device_identifier, source_ip,
                    allowed, reason, stop_code, detail
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                decision_id,
                _to_db(request.request_time),
                request.user_id,
                request.device_identifier,
                request.source_ip,
                verdict.allowed,
                verdict.reason.value,
                verdict.stop_code,
                verdict.detail,
            ])
        return decision_id

    def get_recent_decisions(
        self,
        limit: int = 50,
        user_id: Optional[str] = None,
        blocked_only: bool = False,
    ) -> list[dict]:
        """Most recent audit entries, newest first."""
        clauses = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if blocked_only:
            clauses.append("NOT allowed")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._guard("get_recent_decisions"):
            rows = self._fetch_dicts(
                f"SELECT * FROM access_decisions {where} ORDER BY timestamp DESC LIMIT ?",
                [*params, limit],
            )
        for row in rows:
            row["timestamp"] = _from_db(row["timestamp"])
        return rows

    def cleanup_old_data(
        self,
        decisions_days: int,
        device_inactive_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """Delete old audit entries and, optionally, long-inactive devices.

        Devices holding an unexpired temporary grant are never removed.

        Returns:
            Dict with decisions_deleted and devices_deleted counts
        """
        now = now or _utcnow()
        decision_cutoff = _to_db(now - timedelta(days=decisions_days))
        devices_deleted = 0
        touched_users: list[str] = []

        with self._transaction("cleanup_old_data"):
            decisions_deleted = self.conn.execute(
                "SELECT COUNT(*) FROM access_decisions WHERE timestamp < ?",
                [decision_cutoff],
            ).fetchone()[0]
            self.conn.execute(
                "DELETE FROM access_decisions WHERE timestamp < ?", [decision_cutoff]
            )

            if device_inactive_days is not None:
                device_cutoff = _to_db(now - timedelta(days=device_inactive_days))
                stale_filter = (
                    "last_seen < ? AND (temporary_access_until IS NULL "
                    "OR temporary_access_until <= ?)"
                )
                stale = self.conn.execute(
                    f"SELECT user_id, device_identifier FROM user_devices WHERE {stale_filter}",
                    [device_cutoff, _to_db(now)],
                ).fetchall()
                for user_id, device_identifier in stale:
                    self.conn.execute(
                        "DELETE FROM time_rules WHERE user_id = ? AND device_identifier = ?",
                        [user_id, device_identifier],
                    )
                self.conn.execute(
                    f"DELETE FROM user_devices WHERE {stale_filter}",
                    [device_cutoff, _to_db(now)],
                )
                devices_deleted = len(stale)
                touched_users = sorted({user_id for user_id, _ in stale})

        for user_id in touched_users:
            self.cache.invalidate_user(user_id)

        if decisions_deleted or devices_deleted:
            logger.info(
                f"Cleanup removed {decisions_deleted} decisions and {devices_deleted} inactive devices"
            )
        return {"decisions_deleted": decisions_deleted, "devices_deleted": devices_deleted}

    def checkpoint(self) -> None:
        """Flush the WAL into the database file and reclaim space."""
        with self._guard("checkpoint"):
            self.conn.execute("CHECKPOINT")

    def get_table_stats(self) -> dict:
        """Row counts per table, plus the oldest audit entry."""
        stats: dict[str, dict] = {}
        with self._guard("get_table_stats"):
            for table in ("user_devices", "user_preferences", "time_rules", "access_decisions"):
                count = self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                stats[table] = {"count": count}
            oldest = self.conn.execute(
                "SELECT MIN(timestamp) FROM access_decisions"
            ).fetchone()[0]
        stats["access_decisions"]["oldest"] = _from_db(oldest)
        return stats
