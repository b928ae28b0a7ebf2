"""Tests for the DuckDB access store."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import duckdb
import pytest

from streamgate.exceptions import NotFoundError, StoreUnavailableError, ValidationError
from streamgate.models import (
    AccessReason,
    AccessVerdict,
    AdmissionRequest,
    ApprovalStatus,
    IPAccessPolicy,
    NetworkPolicy,
    TimeRule,
)
from streamgate.storage import AccessStore

NOW = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)


def rule(day: int, start: str, end: str, **kwargs) -> TimeRule:
    return TimeRule(user_id="alice", day_of_week=day, start_time=start, end_time=end, **kwargs)


def add_device(store: AccessStore, device_identifier: str = "tv", user_id: str = "alice", **kwargs) -> None:
    store.upsert_device_observation(user_id, device_identifier, now=kwargs.pop("now", NOW), **kwargs)


class TestConnection:
    """Tests for connection lifecycle."""

    def test_schema_is_created_once(self, tmp_db_path: Path) -> None:
        with AccessStore(tmp_db_path) as store:
            add_device(store)
        with AccessStore(tmp_db_path) as store:
            versions = store.conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
            assert versions == 1
            assert store.get_device("alice", "tv") is not None

    def test_read_only_reopen(self, tmp_db_path: Path) -> None:
        with AccessStore(tmp_db_path) as store:
            add_device(store)
        with AccessStore(tmp_db_path, read_only=True) as reader:
            assert reader.get_device("alice", "tv").status == ApprovalStatus.PENDING

    def test_unconnected_store_is_unavailable(self, tmp_db_path: Path) -> None:
        store = AccessStore(tmp_db_path)
        with pytest.raises(StoreUnavailableError):
            store.get_device("alice", "tv")


class TestDevices:
    """Tests for device tracking and approval writes."""

    def test_first_observation_creates_pending_device(self, store: AccessStore) -> None:
        device, created = store.upsert_device_observation(
            "alice", "tv", now=NOW, ip_address="192.168.1.20", session_key="s1",
            device_name="Living Room", device_platform="Android",
        )
        assert created
        assert device.status == ApprovalStatus.PENDING
        assert device.first_seen == NOW
        assert device.last_seen == NOW
        assert device.session_count == 1
        assert device.display_name == "Living Room"

    def test_repeat_observation_refreshes_device(self, store: AccessStore) -> None:
        add_device(store, session_key="s1", ip_address="192.168.1.20")
        later = NOW + timedelta(hours=1)

        device, created = store.upsert_device_observation(
            "alice", "tv", now=later, session_key="s1", ip_address="203.0.113.5"
        )
        assert not created
        assert device.session_count == 1
        assert device.ip_address == "203.0.113.5"
        assert device.first_seen == NOW
        assert device.last_seen == later

        device, _ = store.upsert_device_observation("alice", "tv", now=later, session_key="s2")
        assert device.session_count == 2

    def test_observation_keeps_operator_name(self, store: AccessStore) -> None:
        add_device(store, device_name="Roku")
        store.rename_device("alice", "tv", "Kids TV")
        device, _ = store.upsert_device_observation("alice", "tv", now=NOW, device_name="Roku")
        assert device.device_name == "Kids TV"

    def test_same_identifier_for_two_users(self, store: AccessStore) -> None:
        add_device(store, user_id="alice")
        add_device(store, user_id="bob")
        store.approve_device("alice", "tv")
        assert store.get_device("alice", "tv").status == ApprovalStatus.APPROVED
        assert store.get_device("bob", "tv").status == ApprovalStatus.PENDING

    def test_approve_and_reject(self, store: AccessStore) -> None:
        add_device(store)
        assert store.approve_device("alice", "tv").status == ApprovalStatus.APPROVED
        assert store.reject_device("alice", "tv").status == ApprovalStatus.REJECTED
        assert store.get_device("alice", "tv").status == ApprovalStatus.REJECTED

    def test_toggle(self, store: AccessStore) -> None:
        add_device(store)
        assert store.toggle_device("alice", "tv").status == ApprovalStatus.APPROVED
        assert store.toggle_device("alice", "tv").status == ApprovalStatus.REJECTED
        assert store.toggle_device("alice", "tv").status == ApprovalStatus.APPROVED

    def test_writes_to_unknown_device(self, store: AccessStore) -> None:
        with pytest.raises(NotFoundError):
            store.approve_device("alice", "ghost")
        with pytest.raises(NotFoundError):
            store.delete_device("alice", "ghost")
        with pytest.raises(NotFoundError):
            store.grant_temporary_access("alice", "ghost", 60)

    def test_rename_rejects_blank(self, store: AccessStore) -> None:
        add_device(store)
        with pytest.raises(ValidationError):
            store.rename_device("alice", "tv", "   ")

    def test_delete_removes_device_rules_only(self, store: AccessStore) -> None:
        add_device(store)
        store.create_time_rule(rule(1, "09:00", "12:00", device_identifier="tv"))
        store.create_time_rule(rule(1, "09:00", "12:00"))

        store.delete_device("alice", "tv")

        assert store.get_device("alice", "tv") is None
        assert store.get_time_rules("alice", "tv") == []
        assert len(store.get_time_rules("alice")) == 1

    def test_deleted_device_returns_as_pending(self, store: AccessStore) -> None:
        add_device(store)
        store.approve_device("alice", "tv")
        store.delete_device("alice", "tv")
        device, created = store.upsert_device_observation("alice", "tv", now=NOW)
        assert created
        assert device.status == ApprovalStatus.PENDING

    def test_list_devices_filters(self, store: AccessStore) -> None:
        add_device(store, "tv")
        add_device(store, "phone")
        add_device(store, "tablet", user_id="bob")
        store.approve_device("alice", "phone")

        assert {d.device_identifier for d in store.list_devices()} == {"tv", "phone", "tablet"}
        pending = store.list_devices(status=ApprovalStatus.PENDING, user_id="alice")
        assert [d.device_identifier for d in pending] == ["tv"]


class TestTemporaryAccess:
    """Tests for grant and revoke persistence."""

    def test_grant_round_trip(self, store: AccessStore) -> None:
        add_device(store)
        store.grant_temporary_access("alice", "tv", 120, now=NOW)

        device = store.get_device("alice", "tv")
        assert device.temporary_access_granted_at == NOW
        assert device.temporary_access_until == NOW + timedelta(minutes=120)
        assert device.temporary_access_duration_minutes == 120

    @pytest.mark.parametrize("minutes", [0, 525601, 2.5])
    def test_invalid_duration_writes_nothing(self, store: AccessStore, minutes: object) -> None:
        add_device(store)
        with pytest.raises(ValidationError):
            store.grant_temporary_access("alice", "tv", minutes, now=NOW)  # type: ignore[arg-type]
        assert store.get_device("alice", "tv").temporary_access_until is None

    def test_revoke_keeps_history(self, store: AccessStore) -> None:
        add_device(store)
        store.grant_temporary_access("alice", "tv", 60, now=NOW)
        store.revoke_temporary_access("alice", "tv")

        device = store.get_device("alice", "tv")
        assert device.temporary_access_until is None
        assert device.temporary_access_granted_at == NOW
        assert device.temporary_access_duration_minutes == 60

    def test_clear_expired(self, store: AccessStore) -> None:
        add_device(store, "tv")
        add_device(store, "phone")
        store.grant_temporary_access("alice", "tv", 10, now=NOW)
        store.grant_temporary_access("alice", "phone", 600, now=NOW)

        cleared = store.clear_expired_temporary_access(now=NOW + timedelta(minutes=30))

        assert cleared == 1
        assert store.get_device("alice", "tv").temporary_access_until is None
        assert store.get_device("alice", "phone").temporary_access_until is not None


class TestPreferences:
    """Tests for user preference writes."""

    def test_missing_preference(self, store: AccessStore) -> None:
        assert store.get_user_preference("alice") is None

    def test_created_lazily_with_defaults(self, store: AccessStore) -> None:
        preference = store.set_default_block("alice", False)
        assert preference.default_block is False
        assert preference.network_policy == NetworkPolicy.BOTH
        assert preference.ip_access_policy == IPAccessPolicy.ALL
        assert preference.allowed_ips == []

    def test_default_block_can_inherit(self, store: AccessStore) -> None:
        store.set_default_block("alice", True)
        assert store.set_default_block("alice", None).default_block is None

    def test_network_policy(self, store: AccessStore) -> None:
        store.set_default_block("alice", False)
        preference = store.set_network_policy("alice", "lan")
        assert preference.network_policy == NetworkPolicy.LAN
        assert preference.default_block is False

    def test_invalid_network_policy_writes_nothing(self, store: AccessStore) -> None:
        with pytest.raises(ValidationError):
            store.set_network_policy("alice", "intranet")
        assert store.get_user_preference("alice") is None

    def test_ip_policy_normalizes_list(self, store: AccessStore) -> None:
        preference = store.set_ip_access_policy(
            "alice", "restricted", [" 203.0.113.7", "192.168.1.0/24", "203.0.113.7"]
        )
        assert preference.ip_access_policy == IPAccessPolicy.RESTRICTED
        assert preference.allowed_ips == ["203.0.113.7", "192.168.1.0/24"]

    def test_restricted_requires_entries(self, store: AccessStore) -> None:
        with pytest.raises(ValidationError):
            store.set_ip_access_policy("alice", "restricted", [])

    def test_invalid_entry_writes_nothing(self, store: AccessStore) -> None:
        store.set_ip_access_policy("alice", "restricted", ["10.0.0.1"])
        with pytest.raises(ValidationError):
            store.set_ip_access_policy("alice", "restricted", ["10.0.0.2", "10.0.0.0/40"])
        assert store.get_user_preference("alice").allowed_ips == ["10.0.0.1"]

    def test_global_default_block(self, tmp_db_path: Path) -> None:
        with AccessStore(tmp_db_path, default_block=False) as store:
            assert store.get_global_default_block() is False
            store.set_global_default_block(True)
            assert store.get_global_default_block() is True

    def test_global_default_unset(self, store: AccessStore) -> None:
        assert store.get_global_default_block() is None


class TestTimeRules:
    """Tests for time rule writes and validation."""

    def test_create_assigns_id(self, store: AccessStore) -> None:
        saved = store.create_time_rule(rule(1, "09:00", "12:00", rule_name="Morning"))
        assert saved.id is not None
        assert saved.created_at is not None
        assert store.get_time_rule("alice", saved.id).rule_name == "Morning"

    def test_scopes_are_separate(self, store: AccessStore) -> None:
        store.create_time_rule(rule(1, "09:00", "12:00"))
        store.create_time_rule(rule(1, "09:00", "12:00", device_identifier="tv"))
        assert len(store.get_time_rules("alice")) == 1
        assert len(store.get_time_rules("alice", "tv")) == 1
        assert len(store.get_all_time_rules("alice")) == 2

    def test_overlap_is_rejected(self, store: AccessStore) -> None:
        store.create_time_rule(rule(1, "09:00", "12:00"))
        with pytest.raises(ValidationError):
            store.create_time_rule(rule(1, "11:00", "13:00"))
        assert len(store.get_time_rules("alice")) == 1

    def test_adjacent_rules_are_accepted(self, store: AccessStore) -> None:
        store.create_time_rule(rule(1, "09:00", "12:00"))
        store.create_time_rule(rule(1, "12:00", "13:00"))
        assert len(store.get_time_rules("alice")) == 2

    @pytest.mark.parametrize("day,start,end", [(1, "12:00", "09:00"), (7, "09:00", "10:00"), (1, "24:00", "24:00")])
    def test_invalid_rules_are_rejected(self, store: AccessStore, day: int, start: str, end: str) -> None:
        with pytest.raises(ValidationError):
            store.create_time_rule(rule(day, start, end))

    def test_update(self, store: AccessStore) -> None:
        saved = store.create_time_rule(rule(1, "09:00", "12:00"))
        updated = store.update_time_rule("alice", saved.id, end_time="14:00", rule_name="Long")
        assert (updated.start_time, updated.end_time, updated.rule_name) == ("09:00", "14:00", "Long")
        assert store.get_time_rule("alice", saved.id).end_time == "14:00"

    def test_update_into_overlap_is_rejected(self, store: AccessStore) -> None:
        store.create_time_rule(rule(1, "09:00", "12:00"))
        other = store.create_time_rule(rule(1, "13:00", "15:00"))
        with pytest.raises(ValidationError):
            store.update_time_rule("alice", other.id, start_time="11:00")
        assert store.get_time_rule("alice", other.id).start_time == "13:00"

    def test_toggle_rechecks_overlap(self, store: AccessStore) -> None:
        disabled = store.create_time_rule(rule(1, "10:00", "11:00", enabled=False))
        store.create_time_rule(rule(1, "09:00", "12:00"))

        with pytest.raises(ValidationError):
            store.toggle_time_rule("alice", disabled.id)

    def test_toggle(self, store: AccessStore) -> None:
        saved = store.create_time_rule(rule(1, "09:00", "12:00"))
        assert store.toggle_time_rule("alice", saved.id).enabled is False
        assert store.toggle_time_rule("alice", saved.id).enabled is True

    def test_delete(self, store: AccessStore) -> None:
        saved = store.create_time_rule(rule(1, "09:00", "12:00"))
        store.delete_time_rule("alice", saved.id)
        assert store.get_time_rules("alice") == []
        with pytest.raises(NotFoundError):
            store.delete_time_rule("alice", saved.id)

    def test_rules_belong_to_their_user(self, store: AccessStore) -> None:
        saved = store.create_time_rule(rule(1, "09:00", "12:00"))
        with pytest.raises(NotFoundError):
            store.update_time_rule("bob", saved.id, end_time="13:00")


class TestPresets:
    """Tests for atomic preset replacement."""

    def test_preset_replaces_scope(self, store: AccessStore) -> None:
        store.create_time_rule(rule(3, "15:00", "17:00"))
        store.create_time_rule(rule(3, "15:00", "17:00", device_identifier="tv"))

        saved = store.apply_preset("alice", "weekends-only")

        assert sorted(r.day_of_week for r in saved) == [0, 6]
        assert sorted(r.day_of_week for r in store.get_time_rules("alice")) == [0, 6]
        assert [r.day_of_week for r in store.get_time_rules("alice", "tv")] == [3]

    def test_unknown_preset_leaves_rules(self, store: AccessStore) -> None:
        store.create_time_rule(rule(3, "15:00", "17:00"))
        with pytest.raises(ValidationError):
            store.apply_preset("alice", "school-nights")
        assert len(store.get_time_rules("alice")) == 1

    def test_failed_preset_rolls_back(self, store: AccessStore, monkeypatch: pytest.MonkeyPatch) -> None:
        store.create_time_rule(rule(3, "15:00", "17:00"))
        original_insert = store._insert_rule
        calls = []

        def failing_insert(new_rule: TimeRule, now: datetime) -> TimeRule:
            calls.append(new_rule)
            if len(calls) == 3:
                raise duckdb.Error("disk full")
            return original_insert(new_rule, now)

        monkeypatch.setattr(store, "_insert_rule", failing_insert)

        with pytest.raises(StoreUnavailableError):
            store.apply_preset("alice", "weekdays-only")

        rules = store.get_time_rules("alice")
        assert [(r.day_of_week, r.start_time, r.end_time) for r in rules] == [(3, "15:00", "17:00")]


class TestRuleCache:
    """Tests for rule-set caching and invalidation."""

    def test_repeat_reads_hit_cache(self, store: AccessStore) -> None:
        store.create_time_rule(rule(1, "09:00", "12:00"))
        store.get_time_rules("alice")
        store.get_time_rules("alice")
        assert store.cache.get_stats()["hits"] >= 1

    def test_writes_are_visible_immediately(self, store: AccessStore) -> None:
        assert store.get_time_rules("alice") == []
        assert store.has_schedule("alice") is False

        saved = store.create_time_rule(rule(1, "09:00", "12:00"))
        assert len(store.get_time_rules("alice")) == 1
        assert store.has_schedule("alice") is True

        store.toggle_time_rule("alice", saved.id)
        assert store.get_time_rules("alice")[0].enabled is False
        assert store.has_schedule("alice") is False

        store.apply_preset("alice", "weekdays-only")
        assert len(store.get_time_rules("alice")) == 5

    def test_cached_rules_are_copies(self, store: AccessStore) -> None:
        store.create_time_rule(rule(1, "09:00", "12:00"))
        first = store.get_time_rules("alice")
        first[0].enabled = False
        first.clear()
        assert store.get_time_rules("alice")[0].enabled is True

    def test_device_delete_invalidates(self, store: AccessStore) -> None:
        add_device(store)
        store.create_time_rule(rule(1, "09:00", "12:00", device_identifier="tv"))
        assert len(store.get_time_rules("alice", "tv")) == 1
        store.delete_device("alice", "tv")
        assert store.get_time_rules("alice", "tv") == []


class TestAuditAndMaintenance:
    """Tests for the decision log and cleanup."""

    @staticmethod
    def _record(store: AccessStore, when: datetime, allowed: bool, user_id: str = "alice") -> None:
        request = AdmissionRequest(user_id=user_id, device_identifier="tv", source_ip="203.0.113.5", request_time=when)
        if allowed:
            verdict = AccessVerdict(allowed=True, reason=AccessReason.DEFAULT_ALLOW)
        else:
            verdict = AccessVerdict(
                allowed=False, reason=AccessReason.DEVICE_PENDING, stop_code="DEVICE_PENDING"
            )
        store.record_decision(request, verdict)

    def test_recent_decisions(self, store: AccessStore) -> None:
        self._record(store, NOW - timedelta(minutes=2), True)
        self._record(store, NOW - timedelta(minutes=1), False)
        self._record(store, NOW, True, user_id="bob")

        decisions = store.get_recent_decisions()
        assert [d["user_id"] for d in decisions] == ["bob", "alice", "alice"]
        assert decisions[0]["timestamp"] == NOW

        blocked = store.get_recent_decisions(blocked_only=True)
        assert len(blocked) == 1
        assert blocked[0]["stop_code"] == "DEVICE_PENDING"

        assert len(store.get_recent_decisions(user_id="alice")) == 2

    def test_cleanup_old_decisions(self, store: AccessStore) -> None:
        self._record(store, NOW - timedelta(days=40), True)
        self._record(store, NOW - timedelta(days=1), True)

        result = store.cleanup_old_data(decisions_days=30, now=NOW)

        assert result == {"decisions_deleted": 1, "devices_deleted": 0}
        assert len(store.get_recent_decisions()) == 1

    def test_cleanup_inactive_devices(self, store: AccessStore) -> None:
        add_device(store, "old", now=NOW - timedelta(days=200))
        add_device(store, "granted", now=NOW - timedelta(days=200))
        add_device(store, "recent", now=NOW - timedelta(days=1))
        store.grant_temporary_access("alice", "granted", 60, now=NOW)
        store.create_time_rule(rule(1, "09:00", "12:00", device_identifier="old"))

        result = store.cleanup_old_data(decisions_days=30, device_inactive_days=90, now=NOW)

        assert result["devices_deleted"] == 1
        assert store.get_device("alice", "old") is None
        assert store.get_device("alice", "granted") is not None
        assert store.get_device("alice", "recent") is not None
        assert store.get_time_rules("alice", "old") == []

    def test_table_stats(self, store: AccessStore) -> None:
        add_device(store)
        self._record(store, NOW, True)
        stats = store.get_table_stats()
        assert stats["user_devices"]["count"] == 1
        assert stats["access_decisions"]["count"] == 1
        assert stats["access_decisions"]["oldest"] == NOW
        store.checkpoint()
