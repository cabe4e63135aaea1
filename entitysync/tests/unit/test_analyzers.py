from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from entitysync.domain.models import Entity, EntityRelationship
from entitysync.domain.types import SyncScope
from entitysync.services.analysis.analyzers.dates import parse_timestamp
from entitysync.services.analysis.analyzers.dattormm import DattoRMMAnalyzer
from entitysync.services.analysis.analyzers.microsoft365 import MFAAnalyzer, StaleUserAnalyzer
from entitysync.services.analysis.analyzers.sophos import SophosTamperProtectionAnalyzer
from entitysync.services.analysis.base import AnalysisContext


NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _entity(entity_id: str, entity_type: str, display_name: str | None = None, **raw) -> Entity:
    return Entity(
        id=entity_id,
        tenant_id="t1",
        integration_id="any",
        entity_type=entity_type,
        external_id=entity_id,
        display_name=display_name or entity_id,
        raw_data=raw,
        data_hash="x",
    )


def _edge(parent: str, child: str, relationship_type: str) -> EntityRelationship:
    return EntityRelationship(
        id=f"{parent}-{child}",
        tenant_id="t1",
        integration_id="any",
        parent_entity_id=parent,
        child_entity_id=child,
        relationship_type=relationship_type,
    )


def _context(integration_id: str, entities, relationships=()) -> AnalysisContext:
    return AnalysisContext(
        scope=SyncScope(tenant_id="t1", integration_id=integration_id),
        entities=list(entities),
        relationships=list(relationships),
    )


def _iso(delta: timedelta) -> str:
    return (NOW - delta).isoformat().replace("+00:00", "Z")


def test_parse_timestamp_accepts_iso_and_epoch_millis() -> None:
    assert parse_timestamp("2024-06-01T00:00:00Z") == NOW
    assert parse_timestamp(int(NOW.timestamp() * 1000)) == NOW
    assert parse_timestamp("2024-06-01T00:00:00") == NOW
    assert parse_timestamp("not a date") is None
    assert parse_timestamp(None) is None


@pytest.mark.asyncio
async def test_dattormm_flags_long_offline_devices_and_empty_sites() -> None:
    context = _context(
        "dattormm",
        [
            _entity("site-a", "company", "HQ"),
            _entity("site-b", "company", "Branch"),
            _entity("old", "endpoint", "pc-old", lastSeen=_iso(timedelta(days=45)), online=False),
            _entity("recent", "endpoint", "pc-new", lastSeen=_iso(timedelta(days=3)), online=False),
            _entity("up", "endpoint", "pc-up", lastSeen=_iso(timedelta(days=90)), online=True),
        ],
        [_edge("site-a", "old", "contains"), _edge("site-a", "recent", "contains")],
    )
    result = await DattoRMMAnalyzer(now=lambda: NOW).analyze(context)

    alerts = {alert.fingerprint: alert for alert in result.alerts}
    assert set(alerts) == {"device-offline:old", "site-empty:site-b"}
    assert alerts["device-offline:old"].message == 'Device "pc-old" has been offline for 45 days'
    assert alerts["site-empty:site-b"].severity == "low"
    assert result.entity_states == {"old": "warn", "site-b": "low"}
    assert [tag.tag for tag in result.entity_tags["old"]] == ["offline"]


@pytest.mark.asyncio
async def test_sophos_flags_only_explicitly_disabled_tamper_protection() -> None:
    context = _context(
        "sophos-partner",
        [
            _entity("e1", "endpoint", hostname="host-1", tamperProtectionEnabled=False, os={"name": "Windows"}),
            _entity("e2", "endpoint", tamperProtection={"enabled": False}),
            _entity("e3", "endpoint", tamperProtectionEnabled=True),
            _entity("e4", "endpoint"),
        ],
    )
    result = await SophosTamperProtectionAnalyzer().analyze(context)

    assert sorted(alert.entity_id for alert in result.alerts) == ["e1", "e2"]
    first = next(alert for alert in result.alerts if alert.entity_id == "e1")
    assert first.message == "Endpoint 'host-1' has tamper protection disabled"
    assert first.metadata["os"] == "Windows"
    assert result.entity_states == {"e1": "warn", "e2": "warn", "e3": "normal", "e4": "normal"}


@pytest.mark.asyncio
async def test_stale_users_are_graded_by_admin_role_and_license() -> None:
    stale = {"lastSignInDateTime": _iso(timedelta(days=120))}
    context = _context(
        "microsoft-365",
        [
            _entity("admin", "identity", displayName="Admin", signInActivity=stale),
            _entity("licensed", "identity", displayName="Licensed", signInActivity=stale, assignedLicenses=[{"skuId": "x"}]),
            _entity("never", "identity", displayName="Never"),
            _entity(
                "active",
                "identity",
                displayName="Active",
                signInActivity={"lastSignInDateTime": _iso(timedelta(days=5))},
            ),
            _entity("ga", "role", displayName="Global Administrator"),
        ],
        [_edge("ga", "admin", "role-assignment")],
    )
    result = await StaleUserAnalyzer(now=lambda: NOW).analyze(context)

    by_entity = {alert.entity_id: alert for alert in result.alerts}
    assert set(by_entity) == {"admin", "licensed", "never"}
    assert by_entity["admin"].severity == "critical"
    assert by_entity["admin"].metadata["isAdmin"] is True
    assert by_entity["licensed"].severity == "high"
    assert by_entity["never"].severity == "low"
    assert by_entity["never"].message == "User 'Never' has never logged in"
    assert by_entity["licensed"].message == "User 'Licensed' last logged in 120 days ago"
    assert result.entity_states == {
        "admin": "critical",
        "licensed": "warn",
        "never": "low",
        "active": "normal",
    }


def _tags(result, entity_id: str) -> list[str]:
    return [assignment.tag for assignment in result.entity_tags.get(entity_id, [])]


@pytest.mark.asyncio
async def test_mfa_coverage_follows_conditional_access_scoping() -> None:
    all_apps = {"includeApplications": ["All"]}
    context = _context(
        "microsoft-365",
        [
            _entity(
                "ca-all",
                "policy",
                state="enabled",
                grantControls={"builtInControls": ["mfa"]},
                conditions={
                    "users": {"includeUsers": ["All"], "excludeGroups": ["g-excluded"]},
                    "applications": all_apps,
                },
            ),
            _entity(
                "ca-apps",
                "policy",
                state="enabled",
                grantControls={"builtInControls": ["mfa"]},
                conditions={
                    "users": {"includeGroups": ["g-sales"]},
                    "applications": {"includeApplications": ["app-1", "app-2"]},
                },
            ),
            _entity(
                "ca-off",
                "policy",
                state="disabled",
                grantControls={"builtInControls": ["mfa"]},
                conditions={"users": {"includeUsers": ["All"]}, "applications": all_apps},
            ),
            _entity("g-excluded", "group"),
            _entity("g-sales", "group"),
            _entity("ga", "role", displayName="Global Administrator"),
            _entity("alice", "identity", displayName="Alice"),
            _entity("bob", "identity", displayName="Bob", userPrincipalName="bob@example.com"),
            _entity("root", "identity", displayName="Root"),
        ],
        [
            _edge("g-excluded", "bob", "group-member"),
            _edge("g-sales", "bob", "group-member"),
            _edge("g-excluded", "root", "group-member"),
            _edge("ga", "root", "role-assignment"),
        ],
    )
    result = await MFAAnalyzer().analyze(context)

    by_entity = {alert.entity_id: alert for alert in result.alerts}
    assert set(by_entity) == {"bob", "root"}
    root = by_entity["root"]
    assert (root.alert_type, root.severity) == ("mfa-not-enforced", "critical")
    assert root.message == "Admin user 'Root' does not have MFA enforced"
    assert root.metadata["isAdmin"] is True
    assert root.metadata["mfaPoliciesCount"] == 2
    bob = by_entity["bob"]
    assert (bob.alert_type, bob.severity) == ("mfa-partial-enforced", "high")
    assert bob.message == "User 'Bob' has partial MFA coverage"
    assert bob.metadata["userPrincipalName"] == "bob@example.com"
    assert bob.metadata["reason"] == "MFA policy only covers 2 specific applications, not all applications"
    assert result.entity_states == {"alice": "normal", "bob": "warn", "root": "critical"}
    assert (_tags(result, "alice"), _tags(result, "bob"), _tags(result, "root")) == (
        ["MFA Full"],
        ["MFA Partial"],
        ["MFA None"],
    )


@pytest.mark.asyncio
async def test_security_defaults_fully_cover_only_admins() -> None:
    context = _context(
        "microsoft-365",
        [
            _entity("security-defaults", "policy", isEnabled=True),
            _entity("ga", "role", displayName="Global Administrator"),
            _entity("admin", "identity", displayName="Admin"),
            _entity("user", "identity", displayName="User"),
        ],
        [_edge("ga", "admin", "role-assignment")],
    )
    result = await MFAAnalyzer().analyze(context)

    assert [(alert.entity_id, alert.alert_type) for alert in result.alerts] == [("user", "mfa-partial-enforced")]
    assert result.alerts[0].metadata["securityDefaultsEnabled"] is True
    assert result.alerts[0].metadata["reason"].startswith("Security Defaults only enforce MFA")
    assert result.entity_states == {"admin": "normal", "user": "warn"}


@pytest.mark.asyncio
async def test_identities_without_any_mfa_policy_are_critical() -> None:
    context = _context("microsoft-365", [_entity("user", "identity", displayName="User")])
    result = await MFAAnalyzer().analyze(context)

    assert [(alert.alert_type, alert.severity, alert.message) for alert in result.alerts] == [
        ("mfa-not-enforced", "critical", "User 'User' does not have MFA enforced")
    ]
    assert result.alerts[0].metadata["securityDefaultsEnabled"] is False
