from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from entitysync.domain.models import Entity
from entitysync.domain.types import AnalyzerResult
from entitysync.services.analysis.analyzers.dates import parse_timestamp
from entitysync.services.analysis.base import AnalysisContext, BaseAnalyzer


logger = logging.getLogger(__name__)


STALE_AFTER = timedelta(days=91)

ADMIN_ROLE_NAMES = frozenset(
    {
        "Global Administrator",
        "Privileged Role Administrator",
        "Security Administrator",
        "Compliance Administrator",
        "Exchange Administrator",
        "SharePoint Administrator",
        "User Administrator",
    }
)


def is_admin_user(identity: Entity, context: AnalysisContext) -> bool:
    for edge in context.get_relationships(identity.id, "role-assignment"):
        role = context.get_entity(edge.parent_entity_id)
        if role is not None and (role.raw_data or {}).get("displayName") in ADMIN_ROLE_NAMES:
            return True
    return False


class StaleUserAnalyzer(BaseAnalyzer):
    """Identities with no sign-in for more than 90 days.

    Severity follows blast radius: admins are critical, licensed users high,
    everyone else low. A user who never signed in counts as stale.
    """

    name = "stale-user"
    integration_id = "microsoft-365"
    tag_source = "stale-user-analyzer"
    alert_types = ("stale-user",)

    def __init__(self, *, now=None) -> None:
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def analyze(self, context: AnalysisContext) -> AnalyzerResult:
        result = AnalyzerResult()
        now = self._now()
        for identity in context.get_entities("identity"):
            data = identity.raw_data or {}
            activity = data.get("signInActivity") or {}
            last_login = parse_timestamp(
                activity.get("lastSignInDateTime") or activity.get("lastNonInteractiveSignInDateTime")
            )
            if last_login is not None and now - last_login < STALE_AFTER:
                self.set_state(result, identity.id, "normal")
                continue

            is_admin = is_admin_user(identity, context)
            has_license = bool(data.get("assignedLicenses"))
            if is_admin:
                severity, state = "critical", "critical"
            elif has_license:
                severity, state = "high", "warn"
            else:
                severity, state = "low", "low"
            name = data.get("displayName") or identity.display_name
            if last_login is None:
                message = f"User '{name}' has never logged in"
            else:
                message = f"User '{name}' last logged in {(now - last_login).days} days ago"
            self.create_alert(
                result,
                alert_type="stale-user",
                severity=severity,
                message=message,
                entity=identity,
                metadata={
                    "userPrincipalName": data.get("userPrincipalName"),
                    "isAdmin": is_admin,
                    "hasLicense": has_license,
                    "lastLogin": last_login.isoformat() if last_login else "Never",
                },
            )
            self.add_tags(result, identity.id, "Stale", category="status")
            self.set_state(result, identity.id, state)
        return result


SECURITY_DEFAULTS_ID = "security-defaults"


def security_defaults_enabled(context: AnalysisContext) -> bool:
    for policy in context.get_entities("policy"):
        if policy.external_id == SECURITY_DEFAULTS_ID:
            return (policy.raw_data or {}).get("isEnabled") is True
    return False


def mfa_policies(context: AnalysisContext) -> list[Entity]:
    # Enabled conditional access policies whose grant controls require MFA.
    policies = []
    for policy in context.get_entities("policy"):
        data = policy.raw_data or {}
        if policy.external_id == SECURITY_DEFAULTS_ID or data.get("state") != "enabled":
            continue
        controls = (data.get("grantControls") or {}).get("builtInControls") or []
        if "mfa" in controls:
            policies.append(policy)
    return policies


def _in_any_group(identity: Entity, group_ids: list[str], context: AnalysisContext) -> bool:
    for edge in context.get_relationships(identity.id, "group-member"):
        if edge.child_entity_id != identity.id:
            continue
        group = context.get_entity(edge.parent_entity_id)
        if group is not None and group.external_id in group_ids:
            return True
    return False


def policy_applies_to(policy: Entity, identity: Entity, context: AnalysisContext) -> bool:
    conditions = (policy.raw_data or {}).get("conditions")
    if not conditions:
        return False
    users = conditions.get("users") or {}
    include_users = users.get("includeUsers") or []
    exclude_users = users.get("excludeUsers") or []
    # Exclusions win over inclusions.
    if identity.external_id in exclude_users or "All" in exclude_users:
        return False
    if _in_any_group(identity, users.get("excludeGroups") or [], context):
        return False
    if identity.external_id in include_users or "All" in include_users:
        return True
    return _in_any_group(identity, users.get("includeGroups") or [], context)


def mfa_coverage(
    identity: Entity,
    context: AnalysisContext,
    policies: list[Entity],
    defaults_enabled: bool,
) -> tuple[str, str | None]:
    """Return (coverage, reason) where coverage is none, partial or full.

    Security defaults only enforce MFA for administrators. Otherwise a policy
    scoped to all applications gives full coverage and any narrower applicable
    policy gives partial coverage.
    """
    if defaults_enabled:
        if is_admin_user(identity, context):
            return "full", None
        return "partial", "Security Defaults only enforce MFA for administrator accounts, not regular users"

    reason = None
    for policy in policies:
        if not policy_applies_to(policy, identity, context):
            continue
        applications = ((policy.raw_data or {}).get("conditions") or {}).get("applications") or {}
        include_apps = applications.get("includeApplications") or []
        if "All" in include_apps:
            return "full", None
        count = len(include_apps)
        reason = (
            f"MFA policy only covers {count} specific application{'' if count == 1 else 's'}, "
            "not all applications"
        )
    if reason is not None:
        return "partial", reason
    return "none", None


class MFAAnalyzer(BaseAnalyzer):
    """Identities whose sign-ins are not fully covered by MFA enforcement."""

    name = "mfa"
    integration_id = "microsoft-365"
    tag_source = "mfa-analyzer"
    alert_types = ("mfa-not-enforced", "mfa-partial-enforced")

    async def analyze(self, context: AnalysisContext) -> AnalyzerResult:
        result = AnalyzerResult()
        defaults_enabled = security_defaults_enabled(context)
        policies = mfa_policies(context)
        logger.debug(
            "mfa_policies_found count=%s security_defaults=%s", len(policies), defaults_enabled
        )
        for identity in context.get_entities("identity"):
            coverage, reason = mfa_coverage(identity, context, policies, defaults_enabled)
            if coverage == "full":
                self.add_tags(result, identity.id, "MFA Full", category="security")
                self.set_state(result, identity.id, "normal")
                continue

            data = identity.raw_data or {}
            is_admin = is_admin_user(identity, context)
            name = data.get("displayName") or data.get("userPrincipalName") or identity.external_id
            subject = f"Admin user '{name}'" if is_admin else f"User '{name}'"
            metadata = {
                "userPrincipalName": data.get("userPrincipalName"),
                "isAdmin": is_admin,
                "securityDefaultsEnabled": defaults_enabled,
                "mfaPoliciesCount": len(policies),
                "coverage": coverage,
            }
            if coverage == "none":
                self.create_alert(
                    result,
                    alert_type="mfa-not-enforced",
                    severity="critical",
                    message=f"{subject} does not have MFA enforced",
                    entity=identity,
                    metadata=metadata,
                )
                self.add_tags(result, identity.id, "MFA None", category="security")
                self.set_state(result, identity.id, "critical")
            else:
                self.create_alert(
                    result,
                    alert_type="mfa-partial-enforced",
                    severity="high",
                    message=f"{subject} has partial MFA coverage",
                    entity=identity,
                    metadata={**metadata, "reason": reason},
                )
                self.add_tags(result, identity.id, "MFA Partial", category="security")
                self.set_state(result, identity.id, "warn")
        return result
