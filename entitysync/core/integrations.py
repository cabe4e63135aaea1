from __future__ import annotations

from dataclasses import dataclass, field


DAILY_MINUTES = 60 * 24


@dataclass(frozen=True)
class EntityTypeConfig:
    type: str
    # Minutes between scheduled syncs of this kind.
    rate_minutes: int
    # Lower values are dispatched first.
    priority: int
    # Fan-out kinds are created per site by a parent sync, never by the reconciler.
    fan_out: bool = False


@dataclass(frozen=True)
class IntegrationConfig:
    id: str
    name: str
    category: str
    supported_types: tuple[EntityTypeConfig, ...] = field(default_factory=tuple)

    def type_config(self, entity_type: str) -> EntityTypeConfig | None:
        for type_config in self.supported_types:
            if type_config.type == entity_type:
                return type_config
        return None

    @property
    def required_types(self) -> list[str]:
        return [type_config.type for type_config in self.supported_types]

    @property
    def scheduled_types(self) -> list[EntityTypeConfig]:
        return [type_config for type_config in self.supported_types if not type_config.fan_out]

    @property
    def fan_out_types(self) -> list[str]:
        return [type_config.type for type_config in self.supported_types if type_config.fan_out]


INTEGRATIONS: dict[str, IntegrationConfig] = {
    "sophos-partner": IntegrationConfig(
        id="sophos-partner",
        name="Sophos Partner",
        category="security",
        supported_types=(
            EntityTypeConfig("company", DAILY_MINUTES, 5),
            EntityTypeConfig("endpoint", DAILY_MINUTES, 3, fan_out=True),
        ),
    ),
    "dattormm": IntegrationConfig(
        id="dattormm",
        name="DattoRMM",
        category="rmm",
        supported_types=(
            EntityTypeConfig("company", DAILY_MINUTES, 5),
            EntityTypeConfig("endpoint", DAILY_MINUTES, 3, fan_out=True),
        ),
    ),
    "cove": IntegrationConfig(id="cove", name="Cove Backups", category="recovery"),
    "microsoft-365": IntegrationConfig(
        id="microsoft-365",
        name="Microsoft 365",
        category="identity",
        supported_types=(
            EntityTypeConfig("identity", DAILY_MINUTES, 3),
            EntityTypeConfig("group", DAILY_MINUTES, 5),
            EntityTypeConfig("license", DAILY_MINUTES, 7),
            EntityTypeConfig("role", DAILY_MINUTES, 5),
            EntityTypeConfig("policy", DAILY_MINUTES, 5),
            EntityTypeConfig("exchange-config", DAILY_MINUTES, 9),
        ),
    ),
    "halopsa": IntegrationConfig(id="halopsa", name="HaloPSA", category="psa"),
    "mspagent": IntegrationConfig(id="mspagent", name="MSPAgent", category="other"),
}


def get_integration(integration_id: str) -> IntegrationConfig | None:
    return INTEGRATIONS.get(integration_id)
