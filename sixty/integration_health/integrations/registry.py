"""Lookup of suite factories by integration name."""

from sixty.integration_health.backend.base import Backend
from sixty.integration_health.integrations.base import IntegrationSuite
from sixty.integration_health.integrations.fathom import FathomSuite
from sixty.integration_health.integrations.google import GoogleSuite
from sixty.integration_health.integrations.hubspot import HubSpotSuite
from sixty.integration_health.integrations.savvycal import SavvyCalSuite
from sixty.integration_health.integrations.slack import SlackSuite
from sixty.integration_health.models.records import SuiteInfo
from sixty.integration_health.models.settings import MonitorSettings

SUITES: dict[str, type[IntegrationSuite]] = {
    "fathom": FathomSuite,
    "google": GoogleSuite,
    "hubspot": HubSpotSuite,
    "slack": SlackSuite,
    "savvycal": SavvyCalSuite,
}
SUITE_NAMES = tuple(SUITES)


def get_suite(
    name: str, backend: Backend, settings: MonitorSettings | None = None
) -> IntegrationSuite:
    """Create the suite for an integration.

    Args:
        name: Integration name, case-insensitive
        backend: Backend the probes query
        settings: Monitor settings, defaults when omitted

    Returns:
        The integration's suite

    Raises:
        ValueError: If the integration is unknown

    """
    suite_cls = SUITES.get(name.lower())
    if suite_cls is None:
        raise ValueError(
            f"Unknown integration: {name}. Must be one of: {', '.join(SUITE_NAMES)}"
        )
    return suite_cls(backend, settings)


def list_suites() -> list[SuiteInfo]:
    """Return dashboard metadata for every registered suite."""
    return [suite_cls.info for suite_cls in SUITES.values()]
