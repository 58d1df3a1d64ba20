"""Shared fixtures for patrol tests."""

import pytest
from unittest.mock import MagicMock

from coolify_api import Application
from patrol import AppConfig, IntervalSchedule, PatrolConfig, Watcher
from update_policy import Policy

# ---------------------------------------------------------------------------
# Tag lists modelled on real registries: version tags mixed with aliases
# ---------------------------------------------------------------------------

REGISTRY_TAGS = {
    "n8nio/n8n": [
        "latest", "next", "1.70.0", "1.70.1", "1.71.0", "1.72.0-beta", "2.0.0-rc.1",
    ],
    "postgres": [
        "latest", "alpine", "16.4.0", "17.1.0", "17.2.0", "18.0.0", "18.0.0-alpha",
    ],
    "ghcr.io/homarr-labs/homarr": [
        "latest", "dev", "v1.40.0", "v1.41.0", "v1.46.0", "sha-abc1234",
    ],
    "crazymax/diun": [
        "latest", "edge", "4.28.0", "4.29.0", "4.30.0", "4.0.0-rc.1",
    ],
    "aliases/only": [
        "latest", "stable", "edge",
    ],
}


def make_config(apps=None, **overrides) -> PatrolConfig:
    """PatrolConfig with test-friendly defaults."""
    values = dict(
        coolify_url="http://coolify.local:8000",
        coolify_token="test-token",
        schedule=IntervalSchedule(900),
        policy=Policy.AUTO_PATCH,
        cooldown=3600.0,
        update_delay=0.0,
        apps=list(apps or []),
    )
    values.update(overrides)
    return PatrolConfig(**values)


def make_coolify(deployed):
    """Mock Coolify client serving {uuid: 'image:tag'}."""
    coolify = MagicMock()

    def get_current_tag(uuid):
        return deployed[uuid].rsplit(':', 1)[1]

    coolify.get_current_tag.side_effect = get_current_tag
    coolify.list_applications.return_value = [
        Application(uuid=uuid, name=f"app-{uuid}", docker_image=ref)
        for uuid, ref in deployed.items()
    ]
    return coolify


def make_registry(tags=None):
    registry = MagicMock()
    tags = REGISTRY_TAGS if tags is None else tags
    registry.list_tags.side_effect = lambda image: list(tags[image])
    return registry


@pytest.fixture
def n8n_app():
    return AppConfig(name="n8n", uuid="uuid-n8n", image="n8nio/n8n", policy=Policy.AUTO_MINOR)


@pytest.fixture
def postgres_app():
    return AppConfig(name="postgres", uuid="uuid-pg", image="postgres",
                     policy=Policy.AUTO_ALL, pin=17)


@pytest.fixture
def watcher(n8n_app, postgres_app):
    """Watcher over n8n (minor update available) and a pinned postgres (next major out)."""
    config = make_config(apps=[n8n_app, postgres_app])
    coolify = make_coolify({
        "uuid-n8n": "n8nio/n8n:1.70.0",
        "uuid-pg": "postgres:17.1.0",
    })
    return Watcher(config, coolify, make_registry())
