"""Shared test fixtures for the setup generator tests."""
from pathlib import Path

import pytest

from generate_matrix_setup import Credentials, Homeserver, SetupConfig, TEMPLATE_DIR


class ScriptedReader:
    """Stands in for the terminal: answers prompts from a fixed list."""

    def __init__(self, answers):
        self.answers = list(answers)
        self.prompts = []

    def __call__(self, prompt):
        self.prompts.append(prompt)
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {prompt!r}")
        return self.answers.pop(0)


@pytest.fixture
def scripted():
    """Factory for scripted readers."""
    return ScriptedReader


@pytest.fixture
def template_root():
    """The templates shipped with the repository."""
    return TEMPLATE_DIR


@pytest.fixture
def conduit_config():
    return SetupConfig(
        homeserver=Homeserver.CONDUIT,
        matrix_domain='matrix.example.com',
        livekit_domain='relay.example.com',
        admin_email='admin@example.com',
    )


@pytest.fixture
def synapse_config():
    return SetupConfig(
        homeserver=Homeserver.SYNAPSE,
        matrix_domain='matrix.example.com',
        livekit_domain='relay.example.com',
        admin_email='admin@example.com',
        allow_registration=True,
        allow_federation=False,
    )


@pytest.fixture
def conduit_credentials():
    return Credentials(livekit_api_key='a' * 32, livekit_api_secret='b' * 64)


@pytest.fixture
def synapse_credentials():
    return Credentials(
        livekit_api_key='a' * 32,
        livekit_api_secret='b' * 64,
        macaroon_secret='c' * 64,
        form_secret='d' * 64,
        registration_secret='e' * 64,
    )


def read_env(path: Path) -> dict:
    """Parse KEY=value lines of a generated .env file."""
    values = {}
    for line in path.read_text().splitlines():
        if line and not line.startswith('#'):
            key, _, value = line.partition('=')
            assert key not in values, f"duplicate key {key}"
            values[key] = value
    return values


@pytest.fixture
def env_values():
    """Parser for generated .env files."""
    return read_env
