"""Provider API keys: OS keyring first, then environment."""

import logging
import os
import re

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)
SERVICE_NAME = "taskcore"


def provider_key_name(provider_id: str) -> str:
    """Default secret name for a provider id: ``openrouter`` -> ``OPENROUTER_API_KEY``."""
    return re.sub(r"[^A-Za-z0-9]+", "_", provider_id).strip("_").upper() + "_API_KEY"


def get_secret(name: str) -> str | None:
    """Resolve secret: keyring -> os.environ. Sync, safe for init."""
    try:
        value = keyring.get_password(SERVICE_NAME, name)
        if value:
            return value
    except KeyringError:
        logger.debug("keyring lookup failed for %s, falling back to env", name)
    return os.environ.get(name)


def get_provider_key(provider_id: str, secret_name: str | None = None) -> str | None:
    """API key for a provider; ``secret_name`` overrides the derived name."""
    name = secret_name or provider_key_name(provider_id)
    value = get_secret(name)
    if value is None:
        logger.info("no API key for provider %s (looked up %s)", provider_id, name)
    return value


def set_provider_key(provider_id: str, value: str, secret_name: str | None = None) -> None:
    """Store a provider key in the OS keyring. Raises KeyringError if backend unavailable."""
    keyring.set_password(SERVICE_NAME, secret_name or provider_key_name(provider_id), value)
