"""Bootstrap service for first-run initialization."""

import logging

from shared.security import generate_api_key, hash_api_key

logger = logging.getLogger(__name__)

# Distinct banner for easy grep in logs
API_KEY_BANNER = "=" * 60


def _print_api_key(api_key: str) -> None:
    """Print API key with clear formatting for easy discovery."""
    # Use print() for immediate visibility (not buffered like logging)
    print(f"\n{API_KEY_BANNER}")
    print("OPERATOR API KEY (set OPERATOR_API_KEY_HASH to keep a fixed key)")
    print(f"{api_key}")
    print(f"{API_KEY_BANNER}\n")
    logger.info("bootstrap_operator_key_generated")


def bootstrap_operator_key_if_needed(configured_hash: str | None) -> tuple[str, str | None]:
    """
    Resolve the Argon2 hash that guards the provisioning API.

    If OPERATOR_API_KEY_HASH is configured it is used as is. Otherwise a fresh
    key is generated for this process, printed once with a distinct banner
    (grep for '====' in logs) and only its hash is kept.

    Returns:
        (api_key_hash, generated_api_key or None if a hash was configured)
    """
    if configured_hash:
        logger.debug("bootstrap_skipped", extra={"reason": "operator_key_configured"})
        return configured_hash, None

    api_key = generate_api_key()
    _print_api_key(api_key)
    return hash_api_key(api_key), api_key
