"""Test helpers for PegSentinel test suite"""

from tests.helpers.vault_builders import (
    APP_CONFIG,
    DEFENSE_CONFIG,
    KEEPER,
    OWNER,
    VAULT,
    PaperVault,
    build_test_vault,
    defense_config,
    write_configs,
)

__all__ = [
    "APP_CONFIG",
    "DEFENSE_CONFIG",
    "KEEPER",
    "OWNER",
    "VAULT",
    "PaperVault",
    "build_test_vault",
    "defense_config",
    "write_configs",
]
