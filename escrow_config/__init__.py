"""
escrow_config -- single public entrypoint for marketplace configuration.

Responsibility:
    ``get_active_config()`` is the only way runtime code obtains
    configuration.  It loads a YAML set, validates it, and returns a frozen
    ``MarketplaceConfig``.

Architecture position:
    Configuration.  Sits above ``escrow_kernel``; the kernel MUST NEVER
    import from ``escrow_config``.  ``escrow_config.bridges`` translates
    the config into kernel policy objects.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- validation failed; every error is listed.

Audit relevance:
    Every successful call emits an ``ESCROW_CONFIG_TRACE`` log entry with
    the config_id, version, checksum, and active fee policy, tying each
    fee quoted to the configuration that produced it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from escrow_config.loader import load_config_file
from escrow_config.schema import MarketplaceConfig
from escrow_config.validator import validate_configuration

_logger = logging.getLogger("escrow_kernel.config")

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"

CONFIG_PATH_ENV = "ESCROW_CONFIG_PATH"


def get_active_config(config_path: Path | str | None = None) -> MarketplaceConfig:
    """
    The ONLY public configuration entrypoint.

    Resolution order for the file: ``config_path``, then the
    ``ESCROW_CONFIG_PATH`` environment variable, then the bundled
    ``sets/default.yaml``.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ValueError: If configuration validation fails.
    """
    path = Path(config_path or os.environ.get(CONFIG_PATH_ENV) or _DEFAULT_CONFIG_PATH)
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    config = load_config_file(path)

    validation = validate_configuration(config)
    if not validation.is_valid:
        raise ValueError(
            "Configuration validation failed:\n"
            + "\n".join(f"  - {e}" for e in validation.errors)
        )
    for warning in validation.warnings:
        _logger.warning("config_validation_warning", extra={"warning": warning})

    _logger.info(
        "ESCROW_CONFIG_TRACE",
        extra={
            "trace_type": "ESCROW_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source": str(path),
            "fee_policy": config.acceptance.fee_policy,
            "fee_policy_count": len(config.fee_policies),
        },
    )
    return config


__all__ = ["MarketplaceConfig", "get_active_config"]
