"""UCI access helpers for the IPSP gateway configuration."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable
from typing import Any, Final, cast

logger = logging.getLogger(__name__)

_UCI_PACKAGE: Final[str] = "ipspgw"
_UCI_SECTION: Final[str] = "general"


def _is_openwrt() -> bool:
    return os.path.exists("/etc/openwrt_release") or os.path.exists("/etc/openwrt_version")


def get_uci_config(*, defaults_on_missing: bool = True) -> dict[str, Any]:
    """Read gateway configuration directly from OpenWrt's UCI system.

    On OpenWrt, failure to load UCI is fatal. Elsewhere the defaults are
    returned (or an empty mapping when *defaults_on_missing* is false).
    """
    fallback: dict[str, Any] = get_default_config() if defaults_on_missing else {}
    try:
        from uci import Uci, UciException
    except ImportError:
        if _is_openwrt():
            logger.critical("CRITICAL: Running on OpenWrt but 'python3-uci' is missing!")
            raise RuntimeError("Missing dependency: python3-uci")
        logger.warning("UCI module not found; using default configuration.")
        return fallback

    try:
        with Uci() as cursor:
            try:
                section = cursor.get_all(_UCI_PACKAGE, _UCI_SECTION)
            except UciException as exc:
                if _is_openwrt():
                    logger.critical("UCI failure reading %s.%s: %s", _UCI_PACKAGE, _UCI_SECTION, exc)
                    raise RuntimeError(f"Critical UCI failure: {exc}") from exc
                logger.warning("UCI section '%s.%s' read failed: %s; using defaults.", _UCI_PACKAGE, _UCI_SECTION, exc)
                return fallback

            if not section:
                if _is_openwrt():
                    raise RuntimeError(
                        f"UCI section '{_UCI_PACKAGE}.{_UCI_SECTION}' missing! "
                        "Re-install package to restore defaults."
                    )
                logger.warning("UCI section '%s.%s' not found; using defaults.", _UCI_PACKAGE, _UCI_SECTION)
                return fallback

            # Clean internal UCI metadata (keys starting with dot/underscore)
            clean_config: dict[str, Any] = get_default_config()
            for k, v in section.items():
                if k.startswith((".", "_")):
                    continue
                if isinstance(v, (list, tuple)):
                    clean_config[k] = " ".join(str(item) for item in cast(Iterable[Any], v))
                else:
                    clean_config[k] = str(v)
            return clean_config

    except (OSError, ValueError) as exc:
        if _is_openwrt():
            logger.critical("Failed to load UCI configuration on OpenWrt: %s", exc)
            raise RuntimeError(f"Critical UCI failure: {exc}") from exc
        logger.error("Failed to load UCI configuration: %s. Using defaults.", exc)
        return fallback


def get_default_config() -> dict[str, Any]:
    """Provide default gateway configuration values.

    Derived from ``RuntimeConfig`` field defaults via
    ``msgspec.structs.fields()`` so the struct stays the single source of
    truth. ``debug`` is the UCI spelling of ``debug_logging``.
    """
    import msgspec.structs as _structs

    # Lazy import to break circular dependency (settings -> common -> settings).
    from .settings import RuntimeConfig

    defaults: dict[str, Any] = {fi.name: fi.default for fi in _structs.fields(RuntimeConfig)}
    defaults["debug"] = defaults.pop("debug_logging")
    return defaults


__all__: Final[tuple[str, ...]] = ("get_default_config", "get_uci_config")
