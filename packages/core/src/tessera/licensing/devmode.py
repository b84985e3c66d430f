"""Guarded developer bypass for running without a verification key.

The bypass needs all three of: a development build, a non-production
environment, and ``developer_mode`` in settings. Release artifacts are
built with ``DEVELOPMENT_BUILD = False``, so no runtime setting alone can
turn signature checks off.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from tessera.config import Settings

logger = logging.getLogger("tessera.licensing.devmode")

DEVELOPMENT_BUILD: Final[bool] = False


def is_dev_bypass_allowed(settings: Settings) -> bool:
    if not DEVELOPMENT_BUILD:
        return False
    if settings.is_production:
        return False
    return settings.developer_mode


def warn_bypass(what: str) -> None:
    logger.warning("DEV MODE: %s (signature check bypassed)", what)
