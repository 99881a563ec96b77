"""Flags advertised in the Bonjour TXT records."""

from enum import IntEnum


class BonjourFeatureFlag(IntEnum):
    """Bonjour feature flag."""

    ZERO = 0
    SUPPORTS_HARDWARE_AUTHENTICATION = 0x01
    SUPPORTS_SOFTWARE_AUTHENTICATION = 0x02


class BonjourStatusFlag(IntEnum):
    """Bonjour status flag."""

    ZERO = 0
    NOT_PAIRED = 0x01
    WIFI_NOT_CONFIGURED = 0x02
    PROBLEM_DETECTED = 0x04