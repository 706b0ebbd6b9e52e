"""
Error taxonomy for the VoltAssist control loop.

The scheduler is the only place that catches and classifies these; the
decision engine and plan optimizer never raise them at runtime.
"""


class VoltAssistError(Exception):
    """Base exception for all VoltAssist errors."""
    pass


class ConnectivityError(VoltAssistError):
    """Home Assistant (or another external hub) is unreachable."""
    pass


class DataUnavailable(VoltAssistError):
    """Telemetry or forecast data is missing or malformed."""
    pass


class ActuationFailure(VoltAssistError):
    """A command was sent but could not be confirmed as applied."""
    pass


class ConfigInvalid(VoltAssistError):
    """Configuration failed validation at load time."""
    pass


class DeviceNotFound(VoltAssistError):
    """A load device id is not part of the configured device set."""
    pass


class DeviceNotShedable(VoltAssistError):
    """A shed was requested for a device that must never be shed."""
    pass
