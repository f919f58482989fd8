"""
Error taxonomy for the gateway sync engine.

Errors fall into two families that callers must treat differently:

- Configuration errors (``ConfigurationError`` and subclasses) and push
  rejections of the first push step mean *nothing changed*: fix the input or
  retry.
- Partial pushes, verification timeouts, cancelled sessions and ``UnknownDeviceState`` mean
  the *device state is unknown*: the gateway may have rebooted with the new
  configuration or reverted, so it must be re-discovered before another sync.

Every :class:`SyncError` exposes ``device_state_known`` so a caller can make
that distinction without matching on exception types.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations


class GatewaySyncError(Exception):
    """Root of every error raised by the engine."""


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


class DiscoveryTimeout(GatewaySyncError):
    """No gateway answered within the discovery window.

    Never raised by :func:`~gwsync.src.discovery.discover`, which returns an
    empty list instead; kept so callers can represent the outcome uniformly.
    """


# ---------------------------------------------------------------------------
# Configuration / validation
# ---------------------------------------------------------------------------


class ConfigurationError(GatewaySyncError, ValueError):
    """A configuration change was rejected; no state was modified."""


class UnknownMeterType(ConfigurationError):
    """The meter type id is not registered in the catalog."""


class ModeCapacityExceeded(ConfigurationError):
    """SingleDeviceMode permits at most one meter."""


class InvalidSlaveAddress(ConfigurationError):
    """Slave address outside [1, 247] or already used on this gateway."""


class InvalidMqttSettings(ConfigurationError):
    """Broker host, port or access token is not acceptable."""


class InvalidMeterName(ConfigurationError):
    """Meter display name is empty."""


class IncompatibleMeterType(ConfigurationError):
    """The meter type has no register map for the target gateway model."""


class MeterNotFound(ConfigurationError, LookupError):
    """No meter with the given slave address exists in the configuration."""


# ---------------------------------------------------------------------------
# Payload generation
# ---------------------------------------------------------------------------


class TemplateResolutionError(GatewaySyncError):
    """A meter references a type absent from the catalog in use."""


# ---------------------------------------------------------------------------
# Synchronization
# ---------------------------------------------------------------------------


class SyncError(GatewaySyncError):
    """Base class for terminal sync failures.

    Attributes:
        device_state_known: ``True`` when the gateway is known to still run
            its previous configuration (safe to retry), ``False`` when it
            must be re-discovered first.
    """

    device_state_known: bool = True

    @property
    def requires_rediscovery(self) -> bool:
        """Whether the caller must re-scan before the next sync attempt."""
        return not self.device_state_known


class PushRejected(SyncError):
    """The gateway refused the push or could not be reached.

    No reboot is assumed; retrying immediately is safe.

    Attributes:
        status_code: HTTP status of the rejecting response, or ``None`` for
            transport errors (timeout, connection refused).
    """

    device_state_known = True

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PartialPush(PushRejected):
    """A push step was refused after earlier steps had been accepted.

    The gateway holds part of the new configuration, for example the new
    MQTT settings next to the old polling table.

    Attributes:
        accepted_steps: Names of the push steps the gateway accepted.
    """

    device_state_known = False

    def __init__(
        self,
        message: str,
        *,
        accepted_steps: tuple[str, ...],
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.accepted_steps = accepted_steps


class VerificationTimeout(SyncError):
    """The gateway accepted the push but never reported the new fingerprint."""

    device_state_known = False


class SyncCancelled(SyncError):
    """The caller abandoned the session after the push was accepted.

    Only local polling stopped; the gateway may still apply the pushed
    configuration.
    """

    device_state_known = False


class UnknownDeviceState(SyncError):
    """A previous session left the gateway in an unknown state.

    Raised when a new sync targets such a gateway before it has been
    re-discovered.
    """

    device_state_known = False
