"""
Exception types for rxrelay.

Only start-time failures are surfaced as exceptions. Ingest-loop failures are
reported as [system] log lines and slow consumers are handled by policy, so
neither has an exception type here.
"""


class RelayError(Exception):
    """Base class for rxrelay errors."""


class SpawnError(RelayError):
    """The rx process could not be launched or its output pipes acquired."""


class TransportError(RelayError):
    """The audio datagram socket could not be resolved or bound."""


class ConfigError(RelayError):
    """Configuration is missing or invalid."""
