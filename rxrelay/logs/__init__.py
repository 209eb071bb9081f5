"""Log fan-out for the rx process's stdout and stderr."""

from rxrelay.logs.broadcaster import LogBroadcaster, format_sse

__all__ = ["LogBroadcaster", "format_sse"]
