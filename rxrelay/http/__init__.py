"""HTTP glue for rxrelay."""

from rxrelay.http.server import RelayHTTPServer, make_handler

__all__ = ["RelayHTTPServer", "make_handler"]
