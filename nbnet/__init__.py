"""Non-blocking networking engine, connections, listener mux, buffer pool, logging and report tools."""

__version__ = "0.1.0"