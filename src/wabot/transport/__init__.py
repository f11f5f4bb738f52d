"""Transport capability consumed by the connection lifecycle.

The neonize implementation lives in :mod:`wabot.transport.neonize` and is
imported lazily: importing neonize loads its Go shared library.
"""

from wabot.transport.base import EVENT_NAMES, ListenerSet, Transport, TransportHandle

__all__ = ["EVENT_NAMES", "ListenerSet", "Transport", "TransportHandle"]
