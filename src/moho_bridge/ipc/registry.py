"""Handler registry: method name → domain handler."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

logger = logging.getLogger(__name__)

# (context, params) -> result. A handler signals a domain failure by raising
# (or returning) a HandlerError; the registry never inspects results.
type Handler = Callable[[object, Mapping[str, object]], object]


class HandlerRegistry:
    """Mapping from method name to handler, built once at startup.

    Re-registering a name replaces the previous handler, so a host script
    reload can register everything again.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, method: str, handler: Handler) -> None:
        """Register *handler* for *method*; the last registration wins."""
        if method in self._handlers:
            logger.debug("Replacing handler for %s", method)
        self._handlers[method] = handler

    def handler(self, method: str) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`.

        Usage::

            @registry.handler("document.getInfo")
            def get_info(moho, params):
                ...
        """

        def decorator(func: Handler) -> Handler:
            self.register(method, func)
            return func

        return decorator

    def lookup(self, method: str) -> Handler | None:
        """Return the handler for *method*, or ``None``."""
        return self._handlers.get(method)

    def __contains__(self, method: object) -> bool:
        return method in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    @property
    def methods(self) -> list[str]:
        """Registered method names."""
        return list(self._handlers)
