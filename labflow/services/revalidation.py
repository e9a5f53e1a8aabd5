"""Cache revalidation signals.

Mutations announce which dashboard views are now stale. Subscribers (the
presentation layer, a CDN purger) decide what to do with that.
"""

import logging
from typing import Callable, List

logger = logging.getLogger(__name__)

Subscriber = Callable[[str], None]


def log_subscriber(path: str) -> None:
    logger.info("View %s marked stale", path)


class CacheRevalidator:
    """Fan-out of stale-path signals to registered subscribers."""

    def __init__(self, subscribers: List[Subscriber] = None):
        self._subscribers: List[Subscriber] = list(subscribers or [])

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def revalidate(self, *paths: str) -> None:
        for path in dict.fromkeys(paths):
            for callback in self._subscribers:
                try:
                    callback(path)
                except Exception:
                    logger.exception("Revalidation subscriber failed for %s", path)
