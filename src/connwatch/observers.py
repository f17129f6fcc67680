"""Observer registry used to publish state to independent subscribers."""

from __future__ import annotations

from collections.abc import Callable

from connwatch.logging import get_logger

logger = get_logger(__name__)


class ObserverRegistry[T]:
    """Ordered set of observer callbacks with synchronous publish.

    Observers are called in subscription order. An observer that raises is
    logged and skipped; it never prevents delivery to the others, and it stays
    subscribed.
    """

    def __init__(self, name: str = "observers") -> None:
        self.name = name
        self._observers: list[Callable[[T], None]] = []

    def __len__(self) -> int:
        return len(self._observers)

    def subscribe(self, observer: Callable[[T], None]) -> Callable[[], None]:
        """Register an observer.

        Args:
            observer: Callback invoked with every published value.

        Returns:
            A function that removes this registration. Calling it more than
            once is harmless.
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            try:
                self._observers.remove(observer)
            except ValueError:
                pass

        return unsubscribe

    def notify(self, observer: Callable[[T], None], value: T) -> None:
        """Deliver a value to a single observer, isolating its failures."""
        try:
            observer(value)
        except Exception:
            logger.exception("Observer %r of %s raised; continuing", observer, self.name)

    def publish(self, value: T) -> None:
        """Deliver a value to every current observer."""
        # Snapshot so observers may unsubscribe while being notified.
        for observer in list(self._observers):
            self.notify(observer, value)
