"""
Output events for whatever UI layer sits on top of the engine.

Components publish `ValueChanged` (a named value now has a new value) and
`VisibilityChanged` (a named surface was shown or hidden). Subscribers are
plain callables; the bus remembers the latest value of each name so late
subscribers and the HTTP layer can read current state.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValueChanged:
    name: str
    value: Any


@dataclass(frozen=True)
class VisibilityChanged:
    name: str
    visible: bool


Event = Union[ValueChanged, VisibilityChanged]
Listener = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self.values: dict[str, Any] = {}
        self.visible: dict[str, bool] = {}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_value(self, name: str, value: Any) -> None:
        self.values[name] = value
        self._emit(ValueChanged(name, value))

    def set_visible(self, name: str, visible: bool) -> None:
        if self.visible.get(name) == visible:
            return
        self.visible[name] = visible
        self._emit(VisibilityChanged(name, visible))

    def _emit(self, event: Event) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # A broken UI listener must not take the engine down
                logger.exception("Event listener failed for %s", event)
