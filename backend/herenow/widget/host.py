"""
Окружение, в котором работает движок виджета (документ страницы).

Движок не владеет узлами документа: он только находит точки монтирования,
рисует в них и подписывается на события окружения.
"""
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, MutableMapping, Optional


# События окружения, на которые подписывается движок
POPSTATE = "popstate"
PUSHSTATE = "pushstate"
REPLACESTATE = "replacestate"
RESCAN = "herenow-rescan"
ROUTE_CHANGE = "route-change"
VISIBILITY_CHANGE = "visibilitychange"
THEME_CHANGE = "theme-change"


class WidgetHost(ABC):
    """Базовый класс окружения с реестром подписчиков"""

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[], Any]]] = defaultdict(list)

    # --- события ---

    def subscribe(self, event: str, callback: Callable[[], Any]) -> None:
        self._listeners[event].append(callback)

    def unsubscribe(self, event: str, callback: Callable[[], Any]) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    def dispatch(self, event: str) -> None:
        for callback in list(self._listeners.get(event, [])):
            callback()

    def push_state(self, pathname: str) -> None:
        """Программная навигация: сначала сама навигация, потом подписчики"""
        self.navigate(pathname)
        self.dispatch(PUSHSTATE)

    def replace_state(self, pathname: str) -> None:
        self.navigate(pathname)
        self.dispatch(REPLACESTATE)

    # --- документ ---

    @property
    @abstractmethod
    def hostname(self) -> str:
        ...

    @property
    @abstractmethod
    def pathname(self) -> str:
        ...

    @property
    @abstractmethod
    def local_storage(self) -> MutableMapping[str, str]:
        ...

    @property
    @abstractmethod
    def session_storage(self) -> MutableMapping[str, str]:
        ...

    @abstractmethod
    def navigate(self, pathname: str) -> None:
        ...

    @abstractmethod
    def query_mounts(self) -> Iterable[Any]:
        """Все элементы с атрибутом data-herenow, находящиеся в документе"""

    @abstractmethod
    def is_initialized(self, element: Any) -> bool:
        ...

    @abstractmethod
    def mark_initialized(self, element: Any) -> None:
        ...

    @abstractmethod
    def is_hidden(self) -> bool:
        ...

    @abstractmethod
    def root_classes(self) -> Iterable[str]:
        ...

    @abstractmethod
    def root_attribute(self, name: str) -> Optional[str]:
        ...

    def prefers_dark_scheme(self) -> bool:
        return False

    # --- отрисовка ---

    @abstractmethod
    def render_placeholder(self, element: Any, dark: bool) -> None:
        """Заготовка виджета с прочерками вместо чисел"""

    @abstractmethod
    def render_counts(self, stats: Dict[str, Any]) -> None:
        """Обновление чисел во всех отрисованных виджетах"""

    @abstractmethod
    def rerender(self, stats: Optional[Dict[str, Any]], dark: bool) -> None:
        """Перерисовка контейнеров при смене темы, без запроса статистики"""
