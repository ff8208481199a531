"""
Движок виджета here/now: та же машина состояний, что и в widget.js.

Точка монтирования проходит состояния Unseen -> Initializing -> Initialized;
при любой ошибке инициализации она возвращается в Unseen и будет повторена
при следующем сканировании. Движок никогда не пробрасывает ошибки в
окружение: все сбои логируются и поглощаются.

Время внедряется через clock/sleep, поэтому тесты двигают виртуальные часы.
"""
import asyncio
import time
import uuid
import weakref
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
import logging

from herenow import config
from herenow.widget import host as events
from herenow.widget.client import PresenceApiClient
from herenow.widget.host import WidgetHost

logger = logging.getLogger("herenow.widget")

PREFIX = "[herenow]"
USER_ID_KEY = "herenow_user_id"
SESSION_ID_KEY = "herenow_session_id"

# push/replace дают новому виду отрисоваться перед сканированием
DELAYED_NAVIGATION_EVENTS = (events.PUSHSTATE, events.REPLACESTATE)
IMMEDIATE_NAVIGATION_EVENTS = (events.POPSTATE, events.RESCAN, events.ROUTE_CHANGE)


class PresenceWidgetEngine:
    """Отслеживание визитов и heartbeat для точек монтирования [data-herenow]"""

    def __init__(
        self,
        host: WidgetHost,
        client: PresenceApiClient,
        activity_threshold: Optional[float] = None,
        stats_refresh_interval: Optional[float] = None,
        navigation_delay: Optional[float] = None,
        hydration_delay: Optional[float] = None,
        allowed_domains: Optional[List[str]] = None,
        debug: bool = False,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.host = host
        self.client = client
        self.activity_threshold = float(
            config.ACTIVITY_THRESHOLD_SECONDS if activity_threshold is None else activity_threshold
        )
        self.stats_refresh_interval = float(
            config.STATS_REFRESH_SECONDS if stats_refresh_interval is None else stats_refresh_interval
        )
        self.navigation_delay = (
            config.WIDGET_NAVIGATION_DELAY_MS / 1000 if navigation_delay is None else navigation_delay
        )
        self.hydration_delay = (
            config.WIDGET_HYDRATION_DELAY_MS / 1000 if hydration_delay is None else hydration_delay
        )
        self.allowed_domains = allowed_domains
        self.debug = debug
        self._clock = clock
        self._sleep = sleep

        # Узлы в процессе инициализации; слабые ссылки не удерживают удаленные узлы
        self._initializing: "weakref.WeakSet[Any]" = weakref.WeakSet()
        self._tasks: Set[asyncio.Task] = set()
        self._subscriptions: List[tuple] = []

        self.current_stats: Optional[Dict[str, Any]] = None
        self.last_activity: Optional[float] = None
        self.running = False

    # --- логирование ---

    def _log(self, message: str, *args) -> None:
        if self.debug:
            logger.info(f"{PREFIX} {message}", *args)

    @property
    def domain(self) -> str:
        return self.host.hostname

    # --- идентификаторы ---

    def get_user_id(self) -> str:
        user_id = self.host.local_storage.get(USER_ID_KEY)
        if not user_id:
            user_id = f"user_{uuid.uuid4().hex[:11]}_{int(time.time() * 1000):x}"
            self.host.local_storage[USER_ID_KEY] = user_id
            self._log("Generated new user ID: %s", user_id)
        return user_id

    def get_session_id(self) -> str:
        session_id = self.host.session_storage.get(SESSION_ID_KEY)
        if not session_id:
            session_id = str(uuid.uuid4())
            self.host.session_storage[SESSION_ID_KEY] = session_id
        return session_id

    def is_dark_mode(self) -> bool:
        classes = set(self.host.root_classes())
        if "dark" in classes:
            return True
        if "light" in classes:
            return False

        theme = self.host.root_attribute("data-theme")
        if theme == "dark":
            return True
        if theme == "light":
            return False

        return self.host.prefers_dark_scheme()

    # --- жизненный цикл ---

    async def start(self) -> bool:
        """
        Запуск движка: проверка домена, пауза на гидратацию, первое
        сканирование, подписки и таймеры.

        Returns:
            False, если домен не в белом списке (движок не запускается)
        """
        if not config.is_domain_allowed(self.domain, self.allowed_domains):
            logger.warning(f"{PREFIX} Domain not allowed: {self.domain}")
            return False

        if self.running:
            self._log("Widget already started")
            return True
        self.running = True

        self._log("Widget loading on domain: %s", self.domain)
        await self._sleep(self.hydration_delay)
        if not self.running:
            # stop() во время паузы на гидратацию
            return False

        self._subscribe()

        mounts = list(self.host.query_mounts())
        if not mounts:
            logger.warning(f"{PREFIX} No element with data-herenow attribute found")
        await self.rescan()

        self._spawn(self._heartbeat_loop())
        self._spawn(self._refresh_loop())
        return True

    async def stop(self) -> None:
        for event, callback in self._subscriptions:
            self.host.unsubscribe(event, callback)
        self._subscriptions.clear()
        self.running = False

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _subscribe(self) -> None:
        handlers = [(event, self._on_navigation(event)) for event in DELAYED_NAVIGATION_EVENTS + IMMEDIATE_NAVIGATION_EVENTS]
        handlers.append((events.VISIBILITY_CHANGE, lambda: self._spawn(self.handle_visibility_change())))
        handlers.append((events.THEME_CHANGE, self.handle_theme_change))

        for event, callback in handlers:
            self.host.subscribe(event, callback)
            self._subscriptions.append((event, callback))

    def _on_navigation(self, event: str) -> Callable[[], None]:
        def callback() -> None:
            self._log("%s detected", event)
            if event in DELAYED_NAVIGATION_EVENTS:
                self._spawn(self._rescan_after(self.navigation_delay))
            else:
                self._spawn(self.rescan())
        return callback

    async def _rescan_after(self, delay: float) -> None:
        await self._sleep(delay)
        await self.rescan()

    # --- сканирование и инициализация ---

    async def rescan(self) -> List[Optional[Dict[str, Any]]]:
        """Инициализация всех еще не инициализированных точек монтирования"""
        mounts = [
            element for element in self.host.query_mounts()
            if not self.host.is_initialized(element) and element not in self._initializing
        ]
        self._log("Found %d new elements to initialize", len(mounts))
        if not mounts:
            return []
        return list(await asyncio.gather(*(self.initialize_element(element) for element in mounts)))

    async def initialize_element(self, element: Any) -> Optional[Dict[str, Any]]:
        """
        Инициализация одной точки монтирования.

        Заготовка рисуется сразу, затем визит, затем статистика. Элемент
        помечается инициализированным только если все шаги прошли успешно.
        """
        if element is None or self.host.is_initialized(element):
            self._log("Element already initialized or invalid, skipping")
            return None

        if element in self._initializing:
            self._log("Element already being initialized, skipping")
            return None

        self._initializing.add(element)
        try:
            self.host.render_placeholder(element, self.is_dark_mode())
            if self.current_stats is not None:
                self.host.render_counts(self.current_stats)

            if not await self.track_visit():
                return None

            stats = await self.client.fetch_stats(self.domain, self.host.pathname)
            if stats is None:
                return None
            self._apply_stats(stats)

            self.host.mark_initialized(element)
            self._log("Widget initialized successfully")
            return stats
        except Exception as e:
            logger.error(f"{PREFIX} Failed to initialize widget: {e}", exc_info=True)
            return None
        finally:
            self._initializing.discard(element)

    def is_initializing(self, element: Any) -> bool:
        return element in self._initializing

    # --- визиты и статистика ---

    async def track_visit(self) -> bool:
        path = self.host.pathname
        self._log("Tracking visit for path: %s", path)
        ok = await self.client.track_visit(
            self.domain,
            path,
            user_id=self.get_user_id(),
            session_id=self.get_session_id(),
        )
        if ok:
            self.last_activity = self._clock()
        return ok

    def _apply_stats(self, stats: Dict[str, Any]) -> None:
        self.current_stats = stats
        self.host.render_counts(stats)

    async def refresh_stats(self) -> Optional[Dict[str, Any]]:
        """Обновление чисел без записи визита; при ошибке числа остаются прежними"""
        stats = await self.client.fetch_stats(self.domain, self.host.pathname)
        if stats is not None:
            self._apply_stats(stats)
        return stats

    async def send_activity_update(self) -> bool:
        """Heartbeat: визит и обновление чисел, только для видимой вкладки"""
        if self.host.is_hidden():
            self._log("User not visible, skipping activity update")
            return False

        self._log("Sending activity update for continued presence")
        if not await self.track_visit():
            return False
        await self.refresh_stats()
        return True

    async def handle_visibility_change(self) -> bool:
        if self.host.is_hidden():
            return False

        if self.last_activity is not None:
            since = self._clock() - self.last_activity
            if since <= self.activity_threshold:
                self._log("User returned to tab, recent activity exists - skipping")
                return False
            self._log("User returned to tab after %d seconds", since)

        return await self.send_activity_update()

    def handle_theme_change(self) -> None:
        try:
            self.host.rerender(self.current_stats, self.is_dark_mode())
        except Exception as e:
            logger.error(f"{PREFIX} Failed to update widget theme: {e}", exc_info=True)

    # --- таймеры ---

    async def _heartbeat_loop(self) -> None:
        while True:
            await self._sleep(self.activity_threshold)
            try:
                await self.send_activity_update()
            except Exception as exc:
                logger.error(f"{PREFIX} Activity update failed: {exc}", exc_info=True)

    async def _refresh_loop(self) -> None:
        while True:
            await self._sleep(self.stats_refresh_interval)
            try:
                await self.refresh_stats()
            except Exception as exc:
                logger.error(f"{PREFIX} Stats refresh failed: {exc}", exc_info=True)
