import asyncio
import gc
import heapq
import itertools

import pytest

from herenow.widget import host as events
from herenow.widget.engine import SESSION_ID_KEY, USER_ID_KEY, PresenceWidgetEngine
from herenow.widget.host import WidgetHost

WINDOW = 300
REFRESH = 30


class VirtualTime:
    """Виртуальные часы: sleep ждет, пока тест не сдвинет время"""

    def __init__(self):
        self.now = 0.0
        self._sleepers = []
        self._seq = itertools.count()

    def clock(self):
        return self.now

    async def sleep(self, delay):
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self.now + delay, next(self._seq), future))
        await future

    async def settle(self):
        for _ in range(50):
            await asyncio.sleep(0)

    async def advance(self, seconds):
        target = self.now + seconds
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self.now = deadline
            if not future.done():
                future.set_result(None)
            await self.settle()
        self.now = target
        await self.settle()


class Element:
    def __init__(self, name):
        self.name = name
        self.attributes = {"data-herenow": ""}
        self.content = None

    def __repr__(self):
        return f"Element({self.name})"


class FakeHost(WidgetHost):
    def __init__(self, hostname="example.com", pathname="/"):
        super().__init__()
        self._hostname = hostname
        self._pathname = pathname
        self._local = {}
        self._session = {}
        self.elements = []
        self.hidden = False
        self.classes = set()
        self.attributes = {}
        self.counts = None
        self.placeholders = []
        self.rerenders = []

    @property
    def hostname(self):
        return self._hostname

    @property
    def pathname(self):
        return self._pathname

    @property
    def local_storage(self):
        return self._local

    @property
    def session_storage(self):
        return self._session

    def navigate(self, pathname):
        self._pathname = pathname

    def query_mounts(self):
        return [e for e in self.elements if "data-herenow" in e.attributes]

    def is_initialized(self, element):
        return "data-herenow-initialized" in element.attributes

    def mark_initialized(self, element):
        element.attributes["data-herenow-initialized"] = "true"

    def is_hidden(self):
        return self.hidden

    def root_classes(self):
        return self.classes

    def root_attribute(self, name):
        return self.attributes.get(name)

    def render_placeholder(self, element, dark):
        element.content = "dark" if dark else "light"
        self.placeholders.append(element.name)

    def render_counts(self, stats):
        self.counts = (stats["here"], stats["now"])

    def rerender(self, stats, dark):
        self.rerenders.append((stats, dark))


class FakeApi:
    def __init__(self):
        self.track_calls = []
        self.stats_calls = []
        self.calls = []
        self.track_ok = True
        self.stats = {"here": 5, "now": 2}
        self.track_gate = None

    async def track_visit(self, domain, path, user_id=None, session_id=None):
        self.track_calls.append((domain, path, user_id, session_id))
        self.calls.append("track")
        if self.track_gate is not None:
            await self.track_gate.wait()
        return self.track_ok

    async def fetch_stats(self, domain, path):
        self.stats_calls.append((domain, path))
        self.calls.append("stats")
        if self.stats is None:
            return None
        return dict(self.stats, domain=domain, path=path)


@pytest.fixture
def vt():
    return VirtualTime()


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
async def engine(host, api, vt):
    engine = PresenceWidgetEngine(
        host,
        api,
        activity_threshold=WINDOW,
        stats_refresh_interval=REFRESH,
        navigation_delay=0.1,
        hydration_delay=0.5,
        allowed_domains=["example.com"],
        clock=vt.clock,
        sleep=vt.sleep,
    )
    yield engine
    await engine.stop()


async def start(engine, vt):
    task = asyncio.ensure_future(engine.start())
    await vt.advance(0.5)
    return await task


async def test_initialization_records_visit_then_stats(engine, host, api):
    element = Element("a")
    host.elements.append(element)

    stats = await engine.initialize_element(element)

    assert stats["here"] == 5
    assert api.calls == ["track", "stats"]
    assert host.is_initialized(element)
    assert host.counts == (5, 2)
    assert host.placeholders == ["a"]
    assert not engine.is_initializing(element)


async def test_concurrent_initialization_records_once(engine, host, api):
    element = Element("a")
    host.elements.append(element)
    api.track_gate = asyncio.Event()

    first = asyncio.ensure_future(engine.initialize_element(element))
    await asyncio.sleep(0)
    second = await engine.initialize_element(element)
    assert second is None
    assert engine.is_initializing(element)

    api.track_gate.set()
    assert (await first)["here"] == 5
    assert len(api.track_calls) == 1

    # уже инициализирован
    assert await engine.initialize_element(element) is None
    assert len(api.track_calls) == 1


async def test_failed_visit_leaves_element_retryable(engine, host, api):
    element = Element("a")
    host.elements.append(element)
    api.track_ok = False

    assert await engine.initialize_element(element) is None
    assert not host.is_initialized(element)
    assert not engine.is_initializing(element)
    assert api.stats_calls == []

    api.track_ok = True
    assert await engine.initialize_element(element) is not None
    assert host.is_initialized(element)


async def test_failed_stats_leaves_element_retryable(engine, host, api):
    element = Element("a")
    host.elements.append(element)
    api.stats = None

    assert await engine.initialize_element(element) is None
    assert not host.is_initialized(element)
    assert host.counts is None


async def test_host_errors_do_not_escape(engine, host, api):
    element = Element("a")

    def broken(element, dark):
        raise RuntimeError("detached node")

    host.render_placeholder = broken

    assert await engine.initialize_element(element) is None
    assert not engine.is_initializing(element)
    assert api.track_calls == []


async def test_disallowed_domain_does_not_start(api, vt):
    host = FakeHost(hostname="evil.com")
    host.elements.append(Element("a"))
    engine = PresenceWidgetEngine(host, api, allowed_domains=["example.com"], clock=vt.clock, sleep=vt.sleep)

    assert await engine.start() is False
    assert api.calls == []
    assert not engine.running


async def test_www_host_is_allowed(api, vt):
    host = FakeHost(hostname="www.example.com")
    host.elements.append(Element("a"))
    engine = PresenceWidgetEngine(
        host, api, hydration_delay=0.5, allowed_domains=["example.com"], clock=vt.clock, sleep=vt.sleep
    )

    assert await start(engine, vt) is True
    assert api.track_calls[0][0] == "www.example.com"
    await engine.stop()


async def test_start_waits_for_hydration(engine, host, api, vt):
    host.elements.append(Element("a"))

    task = asyncio.ensure_future(engine.start())
    await vt.advance(0.4)
    assert api.calls == []

    await vt.advance(0.2)
    assert await task is True
    assert api.calls == ["track", "stats"]


async def test_identity_is_persisted(engine, host, api):
    host.elements.extend([Element("a"), Element("b")])

    await engine.rescan()

    user_ids = {call[2] for call in api.track_calls}
    session_ids = {call[3] for call in api.track_calls}
    assert user_ids == {host.local_storage[USER_ID_KEY]}
    assert session_ids == {host.session_storage[SESSION_ID_KEY]}
    assert host.local_storage[USER_ID_KEY].startswith("user_")


async def test_push_state_rescans_after_delay(engine, host, api, vt):
    host.elements.append(Element("home"))
    await start(engine, vt)
    assert len(api.track_calls) == 1

    host.elements = [Element("docs")]
    host.push_state("/docs")
    assert host.pathname == "/docs"

    await vt.advance(0.05)
    assert len(api.track_calls) == 1

    await vt.advance(0.06)
    assert len(api.track_calls) == 2
    assert api.track_calls[-1][1] == "/docs"
    assert host.is_initialized(host.elements[0])


async def test_replace_state_rescans_after_delay(engine, host, api, vt):
    await start(engine, vt)
    host.elements.append(Element("late"))

    host.replace_state("/late")
    await vt.advance(0.11)

    assert [call[1] for call in api.track_calls] == ["/late"]


@pytest.mark.parametrize("event", [events.POPSTATE, events.RESCAN, events.ROUTE_CHANGE])
async def test_immediate_rescan_events(engine, host, api, vt, event):
    await start(engine, vt)
    element = Element("new")
    host.elements.append(element)

    host.dispatch(event)
    await vt.settle()

    assert host.is_initialized(element)
    assert len(api.track_calls) == 1


async def test_rescan_skips_initialized_mounts(engine, host, api, vt):
    host.elements.append(Element("a"))
    await start(engine, vt)

    host.dispatch(events.RESCAN)
    await vt.settle()

    assert len(api.track_calls) == 1


async def test_heartbeat_only_when_visible(engine, host, api, vt):
    host.elements.append(Element("a"))
    await start(engine, vt)
    api.calls.clear()

    host.hidden = True
    await vt.advance(WINDOW)
    assert "track" not in api.calls

    host.hidden = False
    await vt.advance(WINDOW)
    assert api.calls.count("track") == 1


async def test_heartbeat_records_then_refreshes(engine, host, api, vt):
    await start(engine, vt)
    api.calls.clear()
    api.stats = {"here": 9, "now": 4}

    assert await engine.send_activity_update() is True
    assert api.calls == ["track", "stats"]
    assert host.counts == (9, 4)


async def test_visibility_return_after_window_fires_one_heartbeat(engine, host, api, vt):
    host.elements.append(Element("a"))
    await start(engine, vt)
    api.calls.clear()

    host.hidden = True
    host.dispatch(events.VISIBILITY_CHANGE)
    await vt.advance(WINDOW - 1)
    assert api.calls.count("track") == 0

    await vt.advance(2)
    host.hidden = False
    host.dispatch(events.VISIBILITY_CHANGE)
    await vt.settle()

    assert api.calls.count("track") == 1


async def test_visibility_return_within_window_does_nothing(engine, host, api, vt):
    host.elements.append(Element("a"))
    await start(engine, vt)
    api.calls.clear()

    await vt.advance(WINDOW / 2)
    host.dispatch(events.VISIBILITY_CHANGE)
    await vt.settle()

    assert "track" not in api.calls


async def test_visibility_return_exactly_at_window_does_nothing(engine, host, api, vt):
    element = Element("a")
    host.elements.append(element)
    await engine.initialize_element(element)
    api.calls.clear()

    vt.now += WINDOW
    assert await engine.handle_visibility_change() is False
    assert api.calls == []

    vt.now += 0.5
    assert await engine.handle_visibility_change() is True
    assert api.calls == ["track", "stats"]


async def test_second_start_does_not_duplicate_loops(engine, host, api, vt):
    host.elements.append(Element("a"))

    first = asyncio.ensure_future(engine.start())
    second = asyncio.ensure_future(engine.start())
    await vt.advance(0.5)
    assert await first is True
    assert await second is True
    assert await engine.start() is True

    assert len(host._listeners[events.POPSTATE]) == 1
    assert api.calls.count("track") == 1

    api.calls.clear()
    await vt.advance(REFRESH)
    assert api.calls == ["stats"]


async def test_stop_during_hydration_cancels_start(engine, host, api, vt):
    host.elements.append(Element("a"))

    task = asyncio.ensure_future(engine.start())
    await vt.settle()
    await engine.stop()
    await vt.advance(0.5)

    assert await task is False
    assert api.calls == []


async def test_periodic_refresh_does_not_record(engine, host, api, vt):
    host.elements.append(Element("a"))
    await start(engine, vt)
    api.calls.clear()

    api.stats = {"here": 7, "now": 3}
    await vt.advance(REFRESH)

    assert api.calls == ["stats"]
    assert host.counts == (7, 3)


async def test_failed_refresh_keeps_numbers(engine, host, api, vt):
    host.elements.append(Element("a"))
    await start(engine, vt)

    api.stats = None
    await vt.advance(REFRESH)

    assert host.counts == (5, 2)
    assert engine.current_stats["here"] == 5


async def test_theme_change_rerenders_without_fetch(engine, host, api, vt):
    host.elements.append(Element("a"))
    await start(engine, vt)
    api.calls.clear()

    host.classes = {"dark"}
    host.dispatch(events.THEME_CHANGE)

    assert api.calls == []
    stats, dark = host.rerenders[-1]
    assert stats["here"] == 5
    assert dark is True


def test_dark_mode_detection_order(host, api):
    engine = PresenceWidgetEngine(host, api)

    assert engine.is_dark_mode() is False
    host.attributes["data-theme"] = "dark"
    assert engine.is_dark_mode() is True
    host.classes = {"light"}
    assert engine.is_dark_mode() is False
    host.classes = {"dark", "light"}
    assert engine.is_dark_mode() is True


async def test_stop_unsubscribes(engine, host, api, vt):
    await start(engine, vt)
    await engine.stop()

    host.elements.append(Element("a"))
    host.dispatch(events.POPSTATE)
    await vt.advance(WINDOW)

    assert api.calls == []


async def test_in_flight_guard_is_weak_and_always_cleared(engine, host, api):
    element = Element("a")
    api.track_gate = asyncio.Event()

    task = asyncio.ensure_future(engine.initialize_element(element))
    await asyncio.sleep(0)
    assert engine.is_initializing(element)

    api.track_gate.set()
    await task
    assert not engine.is_initializing(element)

    # Удаленный из документа узел не удерживается набором
    removed = Element("removed")
    engine._initializing.add(removed)
    del removed
    gc.collect()

    assert len(engine._initializing) == 0
