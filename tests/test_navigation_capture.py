"""
Tests for tab navigation and the capture listener.
"""

import asyncio

import pytest

from config import NavigationConfig
from place_harvester.crawlers.capture import CaptureEvent, CaptureListener
from place_harvester.crawlers.navigation import NavigationController

from fakes import CAPTURE_URL, URL_A, FakeBrowser, FakePage


PATTERNS = [r"google\.com/maps/preview/place"]


def navigator_for(pages, settle_delays=(0.0,)):
    browser = FakeBrowser(pages)
    config = NavigationConfig(settle_delays=list(settle_delays))
    return browser, NavigationController(browser, config)


class TestTargetPage:

    def test_devtools_tabs_are_never_targets(self):
        _, navigator = navigator_for([])
        assert not navigator.is_target_page(FakePage("devtools://devtools/google.com/maps"))
        assert navigator.is_target_page(FakePage("https://www.google.com/maps/@1,2,3z"))
        assert not navigator.is_target_page(FakePage("https://example.com"))

    def test_active_target_tab_is_preferred(self):
        other = FakePage("https://www.google.com/maps/search/rv")
        active = FakePage("https://www.google.com/maps/place/Old")
        _, navigator = navigator_for([other, active])
        navigator._active_page = active
        assert navigator.find_target_page() is active

    def test_any_open_target_tab_is_reused(self):
        blank = FakePage("about:blank")
        maps = FakePage("https://www.google.com/maps")
        _, navigator = navigator_for([blank, maps])
        assert navigator.find_target_page() is maps

    def test_closed_active_page_is_forgotten(self):
        maps = FakePage("https://www.google.com/maps")
        _, navigator = navigator_for([maps])
        asyncio.run(navigator.navigate(URL_A))
        maps.closed = True
        assert navigator.active_page is None
        assert navigator.find_target_page() is None


class TestNavigate:

    def test_existing_tab_is_updated(self):
        maps = FakePage("https://www.google.com/maps")
        browser, navigator = navigator_for([maps])

        assert asyncio.run(navigator.navigate(URL_A)) is True
        assert maps.visits == [URL_A]
        assert browser.opened == []
        assert navigator.active_page is maps

    def test_new_tab_when_update_fails(self):
        maps = FakePage("https://www.google.com/maps")
        maps.fail_goto = True
        browser, navigator = navigator_for([maps])

        assert asyncio.run(navigator.navigate(URL_A)) is True
        assert len(browser.opened) == 1
        assert browser.opened[0].visits == [URL_A]
        assert navigator.active_page is browser.opened[0]

    def test_false_only_when_both_fail(self):
        maps = FakePage("https://www.google.com/maps")
        maps.fail_goto = True
        browser, navigator = navigator_for([maps])
        browser.fail_new_page = True

        assert asyncio.run(navigator.navigate(URL_A)) is False

    def test_settle_ends_early_on_capture(self):
        _, navigator = navigator_for([FakePage("https://www.google.com/maps")], settle_delays=(5.0, 5.0))

        async def scenario():
            ready = asyncio.get_running_loop().create_future()
            ready.set_result(None)
            return await asyncio.wait_for(navigator.navigate(URL_A, ready=ready), timeout=1.0)

        assert asyncio.run(scenario()) is True

    def test_open_home_creates_tab_when_none(self):
        browser, navigator = navigator_for([FakePage("about:blank")])
        page = asyncio.run(navigator.open_home())
        assert page.visits == ["https://www.google.com/maps"]
        assert navigator.active_page is page


class FakeResponse:
    def __init__(self, body):
        self.body = body

    async def text(self):
        return self.body


class FakeFrame:
    def __init__(self, page):
        self.page = page


class FakeRequest:
    def __init__(self, url, page, body=None):
        self.url = url
        self.frame = FakeFrame(page)
        self._response = FakeResponse(body) if body is not None else None

    async def response(self):
        return self._response


class TestCaptureListener:

    def test_signal_requires_arming(self):
        listener = CaptureListener(PATTERNS)
        assert listener.signal(CAPTURE_URL) is False

    def test_first_matching_signal_resolves_attempt(self):
        async def scenario():
            listener = CaptureListener(PATTERNS)
            future = listener.arm(URL_A, 7)
            first = listener.signal(CAPTURE_URL, "payload")
            second = listener.signal(CAPTURE_URL, "again")
            return listener, future.result(), first, second

        listener, event, first, second = asyncio.run(scenario())

        assert (first, second) == (True, False)
        assert event == CaptureEvent(URL_A, 7, CAPTURE_URL, "payload")
        assert listener.has_processed_signal

    def test_non_matching_responses_are_ignored(self):
        async def scenario():
            listener = CaptureListener(PATTERNS)
            future = listener.arm(URL_A, 1)
            accepted = listener.signal("https://www.google.com/maps/vt/tile.png")
            return accepted, future.done()

        assert asyncio.run(scenario()) == (False, False)

    def test_rearming_cancels_previous_attempt(self):
        async def scenario():
            listener = CaptureListener(PATTERNS)
            old = listener.arm(URL_A, 1)
            new = listener.arm(URL_A, 2)
            listener.signal(CAPTURE_URL)
            return old.cancelled(), new.result().attempt_id

        assert asyncio.run(scenario()) == (True, 2)

    def test_payload_key_is_read_from_body(self):
        body = ")]}'\n[[\"Pine Grove\",null,[\"0x89c259af18b60165:0x9f6d0d1f0e1f0c1a\"]]]"
        event = CaptureEvent(URL_A, 1, CAPTURE_URL, body)
        assert event.payload_key == "0x89c259af18b60165:0x9f6d0d1f0e1f0c1a"

    def test_request_from_driven_tab_is_captured(self):
        page = FakePage(URL_A)

        async def scenario():
            listener = CaptureListener(PATTERNS, page_filter=lambda: page)
            future = listener.arm(URL_A, 3)
            await listener.on_request_finished(FakeRequest(CAPTURE_URL, FakePage(), body="ignored"))
            foreign = future.done()
            await listener.on_request_finished(FakeRequest(CAPTURE_URL, page, body="body"))
            return foreign, future.result()

        foreign, event = asyncio.run(scenario())

        assert foreign is False
        assert event.payload == "body"
        assert event.attempt_id == 3

    @pytest.mark.parametrize("url, expected", [
        ("https://www.google.com/maps/preview/place?authuser=0", True),
        ("https://www.google.com/maps/place/Foo", False),
        ("https://example.com/maps/preview/place", False),
    ])
    def test_pattern_matching(self, url, expected):
        assert CaptureListener(PATTERNS).matches(url) is expected
