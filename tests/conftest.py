from xml.sax.saxutils import quoteattr

import pytest

from adbdevicemanager import Ack, Target
from errors import TargetBusy
from geometry import Resolution
from uitree import RawUIDump

NATIVE_CLASSES = {
    "frame": "android.widget.FrameLayout",
    "row": "android.widget.LinearLayout",
    "text": "android.widget.TextView",
}
PORTED_CLASSES = {
    "frame": "com.facebook.react.views.view.ReactViewGroup",
    "row": "com.facebook.react.views.view.ReactViewGroup",
    "text": "com.facebook.react.views.text.ReactTextView",
}


def node_xml(cls, left, top, right, bottom, text="", focused=False, focusable=False, resource_id="", children=""):
    attrs = (
        f'class={quoteattr(cls)} text={quoteattr(text)} resource-id={quoteattr(resource_id)} '
        f'content-desc="" focusable="{str(focusable).lower()}" focused="{str(focused).lower()}" '
        f'bounds="[{left},{top}][{right},{bottom}]"'
    )
    return f"<node {attrs}>{children}</node>"


def browse_screen(
    platform="native",
    tag="browse",
    focus=0,
    titles=("Play", "Search", "Settings"),
    width=1920,
    height=1080,
    shift_px=0,
):
    """A Leanback-style row of focusable cards, scaled to the given resolution."""
    classes = NATIVE_CLASSES if platform == "native" else PORTED_CLASSES
    sx = width / 1920
    sy = height / 1080

    def px(x, y):
        return int(round(x * sx)), int(round(y * sy))

    cards = ""
    for i, title in enumerate(titles):
        l, t = px(100 + i * 300 + shift_px, 400)
        r, b = px(350 + i * 300 + shift_px, 550)
        tl, tt = px(110 + i * 300 + shift_px, 500)
        tr, tb = px(340 + i * 300 + shift_px, 540)
        label = node_xml(classes["text"], tl, tt, tr, tb, text=title)
        cards += node_xml(classes["frame"], l, t, r, b, focusable=True, focused=(i == focus), children=label)

    rl, rt = px(0, 380)
    rr, rb = px(1920, 570)
    row = node_xml(classes["row"], rl, rt, rr, rb, children=cards)
    tl, tt = px(40, 20)
    tr, tb = px(400, 80)
    tag_node = ""
    if tag is not None:
        tag_node = node_xml(classes["text"], tl, tt, tr, tb, text=tag, resource_id="com.example:id/parity_screen_tag")
    root = node_xml(classes["frame"], 0, 0, width, height, children=tag_node + row)
    return f"<?xml version='1.0' encoding='UTF-8' standalone='yes' ?><hierarchy rotation=\"0\">{root}</hierarchy>"


class FakeAdapter:
    """
    Scripted stand-in for AdbDeviceManager.

    `screens[i]` is what the device shows after the i-th dispatched event
    (`screens[0]` before any event). Extra failures can be injected per
    dispatch count.
    """

    def __init__(self, screens, resolution=Resolution(1920, 1080), capture_errors=None, dispatch_errors=None):
        self.screens = list(screens)
        self.resolution = resolution
        self.capture_errors = capture_errors or {}
        self.dispatch_errors = dispatch_errors or {}
        self.dispatched = []
        self.launched = []
        self.capture_calls = 0
        self.busy = False

    @property
    def position(self):
        return min(len(self.dispatched), len(self.screens) - 1)

    def launch(self, target):
        self.launched.append(target.identifier)
        return Ack(target.identifier, "launch")

    def screen_resolution(self):
        return self.resolution

    def capture(self, target, with_screenshot=False):
        if self.busy:
            raise TargetBusy("busy")
        self.capture_calls += 1
        error = self.capture_errors.get(len(self.dispatched))
        if error is not None:
            raise error
        return None, RawUIDump(self.screens[self.position])

    def dispatch(self, target, event):
        error = self.dispatch_errors.get(len(self.dispatched))
        if error is not None:
            raise error
        self.dispatched.append(event)
        return Ack(target.identifier, str(event))


@pytest.fixture
def native_target():
    return Target(
        identifier="native:emulator-5554",
        platform="native",
        device_serial="emulator-5554",
        package="com.example.tv",
        resolution=Resolution(1920, 1080),
    )


@pytest.fixture
def ported_target():
    return Target(
        identifier="ported:emulator-5556",
        platform="ported",
        device_serial="emulator-5556",
        package="com.example.tv.rn",
        resolution=Resolution(1280, 720),
    )


@pytest.fixture
def native_dump():
    return browse_screen("native")


@pytest.fixture
def ported_dump():
    return browse_screen("ported", width=1280, height=720)
