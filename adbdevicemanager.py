import io
import logging
import re
import subprocess
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

from PIL import Image as PILImage
from ppadb.client import Client as AdbClient

from errors import AppNotForeground, DeviceUnreachable, ScriptError, TargetBusy
from geometry import Resolution
from uitree import RawUIDump

logger = logging.getLogger(__name__)

PLATFORM_NATIVE = "native"
PLATFORM_PORTED = "ported"

# D-pad and navigation events map onto Android key codes.
KEYCODES = {
    "back": 4,
    "up": 19,
    "down": 20,
    "left": 21,
    "right": 22,
    "select": 23,
}
EVENT_TYPES = ("tap", "key", "back", "select", "wait", "up", "down", "left", "right")
KEYCODE_NAME_PATTERN = r"^KEYCODE_[A-Z0-9_]+$"

DUMP_DEVICE_PATH = "/sdcard/window_dump.xml"

_FOREGROUND_PATTERNS = (
    r"mCurrentFocus=Window\{.*?\s([\w.]+)/[\w.$]+\}",
    r"mFocusedApp=.*?ActivityRecord\{.*?\s([\w.]+)/[\w.$]+",
)


@dataclass(frozen=True)
class Target:
    """One application under test on one device."""

    identifier: str
    platform: str
    device_serial: str
    package: str
    activity: str | None = None
    resolution: Resolution | None = None

    def __post_init__(self) -> None:
        if self.platform not in (PLATFORM_NATIVE, PLATFORM_PORTED):
            raise ValueError(f"platform must be 'native' or 'ported', got {self.platform!r}")


def _valid_keycode(code) -> bool:
    if isinstance(code, bool):
        return False
    if isinstance(code, int):
        return code >= 0
    return isinstance(code, str) and re.fullmatch(KEYCODE_NAME_PATTERN, code) is not None


@dataclass(frozen=True)
class InputEvent:
    type: str
    x: int | None = None
    y: int | None = None
    code: int | str | None = None
    duration_ms: int | None = None

    def __post_init__(self) -> None:
        if self.type not in EVENT_TYPES:
            raise ScriptError(f"Unknown event type {self.type!r}; expected one of {EVENT_TYPES}")
        if self.type == "tap" and (self.x is None or self.y is None):
            raise ScriptError("tap events need both x and y")
        if self.type == "key" and not _valid_keycode(self.code):
            raise ScriptError(f"key events need a non-negative integer or KEYCODE_* name, got {self.code!r}")
        if self.type == "wait" and (self.duration_ms is None or self.duration_ms < 0):
            raise ScriptError("wait events need a non-negative durationMs")

    @classmethod
    def from_dict(cls, data: dict) -> "InputEvent":
        return cls(
            type=data.get("type"),
            x=data.get("x"),
            y=data.get("y"),
            code=data.get("code"),
            duration_ms=data.get("durationMs"),
        )

    def to_dict(self) -> dict:
        result: dict = {"type": self.type}
        if self.x is not None:
            result["x"] = self.x
        if self.y is not None:
            result["y"] = self.y
        if self.code is not None:
            result["code"] = self.code
        if self.duration_ms is not None:
            result["durationMs"] = self.duration_ms
        return result

    def keycode(self) -> str | None:
        if self.type in KEYCODES:
            return str(KEYCODES[self.type])
        if self.type == "key":
            return str(self.code)
        return None

    def __str__(self) -> str:
        if self.type == "tap":
            return f"tap({self.x},{self.y})"
        if self.type == "key":
            return f"key({self.code})"
        if self.type == "wait":
            return f"wait({self.duration_ms}ms)"
        return self.type


@dataclass(frozen=True)
class Ack:
    target_id: str
    command: str
    output: str = ""


@dataclass(frozen=True)
class Screenshot:
    png: bytes
    width: int
    height: int
    captured_at: float = field(default_factory=time.time)

    @classmethod
    def from_png(cls, png: bytes) -> "Screenshot":
        with PILImage.open(io.BytesIO(png)) as img:
            width, height = img.size
        return cls(png=png, width=width, height=height)

    def save_thumbnail(self, output_path: str | Path, scale: float = 0.3) -> Path:
        """Save a downscaled copy for report attachments."""
        out = Path(output_path)
        out.parent.mkdir(parents=True, exist_ok=True)
        with PILImage.open(io.BytesIO(self.png)) as img:
            new_width = max(1, int(img.width * scale))
            new_height = max(1, int(img.height * scale))
            resized_img = img.resize((new_width, new_height), PILImage.Resampling.LANCZOS)
            resized_img.save(out, "PNG", optimize=True)
        return out


def parse_foreground_package(dumpsys_output: str) -> str | None:
    """Package of the focused window in `dumpsys window` output."""
    for pattern in _FOREGROUND_PATTERNS:
        match = re.search(pattern, dumpsys_output)
        if match:
            return match.group(1)
    return None


def parse_wm_size(output: str) -> Resolution | None:
    override = re.search(r"Override size:\s*(\d+)x(\d+)", output)
    physical = re.search(r"Physical size:\s*(\d+)x(\d+)", output)
    match = override or physical
    if not match:
        return None
    return Resolution(int(match.group(1)), int(match.group(2)))


class AdbDeviceManager:
    def __init__(
        self,
        device_name: str | None = None,
        exit_on_error: bool = True,
        host: str = "127.0.0.1",
        port: int = 5037,
    ) -> None:
        """
        Initialize the ADB Device Manager

        Args:
            device_name: Optional name/serial of the device to manage.
                         If None, attempts to auto-select if only one device is available.
            exit_on_error: Whether to exit the program if device initialization fails
            host: Host of the adb server
            port: Port of the adb server
        """
        self.host = host
        self.port = port

        if not self.check_adb_installed():
            self._fail(
                "adb is not installed or not in PATH. Please install adb and ensure it is in your PATH.",
                exit_on_error,
            )

        try:
            available_devices = self.get_available_devices(host, port)
        except (RuntimeError, OSError) as exc:
            self._fail(f"Cannot reach the adb server at {host}:{port}: {exc}", exit_on_error)

        if not available_devices:
            self._fail("No devices connected. Please connect a device and try again.", exit_on_error)

        selected_device_name: str | None = None

        if device_name:
            if device_name not in available_devices:
                self._fail(
                    f"Device {device_name} not found. Available devices: {available_devices}",
                    exit_on_error,
                )
            selected_device_name = device_name
        elif len(available_devices) == 1:
            selected_device_name = available_devices[0]
            print(f"No device specified, automatically selected: {selected_device_name}", file=sys.stderr)
        elif len(available_devices) > 1:
            self._fail(
                f"Multiple devices connected: {available_devices}. "
                "Please specify a device in the config file or connect only one device.",
                exit_on_error,
            )

        self.device = AdbClient(host=host, port=port).device(selected_device_name)
        self.device_serial = selected_device_name
        self._busy = threading.Lock()

    @staticmethod
    def _fail(message: str, exit_on_error: bool) -> NoReturn:
        if exit_on_error:
            print(message, file=sys.stderr)
            sys.exit(1)
        raise DeviceUnreachable(message)

    @staticmethod
    def check_adb_installed() -> bool:
        """Check if ADB is installed on the system."""
        try:
            subprocess.run(["adb", "version"], check=True, stdout=subprocess.PIPE)
            return True
        except (subprocess.CalledProcessError, FileNotFoundError):
            return False

    @staticmethod
    def get_available_devices(host: str = "127.0.0.1", port: int = 5037) -> list[str]:
        """Get a list of available devices."""
        return [device.serial for device in AdbClient(host=host, port=port).devices()]

    def _shell(self, command: str) -> str:
        if self.device is None:
            raise DeviceUnreachable(f"Device {self.device_serial} is not available")
        try:
            return self.device.shell(command)
        except (RuntimeError, OSError) as exc:
            raise DeviceUnreachable(f"{self.device_serial}: '{command}' failed: {exc}") from exc

    @contextmanager
    def _hold(self, target: Target, operation: str):
        if target.device_serial != self.device_serial:
            raise ValueError(
                f"Target {target.identifier} is on {target.device_serial}, not {self.device_serial}"
            )
        if not self._busy.acquire(blocking=False):
            raise TargetBusy(f"{operation} rejected: another command is outstanding on {target.identifier}")
        try:
            yield
        finally:
            self._busy.release()

    def launch_app(self, package_name: str, activity_name: str | None = None, stop_first: bool = False) -> str:
        """Launches an Android app by package name and optional activity."""
        output_parts = []
        if stop_first:
            self._shell(f"am force-stop {package_name}")
            output_parts.append(f"Force-stopped {package_name}")

        if activity_name:
            component = activity_name if "/" in activity_name else f"{package_name}/{activity_name}"
            launch_output = self._shell(f"am start -n {component}")
        else:
            launch_output = self._shell(f"monkey -p {package_name} -c android.intent.category.LEANBACK_LAUNCHER 1")
            if "No activities found" in launch_output:
                launch_output = self._shell(f"monkey -p {package_name} -c android.intent.category.LAUNCHER 1")

        launch_output = launch_output.strip()
        if launch_output:
            output_parts.append(launch_output)

        if not output_parts:
            return f"Launch command sent for {package_name}"

        return "\n".join(output_parts)

    def launch(self, target: Target, stop_first: bool = True) -> Ack:
        """Bring the target app to the foreground from a clean start."""
        with self._hold(target, "launch"):
            output = self.launch_app(target.package, target.activity, stop_first=stop_first)
        logger.info("Launched %s on %s", target.package, self.device_serial)
        return Ack(target.identifier, "launch", output)

    def foreground_package(self) -> str | None:
        return parse_foreground_package(self._shell("dumpsys window"))

    def screen_resolution(self) -> Resolution:
        """Display size as reported by `wm size` (override wins over physical)."""
        output = self._shell("wm size")
        resolution = parse_wm_size(output)
        if resolution is None:
            raise DeviceUnreachable(f"Could not read screen size from {self.device_serial}: {output.strip()!r}")
        return resolution

    def dump_ui_hierarchy(self) -> RawUIDump:
        self._shell(f"uiautomator dump {DUMP_DEVICE_PATH}")
        content = self._shell(f"cat {DUMP_DEVICE_PATH}")
        self._shell(f"rm {DUMP_DEVICE_PATH}")
        return RawUIDump(content=content, format="xml")

    def take_screenshot(self) -> Screenshot:
        if self.device is None:
            raise DeviceUnreachable(f"Device {self.device_serial} is not available")
        try:
            png = self.device.screencap()
        except (RuntimeError, OSError) as exc:
            raise DeviceUnreachable(f"{self.device_serial}: screencap failed: {exc}") from exc
        return Screenshot.from_png(png)

    def capture(self, target: Target, with_screenshot: bool = False) -> tuple[Screenshot | None, RawUIDump]:
        """
        Capture the current UI hierarchy (and optionally a screenshot) of the target.

        Capturing does not touch app state, so it can be repeated freely.

        Raises:
            AppNotForeground: Another package owns the focused window
            DeviceUnreachable: The device cannot be contacted
        """
        with self._hold(target, "capture"):
            foreground = self.foreground_package()
            if foreground != target.package:
                raise AppNotForeground(
                    f"{target.identifier}: expected {target.package} in foreground, found {foreground}"
                )
            raw_dump = self.dump_ui_hierarchy()
            screenshot = self.take_screenshot() if with_screenshot else None
        return screenshot, raw_dump

    def dispatch(self, target: Target, event: InputEvent) -> Ack:
        """Send one input event, exactly once; no retry is attempted here."""
        with self._hold(target, "dispatch"):
            if event.type == "wait":
                time.sleep(event.duration_ms / 1000.0)
                return Ack(target.identifier, str(event))
            if event.type == "tap":
                command = f"input tap {int(event.x)} {int(event.y)}"
            else:
                command = f"input keyevent {event.keycode()}"
            output = self._shell(command)
        logger.debug("%s <- %s", target.identifier, command)
        return Ack(target.identifier, command, output.strip())
