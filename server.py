import sys

from mcp.server.fastmcp import FastMCP, Image

from adbdevicemanager import PLATFORM_NATIVE, PLATFORM_PORTED, AdbDeviceManager, Target
from comparator import compare
from config import ParityConfig, load_config
from errors import ConfigError
from geometry import parse_resolution
from navigation import FlowRecorder, load_script, parse_script
from runner import ParityRun

CONFIG_FILE = "parity.yaml"
CONFIG_FILE_EXAMPLE = "parity.yaml.example"

# Config is optional; defaults apply when the file is absent.
try:
    config = load_config(CONFIG_FILE)
    print(f"Loaded config from {CONFIG_FILE}", file=sys.stderr)
except ConfigError as e:
    if "not found" in str(e):
        config = ParityConfig()
        print(f"Config file {CONFIG_FILE} not found, using defaults", file=sys.stderr)
    else:
        print(f"Error loading config file {CONFIG_FILE}: {e}", file=sys.stderr)
        print(f"Please check the format of your config file or recreate it from {CONFIG_FILE_EXAMPLE}", file=sys.stderr)
        sys.exit(1)

mcp = FastMCP("tv-parity")
_managers: dict[str, AdbDeviceManager] = {}


def get_manager(device: str | None) -> AdbDeviceManager:
    """Device managers are created on first use and reused afterwards."""
    manager = _managers.get(device or "")
    if manager is None:
        manager = AdbDeviceManager(device, exit_on_error=False)
        _managers[device or ""] = manager
        _managers[manager.device_serial] = manager
    return manager


def make_target(platform: str, device: str | None, package: str | None, resolution: str | None = None) -> Target:
    settings = config.native if platform == PLATFORM_NATIVE else config.ported
    manager = get_manager(device or settings.device)
    package = package or settings.package
    if not package:
        raise ConfigError(f"No package given for the {platform} target")
    return Target(
        identifier=f"{platform}:{manager.device_serial}",
        platform=platform,
        device_serial=manager.device_serial,
        package=package,
        activity=settings.activity,
        resolution=parse_resolution(resolution) if resolution else settings.resolution,
    )


def _tree_rows(tree) -> list[dict]:
    rows = []
    for node in tree.iter_preorder():
        rows.append(
            {
                "path": list(node.path),
                "kind": node.kind,
                "class": node.widget_class,
                "text": node.text,
                "focused": node.is_focused,
                "focusable": node.is_focusable,
                "bounds": list(node.bounds.as_tuple()),
            }
        )
    return rows


@mcp.tool()
def list_devices() -> list[str]:
    """
    List the serials of all devices visible to the adb server
    Returns:
        list[str]: Device serials
    """
    return AdbDeviceManager.get_available_devices()


@mcp.tool()
def capture_ui_tree(device: str | None = None, package: str | None = None, platform: str = PLATFORM_NATIVE) -> dict:
    """
    Capture the current UI of an app as a normalized element list.
    Args:
        device (str | None): Device serial (auto-selected when only one is connected)
        package (str | None): Package expected in the foreground
        platform (str): "native" or "ported", selects defaults from the config
    Returns:
        dict: Screen identifier, focused path and every element with fractional bounds
    """
    target = make_target(platform, device, package)
    snap = FlowRecorder(get_manager(target.device_serial), config).snapshot(target)
    focused = snap.focused
    return {
        "target": target.identifier,
        "screenId": snap.screen_id,
        "focusedPath": list(focused.path) if focused else None,
        "possiblyUnsettled": snap.possibly_unsettled,
        "elements": _tree_rows(snap.tree),
    }


@mcp.tool()
def compare_screens(
    native_device: str,
    ported_device: str,
    native_package: str | None = None,
    ported_package: str | None = None,
) -> dict:
    """
    Compare what the native and the ported app currently show.

    Args:
        native_device (str): Serial of the device running the native app
        ported_device (str): Serial of the device running the ported app
        native_package (str | None): Native package (defaults to config)
        ported_package (str | None): Ported package (defaults to config)

    Returns:
        dict: Max severity, screen identifiers and per-element deltas
    """
    native_target = make_target(PLATFORM_NATIVE, native_device, native_package)
    ported_target = make_target(PLATFORM_PORTED, ported_device, ported_package)
    native_snap = FlowRecorder(get_manager(native_target.device_serial), config).snapshot(native_target)
    ported_snap = FlowRecorder(get_manager(ported_target.device_serial), config).snapshot(ported_target)
    result = compare(native_snap.tree, ported_snap.tree, config)
    return {
        "maxSeverity": result.max_severity,
        "nativeScreen": native_snap.screen_id,
        "portedScreen": ported_snap.screen_id,
        "deltas": [delta.to_dict() for delta in result.deltas],
    }


@mcp.tool()
def run_parity_script(
    native_device: str,
    ported_device: str,
    script_file: str | None = None,
    script: list | None = None,
    native_package: str | None = None,
    ported_package: str | None = None,
    launch: bool = True,
    output: str | None = None,
) -> dict:
    """
    Replay an input script on both apps and return the full parity report.

    Args:
        native_device (str): Serial of the device running the native app
        ported_device (str): Serial of the device running the ported app
        script_file (str | None): YAML/JSON script on the host
        script (list | None): Inline script, e.g. ["select", "right", {"type": "wait", "durationMs": 500}]
        native_package (str | None): Native package (defaults to config)
        ported_package (str | None): Ported package (defaults to config)
        launch (bool): Relaunch both apps before replaying
        output (str | None): Optional path for the JSON report

    Returns:
        dict: ParityReport with per-step deltas and navigation verdict
    """
    if script_file:
        events = load_script(script_file)
    elif script is not None:
        events = parse_script(script)
    else:
        raise ConfigError("Pass either script_file or script")

    native_target = make_target(PLATFORM_NATIVE, native_device, native_package)
    ported_target = make_target(PLATFORM_PORTED, ported_device, ported_package)
    run = ParityRun(
        get_manager(native_target.device_serial),
        get_manager(ported_target.device_serial),
        native_target,
        ported_target,
        events,
        config=config,
        launch=launch,
    )
    report = run.execute()
    if output:
        report.write_json(output)
    return report.to_dict()


@mcp.tool()
def get_screenshot(device: str | None = None) -> Image:
    """Takes a screenshot of the device and returns it.
    Args:
        device (str | None): Device serial
    Returns:
        Image: the screenshot
    """
    get_manager(device).take_screenshot().save_thumbnail("compressed_screenshot.png")
    return Image(path="compressed_screenshot.png")


if __name__ == "__main__":
    mcp.run(transport="stdio")
