class ParityError(RuntimeError):
    """Base class for every error raised by the parity engine."""


class DeviceUnreachable(ParityError):
    """The device (or the adb server in front of it) cannot be contacted."""


class AppNotForeground(ParityError):
    """The target package is not the focused foreground app at capture time."""


class MalformedDump(ParityError):
    """A UI hierarchy dump lacks required geometry or hierarchy data."""


class MatchAmbiguous(ParityError):
    """Two candidate matches tied exactly.

    Never escapes the comparator: it is resolved by sibling order and turned
    into an annotation on the resulting delta.
    """


class TargetBusy(ParityError):
    """Another command is still outstanding on the same target."""


class ConfigError(ParityError):
    pass


class ScriptError(ParityError):
    pass
