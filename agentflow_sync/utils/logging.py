"""Rate-limited warnings for the background drain and refresh loops."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict


class _WarningGate:
    """Remember when each warning code last fired, evicting the stalest codes first."""

    def __init__(self, max_codes: int = 1024) -> None:
        self.max_codes = max_codes
        self._fired: OrderedDict[str, float] = OrderedDict()

    def allow(self, code: str, window: float, now: float) -> bool:
        last = self._fired.get(code)
        if last is not None and now - last <= window:
            return False
        self._fired[code] = now
        self._fired.move_to_end(code)
        while len(self._fired) > self.max_codes:
            self._fired.popitem(last=False)
        return True

    def clear(self) -> None:
        self._fired.clear()


_GATE = _WarningGate()


def warn_once(logger: logging.Logger, code: str, message: str, window: int = 60) -> bool:
    """Emit ``message`` at most once per ``window`` seconds for ``code``.

    A sync entry that keeps failing on every drain tick is reported once a
    minute. Returns whether the warning was logged.
    """
    if not _GATE.allow(code, window, time.monotonic()):
        return False
    logger.warning("%s: %s", code, message)
    return True


def reset_warnings() -> None:
    _GATE.clear()
