"""
Global stop hotkey backed by pynput.

The automation backend reports the switch state through is_stop_requested(),
which the loop checks at every iteration start and before each action.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Set

from uitest_agent.logging import get_logger

logger = get_logger(__name__)

MODIFIER_NAMES = {
    "ctrl_l": "ctrl",
    "ctrl_r": "ctrl",
    "shift_l": "shift",
    "shift_r": "shift",
    "alt_l": "alt",
    "alt_r": "alt",
    "alt_gr": "alt",
    "cmd_l": "cmd",
    "cmd_r": "cmd",
}


@dataclass
class HotkeySpec:
    """Parsed hotkey like 'ctrl+shift+k'."""

    modifiers: Set[str]
    key: str

    @classmethod
    def parse(cls, hotkey: str) -> "HotkeySpec":
        parts = [p.strip() for p in hotkey.lower().split("+") if p.strip()]
        if not parts:
            raise ValueError(f"Empty hotkey: {hotkey!r}")
        return cls(modifiers=set(parts[:-1]), key=parts[-1])


def key_name(key: Any) -> str:
    """Normalized name of a pynput key event ('' when unknown)."""
    name = getattr(key, "name", None)
    if name:
        name = name.lower()
        return MODIFIER_NAMES.get(name, name)
    char = getattr(key, "char", None)
    if char:
        return char.lower()
    return ""


class StopSwitch:
    """
    User stop request, set by a global hotkey or three quick Escape presses.

    Once triggered it stays set until reset().
    """

    def __init__(
        self,
        hotkey: str = "ctrl+shift+k",
        on_trigger: Optional[Callable[[], None]] = None,
        escape_presses: int = 3,
        escape_window: float = 1.0,
    ):
        self.hotkey = HotkeySpec.parse(hotkey)
        self.on_trigger = on_trigger
        self.escape_presses = escape_presses
        self.escape_window = escape_window

        self._triggered = threading.Event()
        self._lock = threading.RLock()
        self._listener: Any = None
        self._pressed_modifiers: Set[str] = set()
        self._escape_times: List[float] = []
        self.trigger_source: Optional[str] = None

    @property
    def triggered(self) -> bool:
        return self._triggered.is_set()

    def start(self) -> None:
        """Start listening for the hotkey in a background thread."""
        if self._listener is not None:
            return
        from pynput import keyboard

        self._listener = keyboard.Listener(on_press=self.on_press, on_release=self.on_release)
        self._listener.daemon = True
        self._listener.start()
        logger.info(
            "Stop hotkey armed",
            modifiers=sorted(self.hotkey.modifiers),
            key=self.hotkey.key,
        )

    def stop(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
            logger.info("Stop hotkey disarmed")

    def trigger(self, source: str = "manual") -> None:
        """Set the stop request. Later calls are no-ops."""
        with self._lock:
            if self._triggered.is_set():
                return
            self.trigger_source = source
            self._triggered.set()
            logger.warning("Stop requested", source=source)
            if self.on_trigger:
                try:
                    self.on_trigger()
                except Exception as e:
                    logger.error("Error in stop callback", error=str(e))

    def reset(self) -> None:
        with self._lock:
            self._triggered.clear()
            self._pressed_modifiers.clear()
            self._escape_times.clear()
            self.trigger_source = None

    def on_press(self, key: Any) -> None:
        if self._triggered.is_set():
            return
        name = key_name(key)
        if name in ("ctrl", "shift", "alt", "cmd"):
            self._pressed_modifiers.add(name)

        if name == self.hotkey.key and self.hotkey.modifiers <= self._pressed_modifiers:
            self.trigger("hotkey")
        elif name == "esc" or name == "escape":
            self._record_escape(time.monotonic())

    def on_release(self, key: Any) -> None:
        self._pressed_modifiers.discard(key_name(key))

    def _record_escape(self, now: float) -> None:
        self._escape_times = [t for t in self._escape_times if now - t < self.escape_window]
        self._escape_times.append(now)
        if len(self._escape_times) >= self.escape_presses:
            self.trigger("rapid_escape")
