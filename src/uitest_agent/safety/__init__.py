"""
Safety module - user stop hotkey.
"""
from uitest_agent.safety.stop_switch import HotkeySpec, StopSwitch

__all__ = [
    "HotkeySpec",
    "StopSwitch",
]
