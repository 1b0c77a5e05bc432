"""
Tests for the stop hotkey.
"""

from types import SimpleNamespace

import pytest

from uitest_agent.safety import HotkeySpec, StopSwitch
from uitest_agent.safety.stop_switch import key_name


def special(name):
    return SimpleNamespace(name=name)


def char(value):
    return SimpleNamespace(char=value)


class TestHotkeySpec:
    """Tests for hotkey parsing."""

    def test_parse(self):
        spec = HotkeySpec.parse("Ctrl+Shift+K")
        assert spec.modifiers == {"ctrl", "shift"}
        assert spec.key == "k"

    def test_single_key(self):
        spec = HotkeySpec.parse("f12")
        assert spec.modifiers == set()
        assert spec.key == "f12"

    def test_empty(self):
        with pytest.raises(ValueError):
            HotkeySpec.parse(" + ")


class TestKeyName:
    """Tests for key event normalization."""

    def test_modifiers_collapsed(self):
        assert key_name(special("ctrl_l")) == "ctrl"
        assert key_name(special("shift_r")) == "shift"

    def test_char(self):
        assert key_name(char("K")) == "k"

    def test_unknown(self):
        assert key_name(SimpleNamespace(char=None)) == ""


class TestStopSwitch:
    """Tests for StopSwitch."""

    def test_hotkey_triggers(self):
        calls = []
        switch = StopSwitch("ctrl+shift+k", on_trigger=lambda: calls.append(1))

        switch.on_press(special("ctrl_l"))
        switch.on_press(special("shift"))
        switch.on_press(char("k"))

        assert switch.triggered
        assert switch.trigger_source == "hotkey"
        assert calls == [1]

    def test_key_without_modifiers_ignored(self):
        switch = StopSwitch("ctrl+shift+k")
        switch.on_press(special("ctrl_l"))
        switch.on_release(special("ctrl_l"))
        switch.on_press(special("shift"))
        switch.on_press(char("k"))
        assert not switch.triggered

    def test_rapid_escape(self):
        switch = StopSwitch()
        switch._record_escape(10.0)
        switch._record_escape(10.3)
        assert not switch.triggered
        switch._record_escape(10.6)
        assert switch.triggered
        assert switch.trigger_source == "rapid_escape"

    def test_slow_escapes_ignored(self):
        switch = StopSwitch()
        for now in (10.0, 11.5, 13.0):
            switch._record_escape(now)
        assert not switch.triggered

    def test_escape_key_event(self):
        switch = StopSwitch(escape_presses=1)
        switch.on_press(special("esc"))
        assert switch.triggered

    def test_trigger_is_idempotent(self):
        calls = []
        switch = StopSwitch(on_trigger=lambda: calls.append(1))
        switch.trigger("manual")
        switch.trigger("hotkey")
        assert calls == [1]
        assert switch.trigger_source == "manual"

    def test_callback_error_does_not_propagate(self):
        def explode():
            raise RuntimeError("boom")

        switch = StopSwitch(on_trigger=explode)
        switch.trigger()
        assert switch.triggered

    def test_reset(self):
        switch = StopSwitch()
        switch.trigger()
        switch.reset()
        assert not switch.triggered
        assert switch.trigger_source is None
