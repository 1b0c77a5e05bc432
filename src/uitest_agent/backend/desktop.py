"""
Local desktop backend.

Screen capture with mss, input injection with pyautogui, clipboard typing
with pyperclip, and the pynput stop hotkey. Blocking calls run in the
default executor so the loop stays responsive.
"""

import asyncio
import base64
import io
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

import mss
from PIL import Image

from uitest_agent.backend.base import CaptureResult
from uitest_agent.backend.template_match import match_templates
from uitest_agent.logging import get_logger
from uitest_agent.safety import StopSwitch

logger = get_logger(__name__)

# Upper bounds for what is sent to the model
MAX_LONG_EDGE = 1920
MAX_PIXELS = 2_000_000

# xdotool-style key names the model uses, mapped to pyautogui names
KEY_ALIASES = {
    "return": "enter",
    "kp_enter": "enter",
    "escape": "esc",
    "control": "ctrl",
    "control_l": "ctrl",
    "control_r": "ctrl",
    "super": "win",
    "super_l": "win",
    "meta": "command",
    "cmd": "command",
    "alt_l": "alt",
    "shift_l": "shift",
    "page_up": "pageup",
    "prior": "pageup",
    "page_down": "pagedown",
    "next": "pagedown",
    "backspace": "backspace",
    "delete": "delete",
    "arrowup": "up",
    "arrowdown": "down",
    "arrowleft": "left",
    "arrowright": "right",
}


def compute_resize(width: int, height: int) -> Tuple[int, int, float]:
    """
    Target size for a screenshot and the resulting scale factor.

    Keeps the aspect ratio; never upscales.
    """
    scale = min(1.0, MAX_LONG_EDGE / max(width, height))
    if width * height * scale * scale > MAX_PIXELS:
        scale = (MAX_PIXELS / (width * height)) ** 0.5
    return max(1, int(width * scale)), max(1, int(height * scale)), scale


def normalize_key(key: str) -> str:
    name = key.strip().lower()
    return KEY_ALIASES.get(name, name)


def split_key_combo(keys: str) -> List[str]:
    """'ctrl+shift+t' -> ['ctrl', 'shift', 't']"""
    return [normalize_key(k) for k in keys.split("+") if k.strip()]


class DesktopBackend:
    """AutomationBackend driving the local desktop."""

    def __init__(
        self,
        monitor_index: int = 1,
        stop_switch: Optional[StopSwitch] = None,
        type_interval: float = 0.02,
        display_scale_factor: float = 1.0,
    ):
        """
        Initialize the backend.

        Args:
            monitor_index: mss monitor index (1 = primary)
            stop_switch: User stop hotkey (not started here)
            type_interval: Delay between typed characters
            display_scale_factor: Physical-to-logical pixel ratio (HiDPI)
        """
        self.monitor_index = monitor_index
        self.stop_switch = stop_switch or StopSwitch()
        self.type_interval = type_interval
        self.display_scale_factor = display_scale_factor
        logger.info("DesktopBackend initialized", monitor=monitor_index)

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    @staticmethod
    def _gui():
        import pyautogui

        pyautogui.FAILSAFE = True
        return pyautogui

    def _capture(self) -> CaptureResult:
        with mss.mss() as sct:
            monitor = sct.monitors[self.monitor_index]
            shot = sct.grab(monitor)
            image = Image.frombytes("RGB", shot.size, shot.bgra, "raw", "BGRX")

        width, height = image.size
        target_w, target_h, scale = compute_resize(width, height)
        if (target_w, target_h) != (width, height):
            image = image.resize((target_w, target_h), Image.Resampling.LANCZOS)

        buffer = io.BytesIO()
        image.save(buffer, format="PNG", optimize=True)
        return CaptureResult(
            image_base64=base64.b64encode(buffer.getvalue()).decode("ascii"),
            original_width=width,
            original_height=height,
            resized_width=target_w,
            resized_height=target_h,
            scale_factor=scale,
            display_scale_factor=self.display_scale_factor,
            monitor_id=self.monitor_index,
        )

    async def capture_screen(self) -> CaptureResult:
        capture = await self._run(self._capture)
        logger.debug(
            "Screen captured",
            original=f"{capture.original_width}x{capture.original_height}",
            resized=f"{capture.resized_width}x{capture.resized_height}",
        )
        return capture

    async def match_hint_images(
        self,
        screenshot: str,
        template_images: List[Dict[str, str]],
        scale_factor: float,
        confidence_threshold: float,
    ) -> List[Dict[str, Any]]:
        return await self._run(
            match_templates, screenshot, template_images, scale_factor, confidence_threshold
        )

    async def is_stop_requested(self) -> bool:
        return self.stop_switch.triggered

    async def mouse_move(self, x: int, y: int) -> None:
        await self._run(self._gui().moveTo, x, y, duration=0.1)

    async def left_click(self, x: int, y: int) -> None:
        await self._run(self._gui().click, x, y, button="left")

    async def right_click(self, x: int, y: int) -> None:
        await self._run(self._gui().click, x, y, button="right")

    async def middle_click(self, x: int, y: int) -> None:
        await self._run(self._gui().click, x, y, button="middle")

    async def double_click(self, x: int, y: int) -> None:
        await self._run(self._gui().click, x, y, clicks=2, interval=0.05)

    async def triple_click(self, x: int, y: int) -> None:
        await self._run(self._gui().click, x, y, clicks=3, interval=0.05)

    async def left_click_drag(self, start_x: int, start_y: int, end_x: int, end_y: int) -> None:
        def drag() -> None:
            gui = self._gui()
            gui.moveTo(start_x, start_y)
            gui.dragTo(end_x, end_y, duration=0.3, button="left")

        await self._run(drag)

    async def left_mouse_down(self) -> None:
        await self._run(self._gui().mouseDown, button="left")

    async def left_mouse_up(self) -> None:
        await self._run(self._gui().mouseUp, button="left")

    async def scroll(self, x: int, y: int, direction: str, amount: int) -> None:
        gui = self._gui()
        if direction in ("up", "down"):
            clicks = amount if direction == "up" else -amount
            await self._run(gui.scroll, clicks, x=x, y=y)
        else:
            clicks = amount if direction == "right" else -amount
            await self._run(gui.hscroll, clicks, x=x, y=y)

    async def type_text(self, text: str) -> None:
        if text.isascii():
            await self._run(self._gui().write, text, interval=self.type_interval)
            return

        # pyautogui.write drops non-ASCII characters; paste instead
        def paste() -> None:
            import pyperclip

            pyperclip.copy(text)
            self._gui().hotkey("ctrl", "v")

        await self._run(paste)

    async def key(self, keys: str) -> None:
        combo = split_key_combo(keys)
        if len(combo) == 1:
            await self._run(self._gui().press, combo[0])
        else:
            await self._run(self._gui().hotkey, *combo)

    async def hold_key(self, key: str, hold: bool) -> None:
        gui = self._gui()
        func = gui.keyDown if hold else gui.keyUp
        await self._run(func, normalize_key(key))
