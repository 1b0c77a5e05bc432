"""
Pytest configuration and fixtures.
"""

import base64
import copy
import io
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import pytest
from PIL import Image, ImageDraw

from uitest_agent.backend.base import CaptureResult
from uitest_agent.config import AgentConfig
from uitest_agent.model.base import ModelResponse
from uitest_agent.state import HintImage, Scenario


@pytest.fixture(scope="session")
def temp_dir():
    """Session-scoped temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_file(temp_dir):
    """Create a temporary file."""
    def _create(name: str, content: str = "") -> Path:
        path = temp_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        return path
    return _create


# Images

def encode_png(image: Image.Image) -> str:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def screen_image(
    color: Tuple[int, int, int] = (240, 240, 240),
    size: Tuple[int, int] = (320, 180),
    boxes: Sequence[Tuple[int, int, int, int]] = (),
) -> Image.Image:
    """Flat screen with dark rectangles (x0, y0, x1, y1)."""
    image = Image.new("RGB", size, color)
    draw = ImageDraw.Draw(image)
    for box in boxes:
        draw.rectangle(box, fill=(20, 20, 20))
    return image


def make_capture(image: Optional[Image.Image] = None, scale_factor: float = 1.0) -> CaptureResult:
    image = image or screen_image()
    width, height = image.size
    return CaptureResult(
        image_base64=encode_png(image),
        original_width=round(width / scale_factor),
        original_height=round(height / scale_factor),
        resized_width=width,
        resized_height=height,
        scale_factor=scale_factor,
    )


# Scripted collaborators

def tool_use(action: str, tool_id: str = "toolu_1", **params: Any) -> Dict[str, Any]:
    return {"type": "tool_use", "id": tool_id, "name": "computer", "input": {"action": action, **params}}


def model_reply(*blocks: Union[str, Dict[str, Any]]) -> ModelResponse:
    """ModelResponse from text strings and tool_use dicts."""
    content = [{"type": "text", "text": b} if isinstance(b, str) else b for b in blocks]
    stop_reason = "tool_use" if any(b.get("type") == "tool_use" for b in content) else "end_turn"
    return ModelResponse(content=content, stop_reason=stop_reason)


SUCCESS_TEXT = 'Done.\n```json\n{"status": "success", "message": "Scenario completed"}\n```'

FAILURE_TEXT = (
    'Could not find it.\n```json\n{"status": "failure", "message": "Button missing", '
    '"failureReason": "element_not_found"}\n```'
)


class ScriptedModel:
    """
    ReasoningModel fake.

    next_step replies come from a script (the last one repeats); ask replies
    are routed by prompt type. Exceptions in the script are raised.
    """

    def __init__(
        self,
        responses: Sequence[Union[ModelResponse, Exception]],
        extraction: Union[str, Exception] = "no json here",
        verification: Union[str, Exception] = '{"verified": true, "confidence": "high"}',
        confirmation: Union[str, Exception] = '{"isCompleted": false}',
    ):
        self.responses = list(responses)
        self.replies = {
            "extraction": extraction,
            "verification": verification,
            "confirmation": confirmation,
        }
        self.sent: List[List[Dict[str, Any]]] = []
        self.tools: List[List[Dict[str, Any]]] = []
        self.systems: List[str] = []
        self.asked: List[Tuple[str, str]] = []

    async def next_step(self, system, messages, tools) -> ModelResponse:
        self.systems.append(system)
        self.sent.append(copy.deepcopy(messages))
        self.tools.append(copy.deepcopy(tools))
        index = min(len(self.sent) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        return response

    async def ask(self, prompt, images=(), max_tokens=1024) -> str:
        if "expectedActions" in prompt:
            kind = "extraction"
        elif "isCompleted" in prompt:
            kind = "confirmation"
        else:
            kind = "verification"
        self.asked.append((kind, prompt))
        reply = self.replies[kind]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def asked_kinds(self) -> List[str]:
        return [kind for kind, _ in self.asked]


class FakeBackend:
    """
    AutomationBackend fake recording every call.

    Captures come from a list (the last one repeats). match_script entries
    are result lists or exceptions, consumed one per call; when it runs out
    every template comes back not found.
    """

    def __init__(
        self,
        captures: Optional[Sequence[CaptureResult]] = None,
        match_script: Optional[Sequence[Union[List[Dict[str, Any]], Exception]]] = None,
        stop_after_checks: Optional[int] = None,
        fail_actions: Sequence[str] = (),
    ):
        self.captures = list(captures or [make_capture()])
        self.match_script = list(match_script or [])
        self.stop_after_checks = stop_after_checks
        self.fail_actions = set(fail_actions)
        self.capture_count = 0
        self.stop_checks = 0
        self.match_calls: List[Dict[str, Any]] = []
        self.calls: List[Tuple[Any, ...]] = []

    async def capture_screen(self) -> CaptureResult:
        capture = self.captures[min(self.capture_count, len(self.captures) - 1)]
        self.capture_count += 1
        return capture

    async def match_hint_images(self, screenshot, template_images, scale_factor, confidence_threshold):
        self.match_calls.append({
            "screenshot": screenshot,
            "templates": copy.deepcopy(template_images),
            "scale_factor": scale_factor,
            "threshold": confidence_threshold,
        })
        if self.match_script:
            entry = self.match_script.pop(0)
            if isinstance(entry, Exception):
                raise entry
            return entry
        return [{"matchResult": {"found": False}} for _ in template_images]

    async def is_stop_requested(self) -> bool:
        self.stop_checks += 1
        return self.stop_after_checks is not None and self.stop_checks > self.stop_after_checks

    async def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, *args))
        if name in self.fail_actions:
            raise RuntimeError(f"{name} failed: element not found")

    async def mouse_move(self, x, y):
        await self._record("mouse_move", x, y)

    async def left_click(self, x, y):
        await self._record("left_click", x, y)

    async def right_click(self, x, y):
        await self._record("right_click", x, y)

    async def middle_click(self, x, y):
        await self._record("middle_click", x, y)

    async def double_click(self, x, y):
        await self._record("double_click", x, y)

    async def triple_click(self, x, y):
        await self._record("triple_click", x, y)

    async def left_click_drag(self, start_x, start_y, end_x, end_y):
        await self._record("left_click_drag", start_x, start_y, end_x, end_y)

    async def left_mouse_down(self):
        await self._record("left_mouse_down")

    async def left_mouse_up(self):
        await self._record("left_mouse_up")

    async def scroll(self, x, y, direction, amount):
        await self._record("scroll", x, y, direction, amount)

    async def type_text(self, text):
        await self._record("type_text", text)

    async def key(self, keys):
        await self._record("key", keys)

    async def hold_key(self, key, hold):
        await self._record("hold_key", key, hold)

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


def found(x: int, y: int, confidence: float = 0.92) -> Dict[str, Any]:
    return {"matchResult": {"found": True, "centerX": x, "centerY": y, "confidence": confidence}}


def match_error(message: str, code: Optional[str] = None) -> Dict[str, Any]:
    return {"matchResult": {"found": False, "error": message, "errorCode": code}}


def hint_image(file_name: str = "btn.png", order_index: int = 0, mime_type: str = "image/png") -> HintImage:
    return HintImage(
        id=f"hint-{order_index}",
        scenario_id="scenario-1",
        image_data=base64.b64encode(f"{file_name}-{order_index}".encode()).decode("ascii"),
        mime_type=mime_type,
        file_name=file_name,
        order_index=order_index,
    )


@pytest.fixture
def scenario():
    return Scenario(id="scenario-1", title="Open settings", description="Click the Settings button")


@pytest.fixture
def fast_config():
    """Config with no inter-action delay."""
    config = AgentConfig()
    config.loop.action_delay_ms = 0
    return config
