"""
Prompt text and message construction for the reasoning model.
"""

from typing import Any, Dict, List, Optional, Sequence

from uitest_agent.backend.base import CaptureResult
from uitest_agent.config import ModelConfig
from uitest_agent.state import ExpectedAction, HintImage, normalize_media_type

RESULT_SCHEMA_INSTRUCTION = """When the scenario has finished, successfully or not, you MUST report the
outcome as JSON at the very end of your text reply.

If the scenario completed successfully:
```json
{"status": "success", "message": "Scenario completed successfully"}
```

If the scenario failed (element not found, action had no effect, unexpected screen, ...):
```json
{"status": "failure", "message": "What went wrong", "failureReason": "element_not_found|action_no_effect|unexpected_state|other"}
```

While the scenario is still in progress, do not include this JSON; just request the next action."""

SYSTEM_PROMPT = f"""You are a UI test agent. You operate a desktop computer through the `computer` tool
to carry out a test scenario written by a human tester, exactly as written.

RULES:
1. Look at the latest screenshot before every action
2. Perform one step at a time and do not skip steps
3. Prefer coordinates reported for hint images when they are given
4. If an element cannot be found after reasonable attempts, report failure instead of guessing
5. Do not perform destructive actions the scenario does not ask for

{RESULT_SCHEMA_INSTRUCTION}"""

HINT_INTRO = (
    "[Hint images]\n"
    "The following images show elements you should look for or click."
)

HINT_COORDINATES_HEADER = "[Detected coordinates (center of each image)]"

HINT_COORDINATES_FOOTER = (
    "These positions were found by image recognition. Use them to act precisely."
)

HINT_NO_COORDINATES = "Use them as a reference to act precisely."

UPDATED_COORDINATES_HEADER = "[Updated hint image coordinates]"

EXTRACT_ACTIONS_PROMPT = """Analyze the following UI test scenario and list the actions it expects, in order.

Reply with JSON only:
{
  "expectedActions": [
    {
      "description": "What the step does (e.g. click the Chrome icon)",
      "keywords": ["keyword 1", "keyword 2"],
      "targetElements": ["UI element 1"],
      "expectedToolAction": "left_click | double_click | right_click | type | key | scroll | wait"
    }
  ]
}

Notes:
- keywords name on-screen elements or applications to look for
- targetElements name concrete UI elements (e.g. "address bar", "search box")
- include keywords even for wait, scroll and mouse_move steps

Scenario:
"""

CONFIRM_ACTION_PROMPT = """Scenario:
{scenario}

Expected step to check:
- description: {description}
- keywords: {keywords}
- target elements: {targets}

Tool actions executed so far:
{tool_uses}

Question: looking at the current screen, has the step "{description}" been completed?

Reply with JSON only:
```json
{{"isCompleted": true, "reason": "why"}}
```"""

VERIFY_COMPLETION_PROMPT = """Scenario:
{scenario}

The agent reports that this scenario is complete. Its final message was:
{message}

Looking at the current screen, is the scenario's goal actually achieved?

Reply with JSON only:
```json
{{"verified": true, "reason": "why", "confidence": "high|medium|low"}}
```"""


def image_block(data: str, media_type: str = "image/png") -> Dict[str, Any]:
    """Base64 image content block with a normalized media type."""
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": normalize_media_type(media_type),
            "data": data,
        },
    }


def text_block(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def build_computer_tool(capture: CaptureResult, model_config: Optional[ModelConfig] = None) -> Dict[str, Any]:
    """Computer-use tool definition sized to the resized screenshot."""
    model_config = model_config or ModelConfig()
    tool: Dict[str, Any] = {
        "type": model_config.tool_type,
        "name": "computer",
        "display_width_px": capture.resized_width,
        "display_height_px": capture.resized_height,
        "display_number": 1,
    }
    if model_config.enable_zoom:
        tool["enable_zoom"] = True
    return tool


def build_hint_text(coordinates_text: str) -> str:
    """Hint block text, with the coordinates section when any image was located."""
    if coordinates_text:
        return (
            f"{HINT_INTRO}\n\n{HINT_COORDINATES_HEADER}\n{coordinates_text}\n\n"
            f"{HINT_COORDINATES_FOOTER}"
        )
    return f"{HINT_INTRO}\n{HINT_NO_COORDINATES}"


def build_initial_turn(
    scenario_text: str,
    capture: CaptureResult,
    hint_images: Sequence[HintImage] = (),
    coordinates_text: str = "",
) -> Dict[str, Any]:
    """
    First user turn: scenario text and screenshot, then the hint block if any.

    Args:
        scenario_text: Scenario description as written
        capture: Current screenshot
        hint_images: Hint images in display order
        coordinates_text: Located-image summary ("" when none or unknown)
    """
    content: List[Dict[str, Any]] = [
        text_block(scenario_text),
        image_block(capture.image_base64),
    ]
    if hint_images:
        content.append(text_block(build_hint_text(coordinates_text)))
        for hint in hint_images:
            content.append(image_block(hint.image_data, hint.mime_type))
    return {"role": "user", "content": content}


def build_tool_result(
    tool_use_id: str,
    text: str,
    capture: Optional[CaptureResult] = None,
    is_error: bool = False,
) -> Dict[str, Any]:
    """tool_result block, with the post-action screenshot when given."""
    content: List[Dict[str, Any]] = [text_block(text)]
    if capture is not None:
        content.append(image_block(capture.image_base64))
    block: Dict[str, Any] = {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": content,
    }
    if is_error:
        block["is_error"] = True
    return block


def build_followup_turn(
    tool_results: List[Dict[str, Any]],
    coordinates_text: str = "",
) -> Dict[str, Any]:
    """User turn answering the previous tool calls."""
    content = list(tool_results)
    if coordinates_text:
        content.append(text_block(f"{UPDATED_COORDINATES_HEADER}\n{coordinates_text}"))
    return {"role": "user", "content": content}


def build_confirm_action_prompt(
    scenario: str,
    expected: ExpectedAction,
    tool_uses: Sequence[str],
) -> str:
    return CONFIRM_ACTION_PROMPT.format(
        scenario=scenario,
        description=expected.description,
        keywords=", ".join(expected.keywords) or "(none)",
        targets=", ".join(expected.target_elements) or "(none)",
        tool_uses="\n".join(tool_uses) if tool_uses else "(none)",
    )


def build_verify_completion_prompt(scenario: str, message: str) -> str:
    return VERIFY_COMPLETION_PROMPT.format(scenario=scenario, message=message or "(none)")
