"""
Input validation shared by routes and services.
All failures raise ValidationError (HTTP 400, never retried).
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from forge3d.errors import ValidationError
from forge3d.models import WorkflowType

MAX_USER_ID_LENGTH = 128
MAX_PROMPT_LENGTH = 2000
MAX_IMAGE_URL_LENGTH = 2048


def validate_json_body(body: Any) -> Dict[str, Any]:
    """A missing body reads as {}; arrays and scalars are rejected."""
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", field="body")
    return body


def validate_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError("Invalid user ID", field="user_id")
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise ValidationError("User ID too long", field="user_id")
    return user_id


def validate_amount(amount: Any, maximum: int, field: str = "amount") -> int:
    """Positive integer credits not above the configured per-transaction maximum."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise ValidationError("Amount must be an integer", field=field)
    if amount <= 0:
        raise ValidationError("Amount must be positive", field=field)
    if amount > maximum:
        raise ValidationError(f"Amount exceeds maximum of {maximum}", field=field)
    return amount


def validate_prompt(prompt: Any) -> str:
    if not isinstance(prompt, str):
        raise ValidationError("Prompt must be a string", field="prompt")
    cleaned = prompt.strip()
    if not cleaned:
        raise ValidationError("Prompt cannot be empty", field="prompt")
    if len(cleaned) > MAX_PROMPT_LENGTH:
        raise ValidationError(f"Prompt too long (max {MAX_PROMPT_LENGTH} characters)", field="prompt")
    return cleaned


def validate_image_url(image_url: Any) -> str:
    if not isinstance(image_url, str) or not image_url.strip():
        raise ValidationError("Image URL must be a non-empty string", field="image_url")
    cleaned = image_url.strip()
    if len(cleaned) > MAX_IMAGE_URL_LENGTH:
        raise ValidationError("Image URL too long", field="image_url")
    if not (cleaned.startswith("http://") or cleaned.startswith("https://") or cleaned.startswith("data:")):
        raise ValidationError("Image URL must be http(s) or a data URI", field="image_url")
    return cleaned


def validate_workflow_type(workflow_type: Any) -> str:
    if workflow_type not in WorkflowType.ALL:
        raise ValidationError(
            f"Invalid workflow_type. Must be one of: {', '.join(WorkflowType.ALL)}",
            field="workflow_type",
        )
    return workflow_type


def validate_workflow_input(prompt: Optional[Any], image_url: Optional[Any]) -> Dict[str, str]:
    """
    A workflow needs a prompt, a source image, or both.
    Returns the cleaned input_data dict.
    """
    has_prompt = prompt not in (None, "")
    has_image = image_url not in (None, "")
    if not has_prompt and not has_image:
        raise ValidationError("Either prompt or image_url must be provided")

    cleaned: Dict[str, str] = {}
    if has_prompt:
        cleaned["prompt"] = validate_prompt(prompt)
    if has_image:
        cleaned["image_url"] = validate_image_url(image_url)
    return cleaned
