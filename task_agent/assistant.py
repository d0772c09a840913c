from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Protocol, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from .llm import unpack_reply
from .storage import DATE_FORMAT, DEFAULT_PRIORITY, PRIORITIES, StoreError, Task

logger = logging.getLogger("task_agent.assistant")

EMPTY_REPLY = "I'm here to help you manage your tasks!"
FALLBACK_REPLY = (
    "I'm having trouble connecting to the AI service right now. "
    "Please try again in a moment."
)

# One flat JSON object on a single line that mentions "action".
ACTION_PATTERN = re.compile(r"\{[^{}\n]*\"action\"[^{}\n]*\}")

SYSTEM_PROMPT_TEMPLATE = """You are an AI task manager assistant. Help users manage their tasks through natural conversation.

Current tasks:
{task_lines}

You can help users:
1. Add new tasks - extract title, priority, and due date
2. Mark tasks complete - use task ID or description
3. Suggest priorities and focus areas
4. Break down complex tasks
5. Answer questions about their tasks

When adding tasks, respond with this JSON format somewhere in your response:
{{"action": "add_task", "title": "task name", "priority": "high/medium/low", "dueDate": "YYYY-MM-DD"}}

When completing tasks, include:
{{"action": "complete_task", "taskId": "id"}}

Be conversational and helpful!"""


class AddTaskAction(BaseModel):
    action: Literal["add_task"]
    title: str = Field(min_length=1)
    description: Optional[str] = None
    priority: Optional[str] = None
    dueDate: Optional[str] = None

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        value = value.strip().lower()
        return value if value in PRIORITIES else DEFAULT_PRIORITY

    @field_validator("dueDate", mode="before")
    @classmethod
    def _coerce_due_date(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        try:
            datetime.strptime(value.strip(), DATE_FORMAT)
        except ValueError:
            return None
        return value.strip()


class CompleteTaskAction(BaseModel):
    action: Literal["complete_task"]
    taskId: str = Field(min_length=1)


InlineAction = Annotated[
    Union[AddTaskAction, CompleteTaskAction], Field(discriminator="action")
]
_ACTION_ADAPTER: TypeAdapter = TypeAdapter(InlineAction)


class GenerationClient(Protocol):
    def run_messages(self, *, model: str, messages: List[Dict[str, str]], **kwargs: Any) -> Any:
        ...

    def run_prompt(self, *, model: str, prompt: str, **kwargs: Any) -> Any:
        ...


ActionHandler = Callable[[Union[AddTaskAction, CompleteTaskAction]], None]


@dataclass
class AssistantReply:
    text: str
    action: Optional[str] = None


def render_task_lines(tasks: List[Task]) -> str:
    lines = [
        f"- [{task.id[:8]}] {task.title} "
        f"({task.priority} priority, {'completed' if task.completed else 'active'})"
        for task in tasks
    ]
    return "\n".join(lines) or "No tasks yet"


def build_system_prompt(tasks: List[Task]) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(task_lines=render_task_lines(tasks))


def extract_action(
    text: str,
) -> Tuple[Optional[str], Optional[Union[AddTaskAction, CompleteTaskAction]]]:
    """
    Locate an inline action in generated text.

    Returns the matched fragment (only when it is valid JSON) and the action
    validated against the schema, or ``None`` for either part.
    """
    if '"action"' not in text:
        return None, None
    match = ACTION_PATTERN.search(text)
    if not match:
        return None, None
    fragment = match.group(0)
    try:
        payload = json.loads(fragment)
    except json.JSONDecodeError:
        logger.warning("Ignoring unparseable inline action: %s", fragment)
        return None, None
    try:
        action = _ACTION_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        logger.warning("Ignoring invalid inline action %s: %s", fragment, exc)
        return fragment, None
    return fragment, action


class AssistantBridge:
    """
    Turns one user message into an assistant reply, applying at most one
    inline task action found in the generated text.
    """

    def __init__(
        self,
        client: GenerationClient,
        *,
        model: str,
        max_tokens: Optional[int] = 512,
        temperature: Optional[float] = 0.7,
    ) -> None:
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

    def generate(self, system_prompt: str, user_text: str) -> Any:
        try:
            return self.client.run_messages(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_text},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as exc:
            logger.info("Messages format failed, trying prompt format: %s", exc)
        full_prompt = f"{system_prompt}\n\nUser: {user_text}\nAssistant:"
        return self.client.run_prompt(
            model=self.model,
            prompt=full_prompt,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

    def reply(
        self,
        user_text: str,
        tasks: List[Task],
        apply_action: ActionHandler,
    ) -> AssistantReply:
        try:
            raw = self.generate(build_system_prompt(tasks), user_text)
            text = unpack_reply(raw)
            applied: Optional[str] = None
            fragment, action = extract_action(text)
            if fragment is not None:
                try:
                    if action is not None:
                        apply_action(action)
                        applied = action.action
                        logger.info("Applied inline action %s", applied)
                    text = text.replace(fragment, "", 1).strip()
                except StoreError:
                    logger.exception("Failed to apply inline action %s", fragment)
            return AssistantReply(text=text or EMPTY_REPLY, action=applied)
        except Exception:
            logger.exception("Assistant turn failed; returning fallback reply.")
            return AssistantReply(text=FALLBACK_REPLY)
