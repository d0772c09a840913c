from __future__ import annotations

import json
from typing import Any, List

import pytest
import requests

from task_agent import llm
from task_agent.assistant import (
    EMPTY_REPLY,
    FALLBACK_REPLY,
    AddTaskAction,
    AssistantBridge,
    CompleteTaskAction,
    build_system_prompt,
    extract_action,
)
from task_agent.llm import GenerationError, WorkersAIClient, unpack_reply
from task_agent.storage import StoreError, Task

from .fakes import FakeGenerationClient


def _sample_task(task_id: str, title: str, completed: bool = False) -> Task:
    return Task(
        id=task_id,
        title=title,
        description="",
        priority="high",
        completed=completed,
        dueDate="2030-01-01",
        createdAt="2030-01-01T00:00:00.000000Z",
    )


def test_system_prompt_lists_tasks_with_short_ids() -> None:
    prompt = build_system_prompt(
        [
            _sample_task("0123456789abcdef", "Ship release"),
            _sample_task("fedcba9876543210", "Water plants", completed=True),
        ]
    )
    assert "- [01234567] Ship release (high priority, active)" in prompt
    assert "- [fedcba98] Water plants (high priority, completed)" in prompt
    assert '{"action": "add_task"' in prompt


def test_system_prompt_placeholder_without_tasks() -> None:
    assert "Current tasks:\nNo tasks yet\n" in build_system_prompt([])


@pytest.mark.parametrize(
    "reply, expected",
    [
        ("  plain text  ", "plain text"),
        ({"response": "from response", "text": "ignored"}, "from response"),
        ({"response": "", "text": "from text"}, "from text"),
        ({"description": "from description"}, "from description"),
        ({"usage": {"tokens": 3}, "answer": "first string"}, "first string"),
        ({"usage": {"tokens": 3}}, json.dumps({"usage": {"tokens": 3}})),
        (None, ""),
        (42, "42"),
        (["a", 1], '["a", 1]'),
    ],
)
def test_unpack_reply_shapes(reply: Any, expected: str) -> None:
    assert unpack_reply(reply) == expected


def test_extract_add_task_action() -> None:
    text = 'Sure! {"action":"add_task","title":"Buy milk","priority":"High","dueDate":"soon"} Done.'
    fragment, action = extract_action(text)
    assert fragment == '{"action":"add_task","title":"Buy milk","priority":"High","dueDate":"soon"}'
    assert isinstance(action, AddTaskAction)
    assert action.priority == "high"
    assert action.dueDate is None


def test_extract_complete_task_action() -> None:
    fragment, action = extract_action('Marking it. {"action": "complete_task", "taskId": "ab12"}')
    assert fragment is not None
    assert isinstance(action, CompleteTaskAction)
    assert action.taskId == "ab12"


def test_extract_action_ignores_broken_json() -> None:
    assert extract_action('Oops {"action": "add_task", "title": }') == (None, None)
    assert extract_action("No actions here.") == (None, None)


def test_extract_action_rejects_unknown_actions() -> None:
    fragment, action = extract_action('{"action": "delete_everything"}')
    assert fragment == '{"action": "delete_everything"}'
    assert action is None


def test_bridge_prefers_messages_shape() -> None:
    client = FakeGenerationClient(replies=[{"response": "Hello there"}])
    bridge = AssistantBridge(client, model="m")
    reply = bridge.reply("hi", [], lambda action: None)
    assert reply.text == "Hello there"
    assert reply.action is None
    shape, messages = client.calls[0]
    assert shape == "messages"
    assert [m["role"] for m in messages] == ["system", "user"]
    assert messages[1]["content"] == "hi"


def test_bridge_falls_back_to_prompt_shape() -> None:
    client = FakeGenerationClient(replies=["Prompt answer"], fail_messages=True)
    bridge = AssistantBridge(client, model="m")
    reply = bridge.reply("what now?", [], lambda action: None)
    assert reply.text == "Prompt answer"
    assert [shape for shape, _ in client.calls] == ["messages", "prompt"]
    assert client.calls[1][1].endswith("\n\nUser: what now?\nAssistant:")


def test_bridge_returns_fallback_when_both_shapes_fail() -> None:
    client = FakeGenerationClient(fail_messages=True, fail_prompt=True)
    bridge = AssistantBridge(client, model="m")
    assert bridge.reply("hi", [], lambda action: None).text == FALLBACK_REPLY


def test_bridge_applies_action_and_strips_fragment() -> None:
    applied: List[Any] = []
    client = FakeGenerationClient(
        replies=['{"action":"add_task","title":"Buy milk","priority":"high"}\nAdded to your list.']
    )
    bridge = AssistantBridge(client, model="m")
    reply = bridge.reply("buy milk", [], applied.append)
    assert reply.text == "Added to your list."
    assert reply.action == "add_task"
    assert [(a.title, a.priority) for a in applied] == [("Buy milk", "high")]


def test_bridge_uses_placeholder_for_action_only_reply() -> None:
    client = FakeGenerationClient(replies=['{"action":"complete_task","taskId":"ab"}'])
    bridge = AssistantBridge(client, model="m")
    assert bridge.reply("done", [], lambda action: None).text == EMPTY_REPLY


def test_bridge_keeps_text_when_action_payload_is_broken() -> None:
    text = 'I will add it {"action": "add_task", title: "x"}'
    client = FakeGenerationClient(replies=[text])
    bridge = AssistantBridge(client, model="m")
    reply = bridge.reply("add x", [], lambda action: pytest.fail("must not apply"))
    assert reply.text == text
    assert reply.action is None


def test_bridge_keeps_text_when_store_rejects_action() -> None:
    text = 'Adding it. {"action":"add_task","title":"Buy milk"}'
    client = FakeGenerationClient(replies=[text])
    bridge = AssistantBridge(client, model="m")

    def failing_store(action) -> None:
        raise StoreError("database is locked")

    reply = bridge.reply("buy milk", [], failing_store)
    assert reply.text == text
    assert reply.action is None


class _FakeResponse:
    def __init__(self, status_code: int, body: Any) -> None:
        self.status_code = status_code
        self._body = body
        self.text = json.dumps(body) if not isinstance(body, str) else body

    def json(self) -> Any:
        if isinstance(self._body, str):
            raise ValueError("not json")
        return self._body


def test_workers_ai_client_posts_and_unwraps(monkeypatch: pytest.MonkeyPatch) -> None:
    captured = {}

    def fake_post(url, headers, data, timeout):
        captured.update(url=url, headers=headers, payload=json.loads(data), timeout=timeout)
        return _FakeResponse(200, {"success": True, "result": {"response": "hi"}})

    monkeypatch.setattr(llm.requests, "post", fake_post)
    client = WorkersAIClient(
        "https://api.example.com/accounts/{account_id}/ai/run/",
        account_id="acct",
        api_token="secret",
        timeout=5,
    )
    result = client.run_messages(
        model="@cf/meta/model",
        messages=[{"role": "user", "content": "hello"}],
        max_tokens=64,
        temperature=0.5,
    )
    assert result == {"response": "hi"}
    assert captured["url"] == "https://api.example.com/accounts/acct/ai/run/@cf/meta/model"
    assert captured["headers"]["Authorization"] == "Bearer secret"
    assert captured["payload"] == {
        "messages": [{"role": "user", "content": "hello"}],
        "max_tokens": 64,
        "temperature": 0.5,
    }
    assert captured["timeout"] == 5


@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse(500, {"errors": ["boom"]}),
        _FakeResponse(200, "<html>not json</html>"),
        _FakeResponse(200, {"success": False, "errors": ["bad input"]}),
    ],
)
def test_workers_ai_client_raises_generation_error(
    monkeypatch: pytest.MonkeyPatch, response: _FakeResponse
) -> None:
    monkeypatch.setattr(llm.requests, "post", lambda *args, **kwargs: response)
    client = WorkersAIClient("https://api.example.com/run/")
    with pytest.raises(GenerationError):
        client.run_prompt(model="m", prompt="hello")


def test_workers_ai_client_wraps_transport_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def timeout(*args, **kwargs):
        raise requests.Timeout("deadline exceeded")

    monkeypatch.setattr(llm.requests, "post", timeout)
    client = WorkersAIClient("https://api.example.com/run/", timeout=0.1)
    with pytest.raises(GenerationError):
        client.run_prompt(model="m", prompt="hello")
