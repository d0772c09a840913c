from __future__ import annotations

import json
from html import escape
from typing import Any, Dict, List


def render_dashboard(*, session: str, tasks: List[Dict[str, Any]]) -> str:
    """
    Single page with the task list and chat panel.

    The initial task list is rendered server side; afterwards the page
    follows the ``/api/chat`` socket for history and updates.
    """
    session_json = escape(json.dumps(session))
    tasks_html = "\n".join(render_task_item(task) for task in tasks) or (
        "<li class=\"empty\">No tasks yet.</li>"
    )
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <title>Task Agent</title>
  <style>
    :root {{
      color-scheme: light dark;
      --border: #ccc;
      --accent: #3367d6;
      --muted: #666;
      font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif;
    }}
    body {{ margin: 0; display: grid; grid-template-columns: 1fr 1fr; height: 100vh; }}
    section {{ padding: 1rem; overflow-y: auto; border-right: 1px solid var(--border); }}
    ul {{ list-style: none; padding: 0; }}
    li {{ padding: 0.4rem 0; border-bottom: 1px solid var(--border); }}
    li.completed .title {{ text-decoration: line-through; color: var(--muted); }}
    .priority-high {{ color: #c62828; }}
    .priority-low {{ color: var(--muted); }}
    .message {{ margin: 0.4rem 0; padding: 0.4rem 0.6rem; border-radius: 6px; }}
    .message.user {{ background: var(--accent); color: #fff; margin-left: 20%; }}
    .message.assistant {{ background: rgba(127, 127, 127, 0.15); margin-right: 20%; }}
    .message.error {{ background: #fdecea; color: #b71c1c; }}
    form {{ display: flex; gap: 0.5rem; }}
    input[type=text] {{ flex: 1; }}
  </style>
</head>
<body data-session="{session_json}">
  <section>
    <h1>Tasks</h1>
    <ul id="tasks">
{tasks_html}
    </ul>
  </section>
  <section>
    <h1>Assistant</h1>
    <div id="messages"></div>
    <form id="chat-form">
      <input type="text" id="message-input" placeholder="Ask about your tasks" autocomplete="off" />
      <button type="submit">Send</button>
    </form>
  </section>
{_client_script()}
</body>
</html>
"""


def render_task_item(task: Dict[str, Any]) -> str:
    completed = bool(task.get("completed"))
    classes = "task completed" if completed else "task"
    checked = " checked" if completed else ""
    priority = escape(str(task.get("priority") or "medium"))
    return (
        f"<li class=\"{classes}\" data-id=\"{escape(str(task.get('id', '')))}\">"
        f"<input type=\"checkbox\" class=\"toggle\"{checked} /> "
        f"<span class=\"title\">{escape(str(task.get('title', '')))}</span> "
        f"<span class=\"priority-{priority}\">{priority}</span> "
        f"<small>due {escape(str(task.get('dueDate') or '-'))}</small>"
        "</li>"
    )


def _client_script() -> str:
    return """<script>
(() => {
  const session = JSON.parse(document.body.dataset.session);
  const query = `?session=${encodeURIComponent(session)}`;
  const messages = document.getElementById("messages");
  const taskList = document.getElementById("tasks");
  let socket = null;

  function addMessage(role, content) {
    const div = document.createElement("div");
    div.className = `message ${role}`;
    div.textContent = content;
    messages.appendChild(div);
    messages.scrollTop = messages.scrollHeight;
  }

  function renderTasks(tasks) {
    taskList.replaceChildren();
    if (!tasks.length) {
      const li = document.createElement("li");
      li.className = "empty";
      li.textContent = "No tasks yet.";
      taskList.appendChild(li);
      return;
    }
    for (const task of tasks) {
      const li = document.createElement("li");
      li.className = task.completed ? "task completed" : "task";
      li.dataset.id = task.id;
      const box = document.createElement("input");
      box.type = "checkbox";
      box.className = "toggle";
      box.checked = task.completed;
      const title = document.createElement("span");
      title.className = "title";
      title.textContent = ` ${task.title} `;
      const priority = document.createElement("span");
      priority.className = `priority-${task.priority}`;
      priority.textContent = task.priority;
      const due = document.createElement("small");
      due.textContent = ` due ${task.dueDate || "-"}`;
      li.append(box, title, priority, due);
      taskList.appendChild(li);
    }
  }

  taskList.addEventListener("change", async (event) => {
    if (!event.target.classList.contains("toggle")) return;
    const id = event.target.closest("li").dataset.id;
    await fetch(`/api/tasks/${id}${query}`, {
      method: "PUT",
      headers: {"Content-Type": "application/json"},
      body: JSON.stringify({completed: event.target.checked}),
    });
  });

  function connect() {
    const protocol = window.location.protocol === "https:" ? "wss:" : "ws:";
    socket = new WebSocket(`${protocol}//${window.location.host}/api/chat${query}`);
    socket.onmessage = (event) => {
      const data = JSON.parse(event.data);
      if (data.type === "history") {
        messages.replaceChildren();
        data.messages.forEach((msg) => addMessage(msg.role, msg.content));
      } else if (data.type === "tasks") {
        renderTasks(data.tasks);
      } else if (data.type === "message") {
        addMessage(data.role, data.content);
      } else if (data.type === "error") {
        addMessage("error", data.message || "An error occurred");
      }
    };
    socket.onclose = () => setTimeout(connect, 3000);
  }

  document.getElementById("chat-form").addEventListener("submit", (event) => {
    event.preventDefault();
    const input = document.getElementById("message-input");
    const content = input.value.trim();
    if (!content) return;
    if (!socket || socket.readyState !== WebSocket.OPEN) {
      addMessage("error", "Not connected to server. Please wait...");
      return;
    }
    addMessage("user", content);
    socket.send(JSON.stringify({type: "chat", content}));
    input.value = "";
  });

  connect();
})();
</script>"""
