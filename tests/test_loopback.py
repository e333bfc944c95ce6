from __future__ import annotations

import pytest

from heimerdinger.adapters.base import InteractiveAction
from heimerdinger.adapters.loopback import LoopbackAdapter
from heimerdinger.engine.models import ClaudeProject


@pytest.mark.asyncio
async def test_send_update_and_publish():
    adapter = LoopbackAdapter()
    queue = adapter.subscribe()

    message_id = await adapter.send_message("c1", "hello")
    await adapter.update_message("c1", message_id, "hello again")

    sent = queue.get_nowait()
    updated = queue.get_nowait()
    assert sent["type"] == "message.sent"
    assert updated["type"] == "message.updated"
    assert updated["message"]["text"] == "hello again"
    assert adapter.get(message_id).edits == 1

    adapter.unsubscribe(queue)
    assert adapter.subscriber_count == 0


@pytest.mark.asyncio
async def test_update_unknown_message_raises():
    adapter = LoopbackAdapter()
    with pytest.raises(KeyError):
        await adapter.update_message("c1", "m99", "x")
    message_id = await adapter.send_message("c1", "hi")
    with pytest.raises(KeyError):
        await adapter.update_message("c2", message_id, "x")


@pytest.mark.asyncio
async def test_full_subscriber_queue_drops_events():
    adapter = LoopbackAdapter(queue_size=1)
    queue = adapter.subscribe()
    await adapter.send_message("c1", "one")
    await adapter.send_message("c1", "two")
    assert queue.qsize() == 1
    assert len(adapter.messages("c1")) == 2


@pytest.mark.asyncio
async def test_rich_message_kinds():
    adapter = LoopbackAdapter()
    await adapter.send_project_selection_card(
        "c1", [ClaudeProject(path="/repo/a", name="a")], "do it",
    )
    await adapter.upload_snippet("c1", "+x", filename="x.diff", title="New: x", thread_id="m1")
    await adapter.send_interactive_message(
        "c1", "Choose", [InteractiveAction("go", "Go", "1", "primary")],
    )

    card, snippet, interactive = adapter.messages("c1")
    assert card.kind == "project_card"
    assert card.data["projects"] == [{"name": "a", "path": "/repo/a"}]
    assert snippet.thread_id == "m1"
    assert interactive.data["actions"] == [
        {"action_id": "go", "label": "Go", "value": "1", "style": "primary"},
    ]
