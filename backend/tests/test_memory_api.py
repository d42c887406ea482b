from __future__ import annotations

import pytest


@pytest.mark.anyio
async def test_memory_crud(client):
    created = await client.post("/api/memory", json={"text": "  User likes tea.  "})
    assert created.status_code == 201
    memory = created.json()
    assert memory["text"] == "User likes tea."
    assert memory["embedding_model"] == "deterministic-test"
    assert "embedding" not in memory

    updated = await client.put(f"/api/memory/{memory['id']}", json={"text": "User loves tea."})
    assert updated.status_code == 200
    assert updated.json()["text"] == "User loves tea."
    assert updated.json()["updated_at"] is not None

    listed = (await client.get("/api/memory")).json()["memories"]
    assert [item["text"] for item in listed] == ["User loves tea."]

    assert (await client.delete(f"/api/memory/{memory['id']}")).status_code == 204
    assert (await client.get("/api/memory")).json()["memories"] == []


@pytest.mark.anyio
async def test_memory_errors(client):
    assert (await client.put("/api/memory/missing", json={"text": "x"})).status_code == 404
    assert (await client.delete("/api/memory/missing")).status_code == 404
    assert (await client.post("/api/memory", json={"text": "   "})).status_code == 400
    assert (await client.post("/api/memory", json={"text": ""})).status_code == 422


@pytest.mark.anyio
async def test_memory_editor_status_and_skip(client):
    status = (await client.get("/api/memory/editor/status")).json()
    assert status == {"enabled": True, "running": False, "queued": False, "conversation_id": None}

    skipped = await client.post("/api/memory/editor/skip")

    assert skipped.status_code == 200
    assert skipped.json()["running"] is False


@pytest.mark.anyio
async def test_stored_memories_are_injected_into_the_prompt(client, stub_adapter):
    await client.post("/api/memory", json={"text": "User likes green tea."})
    conversation_id = (await client.post("/api/conversation", json={})).json()["id"]

    response = await client.post(
        f"/api/chat/{conversation_id}/messages", json={"content": "User likes green tea."}
    )

    assert response.json()["memories_used"] == 1
    system_prompt = stub_adapter.chat_calls[0][0]["content"]
    assert "User likes green tea." in system_prompt
    listed = (await client.get("/api/memory")).json()["memories"]
    assert listed[0]["last_retrieved_at"] is not None
