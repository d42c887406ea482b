from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import inspect

from chatcore.conversation.types import TEMP_CONVERSATION_ID
from chatcore.db.base import init_db
from chatcore.repos.conversation_repo import ConversationRepo
from chatcore.utils.time_utils import utc_now


@pytest.mark.anyio
async def test_create_list_get_rename(client):
    created = await client.post("/api/conversation", json={"title": "  Trip planning "})
    assert created.status_code == 201
    body = created.json()
    assert body["title"] == "Trip planning"
    assert body["messages"] == []
    assert len(body["branches"]) == 1
    assert body["active_branch_id"] == body["branches"][0]["id"]
    conversation_id = body["id"]

    untitled = (await client.post("/api/conversation", json={})).json()
    assert untitled["title"] == "New chat"

    listed = (await client.get("/api/conversation")).json()["conversations"]
    assert {item["id"] for item in listed} == {conversation_id, untitled["id"]}

    renamed = await client.patch(f"/api/conversation/{conversation_id}", json={"title": "Japan"})
    assert renamed.status_code == 200
    assert renamed.json()["title"] == "Japan"
    fetched = (await client.get(f"/api/conversation/{conversation_id}")).json()
    assert fetched["title"] == "Japan"


@pytest.mark.anyio
async def test_missing_conversation_returns_404(client):
    assert (await client.get("/api/conversation/missing")).status_code == 404
    assert (
        await client.patch("/api/conversation/missing", json={"title": "x"})
    ).status_code == 404
    assert (await client.delete("/api/conversation/missing")).status_code == 404
    assert (await client.post("/api/conversation/missing/restore")).status_code == 404
    assert (await client.delete("/api/conversation/missing/permanent")).status_code == 404


@pytest.mark.anyio
async def test_trash_restore_and_permanent_delete(client):
    conversation_id = (await client.post("/api/conversation", json={"title": "Old"})).json()["id"]

    assert (await client.delete(f"/api/conversation/{conversation_id}")).status_code == 204
    assert (await client.get("/api/conversation")).json()["conversations"] == []
    trashed = (await client.get("/api/conversation/trash")).json()["conversations"]
    assert [item["id"] for item in trashed] == [conversation_id]
    assert trashed[0]["deleted_at"] is not None
    assert (await client.get(f"/api/conversation/{conversation_id}")).status_code == 404

    assert (await client.post(f"/api/conversation/{conversation_id}/restore")).status_code == 204
    listed = (await client.get("/api/conversation")).json()["conversations"]
    assert [item["id"] for item in listed] == [conversation_id]
    assert listed[0]["deleted_at"] is None

    assert (
        await client.delete(f"/api/conversation/{conversation_id}/permanent")
    ).status_code == 204
    assert (await client.get("/api/conversation")).json()["conversations"] == []
    assert (await client.get("/api/conversation/trash")).json()["conversations"] == []


@pytest.mark.anyio
async def test_temporary_conversation_cannot_be_trashed(client):
    await client.post("/api/conversation/temporary")

    response = await client.delete(f"/api/conversation/{TEMP_CONVERSATION_ID}")

    assert response.status_code == 400


@pytest.mark.anyio
async def test_purge_removes_only_expired_trash(client, app):
    expired_id = (await client.post("/api/conversation", json={"title": "Expired"})).json()["id"]
    recent_id = (await client.post("/api/conversation", json={"title": "Recent"})).json()["id"]
    async with app.state.sessionmaker() as db:
        async with db.begin():
            repo = ConversationRepo(db)
            await repo.set_deleted_at(expired_id, utc_now() - timedelta(days=45))
            await repo.set_deleted_at(recent_id, utc_now() - timedelta(days=1))

    response = await client.post("/api/conversation/trash/purge")

    assert response.json() == {"purged": 1}
    trashed = (await client.get("/api/conversation/trash")).json()["conversations"]
    assert [item["id"] for item in trashed] == [recent_id]


@pytest.mark.anyio
async def test_unreadable_documents_are_skipped(client, app):
    good_id = (await client.post("/api/conversation", json={"title": "Good"})).json()["id"]
    bad_id = (await client.post("/api/conversation", json={"title": "Bad"})).json()["id"]
    async with app.state.sessionmaker() as db:
        async with db.begin():
            record = await ConversationRepo(db)._get_record(bad_id)
            record.document_json = "{not json"

    listed = (await client.get("/api/conversation")).json()["conversations"]

    assert [item["id"] for item in listed] == [good_id]


@pytest.mark.anyio
async def test_init_db_is_repeatable_and_creates_all_columns(client, app):
    await init_db(app.state.engine)

    def columns(sync_conn) -> dict[str, set[str]]:
        inspector = inspect(sync_conn)
        return {
            table: {column["name"] for column in inspector.get_columns(table)}
            for table in inspector.get_table_names()
        }

    async with app.state.engine.connect() as conn:
        tables = await conn.run_sync(columns)

    assert {"deleted_at", "document_json"} <= tables["conversations"]
    assert {"embedding_model", "last_retrieved_at"} <= tables["memories"]
