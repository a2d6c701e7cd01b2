"""
tabsync Sync Engine -- Conflict Handling During Drain

A queued write rejected as stale carries the server copy. The table's policy
decides what happens next:

  resolved value is the server copy → op completes, server copy confirmed
  anything else                     → op data replaced, write re-attempted once

Covers:
  - client-wins, server-wins, merge, manual (with and without a resolver)
  - a failing re-attempt counts as a normal failed attempt
  - a retried create that conflicts is re-sent as a patch
  - conflicts are recorded in the sync slice
"""

import pytest

from tabsync.kernel.types import ConflictResolution, ms_to_iso


def write_calls(remote):
    return [op for op, _table, _record_id, _data in remote.calls if op != "read"]


async def queue_update_and_go_online(engine, connectivity, table, record_id, fields):
    await engine.update(table, record_id, fields)
    connectivity.set_online(True)


class TestResolvedWrites:
    @pytest.mark.asyncio
    async def test_client_wins_rewrites_server(self, engine, connectivity, remote, store):
        engine.set_conflict_resolver("tasks", ConflictResolution(strategy="client-wins"))
        remote.seed("tasks", [{"id": "t1", "title": "old", "status": "open"}])
        await queue_update_and_go_online(engine, connectivity, "tasks", "t1", {"title": "mine"})
        remote.inject_conflict("tasks", "t1", {"title": "theirs"})

        await engine.sync_all()

        assert write_calls(remote) == ["update", "update"]
        assert remote.tables["tasks"]["t1"]["title"] == "mine"
        assert len(engine.queue) == 0
        assert store.get_state()["tasks"]["items"][0]["title"] == "mine"

    @pytest.mark.asyncio
    async def test_server_wins_keeps_server_copy(self, engine, connectivity, remote, store):
        remote.seed("invoices", [{"id": "i1", "total": 10}])
        await queue_update_and_go_online(engine, connectivity, "invoices", "i1", {"total": 20})
        remote.inject_conflict("invoices", "i1", {"total": 15})

        await engine.sync_all()

        assert write_calls(remote) == ["update"]
        assert remote.tables["invoices"]["i1"]["total"] == 15
        assert len(engine.queue) == 0
        assert store.get_state()["invoices"]["items"] == [{"id": "i1", "total": 15}]

    @pytest.mark.asyncio
    async def test_merge_combines_fields(self, engine, connectivity, remote, clock):
        engine.set_conflict_resolver("projects", ConflictResolution(strategy="merge"))
        remote.seed("projects", [{"id": "p1", "name": "A", "budget": 100}])
        await queue_update_and_go_online(engine, connectivity, "projects", "p1", {"name": "B"})
        remote.inject_conflict("projects", "p1", {"budget": 200, "owner": "sam"})

        await engine.sync_all()

        assert remote.tables["projects"]["p1"] == {
            "id": "p1",
            "name": "B",
            "budget": 200,
            "owner": "sam",
            "updated_at": ms_to_iso(clock.now),
        }

    @pytest.mark.asyncio
    async def test_manual_resolver_called_with_client_and_server(self, engine, connectivity, remote):
        seen = []

        def resolve(client, server):
            seen.append((dict(client), dict(server)))
            return {**server, "notes": f"{server['notes']} / {client['notes']}"}

        engine.set_conflict_resolver("clients", ConflictResolution(strategy="manual", resolver=resolve))
        remote.seed("clients", [{"id": "c1", "notes": "a"}])
        await queue_update_and_go_online(engine, connectivity, "clients", "c1", {"notes": "mine"})
        remote.inject_conflict("clients", "c1", {"notes": "theirs"})

        await engine.sync_all()

        assert seen == [({"notes": "mine", "id": "c1"}, {"id": "c1", "notes": "theirs"})]
        assert remote.tables["clients"]["c1"]["notes"] == "theirs / mine"

    @pytest.mark.asyncio
    async def test_manual_without_resolver_is_server_wins(self, engine, connectivity, remote):
        engine.set_conflict_resolver("clients", ConflictResolution(strategy="manual"))
        remote.seed("clients", [{"id": "c1", "notes": "a"}])
        await queue_update_and_go_online(engine, connectivity, "clients", "c1", {"notes": "mine"})
        remote.inject_conflict("clients", "c1", {"notes": "theirs"})

        await engine.sync_all()

        assert write_calls(remote) == ["update"]
        assert remote.tables["clients"]["c1"]["notes"] == "theirs"
        assert len(engine.queue) == 0


class TestConflictEdges:
    @pytest.mark.asyncio
    async def test_failed_reattempt_counts_as_failure(self, engine, connectivity, remote):
        engine.set_conflict_resolver("tasks", ConflictResolution(strategy="client-wins"))
        remote.seed("tasks", [{"id": "t1", "title": "old"}])
        await queue_update_and_go_online(engine, connectivity, "tasks", "t1", {"title": "mine"})
        remote.inject_conflict("tasks", "t1", {"title": "theirs"})

        # First call conflicts, the re-attempt fails.
        original_update = remote.update
        calls = 0

        async def update(table, record_id, data):
            nonlocal calls
            calls += 1
            if calls == 2:
                remote.fail_next()
            return await original_update(table, record_id, data)

        remote.update = update
        await engine.sync_all()

        op = engine.queue.operations[0]
        assert op.status == "pending"
        assert op.retries == 1
        assert op.data == {"title": "mine", "id": "t1"}

    @pytest.mark.asyncio
    async def test_conflicting_create_becomes_patch(self, engine, connectivity, remote):
        engine.set_conflict_resolver("tasks", ConflictResolution(strategy="client-wins"))
        created = await engine.create("tasks", {"title": "mine"})
        remote.seed("tasks", [{"id": created["id"], "title": "already there"}])
        remote.inject_conflict("tasks", created["id"])
        connectivity.set_online(True)

        await engine.sync_all()

        assert write_calls(remote) == ["create", "update"]
        assert remote.tables["tasks"][created["id"]]["title"] == "mine"
        assert len(engine.queue) == 0

    @pytest.mark.asyncio
    async def test_conflict_recorded_in_store(self, engine, connectivity, remote, store):
        remote.seed("invoices", [{"id": "i1", "total": 10}])
        await queue_update_and_go_online(engine, connectivity, "invoices", "i1", {"total": 20})
        remote.inject_conflict("invoices", "i1", {"total": 15})

        await engine.sync_all()

        conflicts = store.get_state()["sync"]["conflicts"]
        assert len(conflicts) == 1
        assert conflicts[0]["table"] == "invoices"
        assert conflicts[0]["record_id"] == "i1"
        assert conflicts[0]["strategy"] == "server-wins"
        assert conflicts[0]["server"] == {"id": "i1", "total": 15}

    @pytest.mark.asyncio
    async def test_conflict_action_uses_engine_clock(self, engine, connectivity, remote, store, clock):
        remote.seed("invoices", [{"id": "i1", "total": 10}])
        await queue_update_and_go_online(engine, connectivity, "invoices", "i1", {"total": 20})
        remote.inject_conflict("invoices", "i1", {"total": 15})
        clock.advance(2_500)

        await engine.sync_all()

        [conflict_action] = [a for a in store.get_action_history() if a.type == "sync.add_conflict"]
        assert conflict_action.meta.timestamp == clock.now
        assert conflict_action.meta.source == "sync"
