"""Integration tests for the repository write pipeline.

Runs against a real SQLite store, JSONL journal and entity cache with the
inline dispatcher, so side effects have completed when a call returns.
"""

import threading
import time
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from civic_ledger.errors import PersistenceError, ValidationError
from civic_ledger.text import TextPolicy

pytestmark = pytest.mark.integration


def make_request(pipeline, **overrides):
    data = {
        "full_name": "Jane Doe",
        "contact_info": "jane@example.org",
        "subject": "Street light",
        "description": "The light on Main St. is broken",
        **overrides,
    }
    return pipeline.citizen_requests.create(data)


def make_agent(pipeline, name="Classifier", **overrides):
    return pipeline.agents.create({"name": name, "type": "classifier", **overrides})


class TestWriteThenRead:
    """A read right after a successful write sees the written fields."""

    def test_create_then_get(self, pipeline):
        request = make_request(pipeline)
        fetched = pipeline.citizen_requests.get_by_id(request.id)
        assert fetched.full_name == "Jane Doe"
        assert fetched.status == "new"

    def test_update_after_cached_read(self, pipeline):
        agent = make_agent(pipeline)
        assert pipeline.agents.get_by_id(agent.id).description == ""  # now cached

        pipeline.agents.update(agent.id, {"description": "Routes requests"})
        assert pipeline.agents.get_by_id(agent.id).description == "Routes requests"

    def test_listing_reflects_writes(self, pipeline):
        make_agent(pipeline, "A")
        assert [a.name for a in pipeline.agents.get_all()] == ["A"]
        make_agent(pipeline, "B")
        assert [a.name for a in pipeline.agents.get_all()] == ["A", "B"]

    def test_status_update_visible(self, pipeline):
        request = make_request(pipeline)
        pipeline.citizen_requests.get_by_id(request.id)
        pipeline.citizen_requests.update_status(request.id, "in_progress")
        assert pipeline.citizen_requests.get_by_id(request.id).status == "in_progress"

    def test_get_all_returns_a_copy(self, pipeline):
        make_agent(pipeline)
        listing = pipeline.agents.get_all()
        listing.clear()
        assert len(pipeline.agents.get_all()) == 1


class TestCacheHits:
    """Repeated reads are served from the cache until a write intervenes."""

    def test_second_read_is_a_cache_hit(self, pipeline, store):
        request = make_request(pipeline)
        before = store.calls[("get", "citizen_requests")]

        first = pipeline.citizen_requests.get_by_id(request.id)
        second = pipeline.citizen_requests.get_by_id(request.id)

        assert first == second
        assert store.calls[("get", "citizen_requests")] == before + 1

    def test_write_between_reads_reloads(self, pipeline, store):
        request = make_request(pipeline)
        pipeline.citizen_requests.get_by_id(request.id)

        pipeline.citizen_requests.update(request.id, {"subject": "Two lights"})
        before = store.calls[("get", "citizen_requests")]
        fetched = pipeline.citizen_requests.get_by_id(request.id)

        assert fetched.subject == "Two lights"
        assert store.calls[("get", "citizen_requests")] == before + 1

    def test_missing_entity_not_cached(self, pipeline, store):
        assert pipeline.agents.get_by_id(404) is None
        make_agent(pipeline)  # id 1
        assert pipeline.agents.get_by_id(404) is None
        assert store.calls[("get", "agents")] >= 2


class TestAuditTrail:
    """Every successful write leaves a journal entry for the entity."""

    def test_create_update_delete_are_journaled(self, pipeline, journal):
        started = datetime.now(timezone.utc).isoformat()
        agent = make_agent(pipeline)
        pipeline.agents.update(agent.id, {"description": "v2"})
        assert pipeline.agents.delete(agent.id) is True

        history = journal.get_by_entity("agent", agent.id)
        assert [e.operation for e in history] == ["create", "update", "delete"]
        assert all(e.timestamp >= started for e in history)
        assert history[0].description == 'Created agent "Classifier"'
        assert history[0].actor_id == 1

    def test_create_metadata_lists_fields(self, pipeline, journal):
        agent = make_agent(pipeline)
        entry = journal.get_by_entity("agent", agent.id)[0]
        assert entry.metadata["fields"] == ["name", "type"]

    def test_failed_validation_writes_nothing(self, pipeline, journal):
        with pytest.raises(ValidationError):
            pipeline.agents.create({"name": "  "})
        assert journal.count() == 0
        assert pipeline.agents.get_all() == []

    def test_audit_failure_does_not_fail_write(self, pipeline, journal):
        with patch.object(journal, "append", side_effect=OSError("disk full")) as append:
            agent = make_agent(pipeline)
        assert append.call_count == 2  # retried once
        assert pipeline.agents.get_by_id(agent.id).name == "Classifier"
        assert pipeline.dispatcher.stats()["failed_steps"] == 1


class TestStatusTransitions:
    def test_terminal_status_cannot_reopen(self, pipeline):
        request = make_request(pipeline)
        pipeline.citizen_requests.update_status(request.id, "in_progress")
        pipeline.citizen_requests.update_status(request.id, "completed")

        with pytest.raises(ValidationError) as exc_info:
            pipeline.citizen_requests.update_status(request.id, "new")
        assert exc_info.value.field == "status"
        assert pipeline.citizen_requests.get_by_id(request.id).status == "completed"

    def test_happy_path_journals_each_change(self, pipeline, journal):
        request = make_request(pipeline)
        pipeline.citizen_requests.update_status(request.id, "in_progress")
        pipeline.citizen_requests.update_status(request.id, "completed")

        changes = [
            e for e in journal.get_by_entity("citizen_request", request.id)
            if e.operation == "status_change"
        ]
        assert [(e.metadata["old_status"], e.metadata["new_status"]) for e in changes] == [
            ("new", "in_progress"),
            ("in_progress", "completed"),
        ]

    def test_same_status_is_a_plain_update(self, pipeline, journal):
        request = make_request(pipeline)
        pipeline.citizen_requests.update(request.id, {"status": "new", "subject": "Lamp"})
        operations = [e.operation for e in journal.get_by_entity("citizen_request", request.id)]
        assert operations == ["create", "update"]

    def test_must_start_new(self, pipeline):
        with pytest.raises(ValidationError, match="start"):
            make_request(pipeline, status="in_progress")

    def test_unknown_status_rejected(self, pipeline):
        request = make_request(pipeline)
        with pytest.raises(ValidationError):
            pipeline.citizen_requests.update_status(request.id, "archived")

    def test_assign_keeps_status(self, pipeline, journal):
        request = make_request(pipeline)
        updated = pipeline.citizen_requests.assign(request.id, 12)
        assert updated.assigned_to == 12
        assert updated.status == "new"
        last = journal.get_by_entity("citizen_request", request.id)[-1]
        assert last.operation == "update"
        assert last.description == "Assigned to: 12"
        assert pipeline.citizen_requests.get_by_assignee(12)[0].id == request.id

    def test_get_by_status(self, pipeline):
        first = make_request(pipeline)
        make_request(pipeline, full_name="B")
        pipeline.citizen_requests.update_status(first.id, "rejected")
        assert [r.id for r in pipeline.citizen_requests.get_by_status("rejected")] == [first.id]


class TestFieldRules:
    def test_read_only_fields_rejected(self, pipeline):
        request = make_request(pipeline)
        with pytest.raises(ValidationError) as exc_info:
            pipeline.citizen_requests.update(request.id, {"blockchain_hash": "0xforged"})
        assert exc_info.value.field == "blockchain_hash"

    def test_unknown_field_rejected(self, pipeline):
        with pytest.raises(ValidationError):
            make_agent(pipeline, owner="someone")

    def test_full_name_required(self, pipeline):
        with pytest.raises(ValidationError) as exc_info:
            pipeline.citizen_requests.create({"subject": "x"})
        assert exc_info.value.field == "full_name"

    def test_update_missing_returns_none(self, pipeline):
        assert pipeline.citizen_requests.update(99, {"subject": "x"}) is None
        assert pipeline.agents.update(99, {"description": "x"}) is None

    def test_duplicate_agent_name_is_constraint_error(self, pipeline):
        make_agent(pipeline, "Dup")
        with pytest.raises(PersistenceError) as exc_info:
            make_agent(pipeline, "Dup")
        assert exc_info.value.constraint

    def test_agent_config_must_be_object(self, pipeline):
        agent = make_agent(pipeline)
        with pytest.raises(ValidationError):
            pipeline.agents.update(agent.id, {"config": ["not", "a", "dict"]})


class TestTextPolicy:
    def test_malformed_text_is_stripped(self, pipeline):
        request = make_request(pipeline, subject="Broken � lamp")
        assert pipeline.citizen_requests.get_by_id(request.id).subject == "Broken  lamp"

    def test_reject_policy(self, pipeline):
        pipeline.agents._text_policy = TextPolicy.REJECT
        with pytest.raises(ValidationError):
            make_agent(pipeline, description="bad�")


class TestReferentialGuards:
    def test_agent_with_results_cannot_be_deleted(self, pipeline, journal):
        agent = make_agent(pipeline, "X")
        request = make_request(pipeline)
        pipeline.agent_results.create(
            {
                "agent_id": agent.id,
                "entity_type": "citizen_request",
                "entity_id": request.id,
                "action_type": "classify",
                "result": {"category": "lighting"},
            }
        )

        assert pipeline.agents.delete(agent.id) is False
        assert pipeline.agents.get_by_id(agent.id) is not None
        assert "delete" not in [e.operation for e in journal.get_by_entity("agent", agent.id)]

    def test_unreferenced_agent_can_be_deleted(self, pipeline):
        agent = make_agent(pipeline)
        pipeline.agents.get_by_id(agent.id)
        assert pipeline.agents.delete(agent.id) is True
        assert pipeline.agents.get_by_id(agent.id) is None

    def test_delete_missing_returns_false(self, pipeline):
        assert pipeline.agents.delete(42) is False

    def test_anchored_request_cannot_be_deleted(self, pipeline):
        request = make_request(pipeline)
        assert pipeline.ledger_records.get_by_entity("citizen_request", request.id)
        assert pipeline.citizen_requests.delete(request.id) is False
        assert pipeline.citizen_requests.get_by_id(request.id) is not None

    def test_unanchored_request_can_be_deleted(self, pipeline, ledger_client, journal):
        ledger_client.available = False
        request = make_request(pipeline)
        assert pipeline.citizen_requests.delete(request.id) is True
        assert pipeline.citizen_requests.get_by_id(request.id) is None
        # History outlives the entity
        assert journal.get_by_entity("citizen_request", request.id)[-1].operation == "delete"

    def test_reference_added_during_delete_is_rejected(self, pipeline):
        agent = make_agent(pipeline)
        counted = threading.Event()
        count_references = pipeline.agents._count_references
        errors = []

        def slow_count(entity_id):
            counts = count_references(entity_id)
            counted.set()
            time.sleep(0.2)
            return counts

        def add_result():
            counted.wait(timeout=5)
            try:
                pipeline.agent_results.create(
                    {
                        "agent_id": agent.id,
                        "entity_type": "agent",
                        "entity_id": agent.id,
                        "action_type": "self_check",
                    }
                )
            except ValidationError as e:
                errors.append(e)

        with patch.object(pipeline.agents, "_count_references", side_effect=slow_count):
            thread = threading.Thread(target=add_result)
            thread.start()
            assert pipeline.agents.delete(agent.id) is True
            thread.join(timeout=5)

        # The insert waited for the delete and then saw the agent gone
        assert [e.field for e in errors] == ["agent_id"]
        assert pipeline.agent_results.get_by_agent_id(agent.id) == []


class TestAgentResults:
    def test_structured_result_stored_as_json(self, pipeline):
        agent = make_agent(pipeline)
        result = pipeline.agent_results.create(
            {
                "agent_id": agent.id,
                "entity_type": "agent",
                "entity_id": agent.id,
                "action_type": "self_check",
                "result": {"ok": True},
            }
        )
        assert result.result == '{"ok": true}'
        assert result.parsed_result() == {"ok": True}
        assert pipeline.agent_results.get_by_agent_id(agent.id) == [result]
        assert pipeline.agent_results.get_by_action_type("self_check") == [result]

    def test_unknown_agent_rejected(self, pipeline):
        with pytest.raises(ValidationError) as exc_info:
            pipeline.agent_results.create(
                {"agent_id": 9, "entity_type": "agent", "entity_id": 9, "action_type": "x"}
            )
        assert exc_info.value.field == "agent_id"

    def test_unknown_entity_type_rejected(self, pipeline):
        agent = make_agent(pipeline)
        with pytest.raises(ValidationError) as exc_info:
            pipeline.agent_results.create(
                {"agent_id": agent.id, "entity_type": "invoice", "entity_id": 1, "action_type": "x"}
            )
        assert exc_info.value.field == "entity_type"

    def test_missing_entity_rejected(self, pipeline, ledger_client):
        agent = make_agent(pipeline)
        ledger_client.available = False
        request = make_request(pipeline)
        assert pipeline.citizen_requests.delete(request.id) is True

        with pytest.raises(ValidationError) as exc_info:
            pipeline.agent_results.create(
                {
                    "agent_id": agent.id,
                    "entity_type": "citizen_request",
                    "entity_id": request.id,
                    "action_type": "classify",
                }
            )
        assert exc_info.value.field == "entity_id"
        assert pipeline.agent_results.get_by_agent_id(agent.id) == []

    def test_results_are_immutable(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.agent_results.update(1, {"result": "changed"})


class TestProcessWithAgent:
    def test_process_new_request(self, pipeline, journal):
        agent = make_agent(pipeline)
        request = make_request(pipeline, full_name="A")

        processed = pipeline.citizen_requests.process_with_agent(
            request.id,
            agent.id,
            classification="infrastructure",
            result={"category": "infrastructure", "confidence": 0.93},
            response_text="Forwarded to public works",
            priority="high",
        )

        assert processed.ai_processed is True
        assert processed.status == "in_progress"
        assert processed.ai_classification == "infrastructure"
        assert processed.priority == "high"
        assert pipeline.citizen_requests.get_by_id(request.id).ai_processed is True

        results = pipeline.agent_results.get_by_entity("citizen_request", request.id)
        assert len(results) == 1
        assert results[0].entity_type == "citizen_request"
        assert results[0].action_type == "ai_process"

        operations = [e.operation for e in journal.get_by_entity("citizen_request", request.id)]
        assert operations.count("ai_process") == 1
        assert operations[-2:] == ["ai_process", "status_change"]

        anchored = {r.action for r in pipeline.ledger_records.get_by_entity("citizen_request", request.id)}
        assert anchored == {"create", "ai_process", "status_change"}

    def test_later_status_kept(self, pipeline):
        agent = make_agent(pipeline)
        request = make_request(pipeline)
        pipeline.citizen_requests.update_status(request.id, "in_progress")
        pipeline.citizen_requests.update_status(request.id, "waiting")

        processed = pipeline.citizen_requests.process_with_agent(
            request.id, agent.id, "billing", "plain text result"
        )
        assert processed.status == "waiting"

    def test_inactive_agent_rejected(self, pipeline):
        agent = make_agent(pipeline, is_active=False)
        request = make_request(pipeline)
        with pytest.raises(ValidationError, match="inactive"):
            pipeline.citizen_requests.process_with_agent(request.id, agent.id, "x", {})
        assert pipeline.agent_results.get_by_entity("citizen_request", request.id) == []

    def test_unknown_agent_rejected(self, pipeline):
        request = make_request(pipeline)
        with pytest.raises(ValidationError):
            pipeline.citizen_requests.process_with_agent(request.id, 7, "x", {})

    def test_unknown_request(self, pipeline):
        agent = make_agent(pipeline)
        assert pipeline.citizen_requests.process_with_agent(99, agent.id, "x", {}) is None

    def test_deleted_request_gets_no_result(self, pipeline, ledger_client):
        agent = make_agent(pipeline)
        ledger_client.available = False
        request = make_request(pipeline)
        assert pipeline.citizen_requests.delete(request.id) is True

        assert pipeline.citizen_requests.process_with_agent(request.id, agent.id, "x", {}) is None
        assert pipeline.agent_results.get_by_agent_id(agent.id) == []

    def test_failed_result_insert_leaves_request_unchanged(self, pipeline, journal):
        agent = make_agent(pipeline)
        request = make_request(pipeline)

        with patch.object(
            pipeline.agent_results, "insert_prepared", side_effect=PersistenceError("disk full")
        ):
            with pytest.raises(PersistenceError):
                pipeline.citizen_requests.process_with_agent(request.id, agent.id, "x", {})

        current = pipeline.citizen_requests.get_by_id(request.id)
        assert current.ai_processed is False
        assert current.status == "new"
        assert pipeline.agent_results.get_by_agent_id(agent.id) == []
        operations = [e.operation for e in journal.get_by_entity("citizen_request", request.id)]
        assert operations == ["create"]

    def test_processed_fields_are_read_only(self, pipeline):
        request = make_request(pipeline)
        with pytest.raises(ValidationError):
            pipeline.citizen_requests.update(request.id, {"ai_processed": True})
