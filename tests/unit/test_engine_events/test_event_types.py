"""Tests for dotfactory.engine.events.types — PipelineEvent and EventBuilder."""
from __future__ import annotations

import dataclasses
import json

import pytest

from dotfactory.engine.events.types import ALL_EVENT_TYPES, EventBuilder, PipelineEvent


class TestPipelineEvent:
    def test_frozen(self) -> None:
        event = EventBuilder.pipeline_started("p", "start", 3)
        with pytest.raises(dataclasses.FrozenInstanceError):
            event.pipeline_id = "other"  # type: ignore[misc]

    def test_to_dict_is_json_ready(self) -> None:
        event = EventBuilder.node_started("p", "n1", "codergen", visit_count=2)
        record = event.to_dict()
        assert record["type"] == "node.started"
        assert record["node_id"] == "n1"
        assert record["data"] == {"handler_type": "codergen", "visit_count": 2, "attempt_number": 1}
        assert isinstance(record["timestamp"], str)
        json.dumps(record)

    def test_timestamp_is_utc(self) -> None:
        event = EventBuilder.pipeline_canceled("p")
        assert event.timestamp.utcoffset() is not None
        assert event.timestamp.utcoffset().total_seconds() == 0


class TestEventBuilder:
    def test_sequence_is_monotonic(self) -> None:
        first = EventBuilder.pipeline_started("p", "s", 1)
        second = EventBuilder.pipeline_completed("p", "done", 12.5)
        assert second.sequence > first.sequence

    def test_pipeline_level_events_have_no_node(self) -> None:
        events = [
            EventBuilder.pipeline_started("p", "s", 1),
            EventBuilder.pipeline_resumed("p", "b", 2),
            EventBuilder.pipeline_completed("p", "done", 1.0),
            EventBuilder.pipeline_failed("p", "NodeFailedError", "boom", "b"),
            EventBuilder.pipeline_canceled("p", "b"),
        ]
        assert all(e.node_id is None for e in events)
        assert events[3].data == {
            "error_type": "NodeFailedError",
            "error_message": "boom",
            "last_node_id": "b",
        }

    def test_routing_events(self) -> None:
        edge = EventBuilder.edge_selected("p", "a", "b", condition="outcome=success", label="ok")
        assert edge.node_id == "a"
        assert edge.data == {
            "from_node_id": "a",
            "to_node_id": "b",
            "condition": "outcome=success",
            "label": "ok",
        }
        redirect = EventBuilder.goal_gate_redirect("p", "gate", "plan", 2)
        assert redirect.data == {"retry_target": "plan", "redirect_count": 2}

    def test_parallel_and_human_events(self) -> None:
        started = EventBuilder.parallel_started("p", "fan", ["a", "b"], "join")
        done = EventBuilder.parallel_completed("p", "fan", "join", 2, 1)
        question = EventBuilder.human_question("p", "gate", "Ship?", ["Yes", "No"])
        assert started.data["branches"] == ["a", "b"]
        assert done.data["fail_count"] == 1
        assert question.data == {"prompt": "Ship?", "options": ["Yes", "No"]}

    def test_every_builder_type_is_known(self) -> None:
        events: list[PipelineEvent] = [
            EventBuilder.node_completed("p", "n", "success", 1.0),
            EventBuilder.node_failed("p", "n", "FAIL", "bad", goal_gate=True),
            EventBuilder.retry_triggered("p", "n", 2, 500.0, "flaky"),
            EventBuilder.checkpoint_saved("p", "n", "/tmp/checkpoint.json"),
        ]
        assert {e.type for e in events} <= ALL_EVENT_TYPES
        assert len(ALL_EVENT_TYPES) == 15
