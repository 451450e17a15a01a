"""
Tests for Models — dict round-trip, ID format, timestamps
"""

import re

import pytest

from teamcontext.core.models import (
    Architecture, Conversation, DataFlow, Decision, Edge, EvolutionTimeline, EvolutionEvent,
    Export, Feature, FileIndex, Goal, KnowledgeGraph, Project, ServiceNode,
    from_epoch, generate_id, to_epoch,
)


class TestIdentifiers:
    """IDs carry type prefix, creation date and a random suffix."""

    def test_id_format(self):
        assert re.fullmatch(r"dec-\d{8}-[0-9a-f]{8}", generate_id("dec"))

    def test_ids_are_unique(self):
        ids = {generate_id("warn") for _ in range(200)}
        assert len(ids) == 200


class TestTimestamps:

    def test_epoch_round_trip_keeps_seconds(self):
        iso = "2026-01-17T10:20:30.123456+00:00"
        assert from_epoch(to_epoch(iso)) == "2026-01-17T10:20:30+00:00"

    def test_unset_timestamp_is_zero(self):
        assert to_epoch("") == 0
        assert from_epoch(0) == ""

    def test_naive_timestamp_treated_as_utc(self):
        assert to_epoch("1970-01-01T00:01:00") == 60

    def test_unparseable_timestamp_is_zero(self):
        assert to_epoch("yesterday") == 0


class TestDictRoundTrip:

    def test_unknown_keys_ignored(self):
        d = Decision.from_dict({"content": "Use JWT", "future_field": 1})
        assert d.content == "Use JWT"
        assert not hasattr(d, "future_field")

    def test_null_values_fall_back_to_defaults(self):
        d = Decision.from_dict({"content": "x", "alternatives": None})
        assert d.alternatives == []

    def test_non_object_rejected(self):
        with pytest.raises(TypeError):
            Decision.from_dict(["not", "a", "dict"])

    def test_file_index_nested_exports(self):
        f = FileIndex(path="src/a.py", exports=[Export("run", "function", 3)])
        loaded = FileIndex.from_dict(f.to_dict())
        assert loaded.exports == [Export("run", "function", 3)]
        assert loaded.export_names == ["run"]

    def test_project_nested(self):
        p = Project(name="x", goals=[Goal("technical", "Fast search")])
        assert Project.from_dict(p.to_dict()).goals[0].description == "Fast search"

    def test_architecture_nested(self):
        arch = Architecture(services=[ServiceNode("api")], data_flows=[DataFlow("api", "db")])
        loaded = Architecture.from_dict(arch.to_dict())
        assert loaded.services[0].name == "api"
        assert loaded.data_flows[0].target == "db"

    def test_graph_document_shape(self):
        graph = KnowledgeGraph(edges=[Edge("decision", "d1", "file", "a.py", "affects")])
        assert graph.to_dict() == {"edges": [{
            "from_type": "decision", "from_id": "d1",
            "to_type": "file", "to_id": "a.py", "relation": "affects",
        }]}
        assert KnowledgeGraph.from_dict(graph.to_dict()) == graph

    def test_timeline_document_shape(self):
        timeline = EvolutionTimeline(events=[EvolutionEvent("milestone", "v1")])
        assert EvolutionTimeline.from_dict(timeline.to_dict()).events[0].title == "v1"

    def test_conversation_defaults(self):
        conv = Conversation.from_dict({"feature": "f", "summary": "s"})
        assert conv.key_points == []


class TestEdgeIdentity:

    def test_key_is_full_tuple(self):
        e = Edge("decision", "d1", "file", "a.py", "affects")
        assert e.key == ("decision", "d1", "file", "a.py", "affects")

    def test_relation_is_part_of_identity(self):
        a = Edge("decision", "d1", "file", "a.py", "affects")
        b = Edge("decision", "d1", "file", "a.py", "related_to")
        assert a.key != b.key

    def test_touches_either_end(self):
        e = Edge("decision", "d1", "file", "a.py", "affects")
        assert e.touches("file", "a.py")
        assert e.touches("decision", "d1")
        assert not e.touches("file", "d1")


class TestFeature:

    def test_archived_flag(self):
        assert Feature(id="f", status="archived").is_archived
        assert not Feature(id="f").is_archived
