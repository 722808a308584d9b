"""Document store tests: writes, compare-and-set, live queries."""

import pytest

from carewatch.services.document_store import (
    ArrayAppend,
    DocumentNotFound,
    Increment,
    PreconditionFailed,
    QueryLimitError,
    where,
)


def test_add_and_get(store):
    doc = store.add("subjects", {"name": "Rosa"})
    assert doc["id"]
    assert store.get("subjects", doc["id"]) == {"id": doc["id"], "name": "Rosa"}
    assert store.get("subjects", "missing") is None


def test_set_with_merge_keeps_other_fields(store):
    store.set("subjects", "s1", {"name": "Rosa", "status": "active"})
    store.set("subjects", "s1", {"status": "inactive"}, merge=True)
    assert store.get("subjects", "s1") == {"id": "s1", "name": "Rosa", "status": "inactive"}

    store.set("subjects", "s1", {"name": "Rosa B"})
    assert store.get("subjects", "s1") == {"id": "s1", "name": "Rosa B"}


def test_update_transforms(store):
    store.set("alerts", "a1", {"status": "active"})
    store.update("alerts", "a1", {"forward_count": Increment(1), "history": ArrayAppend(({"action": "x"},))})
    doc = store.update("alerts", "a1", {"forward_count": Increment(1), "history": ArrayAppend(({"action": "y"},))})
    assert doc["forward_count"] == 2
    assert [h["action"] for h in doc["history"]] == ["x", "y"]


def test_update_missing_document(store):
    with pytest.raises(DocumentNotFound):
        store.update("alerts", "nope", {"status": "resolved"})


def test_compare_and_set_rejects_and_leaves_document_unchanged(store):
    store.set("alerts", "a1", {"status": "resolved", "resolved_by": "u1"})
    with pytest.raises(PreconditionFailed):
        store.update("alerts", "a1", {"status": "closed", "resolved_by": "u2"}, expect={"status": "active"})
    assert store.get("alerts", "a1") == {"id": "a1", "status": "resolved", "resolved_by": "u1"}


def test_query_filters(store):
    store.set("alerts", "a1", {"subject_id": "s1"})
    store.set("alerts", "a2", {"subject_id": "s2"})
    store.set("alerts", "a3", {"subject_id": "s3"})
    assert [d["id"] for d in store.query("alerts", [where("subject_id", "==", "s2")])] == ["a2"]
    assert [d["id"] for d in store.query("alerts", [where("subject_id", "in", ["s1", "s3"])])] == ["a1", "a3"]
    assert len(store.query("alerts")) == 3


def test_membership_limit_enforced(store):
    ids = [f"s{i}" for i in range(11)]
    with pytest.raises(QueryLimitError):
        store.query("alerts", [where("subject_id", "in", ids)])
    with pytest.raises(QueryLimitError):
        store.listen("alerts", [where("subject_id", "in", ids)], lambda docs: None)
    store.listen("alerts", [where("subject_id", "in", ids[:10])], lambda docs: None)


def test_unsupported_operator():
    with pytest.raises(ValueError):
        where("subject_id", "!=", "s1")


def test_listen_delivers_initial_and_changed_snapshots(store):
    store.set("alerts", "a1", {"subject_id": "s1", "status": "active"})
    snapshots = []
    store.listen("alerts", [where("subject_id", "in", ["s1"])], snapshots.append)
    assert [[d["id"] for d in s] for s in snapshots] == [["a1"]]

    store.set("alerts", "a2", {"subject_id": "s1", "status": "active"})
    assert [d["id"] for d in snapshots[-1]] == ["a1", "a2"]

    store.update("alerts", "a1", {"status": "resolved"})
    assert snapshots[-1][0]["status"] == "resolved"
    assert len(snapshots) == 3


def test_listen_ignores_writes_outside_the_query(store):
    snapshots = []
    store.listen("alerts", [where("subject_id", "==", "s1")], snapshots.append)
    store.set("alerts", "a9", {"subject_id": "s9"})
    store.set("subjects", "s1", {"name": "Rosa"})
    assert snapshots == [[]]


def test_unsubscribe_stops_delivery(store):
    snapshots = []
    unsubscribe = store.listen("alerts", [], snapshots.append)
    assert store.listener_count == 1
    unsubscribe()
    unsubscribe()
    assert store.listener_count == 0
    store.set("alerts", "a1", {"subject_id": "s1"})
    assert snapshots == [[]]


def test_failing_callback_does_not_block_other_listeners(store):
    seen = []

    def broken(docs):
        raise RuntimeError("boom")

    store.listen("alerts", [], broken)
    store.listen("alerts", [], seen.append)
    store.set("alerts", "a1", {"subject_id": "s1"})
    assert [d["id"] for d in seen[-1]] == ["a1"]
