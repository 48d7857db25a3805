import base64
import json
import logging

import pytest

from simvex.config import RepositoryConfig
from simvex.entities import AiExchange, ConnectionDraft, FileUpload, MemoDraft, NodeDraft, NodePatch
from simvex.repositories import create_repositories
from simvex.stores import file_store
from simvex.stores.file_store import JsonFileStore, state_from_document


def _open(path):
    return create_repositories(RepositoryConfig(driver="file", file_path=str(path)))


def test_state_survives_reopen(tmp_path):
    path = tmp_path / "repo.json"
    payload = b"\x00\xffbinary\r\n" * 10

    first = _open(path)
    memo = first.memo.create("u1", 7, MemoDraft(title="t", content="c"))
    first.ai_history.append("u1", 7, AiExchange(question="q", answer="a"))
    a = first.workflow.create_node("u1", NodeDraft(title="a", content="", x=1, y=2))
    b = first.workflow.create_node("u1", NodeDraft(title="b", content="", x=3, y=4))
    conn = first.workflow.create_connection(
        "u1", ConnectionDraft(from_node=a.id, to_node=b.id, from_anchor="right", to_anchor="left")
    )
    stored = first.workflow.add_file_to_node(
        "u1", a.id, FileUpload(file_name="x.bin", content_type="application/octet-stream", buffer=payload)
    )
    first.close()

    second = _open(path)
    assert [m.to_json() for m in second.memo.list_by_model("u1", 7)] == [memo.to_json()]
    assert [h.question for h in second.ai_history.list_by_model("u1", 7)] == ["q"]
    state = second.workflow.list("u1")
    assert [n.id for n in state.nodes] == [a.id, b.id]
    assert [c.id for c in state.connections] == [conn.id]
    assert second.workflow.find_file("u1", stored.id).buffer == payload


def test_sequences_continue_after_reopen(tmp_path):
    path = tmp_path / "repo.json"
    first = _open(path)
    old = first.memo.create("u1", 1, MemoDraft(title="a", content=""))
    first.memo.delete("u1", old.id)
    first.close()

    second = _open(path)
    new = second.memo.create("u1", 1, MemoDraft(title="b", content=""))
    assert new.id > old.id


def test_document_layout(tmp_path):
    path = tmp_path / "nested" / "dir" / "repo.json"
    repos = _open(path)
    repos.memo.create("u1", 7, MemoDraft(title="t", content="c"))
    node = repos.workflow.create_node("u1", NodeDraft(title="n", content="", x=0, y=0))
    repos.workflow.add_file_to_node("u1", node.id, FileUpload(file_name="f.txt", content_type="text/plain", buffer=b"hi"))

    doc = json.loads(path.read_text(encoding="utf-8"))
    assert (doc["memoIdSeq"], doc["nodeIdSeq"], doc["connectionIdSeq"], doc["fileIdSeq"]) == (2, 2, 1, 2)
    assert doc["memoStore"]["u1"]["7"][0]["title"] == "t"
    stored_file = doc["workflowStore"]["u1"]["nodes"][0]["files"][0]
    assert stored_file["fileName"] == "f.txt"
    assert stored_file["contentType"] == "text/plain"
    assert base64.b64decode(stored_file["bufferBase64"]) == b"hi"
    assert "buffer" not in stored_file


def test_corrupt_file_falls_back_to_empty_state(tmp_path, caplog):
    path = tmp_path / "repo.json"
    path.write_text("{not json", encoding="utf-8")
    with caplog.at_level(logging.WARNING, logger="simvex.repository.file"):
        repos = _open(path)
    assert repos.memo.list_by_model("u1", 1) == []
    assert repos.workflow.list("u1").nodes == []
    assert any("falling back" in r.getMessage() for r in caplog.records)

    # the next write replaces the corrupt document
    created = repos.memo.create("u1", 1, MemoDraft(title="fresh", content=""))
    assert created.id == 1
    assert json.loads(path.read_text(encoding="utf-8"))["memoIdSeq"] == 2


def test_wrong_shape_falls_back(tmp_path):
    path = tmp_path / "repo.json"
    path.write_text(json.dumps(["not", "an", "object"]), encoding="utf-8")
    store = JsonFileStore(path)
    assert store.state.memo_id_seq == 1
    assert store.state.memo_store == {}


def test_missing_keys_use_defaults():
    state = state_from_document({"memoIdSeq": 9})
    assert state.memo_id_seq == 9
    assert state.node_id_seq == 1
    assert state.memo_store == {}
    assert state.workflow_store == {}


def test_missing_file_is_not_created_until_first_write(tmp_path):
    path = tmp_path / "repo.json"
    repos = _open(path)
    assert repos.memo.list_by_model("u1", 1) == []
    assert not path.exists()
    repos.memo.create("u1", 1, MemoDraft(title="a", content=""))
    assert path.exists()
    assert [p.name for p in tmp_path.iterdir()] == ["repo.json"]


def test_lone_surrogate_is_saved_and_reloaded(tmp_path):
    path = tmp_path / "repo.json"
    repos = _open(path)
    odd = repos.memo.create("u1", 1, MemoDraft(title="bad \ud800", content=""))
    other = repos.memo.create("u2", 1, MemoDraft(title="unrelated", content=""))

    reopened = _open(path)
    assert [m.title for m in reopened.memo.list_by_model("u1", 1)] == [odd.title]
    assert [m.id for m in reopened.memo.list_by_model("u2", 1)] == [other.id]


def _fail_first_replace(monkeypatch):
    real_replace = file_store.os.replace
    calls = []

    def flaky_replace(src, dst):
        calls.append(dst)
        if len(calls) == 1:
            raise OSError("disk full")
        return real_replace(src, dst)

    monkeypatch.setattr(file_store.os, "replace", flaky_replace)


def test_failed_save_leaves_state_unchanged(tmp_path, monkeypatch):
    path = tmp_path / "repo.json"
    repos = _open(path)
    kept = repos.memo.create("u1", 1, MemoDraft(title="kept", content=""))

    _fail_first_replace(monkeypatch)
    with pytest.raises(OSError):
        repos.memo.create("u1", 1, MemoDraft(title="lost", content=""))

    assert [m.title for m in repos.memo.list_by_model("u1", 1)] == ["kept"]
    retry = repos.memo.create("u2", 1, MemoDraft(title="other", content=""))
    assert retry.id == kept.id + 1

    reopened = _open(path)
    assert [m.title for m in reopened.memo.list_by_model("u1", 1)] == ["kept"]
    assert [m.title for m in reopened.memo.list_by_model("u2", 1)] == ["other"]
    assert [p.name for p in tmp_path.iterdir()] == ["repo.json"]


def test_failed_save_keeps_workflow_intact(tmp_path, monkeypatch):
    repos = _open(tmp_path / "repo.json")
    a = repos.workflow.create_node("u1", NodeDraft(title="a", content="", x=0, y=0))
    b = repos.workflow.create_node("u1", NodeDraft(title="b", content="", x=0, y=0))
    repos.workflow.create_connection(
        "u1", ConnectionDraft(from_node=a.id, to_node=b.id, from_anchor="right", to_anchor="left")
    )

    _fail_first_replace(monkeypatch)
    with pytest.raises(OSError):
        repos.workflow.delete_node("u1", a.id)

    state = repos.workflow.list("u1")
    assert [n.id for n in state.nodes] == [a.id, b.id]
    assert len(state.connections) == 1
    assert repos.workflow.delete_node("u1", a.id) is True


def test_reads_do_not_persist_unknown_tenants(tmp_path):
    path = tmp_path / "repo.json"
    repos = _open(path)
    assert repos.workflow.list("ghost").nodes == []
    assert repos.workflow.find_file("ghost", 1) is None
    assert repos.workflow.find_connection_id_by_pair("ghost", 1, 2) is None
    assert repos.workflow.update_node("ghost", 1, NodePatch(title="x")) is None
    assert repos.workflow.delete_file("ghost", 1) is False
    repos.workflow.create_node("u1", NodeDraft(title="n", content="", x=0, y=0))

    doc = json.loads(path.read_text(encoding="utf-8"))
    assert list(doc["workflowStore"]) == ["u1"]
