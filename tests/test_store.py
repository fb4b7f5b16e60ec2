"""
Tests for the JSON session store.
"""

import json

from blobferry.transfer.store import (
    JsonTransferStore,
    MemoryTransferStore,
    ReceiveItem,
    ShareItem,
    TransferStore,
)


class TestJsonTransferStore:
    def setup_method(self):
        self.share = ShareItem(
            id="s1",
            files=["/tmp/a.txt", "/tmp/b.txt"],
            old_ticket="blobxyz",
            force_zip=False,
            batch_suffix="042",
        )
        self.receive = ReceiveItem(
            id="r1", ticket="blobabc", status="completed", filename="f.bin", progress=100
        )

    def test_round_trip(self, tmp_path):
        store = JsonTransferStore(tmp_path)
        assert store.save_send_sessions([self.share])
        assert store.save_receive_sessions([self.receive])

        assert store.load_send_sessions() == [self.share]
        assert store.load_receive_sessions() == [self.receive]

    def test_camel_case_on_disk(self, tmp_path):
        store = JsonTransferStore(tmp_path)
        store.save_send_sessions([self.share])

        data = json.loads(store.share_path.read_text())
        item = data["sharing"][0]
        assert item["oldTicket"] == "blobxyz"
        assert item["forceZip"] is False
        assert item["batchSuffix"] == "042"
        assert "sourceFolderPath" not in item

    def test_missing_and_corrupt_files_load_empty(self, tmp_path):
        store = JsonTransferStore(tmp_path)
        assert store.load_send_sessions() == []

        store.share_path.write_text("{not json")
        store.receive_path.write_text("[1, 2]")
        assert store.load_send_sessions() == []
        assert store.load_receive_sessions() == []

    def test_malformed_entries_are_skipped(self, tmp_path):
        store = JsonTransferStore(tmp_path)
        store.share_path.write_text(
            json.dumps({"sharing": [{"files": []}, {"id": "ok", "files": ["/x"]}]})
        )
        assert [item.id for item in store.load_send_sessions()] == ["ok"]

    def test_receive_folder_survives_session_writes(self, tmp_path):
        store = JsonTransferStore(tmp_path, default_receive_folder=tmp_path / "dl")
        assert store.get_receive_folder() == str(tmp_path / "dl")

        store.set_receive_folder("/media/incoming")
        store.save_receive_sessions([self.receive])
        assert store.get_receive_folder() == "/media/incoming"

        data = json.loads(store.receive_path.read_text())
        assert data["settings"] == {"receiveFolder": "/media/incoming"}
        assert data["receiving"][0]["createdAt"]

    def test_share_and_receive_files_are_independent(self, tmp_path):
        store = JsonTransferStore(tmp_path)
        store.save_receive_sessions([self.receive])
        store.save_send_sessions([])
        assert store.load_receive_sessions() == [self.receive]

    def test_clear(self, tmp_path):
        store = JsonTransferStore(tmp_path)
        store.save_send_sessions([self.share])
        store.save_receive_sessions([self.receive])
        assert store.clear()
        assert not store.share_path.exists()
        assert not store.receive_path.exists()


def test_stores_satisfy_protocol(tmp_path):
    assert isinstance(MemoryTransferStore(), TransferStore)
    assert isinstance(JsonTransferStore(tmp_path), TransferStore)
