import gzip
import io
import json
import logging
import os
import stat
import sys
import tarfile
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from resticop.config import Configuration
from resticop.restic import Restic, ResticError, Snapshot
from resticop.restore import (
    FileNode,
    RestoreOptions,
    RestoreType,
    archive,
    archive_name,
    extract_file_nodes,
    latest_snapshot,
    restore,
    tar_info_for,
)

SNAP_ID = "abc123def456"
ENDPOINT = "http://localhost:9000/bucket"


class RecordingHandler:
    def __init__(self):
        self.webhooks = []

    def send_webhook(self, provider):
        self.webhooks.append(provider)

    def send_prometheus(self, provider):
        pass


class RecordingUploader:
    def __init__(self):
        self.uploads = {}

    def upload(self, name, stream):
        self.uploads[name] = stream.read()


def snapshot_json(snap_id=SNAP_ID, hostname="ns", path="/data/pvc"):
    return {
        "id": snap_id,
        "time": "2021-03-04T05:06:07Z",
        "tree": "tree",
        "paths": [path],
        "hostname": hostname,
        "username": "root",
        "uid": 0,
        "gid": 0,
        "tags": [],
    }


def make_restic(tmp_path, snapshots, ls="", dump=b"", **config_values):
    log_path = tmp_path / "calls.log"
    info_path = tmp_path / "restore-info.json"
    script = tmp_path / "fake-restic"
    script.write_text(
        f"#!{sys.executable}\n"
        "import json, os, sys\n"
        "args = sys.argv[1:]\n"
        f"with open({str(log_path)!r}, 'a') as f:\n"
        "    f.write(json.dumps(args) + '\\n')\n"
        "cmd = args[0]\n"
        "if cmd == 'snapshots':\n"
        f"    sys.stdout.write({json.dumps(snapshots)!r})\n"
        "elif cmd == 'ls':\n"
        f"    sys.stdout.write({ls!r})\n"
        "elif cmd == 'dump':\n"
        f"    sys.stdout.buffer.write({dump!r})\n"
        "elif cmd == 'restore':\n"
        "    target = args[args.index('--target') + 1]\n"
        "    info = {'target': target}\n"
        "    link = os.path.join(target, 'data', 'pvc')\n"
        "    if os.path.islink(link):\n"
        "        info['link'] = os.readlink(link)\n"
        f"    with open({str(info_path)!r}, 'w') as f:\n"
        "        json.dump(info, f)\n"
    )
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    config = Configuration(
        restic_bin=str(script),
        restic_repository="s3:http://localhost:9000/repo",
        restore_s3_endpoint=ENDPOINT,
        hostname="host",
        **config_values,
    )
    handler = RecordingHandler()
    restic = Restic(config, handler, logging.getLogger("test-restore"))
    return restic, handler, log_path, info_path


def calls(log_path):
    return [json.loads(line) for line in log_path.read_text().splitlines()]


def test_latest_snapshot_without_snapshots_fails():
    with pytest.raises(ResticError, match="no snapshots available"):
        latest_snapshot([], "")


def test_latest_snapshot_picks_last_or_prefix():
    first = Snapshot(id="aaaa1111")
    second = Snapshot(id="bbbb2222")
    assert latest_snapshot([first, second], "") is second
    assert latest_snapshot([first, second], "aaaa") is first
    with pytest.raises(ResticError, match="no Snapshot found with ID cccc"):
        latest_snapshot([first, second], "cccc")


def test_file_node_from_json_and_rejects_wrong_types():
    node = FileNode.from_json(
        {"name": "f", "type": "file", "path": "/f", "uid": 7, "gid": 8, "size": 3,
         "mode": 420, "mtime": "2021-03-04T05:06:07Z", "struct_type": "node"}
    )
    assert (node.name, node.type, node.path, node.uid, node.gid, node.size, node.mode) == (
        "f", "file", "/f", 7, 8, 3, 420
    )
    assert node.mtime == datetime(2021, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        FileNode.from_json({"size": "big"})


def test_extract_file_nodes_keeps_only_files_in_order():
    output = "\n".join(
        [
            json.dumps({"struct_type": "snapshot", "id": SNAP_ID}),
            json.dumps({"type": "dir", "path": "/data"}),
            json.dumps({"type": "file", "path": "/data/a"}),
            "not json",
            json.dumps({"type": "file", "path": "/data/b"}),
            "",
        ]
    )
    nodes = extract_file_nodes(output)
    assert [node.path for node in nodes] == ["/data/a", "/data/b"]


def test_tar_info_for_strips_first_slash_only():
    moment = datetime(2021, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    node = FileNode(type="file", path="/dir/file.sql", size=10, mode=0o640, uid=5, gid=6, mtime=moment)
    info = tar_info_for(node)
    assert info.name == "dir/file.sql"
    assert (info.size, info.mode, info.uid, info.gid) == (10, 0o640, 5, 6)
    assert info.mtime == int(moment.timestamp())


def test_archive_name_uses_rfc3339_time():
    snap = Snapshot(
        id=SNAP_ID, hostname="ns", paths=["/data/pvc"],
        time=datetime(2021, 3, 4, 5, 6, 7, 123456, tzinfo=timezone.utc),
    )
    assert archive_name(snap) == "backup-ns-pvc-2021-03-04T05:06:07Z.tar.gz"
    offset = Snapshot(
        id=SNAP_ID, hostname="ns", paths=["/data/pvc"],
        time=datetime(2021, 3, 4, 5, 6, 7, tzinfo=timezone(timedelta(hours=2))),
    )
    assert archive_name(offset).endswith("+02:00.tar.gz")


def test_folder_restore_passes_arguments_and_reports(tmp_path):
    restic, handler, log_path, _ = make_restic(tmp_path, [snapshot_json()])
    target = str(tmp_path / "target")
    restore(
        restic,
        "abc",
        RestoreOptions(RestoreType.FOLDER, restore_dir=target, restore_filter="/data", verify=True),
    )
    restore_calls = [args for args in calls(log_path) if args[0] == "restore"]
    assert restore_calls == [
        ["restore", "--option", "", SNAP_ID, "--target", target, "--include", "/data", "--verify"]
    ]
    stats = handler.webhooks[-1]
    assert stats.restore_location == target
    assert stats.snapshot_id == SNAP_ID
    assert stats.restored_files == ["not supported for folder restores"]


def test_folder_restore_with_trimmed_path_links_and_cleans_up(tmp_path, monkeypatch):
    temp_root = tmp_path / "tmp"
    temp_root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(temp_root))
    restic, _, _, info_path = make_restic(tmp_path, [snapshot_json()], restore_trim_path=True)
    target = str(tmp_path / "restored")

    restore(restic, "", RestoreOptions(RestoreType.FOLDER, restore_dir=target))

    info = json.loads(info_path.read_text())
    assert info["target"] == os.path.join(str(temp_root), "restore")
    assert info["link"] == target
    assert os.path.isdir(target)
    assert not os.path.exists(info["target"])


def test_s3_restore_of_single_file_uploads_tar_gz(tmp_path):
    content = b"SELECT 1;\n"
    ls = "\n".join(
        [
            json.dumps({"struct_type": "snapshot", "id": SNAP_ID}),
            json.dumps({"type": "file", "path": "/ns-pvc.sql", "size": len(content),
                        "mode": 0o644, "uid": 1, "gid": 2, "mtime": "2021-03-04T05:06:07Z"}),
        ]
    ) + "\n"
    restic, handler, log_path, _ = make_restic(tmp_path, [snapshot_json()], ls=ls, dump=content)
    uploader = RecordingUploader()

    restore(restic, "", RestoreOptions(RestoreType.S3), uploader=uploader)

    snap = Snapshot.from_json(snapshot_json())
    name = archive_name(snap)
    assert list(uploader.uploads) == [name]
    with tarfile.open(fileobj=io.BytesIO(uploader.uploads[name]), mode="r:gz") as archive_file:
        member = archive_file.getmember("ns-pvc.sql")
        assert (member.size, member.uid, member.gid) == (len(content), 1, 2)
        assert archive_file.extractfile(member).read() == content
    dump_calls = [args for args in calls(log_path) if args[0] == "dump"]
    assert dump_calls == [["dump", "--option", "", SNAP_ID, "/ns-pvc.sql"]]
    stats = handler.webhooks[-1]
    assert stats.restore_location == f"{ENDPOINT}/{name}"
    assert stats.snapshot_id == SNAP_ID
    assert stats.restored_files == ["/ns-pvc.sql"]


def test_s3_restore_of_folder_uploads_plain_gzip(tmp_path):
    content = b"tar stream bytes"
    ls = "\n".join(
        [
            json.dumps({"type": "file", "path": "/data/pvc/a"}),
            json.dumps({"type": "file", "path": "/data/pvc/b"}),
        ]
    )
    restic, handler, log_path, _ = make_restic(tmp_path, [snapshot_json()], ls=ls, dump=content)
    uploader = RecordingUploader()

    restore(restic, SNAP_ID, RestoreOptions(RestoreType.S3), uploader=uploader)

    (payload,) = uploader.uploads.values()
    assert gzip.decompress(payload) == content
    dump_calls = [args for args in calls(log_path) if args[0] == "dump"]
    assert dump_calls == [["dump", "--option", "", SNAP_ID, "/data/pvc"]]
    assert handler.webhooks[-1].restored_files == ["/data/pvc/a", "/data/pvc/b"]


def test_restore_errors(tmp_path):
    restic, handler, _, _ = make_restic(tmp_path, [snapshot_json()])
    with pytest.raises(ResticError, match="no valid restore type"):
        restore(restic, "", RestoreOptions("tape"))
    with pytest.raises(ResticError):
        restore(restic, "", RestoreOptions(RestoreType.S3))
    assert handler.webhooks == []


def test_restore_without_snapshots_fails(tmp_path):
    restic, handler, _, _ = make_restic(tmp_path, [])
    with pytest.raises(ResticError, match="no snapshots available"):
        restore(restic, "", RestoreOptions(RestoreType.FOLDER, restore_dir=str(tmp_path)))
    assert handler.webhooks == []


def test_archive_uploads_every_latest_snapshot(tmp_path):
    snapshots = [
        snapshot_json("1111aaaa", "ns-one", "/data/first"),
        snapshot_json("2222bbbb", "ns-two", "/data/second"),
    ]
    restic, handler, log_path, _ = make_restic(tmp_path, snapshots, dump=b"data")
    uploader = RecordingUploader()

    archive(restic, "", False, ["daily"], uploader)

    expected = {archive_name(Snapshot.from_json(item)) for item in snapshots}
    assert set(uploader.uploads) == expected
    assert all(gzip.decompress(payload) == b"data" for payload in uploader.uploads.values())
    assert [stats.snapshot_id for stats in handler.webhooks] == ["1111aaaa", "2222bbbb"]
    first_listing = calls(log_path)[0]
    assert first_listing[-2:] == ["--tag", "daily"]