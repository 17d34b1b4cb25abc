"""
Unit tests for mod pack export, material parsing and dependency expansion.
"""

import hashlib
import json
import threading
import zipfile

import pytest

from snapvault.core.exceptions import ConcurrentExportRejected, NotASnapshot
from snapvault.core.notify import NotificationLevel
from snapvault.core.tasks import TaskRunner
from snapvault.exchange.dependencies import expand_material_dependencies
from snapvault.exchange.manipulations import encode_manipulations
from snapvault.exchange.material import MaterialFile, MaterialParseError, build_material, dx11_path
from snapvault.exchange.pmp_export import PmpExporter, archive_file_name
from snapvault.snapshot.blob_store import BlobStore
from snapvault.snapshot.paths import SnapshotPaths
from snapvault.snapshot.state import SnapshotState


MATERIAL_PATH = "chara/equipment/e0001/material/v0001/mt_c0101e0001_top_a.mtrl"
NORMAL_PATH = "chara/equipment/e0001/texture/v01_c0101e0001_top_n.tex"
MASK_PATH = "chara/equipment/e0001/texture/v01_c0101e0001_top_m.tex"
UNRELATED_PATH = "chara/equipment/e0002/texture/v01_c0101e0002_top_d.tex"


def sha1_upper(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest().upper()


@pytest.fixture
def material_snapshot(working_dir):
    """Snapshot holding one material, its two textures and one unrelated texture."""
    paths = SnapshotPaths.of(working_dir / "Mat")
    store = BlobStore(paths.files_dir, create_dirs=True)
    material = build_material([NORMAL_PATH, MASK_PATH], dx11_flags=[True, False])
    mapping = {
        MATERIAL_PATH: store.put(material, MATERIAL_PATH),
        dx11_path(NORMAL_PATH): store.put(b"normal map", NORMAL_PATH),
        MASK_PATH: store.put(b"mask map", MASK_PATH),
        UNRELATED_PATH: store.put(b"unrelated", UNRELATED_PATH),
    }
    SnapshotState.create("Mat", None, mapping).save(paths.root)
    return paths.root


def read_archive(path):
    with zipfile.ZipFile(path) as zf:
        names = zf.namelist()
        meta = json.loads(zf.read("meta.json"))
        default_mod = json.loads(zf.read("default_mod.json"))
    return names, meta, default_mod


@pytest.mark.unit
class TestMaterial:
    """Tests for the material reader."""

    def test_parse_textures(self):
        material = MaterialFile.parse(build_material([NORMAL_PATH, MASK_PATH], dx11_flags=[True, False]))

        assert material.shader_package == "character.shpk"
        assert [t.path for t in material.textures] == [NORMAL_PATH, MASK_PATH]
        assert material.textures[0].is_dx11
        assert list(material.texture_paths()) == [dx11_path(NORMAL_PATH), NORMAL_PATH, MASK_PATH]

    def test_dx11_path(self):
        assert dx11_path("a/b/c.tex") == "a/b/--c.tex"
        assert dx11_path("a\\b\\c.tex") == "a/b/--c.tex"
        assert dx11_path("a/b/--c.tex") == "a/b/--c.tex"

    def test_truncated_material(self):
        data = build_material([NORMAL_PATH])
        with pytest.raises(MaterialParseError):
            MaterialFile.parse(data[:10])
        with pytest.raises(MaterialParseError):
            MaterialFile.parse(data[:-20])


@pytest.mark.unit
class TestDependencyExpansion:
    """Tests for expand_material_dependencies."""

    def test_material_pulls_in_textures(self, material_snapshot):
        state = SnapshotState.load(material_snapshot)
        files_dir = SnapshotPaths.of(material_snapshot).files_dir

        expanded = expand_material_dependencies([MATERIAL_PATH], state.resolve_node(), files_dir)
        assert expanded == {MATERIAL_PATH, dx11_path(NORMAL_PATH), MASK_PATH}

    def test_non_material_selection_is_unchanged(self, material_snapshot):
        state = SnapshotState.load(material_snapshot)
        files_dir = SnapshotPaths.of(material_snapshot).files_dir

        assert expand_material_dependencies([UNRELATED_PATH], state.resolve_node(), files_dir) == {UNRELATED_PATH}

    def test_unparsable_material_is_skipped(self, tmp_path):
        store = BlobStore(tmp_path / "_files", create_dirs=True)
        mapping = {MATERIAL_PATH: store.put(b"junk", MATERIAL_PATH), MASK_PATH: store.put(b"m", MASK_PATH)}

        assert expand_material_dependencies([MATERIAL_PATH], mapping, store.files_dir) == {MATERIAL_PATH}

    def test_empty_selection(self, tmp_path):
        assert expand_material_dependencies([], {MASK_PATH: "A" * 40}, tmp_path) == set()


@pytest.mark.unit
class TestArchiveNames:
    """Tests for archive_file_name."""

    def test_existing_extension_wins(self):
        assert archive_file_name("H", "H.mtrl", ["chara/x.tex"]) == "H.mtrl"

    def test_logical_path_extension_replaces_dat(self):
        assert archive_file_name("H", "H.dat", ["chara/x.tex"]) == "H.tex"

    def test_dat_fallback(self):
        assert archive_file_name("H", "H.dat", ["chara/noext"]) == "H.dat"


@pytest.mark.unit
class TestPmpExporter:
    """Tests for PmpExporter.export."""

    def test_full_export(self, working_dir, snapshot_dir, notifications, recorder):
        result = PmpExporter(working_dir, notifications, author="Tester").export(snapshot_dir)

        assert result.archive_path == working_dir / "Alice.pmp"
        assert result.file_count == 2
        names, meta, default_mod = read_archive(result.archive_path)

        assert meta["Name"] == "Alice"
        assert meta["Author"] == "Tester"
        assert meta["FileVersion"] == 3

        texture_hash = sha1_upper(b"body texture")
        model_hash = sha1_upper(b"top model")
        assert f"files/{texture_hash}.tex" in names
        assert f"files/{model_hash}.mdl" in names
        assert default_mod["Files"] == {
            "chara/human/c0101/obj/body/b0001/texture/c0101b0001_d.tex": f"files\\{texture_hash}.tex",
            "chara/equipment/e0001/model/c0101e0001_top.mdl": f"files\\{model_hash}.mdl",
        }
        assert default_mod["Manipulations"] == []
        assert len(recorder.messages(NotificationLevel.SUCCESS)) == 1

    def test_selection_includes_material_textures(self, working_dir, material_snapshot, notifications, tmp_path):
        result = PmpExporter(working_dir, notifications).export(
            material_snapshot, output_path=tmp_path / "out" / "mat.pmp", selection=[MATERIAL_PATH]
        )

        names, _, default_mod = read_archive(result.archive_path)
        assert len([n for n in names if n.startswith("files/")]) == 3
        assert set(default_mod["Files"]) == {MATERIAL_PATH, dx11_path(NORMAL_PATH), MASK_PATH}

    def test_export_of_older_node(self, working_dir, snapshot_dir, notifications):
        state = SnapshotState.load(snapshot_dir)
        root_id = state.current_file_map_id
        state.capture_update({"chara/only.tex": "F" * 40})
        state.save()

        result = PmpExporter(working_dir, notifications).export(snapshot_dir, node_id=root_id)
        _, _, default_mod = read_archive(result.archive_path)
        assert len(default_mod["Files"]) == 2

    def test_overrides(self, working_dir, snapshot_dir, notifications):
        entries = [{"Type": "Rsp", "Manipulation": {"SubRace": "Midlander", "Entry": 1.0}}]
        mapping = {"chara/custom.mdl": sha1_upper(b"top model")}

        result = PmpExporter(working_dir, notifications).export(
            snapshot_dir,
            mapping_override=mapping,
            manipulation_override=encode_manipulations(entries),
        )

        _, _, default_mod = read_archive(result.archive_path)
        assert list(default_mod["Files"]) == ["chara/custom.mdl"]
        assert default_mod["Manipulations"] == entries
        assert result.manipulation_count == 1

    def test_snapshot_manipulations_are_exported(self, working_dir, snapshot_dir, notifications):
        entries = [{"Type": "Gmp", "Manipulation": {"SetId": 1}}]
        state = SnapshotState.load(snapshot_dir)
        state.capture_update(state.resolve_node(), encode_manipulations(entries))
        state.save()

        result = PmpExporter(working_dir, notifications).export(snapshot_dir)
        _, _, default_mod = read_archive(result.archive_path)
        assert default_mod["Manipulations"] == entries

    def test_concurrent_export_is_rejected(self, working_dir, snapshot_dir, notifications, recorder):
        exporter = PmpExporter(working_dir, notifications)
        exporter.is_exporting = True

        with pytest.raises(ConcurrentExportRejected):
            exporter.export(snapshot_dir)

        assert recorder.messages(NotificationLevel.WARNING) == ["An export is already in progress."]
        assert not (working_dir / "Alice.pmp").exists()

    def test_failure_clears_flag(self, working_dir, notifications, recorder):
        exporter = PmpExporter(working_dir, notifications)

        with pytest.raises(NotASnapshot):
            exporter.export(working_dir / "Nobody")

        assert exporter.is_exporting is False
        assert len(recorder.messages(NotificationLevel.ERROR)) == 1

    def test_corrupt_chain_exports_no_files(self, working_dir, snapshot_dir, notifications):
        snapshot_file = SnapshotPaths.of(snapshot_dir).snapshot_file
        document = json.loads(snapshot_file.read_text(encoding="utf-8"))
        document["FileMaps"][0]["BaseId"] = "missing-parent"
        snapshot_file.write_text(json.dumps(document), encoding="utf-8")

        result = PmpExporter(working_dir, notifications).export(snapshot_dir)

        names, _, default_mod = read_archive(result.archive_path)
        assert result.file_count == 0
        assert default_mod["Files"] == {}
        assert not any(n.startswith("files/") for n in names)

    def test_chainless_snapshot_exports_stored_replacements(self, working_dir, notifications):
        paths = SnapshotPaths.of(working_dir / "Legacy")
        store = BlobStore(paths.files_dir, create_dirs=True)
        blob_hash = store.put(b"legacy texture", "chara/a.tex")
        paths.snapshot_file.write_text(
            json.dumps({"FormatVersion": 1, "FileReplacements": {"chara/a.tex": blob_hash}}),
            encoding="utf-8",
        )
        paths.migration_marker.touch()

        result = PmpExporter(working_dir, notifications).export(paths.root)

        names, _, default_mod = read_archive(result.archive_path)
        assert result.file_count == 1
        assert default_mod["Files"] == {"chara/a.tex": f"files\\{blob_hash}.tex"}
        assert f"files/{blob_hash}.tex" in names

    def test_simultaneous_exports_on_task_runner(
        self, working_dir, snapshot_dir, notifications, recorder, monkeypatch, tmp_path
    ):
        exporter = PmpExporter(working_dir, notifications)
        started = threading.Event()
        release = threading.Event()
        original_export = PmpExporter._export

        def held_export(self, *args):
            started.set()
            release.wait(timeout=5)
            return original_export(self, *args)

        monkeypatch.setattr(PmpExporter, "_export", held_export)

        with TaskRunner(max_workers=2) as runner:
            first = runner.submit("export-1", exporter.export, snapshot_dir, output_path=tmp_path / "one.pmp")
            assert started.wait(timeout=5)
            second = runner.submit("export-2", exporter.export, snapshot_dir, output_path=tmp_path / "two.pmp")
            second_result = second.wait(timeout=5)
            release.set()
            first_result = first.wait(timeout=5)

        assert first_result.ok
        assert first_result.value.file_count == 2
        assert not second_result.ok
        assert isinstance(second_result.error, ConcurrentExportRejected)
        assert not (tmp_path / "two.pmp").exists()
        assert recorder.messages(NotificationLevel.WARNING) == ["An export is already in progress."]
        assert exporter.is_exporting is False
