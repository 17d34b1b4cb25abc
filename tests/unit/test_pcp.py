"""
Unit tests for character pack import and export.
"""

import base64
import gzip
import json
import zipfile

import pytest

from snapvault.core.exceptions import ContainerFormatError
from snapvault.core.notify import NotificationLevel
from snapvault.exchange.manipulations import decode_manipulations
from snapvault.exchange.pcp import decode_glamourer_design, encode_glamourer_design
from snapvault.exchange.pcp_export import PcpExporter
from snapvault.exchange.pcp_import import (
    IMPORTED_DESCRIPTION,
    IMPORTED_LEGACY_DESCRIPTION,
    PcpImporter,
)
from snapvault.snapshot.blob_store import BlobStore
from snapvault.snapshot.customize import read_template
from snapvault.snapshot.paths import SnapshotPaths, create_unique_directory
from snapvault.snapshot.state import SnapshotState


BODY_PATH = "chara/human/c0101/obj/body/b0001/texture/c0101b0001_d.tex"
TOP_PATH = "chara/equipment/e0001/model/c0101e0001_top.mdl"
HAT_PATH = "chara/equipment/e0002/model/c0101e0002_met.mdl"

DESIGN = {"FileVersion": 1, "Equipment": {"Head": {"ItemId": 7}}, "Customize": {"Race": {"Value": 1}}}
PROFILE = {"Bones": {"j_kao": {"Scaling": {"X": 1.5, "Y": 1.5, "Z": 1.5}}}}
IMC_ENTRY = {"Type": "Imc", "Manipulation": {"PrimaryId": 1, "Variant": 2, "Entry": {"MaterialId": 3}}}


def profile_base64(profile=PROFILE) -> str:
    return base64.b64encode(json.dumps(profile).encode("utf-8")).decode("ascii")


def read_pack(path):
    with zipfile.ZipFile(path) as zf:
        return (
            zf.namelist(),
            json.loads(zf.read("meta.json")),
            json.loads(zf.read("character.json")),
            json.loads(zf.read("default_mod.json")),
        )


def write_pack(path, meta=None, character=None, default_mod=None, files=None):
    with zipfile.ZipFile(path, "w") as zf:
        if meta is not None:
            zf.writestr("meta.json", json.dumps(meta))
        if character is not None:
            zf.writestr("character.json", json.dumps(character))
        if default_mod is not None:
            zf.writestr("default_mod.json", json.dumps(default_mod))
        for name, data in (files or {}).items():
            zf.writestr(name, data)
    return path


@pytest.fixture
def appearance_snapshot(snapshot_dir):
    """The shared snapshot plus one Glamourer and one Customize history entry."""
    state = SnapshotState.load(snapshot_dir)
    root_id = state.current_file_map_id
    state.histories.record_glamourer("Captured", encode_glamourer_design(DESIGN), root_id)
    state.histories.record_customize("Captured", profile_base64(), root_id)
    state.save()
    return snapshot_dir


@pytest.mark.unit
class TestGlamourerDesign:
    """Tests for the Glamourer share string codec."""

    def test_encoded_design_decodes(self):
        encoded = encode_glamourer_design(DESIGN)
        assert base64.b64decode(encoded)[1:3] == b"\x1f\x8b"
        assert decode_glamourer_design(encoded) == DESIGN

    def test_gzip_without_version_byte(self):
        encoded = base64.b64encode(gzip.compress(json.dumps(DESIGN).encode())).decode()
        assert decode_glamourer_design(encoded) == DESIGN

    def test_plain_json(self):
        encoded = base64.b64encode(json.dumps(DESIGN).encode()).decode()
        assert decode_glamourer_design(encoded) == DESIGN

    @pytest.mark.parametrize("value", ["", "   ", "not base64!", base64.b64encode(b"\x06\x1f\x8bjunk").decode()])
    def test_undecodable_returns_none(self, value):
        assert decode_glamourer_design(value) is None


@pytest.mark.unit
class TestUniqueDirectory:
    """Tests for create_unique_directory."""

    def test_suffixes_taken_names(self, tmp_path):
        first = create_unique_directory(tmp_path, "Bob")
        second = create_unique_directory(tmp_path, "Bob")
        third = create_unique_directory(tmp_path, "Bob")

        assert [p.name for p in (first, second, third)] == ["Bob", "Bob_1", "Bob_2"]
        assert all(p.is_dir() for p in (first, second, third))


@pytest.mark.unit
class TestPcpExporter:
    """Tests for PcpExporter."""

    def test_export_writes_pack(self, working_dir, snapshot_dir, notifications, recorder):
        result = PcpExporter(working_dir, notifications, author="Tester").export(snapshot_dir)

        assert result.archive_path == working_dir / "Alice.pcp"
        assert result.file_count == 2
        assert result.path_count == 2

        names, meta, character, default_mod = read_pack(result.archive_path)
        assert meta["ModTags"] == ["PCP"]
        assert meta["Author"] == "Tester"
        assert character["Actor"] == {"Type": "Player", "PlayerName": "Alice@Balmung", "HomeWorld": 73}
        assert character["Mod"] == character["Collection"] == "Alice@Balmung"
        assert character["Glamourer"] is None
        assert character["CustomizePlus"] is None
        assert default_mod["Version"] == 0
        assert set(default_mod["Files"]) == {BODY_PATH, TOP_PATH}
        for archive_path in default_mod["Files"].values():
            assert archive_path.replace("\\", "/") in names
        assert len(recorder.messages(NotificationLevel.SUCCESS)) == 1

    def test_export_carries_latest_appearance(self, working_dir, appearance_snapshot, notifications):
        result = PcpExporter(working_dir, notifications).export(appearance_snapshot)

        _, _, character, _ = read_pack(result.archive_path)
        assert character["Glamourer"] == {"Version": 1, "Design": DESIGN}

        template = character["CustomizePlus"]["Template"]
        assert template["Name"] == "PCP Template - Alice@Balmung"
        assert template["IsWriteProtected"] is False
        assert template["UniqueId"]
        bone = template["Bones"]["j_kao"]
        assert bone["Scaling"] == {"X": 1.5, "Y": 1.5, "Z": 1.5}
        assert bone["PropagateTranslation"] is False
        assert bone["PropagateRotation"] is False
        assert bone["PropagateScale"] is False

    def test_actor_overrides(self, working_dir, snapshot_dir, notifications):
        result = PcpExporter(working_dir, notifications).export(
            snapshot_dir, player_name="Someone Else", home_world_id=21,
        )

        _, _, character, _ = read_pack(result.archive_path)
        assert character["Actor"]["PlayerName"] == "Someone Else"
        assert character["Actor"]["HomeWorld"] == 21
        assert character["Mod"] == "Someone Else"

    def test_unknown_world_defaults(self, working_dir, notifications):
        paths = SnapshotPaths.of(working_dir / "NoWorld")
        store = BlobStore(paths.files_dir, create_dirs=True)
        SnapshotState.create("Nobody", None, {BODY_PATH: store.put(b"x", BODY_PATH)}).save(paths.root)

        result = PcpExporter(working_dir, notifications).export(paths.root)

        _, _, character, _ = read_pack(result.archive_path)
        assert character["Actor"]["HomeWorld"] == 40

    def test_selected_glamourer_entry_picks_its_file_map(self, working_dir, appearance_snapshot, notifications):
        state = SnapshotState.load(appearance_snapshot)
        store = BlobStore(SnapshotPaths.of(appearance_snapshot).files_dir)
        mapping = dict(state.resolve_node())
        mapping[HAT_PATH] = store.put(b"hat model", HAT_PATH)
        state.capture_update(mapping)
        state.save()

        latest = PcpExporter(working_dir, notifications).export(appearance_snapshot, output_path=working_dir / "a.pcp")
        selected = PcpExporter(working_dir, notifications).export(
            appearance_snapshot, output_path=working_dir / "b.pcp", glamourer_index=0,
        )

        assert latest.path_count == 3
        assert selected.path_count == 2
        _, _, _, default_mod = read_pack(selected.archive_path)
        assert HAT_PATH not in default_mod["Files"]

    def test_missing_history_entry(self, working_dir, appearance_snapshot, notifications, recorder):
        with pytest.raises(IndexError):
            PcpExporter(working_dir, notifications).export(appearance_snapshot, customize_index=5)
        assert len(recorder.messages(NotificationLevel.ERROR)) == 1

    def test_manipulations_are_exported(self, working_dir, notifications):
        from snapvault.exchange.manipulations import encode_manipulations

        paths = SnapshotPaths.of(working_dir / "Manip")
        store = BlobStore(paths.files_dir, create_dirs=True)
        mapping = {BODY_PATH: store.put(b"x", BODY_PATH)}
        SnapshotState.create("Manip", 73, mapping, encode_manipulations([IMC_ENTRY])).save(paths.root)

        result = PcpExporter(working_dir, notifications).export(paths.root)

        assert result.manipulation_count == 1
        _, _, _, default_mod = read_pack(result.archive_path)
        assert default_mod["Manipulations"] == [IMC_ENTRY]


@pytest.mark.unit
class TestPcpImporter:
    """Tests for PcpImporter."""

    def test_round_trip(self, working_dir, appearance_snapshot, tmp_path, notifications, recorder):
        pack = PcpExporter(working_dir, notifications).export(
            appearance_snapshot, output_path=tmp_path / "alice.pcp",
        ).archive_path

        result = PcpImporter(working_dir, notifications).import_file(pack)

        assert result.snapshot_path == working_dir / "Alice_1"
        assert result.path_count == 2
        assert result.blob_count == 2

        original = SnapshotState.load(appearance_snapshot)
        imported = SnapshotState.load(result.snapshot_path)
        assert imported.source_actor == "Alice@Balmung"
        assert imported.source_world_id == 73
        assert dict(imported.resolve_node()) == dict(original.resolve_node())

        glamourer = imported.histories.glamourer.last
        assert glamourer.description == IMPORTED_DESCRIPTION
        assert glamourer.file_map_id == imported.current_file_map_id
        assert decode_glamourer_design(glamourer.glamourer_string) == DESIGN

        customize = imported.histories.customize.last
        assert customize.description == IMPORTED_DESCRIPTION
        assert read_template(customize.customize_template)["Bones"]["j_kao"]["Scaling"]["X"] == 1.5

        assert recorder.event_count() == 1
        assert "Successfully imported PCP: Alice" in recorder.messages(NotificationLevel.SUCCESS)

    def test_legacy_appearance_layout(self, working_dir, tmp_path, notifications):
        pack = write_pack(
            tmp_path / "legacy.pcp",
            meta={"Name": "Legacy"},
            character={"Actor": {"PlayerName": "Old Timer", "HomeWorld": 40}, "Glamourer": DESIGN, "CustomizePlus": PROFILE},
            default_mod={"Files": {}},
        )

        result = PcpImporter(working_dir, notifications).import_file(pack)

        state = SnapshotState.load(result.snapshot_path)
        assert state.histories.glamourer.last.description == IMPORTED_LEGACY_DESCRIPTION
        assert decode_glamourer_design(state.histories.glamourer.last.glamourer_string) == DESIGN
        assert state.histories.customize.last.description == IMPORTED_LEGACY_DESCRIPTION
        assert state.histories.customize.last.customize_template

    def test_manipulations_are_encoded(self, working_dir, tmp_path, notifications):
        pack = write_pack(
            tmp_path / "manip.pcp",
            meta={"Name": "Manip"},
            character={"Actor": {"PlayerName": "M"}},
            default_mod={"Files": {BODY_PATH: "files\\body.tex"}, "Manipulations": [IMC_ENTRY]},
            files={"files/body.tex": b"body"},
        )

        result = PcpImporter(working_dir, notifications).import_file(pack)

        state = SnapshotState.load(result.snapshot_path)
        payload = decode_manipulations(state.manipulation_string)
        assert payload.version == 0
        assert payload.entries == [IMC_ENTRY]
        assert BODY_PATH in state.resolve_node()

    def test_missing_file_entry_is_skipped(self, working_dir, tmp_path, notifications):
        pack = write_pack(
            tmp_path / "partial.pcp",
            meta={"Name": "Partial"},
            character={"Actor": {"PlayerName": "P"}},
            default_mod={"Files": {BODY_PATH: "files\\body.tex", TOP_PATH: "files\\gone.mdl"}},
            files={"files/body.tex": b"body"},
        )

        result = PcpImporter(working_dir, notifications).import_file(pack)

        assert result.path_count == 1
        assert list(SnapshotState.load(result.snapshot_path).resolve_node()) == [BODY_PATH]

    def test_blank_name_gets_generated_directory(self, working_dir, tmp_path, notifications):
        pack = write_pack(
            tmp_path / "blank.pcp",
            meta={"Name": "  "},
            character={"Actor": {"PlayerName": "B"}},
            default_mod={"Files": {}},
        )

        result = PcpImporter(working_dir, notifications).import_file(pack)

        assert result.snapshot_path.name.startswith("PCP_Import_")

    @pytest.mark.parametrize("missing", ["meta", "character", "default_mod"])
    def test_missing_entry_is_reported(self, working_dir, tmp_path, notifications, recorder, missing):
        documents = {"meta": {"Name": "X"}, "character": {}, "default_mod": {}}
        documents[missing] = None
        pack = write_pack(tmp_path / "broken.pcp", **documents)

        with pytest.raises(ContainerFormatError, match="missing"):
            PcpImporter(working_dir, notifications).import_file(pack)

        assert len(recorder.messages(NotificationLevel.ERROR)) == 1
        assert recorder.event_count() == 0

    def test_invalid_json_entry(self, working_dir, tmp_path, notifications):
        pack = tmp_path / "bad.pcp"
        with zipfile.ZipFile(pack, "w") as zf:
            zf.writestr("meta.json", "{not json")

        with pytest.raises(ContainerFormatError, match="meta.json"):
            PcpImporter(working_dir, notifications).import_file(pack)

    def test_not_a_zip(self, working_dir, tmp_path, notifications, recorder):
        pack = tmp_path / "plain.pcp"
        pack.write_bytes(b"not a zip archive")

        with pytest.raises(ContainerFormatError):
            PcpImporter(working_dir, notifications).import_file(pack)
        assert "plain.pcp" in recorder.messages(NotificationLevel.ERROR)[0]
