from pathlib import Path

import polars as pl
import pytest

from cmr_dicom_import import DicomDirImporter, DicomDirImporterCMR
from cmr_dicom_import.scan_cache import (
    directory_key,
    get_cache_directory,
    get_cache_path,
    image_table,
    iterate_cached_scans,
    load_or_import,
)


def test_cache_directory_precedence(monkeypatch, tmp_path):
    monkeypatch.setenv("CMR_DICOM_IMPORT_CACHE_DIR", str(tmp_path / "env"))
    assert get_cache_directory(str(tmp_path / "cli")) == tmp_path / "cli"
    assert get_cache_directory() == tmp_path / "env"

    monkeypatch.delenv("CMR_DICOM_IMPORT_CACHE_DIR")
    assert "cmr-dicom-import" in str(get_cache_directory())


def test_cache_path_ignores_trailing_slash(tmp_path):
    assert directory_key("/data/study") == directory_key("/data/study/")
    assert directory_key("/data/study") != directory_key("/data/other")

    path = get_cache_path("/data/study", tmp_path)
    assert path.parent == tmp_path / "scans"
    assert path.name == f"{directory_key('/data/study')}_scan.bin"


class TestLoadOrImport:
    def test_imports_then_loads_from_cache(self, study_dir, tmp_path, monkeypatch):
        cache_dir = tmp_path / "cache"

        first = load_or_import(str(study_dir), cache_dir=str(cache_dir))
        assert isinstance(first, DicomDirImporterCMR)
        assert get_cache_path(str(study_dir), cache_dir).exists()

        def fail_import(self):
            pytest.fail("directory was scanned again")

        monkeypatch.setattr(DicomDirImporter, "import_", fail_import)
        second = load_or_import(str(study_dir) + "/", cache_dir=str(cache_dir))

        assert second.num_images == first.num_images
        assert second.directory == first.directory

    def test_no_cache_does_not_write(self, study_dir, tmp_path):
        cache_dir = tmp_path / "cache"

        importer = load_or_import(str(study_dir), cache_dir=str(cache_dir), use_cache=False, cmr=False)

        assert type(importer) is DicomDirImporter
        assert not (cache_dir / "scans").exists()

    def test_unreadable_cache_is_replaced(self, study_dir, tmp_path):
        cache_dir = tmp_path / "cache"
        cache_path = get_cache_path(str(study_dir), cache_dir)
        cache_path.parent.mkdir(parents=True)
        cache_path.write_bytes(b"stale")

        importer = load_or_import(str(study_dir), cache_dir=str(cache_dir))

        assert importer.num_images == 3
        assert cache_path.read_bytes().startswith(b"CMRSCAN")

    def test_force_rebuild(self, study_dir, tmp_path):
        cache_dir = tmp_path / "cache"
        load_or_import(str(study_dir), cache_dir=str(cache_dir))
        (study_dir / "s3_0001.dcm").unlink()

        importer = load_or_import(str(study_dir), cache_dir=str(cache_dir), force_rebuild=True)

        assert importer.num_images == 2

    def test_empty_directory(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        assert load_or_import(str(empty), cache_dir=str(tmp_path / "cache")) is None


def test_iterate_cached_scans(study_dir, tmp_path):
    cache_dir = tmp_path / "cache"
    assert iterate_cached_scans(cache_dir) == []

    load_or_import(str(study_dir), cache_dir=str(cache_dir))

    cached = iterate_cached_scans(cache_dir)
    assert cached == [(directory_key(str(study_dir)), get_cache_path(str(study_dir), cache_dir))]


def test_image_table(study_dir, tmp_path):
    importer = load_or_import(str(study_dir), use_cache=False)
    importer.add_3dt_flow_image(0)

    table = image_table(importer)

    assert table.height == 3
    assert table.schema["image_id"] == pl.UInt32
    assert table["dimension_class"].to_list() == ["3dt", "3d", "2d"]
    assert table["role"].to_list() == ["flow_3dt", None, None]
    assert table["slices"].to_list() == [3, 3, 1]
    assert table["temporal_resolution"][0] == pytest.approx(50.0)
    assert table["sequence_name"].to_list() == ["fl3d1", "tfl3d1", "tfi2d1"]

    output = tmp_path / "images.parquet"
    table.write_parquet(output)
    assert pl.read_parquet(output).equals(table)


def test_image_table_without_roles(study_dir):
    importer = load_or_import(str(study_dir), use_cache=False, cmr=False)
    assert image_table(importer)["role"].null_count() == 3
    assert Path(importer.directory).is_dir()
