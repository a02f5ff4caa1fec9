import pytest

from cmr_dicom_import.assembler import (
    assemble_images,
    build_image_records,
    iter_runs,
    remove_duplicate_images,
    resolve_missing_counts,
    sort_files_by_scan_keys,
)
from cmr_dicom_import.file_metadata import ImageCounts
from cmr_dicom_import.records import FileRecord, ImageRecord


def make_files(n, series="1.2.3", **kwargs):
    return [
        FileRecord(filename=f"{series}/{i}", instance_number=i + 1, series_instance_uid=series, **kwargs)
        for i in range(n)
    ]


def test_iter_runs_splits_on_any_key_change():
    files = make_files(2, "a") + make_files(3, "b") + make_files(1, "b", image_type="M")
    assert list(iter_runs(files)) == [(0, 2), (2, 5), (5, 6)]


def test_sort_files_by_scan_keys_is_stable():
    files = [
        FileRecord(filename="b1", series_instance_uid="b"),
        FileRecord(filename="a1", series_instance_uid="a"),
        FileRecord(filename="b2", series_instance_uid="b"),
        FileRecord(filename="a2", series_instance_uid="a"),
    ]
    sort_files_by_scan_keys(files)
    assert [f.filename for f in files] == ["a1", "a2", "b1", "b2"]


class TestBuildImageRecords:
    def test_exact_run_is_one_image_sorted_by_position(self):
        files = make_files(4)
        for f, location in zip(files, [3.0, 1.0, 2.0, 0.0]):
            f.slice_location = location

        images = build_image_records(files, 0, 4, ImageCounts(4, 1, 4), ImageRecord())

        assert len(images) == 1
        assert (images[0].file_start, images[0].file_end) == (0, 4)
        assert (images[0].slices, images[0].temporal_positions) == (4, 1)
        assert [f.slice_location for f in files] == [0.0, 1.0, 2.0, 3.0]

    def test_multiple_of_expected_is_split_with_suffixes(self):
        files = make_files(12)
        template = ImageRecord(series_instance_uid="1.2.3", protocol_name="flow")

        images = build_image_records(files, 0, 12, ImageCounts(3, 2, 12), template)

        assert [(i.file_start, i.file_end) for i in images] == [(0, 6), (6, 12)]
        assert images[0].series_instance_uid == "1.2.3"
        assert images[1].series_instance_uid == "1.2.3_"
        assert images[1].protocol_name == "flow_"
        assert all(f.series_instance_uid == "1.2.3" for f in files[:6])
        assert all(f.series_instance_uid == "1.2.3_" for f in files[6:])

    def test_third_fragment_gets_two_suffixes(self):
        files = make_files(6)
        images = build_image_records(files, 0, 6, ImageCounts(2, 1, 6), ImageRecord(series_instance_uid="s"))
        assert [i.series_instance_uid for i in images] == ["s", "s_", "s__"]

    def test_non_multiple_run_is_one_image_with_unknown_counts(self):
        files = make_files(7)
        images = build_image_records(files, 0, 7, ImageCounts(3, 2, 7), ImageRecord())

        assert len(images) == 1
        assert (images[0].file_start, images[0].file_end) == (0, 7)
        assert images[0].slices == 0
        assert images[0].temporal_positions == 0

    def test_unknown_counts_keep_whole_run(self):
        files = make_files(5)
        images = build_image_records(files, 0, 5, ImageCounts(None, None, 5), ImageRecord())
        assert len(images) == 1
        assert images[0].num_files == 5


class TestResolveMissingCounts:
    def test_counts_distinct_locations_and_times(self, mr_dataset, decoders):
        files = make_files(6)
        for i, f in enumerate(files):
            decoders.datasets[f.filename] = mr_dataset("1.2.3", i + 1, slice_index=i // 2, time_index=i % 2)

        counts = resolve_missing_counts(files, 0, 6, ImageCounts(), decoders)

        assert counts.slices == 3
        assert counts.temporal_positions == 2
        assert counts.number_of_frames == 6

    def test_frames_equal_to_slices_means_one_time_step(self, mr_dataset, decoders):
        files = make_files(3)
        for i, f in enumerate(files):
            decoders.datasets[f.filename] = mr_dataset("1.2.3", i + 1, slice_index=i, time_index=i)

        counts = resolve_missing_counts(files, 0, 3, ImageCounts(), decoders)

        assert counts.slices == 3
        assert counts.temporal_positions == 1

    def test_known_counts_do_not_open_files(self):
        def fail(path, stop_before_pixels=False):
            pytest.fail("file opened")

        counts = resolve_missing_counts(make_files(4), 0, 4, ImageCounts(2, 2, None), fail)
        assert (counts.slices, counts.temporal_positions, counts.number_of_frames) == (2, 2, 4)


def test_assemble_images_probes_first_file(mr_dataset, decoders):
    files = make_files(4, "a") + make_files(3, "b")
    for i, f in enumerate(files[:4]):
        decoders.datasets[f.filename] = mr_dataset("a", i + 1, slice_index=i // 2, time_index=i % 2, cardiac_images=2)
    for i, f in enumerate(files[4:]):
        decoders.datasets[f.filename] = mr_dataset("b", i + 1, slice_index=i)

    images = assemble_images(files, decoders)

    assert [(i.file_start, i.file_end) for i in images] == [(0, 4), (4, 7)]
    assert (images[0].slices, images[0].temporal_positions) == (2, 2)
    assert (images[1].slices, images[1].temporal_positions) == (3, 1)
    assert images[1].series_instance_uid == "b"


def test_remove_duplicate_images_drops_consecutive_same_range():
    images = [ImageRecord(file_start=0, file_end=3), ImageRecord(file_start=0, file_end=3), ImageRecord(file_start=3, file_end=5)]
    result = remove_duplicate_images(images)
    assert [(i.file_start, i.file_end) for i in result] == [(0, 3), (3, 5)]


RUN_COUNTS = {
    "split": ImageCounts(3, 2, 18),
    "exact": ImageCounts(4, 1, 4),
    "odd": ImageCounts(3, 2, 7),
}


@pytest.mark.parametrize(
    "layout",
    [
        [("split", 18)],
        [("exact", 4)],
        [("odd", 7)],
        [("split", 18), ("exact", 4), ("odd", 7)],
    ],
)
def test_image_records_cover_every_file_once(layout):
    files = [f for series, n in layout for f in make_files(n, series)]

    images = []
    for start, end in list(iter_runs(files)):
        series = files[start].series_instance_uid
        images += build_image_records(files, start, end, RUN_COUNTS[series], ImageRecord(series_instance_uid=series))

    assert sum(i.file_end - i.file_start for i in images) == len(files)
    assert [i.file_start for i in images[1:]] == [i.file_end for i in images[:-1]]
