from cmr_dicom_import.grid import DimensionClass, classify_dimensions, group_by_size, scan_image_dimensions
from cmr_dicom_import.records import ImageRecord


def image(columns, rows, slices, times):
    return ImageRecord(columns=columns, rows=rows, slices=slices, temporal_positions=times)


def test_classify_dimensions():
    assert classify_dimensions(image(64, 64, 20, 25)) == (DimensionClass.IMAGE_3DT, (64, 64, 20, 25))
    assert classify_dimensions(image(64, 64, 20, 1)) == (DimensionClass.IMAGE_3D, (64, 64, 20))
    assert classify_dimensions(image(64, 64, 1, 25)) == (DimensionClass.IMAGE_2DT, (64, 64, 25))
    assert classify_dimensions(image(64, 64, 1, 1)) == (DimensionClass.IMAGE_2D, (64, 64))
    assert classify_dimensions(image(64, 64, 0, 0)) == (DimensionClass.IMAGE_2D, (64, 64))


def test_degenerate_images_have_no_class():
    assert classify_dimensions(image(1, 64, 20, 25)) is None
    assert classify_dimensions(image(0, 0, 0, 0)) is None


def test_group_by_size_orders_lexicographically():
    buckets = group_by_size([(0, (4, 4, 3)), (1, (2, 8, 3)), (2, (4, 4, 3)), (3, (4, 4, 2))])
    assert [b.size for b in buckets] == [(2, 8, 3), (4, 4, 2), (4, 4, 3)]
    assert [b.image_ids for b in buckets] == [[1], [3], [0, 2]]


def test_scan_image_dimensions_has_every_class():
    images = [image(4, 4, 3, 2), image(4, 4, 3, 2), image(4, 4, 1, 1), image(1, 1, 1, 1), image(8, 8, 3, 2)]

    buckets = scan_image_dimensions(images)

    assert set(buckets) == set(DimensionClass)
    assert buckets[DimensionClass.IMAGE_2DT] == []
    assert buckets[DimensionClass.IMAGE_3D] == []
    assert [(b.size, b.image_ids) for b in buckets[DimensionClass.IMAGE_3DT]] == [
        ((4, 4, 3, 2), [0, 1]),
        ((8, 8, 3, 2), [4]),
    ]
    assert [b.image_ids for b in buckets[DimensionClass.IMAGE_2D]] == [[2]]
    assert len(buckets[DimensionClass.IMAGE_3DT][0]) == 2


def test_scan_image_dimensions_is_idempotent():
    images = [image(4, 4, 3, 2), image(8, 8, 1, 5), image(4, 4, 3, 2), image(4, 4, 3, 1), image(2, 1, 1, 1)]
    sizes_before = [(i.grid_size, i.n_dimensions) for i in images]

    first = scan_image_dimensions(images)
    second = scan_image_dimensions(images)

    assert first == second
    assert [(i.grid_size, i.n_dimensions) for i in images] == sizes_before
