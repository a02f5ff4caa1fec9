from cmr_dicom_import.workers import optimal_workers


def test_optimal_workers_never_exceeds_item_count():
    assert optimal_workers(3, max_workers=8) == 3
    assert optimal_workers(4, max_workers=10, min_workers=5) == 4


def test_optimal_workers_prefers_nearby_divisor_when_available():
    assert optimal_workers(12, max_workers=10, min_workers=3) == 6
    assert optimal_workers(24, max_workers=10, min_workers=4) == 8


def test_optimal_workers_falls_back_to_max_for_prime_counts():
    assert optimal_workers(97, max_workers=10, min_workers=4) == 10


def test_optimal_workers_handles_empty_jobs():
    assert optimal_workers(0, max_workers=8) == 1
    assert optimal_workers(5, max_workers=0) == 1
