"""Thread pool sizing."""


def optimal_workers(n_items, max_workers, min_workers=1):
    """
    Choose the number of worker threads for n_items independent tasks.

    Never more workers than items. When there are more items than
    max_workers, prefer a worker count that divides the items evenly, as
    long as it is at least min_workers; otherwise use max_workers.

    Args:
        n_items: number of tasks
        max_workers: upper bound on threads
        min_workers: smallest divisor worth using instead of max_workers

    Returns:
        number of workers, at least 1

    Examples:
        >>> optimal_workers(3, 8)
        3
        >>> optimal_workers(8, 8)
        8
        >>> optimal_workers(24, 10, min_workers=4)
        8
        >>> optimal_workers(97, 10, min_workers=4)
        10
    """
    max_workers = max(int(max_workers), 1)
    if n_items <= 0:
        return 1
    if n_items <= max_workers:
        return n_items

    for workers in range(max_workers, max(min_workers, 1) - 1, -1):
        if n_items % workers == 0:
            return workers

    return max_workers
