from refresher import filter_old_items, retention_cutoff

NOW = 1_750_000_000
DAY = 86400


def _items():
    return [
        {"guid": "old", "published_at": NOW - 40 * DAY},
        {"guid": "undated", "published_at": None},
        {"guid": "fresh", "published_at": NOW - DAY},
        {"guid": "boundary", "published_at": NOW - 30 * DAY},
        {"guid": "newest", "published_at": NOW},
    ]


def test_filter_keeps_newer_and_undated_items_in_order():
    cutoff = retention_cutoff(NOW, 30)
    kept = filter_old_items(_items(), cutoff)

    assert [item["guid"] for item in kept] == ["undated", "fresh", "newest"]


def test_filter_does_not_mutate_input():
    items = _items()
    before = [dict(item) for item in items]

    kept = filter_old_items(items, retention_cutoff(NOW, 30))

    assert items == before
    assert kept is not items


def test_cutoff_disabled_for_non_positive_retention():
    assert retention_cutoff(NOW, 0) is None
    assert retention_cutoff(NOW, -3) is None

    items = _items()
    kept = filter_old_items(items, None)
    assert kept == items
    assert kept is not items


def test_cutoff_is_retention_days_before_now():
    assert retention_cutoff(NOW, 30) == NOW - 30 * DAY
    assert retention_cutoff(float(NOW) + 0.9, 1) == NOW - DAY
