"""Tests for the snapshot catalog."""

from __future__ import annotations

from fakes import descriptor
from snaprestore.session.catalog import SnapshotCatalog
from snaprestore.types import Direction


def _loaded() -> SnapshotCatalog:
    catalog = SnapshotCatalog()
    catalog.load(
        [
            descriptor('db/a.dump', day=1),
            descriptor('db/c.dump', day=3),
            descriptor('db/', day=4),
            descriptor('other/x.dump', day=5),
            descriptor('db/b.dump', day=2),
        ],
        prefix='db/',
    )
    return catalog


def test_load_sorts_newest_first_and_filters() -> None:
    catalog = _loaded()

    assert [d.key for d in catalog.items] == ['db/c.dump', 'db/b.dump', 'db/a.dump']
    assert catalog.selected == 0
    assert catalog.loaded
    assert not catalog.loading


def test_move_wraps() -> None:
    catalog = _loaded()

    assert catalog.move(Direction.PREVIOUS).key == 'db/a.dump'
    assert catalog.move(Direction.NEXT).key == 'db/c.dump'


def test_select_clamps() -> None:
    catalog = _loaded()

    assert catalog.select(10).key == 'db/a.dump'
    assert catalog.select(-3).key == 'db/c.dump'


def test_empty_catalog_has_no_selection() -> None:
    catalog = SnapshotCatalog()
    catalog.load([])

    assert catalog.is_empty
    assert catalog.selected is None
    assert catalog.selected_descriptor is None
    assert catalog.move(Direction.NEXT) is None
    assert catalog.select(0) is None


def test_reload_resets_selection() -> None:
    catalog = _loaded()
    catalog.select(2)

    catalog.load([descriptor('db/z.dump')], prefix='db/')

    assert catalog.selected == 0
    assert catalog.selected_descriptor.key == 'db/z.dump'


def test_fail_discards_listing() -> None:
    catalog = _loaded()

    catalog.fail('access denied')

    assert catalog.is_empty
    assert catalog.selected is None
    assert catalog.error_message == 'access denied'

    catalog.load([descriptor('db/a.dump')])
    assert catalog.error_message == ''
