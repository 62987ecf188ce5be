import threading

import pytest

from library_app.errors import CapacityError, ConflictError, NotFoundError, ValidationError

ISBNS = ["9780306406157", "9780134685991", "9780596007126", "9780262033848", "9781491950357"]


@pytest.fixture
def items(lib):
    return [
        lib.catalog.create_item({"title": f"Book {n}", "author": "Author", "isbn": isbn})
        for n, isbn in enumerate(ISBNS)
    ]


def test_create_and_list_shelves(lib):
    first = lib.shelves.create_shelf({"category": "Fiction", "capacity": 3})
    second = lib.shelves.create_shelf({"category": "Science", "capacity": 2, "pos_x": 1.5, "pos_y": 2})

    assert first.shelf_number == 1
    assert second.shelf_number == 2
    assert second.pos_x == 1.5
    assert [s.id for s in lib.shelves.list_shelves()] == [first.id, second.id]
    assert [s.id for s in lib.shelves.list_shelves("fiction")] == [first.id]


@pytest.mark.parametrize("payload", [
    {"category": "Fiction", "capacity": 0},
    {"category": "", "capacity": 3},
    {"capacity": 3},
])
def test_create_shelf_rejects_invalid(lib, payload):
    with pytest.raises(ValidationError):
        lib.shelves.create_shelf(payload)


def test_place_item_assigns_lowest_free_position(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 3})

    assert lib.shelves.place_item(items[0].id, shelf.id, 2).position == 2
    assert lib.shelves.place_item(items[1].id, shelf.id).position == 1
    assert lib.shelves.place_item(items[2].id, shelf.id).position == 3
    assert [i.id for i in lib.shelves.shelf_contents(shelf.id)] == [items[1].id, items[0].id, items[2].id]


def test_shelf_capacity_is_enforced(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 2})
    lib.shelves.place_item(items[0].id, shelf.id)
    lib.shelves.place_item(items[1].id, shelf.id)

    with pytest.raises(CapacityError):
        lib.shelves.place_item(items[2].id, shelf.id)
    assert lib.shelves.occupancy(shelf.id) == 2
    assert lib.catalog.get_item(items[2].id).shelf_id is None


def test_position_conflict(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 3})
    lib.shelves.place_item(items[0].id, shelf.id, 1)
    with pytest.raises(ConflictError):
        lib.shelves.place_item(items[1].id, shelf.id, 1)


def test_full_shelf_reports_capacity_before_position(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 1})
    lib.shelves.place_item(items[0].id, shelf.id, 1)
    with pytest.raises(CapacityError):
        lib.shelves.place_item(items[1].id, shelf.id, 1)


@pytest.mark.parametrize("position", [0, -1, 2**63])
def test_invalid_position(lib, items, position):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 3})
    with pytest.raises(ValidationError):
        lib.shelves.place_item(items[0].id, shelf.id, position)


def test_place_missing_item_or_shelf(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 3})
    with pytest.raises(NotFoundError):
        lib.shelves.place_item(999, shelf.id)
    with pytest.raises(NotFoundError):
        lib.shelves.place_item(items[0].id, 999)


def test_relocate_moves_item(lib, items):
    a = lib.shelves.create_shelf({"category": "Fiction", "capacity": 2})
    b = lib.shelves.create_shelf({"category": "Science", "capacity": 2})
    lib.shelves.place_item(items[0].id, a.id)

    moved = lib.shelves.relocate_item(items[0].id, b.id, 2)
    assert (moved.shelf_id, moved.position) == (b.id, 2)
    assert lib.shelves.occupancy(a.id) == 0
    assert lib.shelves.get_shelf(a.id).last_reorganized is not None


def test_failed_relocation_keeps_original_placement(lib, items):
    a = lib.shelves.create_shelf({"category": "Fiction", "capacity": 2})
    b = lib.shelves.create_shelf({"category": "Science", "capacity": 1})
    lib.shelves.place_item(items[0].id, a.id, 2)
    lib.shelves.place_item(items[1].id, b.id)

    with pytest.raises(CapacityError):
        lib.shelves.relocate_item(items[0].id, b.id)

    item = lib.catalog.get_item(items[0].id)
    assert (item.shelf_id, item.position) == (a.id, 2)


def test_relocate_within_same_shelf(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 1})
    lib.shelves.place_item(items[0].id, shelf.id)
    moved = lib.shelves.relocate_item(items[0].id, shelf.id, 5)
    assert moved.position == 5
    assert lib.shelves.occupancy(shelf.id) == 1


def test_remove_item_from_shelf(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 1})
    lib.shelves.place_item(items[0].id, shelf.id)

    removed = lib.shelves.remove_item(items[0].id)
    assert removed.shelf_id is None and removed.position is None
    assert lib.shelves.occupancy(shelf.id) == 0
    # already unplaced: nothing happens
    assert lib.shelves.remove_item(items[0].id).shelf_id is None


def test_update_shelf_capacity(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 3})
    lib.shelves.place_item(items[0].id, shelf.id)
    lib.shelves.place_item(items[1].id, shelf.id)

    with pytest.raises(CapacityError):
        lib.shelves.update_shelf(shelf.id, {"capacity": 1})
    assert lib.shelves.update_shelf(shelf.id, {"capacity": 2, "category": "Drama"}).category == "Drama"


def test_delete_shelf(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 3})
    lib.shelves.place_item(items[0].id, shelf.id)

    with pytest.raises(ConflictError):
        lib.shelves.delete_shelf(shelf.id)
    lib.shelves.remove_item(items[0].id)
    lib.shelves.delete_shelf(shelf.id)
    with pytest.raises(NotFoundError):
        lib.shelves.get_shelf(shelf.id)


def test_auto_arrange_prefers_matching_category(lib):
    fiction = lib.shelves.create_shelf({"category": "Fiction", "capacity": 1})
    science = lib.shelves.create_shelf({"category": "Science", "capacity": 2})
    novel = lib.catalog.create_item({"title": "Novel", "author": "A", "isbn": ISBNS[0], "genre": "fiction"})
    paper = lib.catalog.create_item({"title": "Paper", "author": "B", "isbn": ISBNS[1], "genre": "science"})
    other = lib.catalog.create_item({"title": "Other", "author": "C", "isbn": ISBNS[2], "genre": "fiction"})

    placements = lib.shelves.auto_arrange()

    by_item = {p.item_id: p.shelf_id for p in placements}
    assert by_item == {novel.id: fiction.id, paper.id: science.id, other.id: science.id}
    assert lib.catalog.list_items(unplaced=True) == []


def test_auto_arrange_leaves_overflow_unplaced(lib, items):
    lib.shelves.create_shelf({"category": "Fiction", "capacity": 2})
    placements = lib.shelves.auto_arrange()
    assert len(placements) == 2
    assert lib.catalog.count_items(unplaced=True) == 3


def test_auto_arrange_selected_items(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 5})
    placements = lib.shelves.auto_arrange([items[3].id])
    assert [(p.item_id, p.shelf_id, p.position) for p in placements] == [(items[3].id, shelf.id, 1)]


def test_two_slot_shelf_scenario(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 2})
    a, b, c = items[:3]

    lib.shelves.place_item(a.id, shelf.id, 1)
    with pytest.raises(ConflictError):
        lib.shelves.place_item(b.id, shelf.id, 1)
    lib.shelves.place_item(b.id, shelf.id, 2)
    with pytest.raises(CapacityError):
        lib.shelves.place_item(c.id, shelf.id, 3)
    assert lib.shelves.occupancy(shelf.id) == 2


def test_get_shelf_out_of_range_id(lib):
    with pytest.raises(NotFoundError):
        lib.shelves.get_shelf(2**63)


def test_auto_arrange_repeated_id_placed_once(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 2})
    placements = lib.shelves.auto_arrange([items[0].id, items[0].id, items[1].id])

    assert [(p.item_id, p.position) for p in placements] == [(items[0].id, 1), (items[1].id, 2)]
    assert lib.shelves.occupancy(shelf.id) == 2
    assert lib.catalog.get_item(items[0].id).position == 1


def test_concurrent_placement_onto_last_slot(lib, items):
    shelf = lib.shelves.create_shelf({"category": "Fiction", "capacity": 2})
    lib.shelves.place_item(items[0].id, shelf.id)
    barrier = threading.Barrier(2)
    results = {}

    def place(item_id):
        barrier.wait()
        try:
            results[item_id] = lib.shelves.place_item(item_id, shelf.id)
        except CapacityError as e:
            results[item_id] = e

    threads = [threading.Thread(target=place, args=(item.id,)) for item in items[1:3]]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    failures = [r for r in results.values() if isinstance(r, CapacityError)]
    assert len(results) == 2
    assert len(failures) == 1
    assert lib.shelves.occupancy(shelf.id) == 2
    assert sorted(i.position for i in lib.shelves.shelf_contents(shelf.id)) == [1, 2]
