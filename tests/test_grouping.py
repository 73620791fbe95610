# tests/test_grouping.py

import threading

import pytest

from photo_cleaner.core.batch_processor import BatchProcessor
from photo_cleaner.core.distance import stack_fingerprints
from photo_cleaner.core.exceptions import GroupPersistenceError
from photo_cleaner.core.grouping import (GroupingEngine, derive_group_key, seed_expansion_clusters,
                                         select_keep, union_find_clusters)
from photo_cleaner.core.models import FingerprintSource

X = "0" * 64
Y = "f" * 64


@pytest.fixture
def engine(database, group_store, stub_fingerprinter):
    return GroupingEngine(database, group_store, stub_fingerprinter({}))


@pytest.fixture
def scenario(make_photo):
    """A and B share a fingerprint, C is unrelated"""
    return [
        make_photo("a", file_size=3000, fingerprint=X),
        make_photo("b", file_size=1000, fingerprint=X),
        make_photo("c", file_size=500, fingerprint=Y),
    ]


def test_exact_match_scenario(engine, database, scenario):
    outcome = engine.run(scenario, threshold=0)
    a, b, c = scenario

    assert len(outcome.groups) == 1
    group = outcome.groups[0]
    assert {p.id for p in group.photos} == {a.id, b.id}
    assert group.recommended_keep_id == a.id
    assert outcome.duplicates_found == 1
    assert outcome.potential_space_saved == 1000
    assert outcome.analyzed_photos == 3
    assert outcome.errors == []

    assert database.get_photo(b.id).is_duplicate
    assert not database.get_photo(a.id).is_duplicate
    assert not database.get_photo(c.id).is_duplicate


def test_space_saved_matches_groups(engine, make_photo, make_fingerprint):
    photos = [
        make_photo("a", file_size=100, fingerprint=make_fingerprint(0)),
        make_photo("b", file_size=900, fingerprint=make_fingerprint(3)),
        make_photo("c", file_size=400, fingerprint=make_fingerprint(5)),
        make_photo("d", file_size=700, fingerprint=make_fingerprint(200)),
        make_photo("e", file_size=800, fingerprint=make_fingerprint(204)),
    ]
    outcome = engine.run(photos, threshold=10)

    assert len(outcome.groups) == 2
    assert outcome.potential_space_saved == sum(
        g.total_size - g.recommended_keep.file_size for g in outcome.groups
    )
    for group in outcome.groups:
        keep = group.recommended_keep
        assert all(keep.file_size >= p.file_size for p in group.photos)


@pytest.mark.parametrize("distance,grouped", [(10, True), (11, False)])
def test_threshold_is_inclusive(engine, make_photo, make_fingerprint, distance, grouped):
    photos = [
        make_photo("a", fingerprint=make_fingerprint(0)),
        make_photo("b", fingerprint=make_fingerprint(distance)),
    ]
    outcome = engine.run(photos, threshold=10)
    assert bool(outcome.groups) is grouped


def test_default_threshold_comes_from_engine(database, group_store, stub_fingerprinter,
                                             make_photo, make_fingerprint):
    engine = GroupingEngine(database, group_store, stub_fingerprinter({}),
                            near_duplicate_threshold=2)
    photos = [
        make_photo("a", fingerprint=make_fingerprint(0)),
        make_photo("b", fingerprint=make_fingerprint(3)),
    ]
    assert engine.run(photos).groups == []


def test_invalid_threshold(engine, scenario):
    with pytest.raises(ValueError):
        engine.run(scenario, threshold=257)
    with pytest.raises(ValueError):
        engine.run(scenario, threshold=-1)


def test_rerun_is_idempotent(engine, group_store, scenario):
    engine.run(scenario, threshold=0)
    outcome = engine.run(scenario, threshold=0)

    groups = group_store.get_all_groups()
    assert len(groups) == 1
    assert groups[0].photo_count == 2
    assert outcome.duplicates_found == 1


def test_rerun_merges_new_member(engine, group_store, scenario, make_photo):
    engine.run(scenario, threshold=0)
    bigger = make_photo("z", file_size=5000, fingerprint=X)
    engine.run(scenario + [bigger], threshold=0)

    groups = group_store.get_all_groups()
    assert len(groups) == 1
    assert groups[0].photo_count == 3
    assert groups[0].recommended_keep_id == bigger.id


def test_clear_existing_groups(engine, database, group_store, scenario):
    engine.run(scenario, threshold=0)
    a, b, c = scenario

    b.fingerprint = Y
    outcome = engine.run(scenario, threshold=0, clear_existing_groups=True)

    groups = group_store.get_all_groups()
    assert len(groups) == 1
    assert {p.id for p in groups[0].photos} == {b.id, c.id}
    assert groups[0].recommended_keep_id == b.id
    assert outcome.potential_space_saved == 500
    assert not database.get_photo(a.id).is_duplicate
    assert not database.get_photo(b.id).is_duplicate
    assert database.get_photo(c.id).is_duplicate


def test_reject_then_rerun_regroups(engine, group_store, scenario):
    engine.run(scenario, threshold=0)
    group_store.reject_group(group_store.get_all_groups()[0].id)
    assert group_store.get_all_groups() == []

    engine.run(scenario, threshold=0)
    assert len(group_store.get_all_groups()) == 1


def test_cluster_key_is_smallest_fingerprint(make_photo):
    cluster = [make_photo("a", fingerprint="b" * 64), make_photo("b", fingerprint="a" * 64)]
    assert derive_group_key(cluster) == "a" * 64


def test_keep_tie_goes_to_first_in_cache_order(engine, make_photo):
    photos = [make_photo(name, file_size=2000, fingerprint=X) for name in ["p", "q", "r"]]
    outcome = engine.run(photos, threshold=0)
    assert outcome.groups[0].recommended_keep_id == photos[0].id
    assert select_keep(photos) is photos[0]


def test_seed_expansion_does_not_chain(make_fingerprint):
    # A~B and B~C but A and C are 12 bits apart
    fps = stack_fingerprints([make_fingerprint(n) for n in (0, 6, 12)])
    assert seed_expansion_clusters(fps, 10) == [[0, 1]]
    assert union_find_clusters(fps, 10) == [[0, 1, 2]]


def test_union_find_engine(database, group_store, stub_fingerprinter, make_photo, make_fingerprint):
    engine = GroupingEngine(database, group_store, stub_fingerprinter({}),
                            clustering="union_find")
    photos = [make_photo(name, fingerprint=make_fingerprint(n))
              for name, n in [("a", 0), ("b", 6), ("c", 12)]]
    outcome = engine.run(photos, threshold=10)
    assert len(outcome.groups) == 1
    assert outcome.groups[0].photo_count == 3


def test_unknown_clustering(database, group_store, stub_fingerprinter):
    with pytest.raises(ValueError):
        GroupingEngine(database, group_store, stub_fingerprinter({}), clustering="kmeans")


def test_photo_belongs_to_one_group(engine, group_store, make_photo, make_fingerprint):
    photos = [make_photo(name, fingerprint=make_fingerprint(n))
              for name, n in [("a", 0), ("b", 6), ("c", 12), ("d", 16)]]
    engine.run(photos, threshold=10)

    members = [p.id for g in group_store.get_all_groups() for p in g.photos]
    assert len(members) == len(set(members))


def test_supplied_fingerprints_are_normalized(engine, database, make_photo):
    photo = make_photo("a", fingerprint="ABCD")
    engine.run([photo], threshold=0)

    stored = database.get_photo(photo.id)
    assert stored.fingerprint == "abcd" + "0" * 60
    assert stored.fingerprint_source is FingerprintSource.SUPPLIED


def test_fingerprints_are_computed_once(database, group_store, stub_fingerprinter, make_photo):
    fingerprinter = stub_fingerprinter({"/photos/a.jpg": X, "/photos/b.jpg": X})
    engine = GroupingEngine(database, group_store, fingerprinter)
    photos = [make_photo("a"), make_photo("b")]

    first = engine.run(photos, threshold=0)
    assert len(first.groups) == 1
    assert len(fingerprinter.calls) == 2

    engine.run([make_photo("a"), make_photo("b")], threshold=0)
    assert len(fingerprinter.calls) == 2
    assert database.get_photo(first.groups[0].photos[0].id).fingerprint_source is FingerprintSource.IMAGE


def test_changed_photo_is_refingerprinted(database, group_store, stub_fingerprinter, make_photo):
    fingerprinter = stub_fingerprinter({"/photos/a.jpg": X})
    engine = GroupingEngine(database, group_store, fingerprinter)
    engine.run([make_photo("a")], threshold=0)

    engine.run([make_photo("a", file_size=2222)], threshold=0)
    assert len(fingerprinter.calls) == 2


def assert_exact_groups(group_store):
    for group in group_store.get_all_groups():
        assert len({p.fingerprint for p in group.photos}) == 1, group


def test_edited_photo_leaves_its_group(database, group_store, stub_fingerprinter, make_photo):
    fingerprinter = stub_fingerprinter({"/photos/a.jpg": X, "/photos/b.jpg": X, "/photos/c.jpg": Y})
    engine = GroupingEngine(database, group_store, fingerprinter)
    first = engine.run([make_photo("a"), make_photo("b"), make_photo("c")], threshold=0)
    assert {p.local_identifier for p in first.groups[0].photos} == {"id-a", "id-b"}

    # b was edited and now looks like c
    fingerprinter.values["/photos/b.jpg"] = Y
    a, b, c = make_photo("a"), make_photo("b", file_size=1001), make_photo("c")
    engine.run([a, b, c], threshold=0)

    groups = group_store.get_all_groups()
    assert len(groups) == 1
    assert {p.id for p in groups[0].photos} == {b.id, c.id}
    assert groups[0].recommended_keep_id == b.id
    assert group_store.find_group_for_photos([a.id]) is None
    assert not database.get_photo(a.id).is_duplicate
    assert not database.get_photo(b.id).is_duplicate
    assert database.get_photo(c.id).is_duplicate
    assert_exact_groups(group_store)


def test_edited_photo_dissolves_pair(database, group_store, stub_fingerprinter, make_photo):
    fingerprinter = stub_fingerprinter({"/photos/a.jpg": X, "/photos/b.jpg": X})
    engine = GroupingEngine(database, group_store, fingerprinter)
    engine.run([make_photo("a"), make_photo("b")], threshold=0)

    fingerprinter.values["/photos/b.jpg"] = Y
    outcome = engine.run([make_photo("a"), make_photo("b", file_size=1001)], threshold=0)

    assert outcome.groups == []
    assert group_store.get_all_groups() == []
    assert not any(p.is_duplicate for p in database.get_all_photos())


def test_changed_supplied_fingerprint_leaves_group(engine, group_store, scenario):
    engine.run(scenario, threshold=0)
    a, b, c = scenario

    b.fingerprint = Y
    engine.run(scenario, threshold=0)

    groups = group_store.get_all_groups()
    assert [{p.id for p in g.photos} for g in groups] == [{b.id, c.id}]
    assert_exact_groups(group_store)


def test_lowered_threshold_does_not_merge_into_stale_group(engine, group_store, make_photo,
                                                           make_fingerprint):
    a = make_photo("a", fingerprint=make_fingerprint(6))
    b = make_photo("b", fingerprint=make_fingerprint(12))
    engine.run([a, b], threshold=10)
    assert len(group_store.get_all_groups()) == 1

    d = make_photo("d", fingerprint=make_fingerprint(12))
    engine.run([a, b, d], threshold=0)

    groups = group_store.get_all_groups()
    assert [{p.id for p in g.photos} for g in groups] == [{b.id, d.id}]
    assert_exact_groups(group_store)


def test_smaller_key_still_merges_into_matching_group(engine, group_store, make_photo,
                                                     make_fingerprint):
    photos = [make_photo(name, fingerprint=make_fingerprint(6)) for name in ("a", "b")]
    engine.run(photos, threshold=10)
    group_id = group_store.get_all_groups()[0].id

    z = make_photo("z", fingerprint=make_fingerprint(0))
    engine.run(photos + [z], threshold=10)

    groups = group_store.get_all_groups()
    assert len(groups) == 1
    assert groups[0].id == group_id
    assert groups[0].photo_count == 3


def test_failed_fingerprint_excludes_photo(database, group_store, stub_fingerprinter, make_photo):
    fingerprinter = stub_fingerprinter({"/photos/a.jpg": X, "/photos/b.jpg": X})
    engine = GroupingEngine(database, group_store, fingerprinter)
    photos = [make_photo("a"), make_photo("b"), make_photo("broken")]

    outcome = engine.run(photos, threshold=0)

    assert len(outcome.groups) == 1
    assert outcome.analyzed_photos == 2
    assert len(outcome.errors) == 1
    assert outcome.errors[0].item == "id-broken"
    assert outcome.errors[0].kind == "fingerprint"


def test_fallback_fingerprint_is_tagged(database, group_store, stub_fingerprinter, make_photo):
    engine = GroupingEngine(database, group_store, stub_fingerprinter({}, allow_fallback=True))
    photo = make_photo("a", width=640, height=480)
    outcome = engine.run([photo], threshold=0)

    assert outcome.errors == []
    assert database.get_photo(photo.id).fingerprint_source is FingerprintSource.FALLBACK


def test_group_failure_is_isolated(engine, group_store, make_photo, monkeypatch):
    photos = [
        make_photo("a", fingerprint=X), make_photo("b", fingerprint=X),
        make_photo("c", fingerprint=Y), make_photo("d", fingerprint=Y),
    ]
    original = group_store.create_group

    def failing_create(group_key, member_photo_ids, recommended_keep_id=None):
        if group_key == X:
            raise GroupPersistenceError(group_key, "disk I/O error")
        return original(group_key, member_photo_ids, recommended_keep_id)

    monkeypatch.setattr(group_store, "create_group", failing_create)
    outcome = engine.run(photos, threshold=0)

    assert len(outcome.groups) == 1
    assert outcome.groups[0].group_key == Y
    assert [(e.item, e.kind) for e in outcome.errors] == [(X, "group")]


def test_progress_reporting(engine, scenario):
    events = []
    engine.run(scenario, threshold=0, on_progress=lambda p, m: events.append((p, m)))

    percents = [p for p, _ in events]
    assert percents == sorted(percents)
    assert all(0 <= p <= 100 for p in percents)
    assert (90.0, "Grouping duplicates") in events
    assert max(p for p, m in events if m.startswith("Analyzing")) <= 80


def test_cancel_before_start(engine, group_store, scenario):
    cancel = threading.Event()
    cancel.set()
    outcome = engine.run(scenario, threshold=0, cancel_event=cancel)

    assert outcome.cancelled
    assert outcome.groups == []
    assert group_store.get_all_groups() == []


def test_cancel_during_grouping(engine, group_store, scenario):
    cancel = threading.Event()

    def on_progress(percent, message):
        if message == "Grouping duplicates":
            cancel.set()

    outcome = engine.run(scenario, threshold=0, on_progress=on_progress, cancel_event=cancel)

    assert outcome.cancelled
    assert group_store.get_all_groups() == []


def test_parallel_fingerprinting(database, group_store, stub_fingerprinter, make_photo,
                                 make_fingerprint):
    values = {f"/photos/p{i}.jpg": make_fingerprint(i % 3 * 100) for i in range(12)}
    engine = GroupingEngine(database, group_store, stub_fingerprinter(values),
                            batch_processor=BatchProcessor(n_workers=4, show_progress=False))
    outcome = engine.run([make_photo(f"p{i}") for i in range(12)], threshold=0)

    assert len(outcome.groups) == 3
    assert outcome.duplicates_found == 9


def test_find_similar(engine, make_photo, make_fingerprint):
    photos = [make_photo(name, fingerprint=make_fingerprint(n))
              for name, n in [("a", 8), ("b", 1), ("c", 100)]]
    engine.run(photos, threshold=0)

    matches = engine.find_similar(make_fingerprint(0), threshold=10)
    assert [(p.local_identifier, d) for p, d in matches] == [("id-b", 1), ("id-a", 8)]
