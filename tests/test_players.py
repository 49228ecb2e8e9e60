from datetime import date

from scrapbook.players import CharacterClass, PlayerDatabase, PlayerRecord

from fakes import item, record


def test_upsert_replaces_previous_equipment():
    db = PlayerDatabase()
    x, y, z = item(1), item(2), item(3)
    db.upsert(record(1, "alice", items=[x, y]))
    db.upsert(record(1, "alice", items=[y, z]))

    assert db.owners(x) == frozenset()
    assert x not in db.equipment_index()
    assert db.owners(y) == {1}
    assert db.owners(z) == {1}
    assert len(db) == 1


def test_upsert_is_idempotent():
    db = PlayerDatabase()
    rec = record(1, "alice", items=[item(1), item(2)])
    db.upsert(rec)
    first = db.equipment_index()
    db.upsert(rec)
    assert db.equipment_index() == first


def test_shared_items_keep_other_owners():
    db = PlayerDatabase()
    x = item(1)
    db.upsert(record(1, "alice", items=[x]))
    db.upsert(record(2, "bob", items=[x]))
    db.upsert(record(1, "alice", items=[]))
    assert db.owners(x) == {2}


def test_lookup_name_follows_renames():
    db = PlayerDatabase()
    db.upsert(record(1, "Alice"))
    assert db.lookup_name("alice").uid == 1
    db.upsert(record(1, "Alicia"))
    assert db.lookup_name("alice") is None
    assert db.lookup_name("ALICIA").uid == 1


def test_low_equipment_bucket():
    db = PlayerDatabase()
    db.upsert(record(1, "veteran", level=150, items=[item(1), item(2)]))
    db.upsert(record(2, "rookie", level=50, items=[]))
    db.upsert(record(3, "elder", level=300, items=[item(1)]))
    db.upsert(record(4, "geared", level=200, items=[item(i) for i in range(1, 6)]))

    assert [p.name for p in db.low_equipment(9999)] == ["elder", "veteran"]
    assert [p.name for p in db.low_equipment(200)] == ["veteran"]

    db.upsert(record(1, "veteran", level=150, items=[item(i) for i in range(1, 6)]))
    assert [p.name for p in db.low_equipment(9999)] == ["elder"]


def test_adopt_takes_over_contents():
    live, fresh = PlayerDatabase(), PlayerDatabase()
    live.upsert(record(1, "old", items=[item(1)]))
    fresh.upsert(record(2, "new", items=[item(2)]))

    live.adopt(fresh)
    assert live.get(1) is None
    assert live.lookup_name("new").uid == 2
    assert live.owners(item(2)) == {2}
    assert len(fresh) == 0


def test_record_json_without_volatile_fields():
    rec = record(7, "zed", level=42, items=[item(2), item(1)], stats=900, fetch_date=date(2024, 1, 2))
    data = rec.to_json(volatile=False)
    assert "stats" not in data
    assert "fetch_date" not in data
    assert [e["model_id"] for e in data["equipment"]] == [1, 2]

    back = PlayerRecord.from_json(data)
    assert back == rec.without_volatile()

    full = PlayerRecord.from_json(rec.to_json())
    assert full.stats == 900
    assert full.fetch_date == date(2024, 1, 2)


def test_record_staleness():
    rec = record(1, "a", fetch_date=date(2024, 1, 1))
    assert not rec.is_stale(date(2024, 1, 5))
    assert rec.is_stale(date(2024, 1, 20))
    assert record(2, "b").is_stale()


def test_character_class_parse():
    assert CharacterClass.parse("Druid") is CharacterClass.DRUID
    assert CharacterClass.parse(3) is CharacterClass.SCOUT
    assert CharacterClass.parse(None) is None
    assert CharacterClass.parse("Pirate") is None
