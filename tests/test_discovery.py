import unicodedata

from Inkport.discovery import discover_sources, load_source_records


def test_discover_sorted_and_deduplicated(tmp_path, write_json):
    write_json("data/comics-b.json", [])
    write_json("data/comics-a.json", [])
    write_json("comics.json", [])

    # Overlapping patterns must not yield the same file twice
    files = discover_sources(["data/comics*.json", "data/*.json", "comics*.json"], tmp_path)

    assert [p.name for p in files] == ["comics.json", "comics-a.json", "comics-b.json"]
    assert files == discover_sources(["comics*.json", "data/*.json"], tmp_path)


def test_discover_zero_matches_is_empty_not_error(tmp_path):
    assert discover_sources("users*.json", tmp_path) == []


def test_discover_recursive_glob(tmp_path, write_json):
    write_json("seed/a/chapters.json", [])
    write_json("seed/b/c/chapters.json", [])
    files = discover_sources("seed/**/chapters.json", tmp_path)
    assert len(files) == 2


def test_load_wraps_bare_object_and_tags_provenance(write_json):
    arr = write_json("comics.json", [{"title": "A"}, {"title": "B"}])
    obj = write_json("single.json", {"title": "C"})

    loaded = load_source_records([arr, obj])

    assert [r.data["title"] for r in loaded.records] == ["A", "B", "C"]
    assert loaded.records[1].source == "comics.json#1"
    assert loaded.records[2].source == "single.json#0"
    assert loaded.file_errors == []


def test_load_bad_file_is_recorded_and_others_still_load(tmp_path, write_json):
    bad = tmp_path / "broken.json"
    bad.write_text("[{ not json", encoding="utf-8")
    scalar = write_json("scalar.json", 42)
    good = write_json("good.json", [{"email": "a@example.com"}])

    loaded = load_source_records([bad, scalar, good])

    assert len(loaded.records) == 1
    assert {p.split("/")[-1] for p, _ in loaded.file_errors} == {"broken.json", "scalar.json"}


def test_load_normalizes_text_to_nfc(tmp_path):
    decomposed = unicodedata.normalize("NFD", "Café")
    p = tmp_path / "works.json"
    p.write_text('[{"title": "%s"}]' % decomposed, encoding="utf-8")

    loaded = load_source_records([p])

    assert loaded.records[0].data["title"] == unicodedata.normalize("NFC", "Café")
