from app.models import CatalogEntry, StreamRecord
from app.utils import (
    catalog_identity,
    extract_external_id,
    normalize_base_url,
    stream_identity,
)


def test_extract_external_id_prefers_imdb_field():
    assert extract_external_id({"id": "tmdb:42", "imdb_id": "tt0111161"}) == "tt0111161"
    assert extract_external_id({"id": "kitsu:1", "imdbId": "tt0944947"}) == "tt0944947"


def test_extract_external_id_uses_id_shaped_like_imdb():
    assert extract_external_id({"id": "tt0944947"}) == "tt0944947"
    assert extract_external_id({"id": "tt0944947:1:2"}) == "tt0944947"
    assert extract_external_id({"id": "TT0944947"}) == "TT0944947"


def test_extract_external_id_drops_unusable_entries():
    assert extract_external_id({"id": "tmdb:1399"}) is None
    assert extract_external_id({"id": 42}) is None
    assert extract_external_id({"name": "No id"}) is None
    assert extract_external_id({"imdb_id": "  ", "id": "kitsu:1"}) is None


def test_catalog_identity_is_the_external_id():
    entry = CatalogEntry(
        external_id="tt0111161",
        display_name="The Shawshank Redemption",
        media_kind="movie",
        source_catalog_id="top",
    )
    assert catalog_identity(entry) == "tt0111161"


def test_stream_identity_hash_with_discriminators():
    key = stream_identity(
        info_hash="abc",
        file_index=2,
        url="https://ignored.example",
        binge_group="grp",
        filename="movie.mkv",
        size_bytes=1024,
        content_hash="deadbeef",
    )
    assert key == "hash:abc|idx:2|bg:grp|fn:movie.mkv|vs:1024|vh:deadbeef"


def test_stream_identity_falls_back_to_url():
    assert stream_identity(url="https://cdn.example/a.mp4") == "url:https://cdn.example/a.mp4"
    assert stream_identity(url="https://cdn.example/a.mp4", file_index=3) == (
        "url:https://cdn.example/a.mp4"
    )


def test_stream_identity_file_index_zero_is_kept():
    assert stream_identity(info_hash="abc", file_index=0) == "hash:abc|idx:0"


def test_stream_identity_is_stable_for_equal_fields():
    first = StreamRecord(info_hash="abc", file_index=1, title="Release A")
    second = StreamRecord(info_hash="abc", file_index=1, title="release a (mirror)")
    assert first.identity_key == second.identity_key


def test_stream_identity_random_when_opaque():
    first = stream_identity()
    second = stream_identity()
    assert first != second
    assert len(first) == 32


def test_record_identity_is_computed_once():
    record = StreamRecord(title="opaque")
    assert record.identity_key == record.identity_key


def test_normalize_base_url_strips_manifest():
    assert normalize_base_url("https://addon.example/abc/manifest.json") == (
        "https://addon.example/abc"
    )
    assert normalize_base_url("https://addon.example/abc/") == "https://addon.example/abc"
    assert normalize_base_url("  ") is None
    assert normalize_base_url(None) is None
