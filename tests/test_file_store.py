"""Tests for identifier parsing, flat-file stores and the result sink."""

from pathlib import Path

from conftest import PROFILE, read_lines, write_lines
from file_store import AccountStore, CredentialCache, FileManager, load_identifier_file
from models import ProfileData, RawAccount
from result_sink import ResultSink, extract_profile
from validator import is_valid_identifier, parse_identifier_line, parse_identifiers


def test_identifier_validation():
    assert is_valid_identifier("john.doe+tag@example.co.uk")
    assert not is_valid_identifier("not-an-address")
    assert not is_valid_identifier("missing@tld")


def test_parse_identifier_line_handles_comments_and_csv():
    assert parse_identifier_line("   ") is None
    assert parse_identifier_line("# comment") is None
    assert parse_identifier_line("John,Doe,John@Example.com") == "John@Example.com"
    assert parse_identifier_line(" plain@example.com ") == "plain@example.com"


def test_parse_identifiers_reports_invalid_and_duplicates():
    report = parse_identifiers([
        "# header",
        "a@example.com",
        "A@EXAMPLE.COM",
        "name,b@example.com",
        "broken-line",
        "",
        "c@example.com",
    ])

    assert report.identifiers == ["a@example.com", "b@example.com", "c@example.com"]
    assert report.valid == 3
    assert report.invalid == 1
    assert report.duplicates == 1
    assert "Line 5" in report.errors[0]


def test_missing_identifier_file_is_created_with_sample(tmp_path):
    path = tmp_path / "emails.txt"

    report = load_identifier_file(str(path))

    assert report.valid == 0
    assert path.exists()
    assert read_lines(str(path))[0].startswith("#")


def test_load_identifier_file(tmp_path):
    path = str(tmp_path / "emails.txt")
    write_lines(path, ["# list", "x@example.com", "y@example.com", "x@example.com"])

    report = load_identifier_file(path)

    assert report.identifiers == ["x@example.com", "y@example.com"]
    assert report.duplicates == 1


def test_file_manager_append_and_replace(tmp_path):
    manager = FileManager()
    path = str(tmp_path / "nested" / "out.txt")

    manager.append_line(path, "one")
    manager.append_line(path, "two")
    assert manager.read_lines(path) == ["one", "two"]

    manager.write_lines(path, ["three"])
    assert manager.read_lines(path) == ["three"]
    assert not Path(path + ".tmp").exists()


def test_credential_cache_strips_bearer_and_skips_comments(tmp_path):
    path = str(tmp_path / "tokens.txt")
    write_lines(path, ["# cached", "Bearer abc", "def", "", "abc"])

    cache = CredentialCache(path)

    assert cache.load() == ["abc", "def"]


def test_credential_cache_merge_is_a_union(tmp_path):
    path = str(tmp_path / "tokens.txt")
    write_lines(path, ["abc", "def"])
    cache = CredentialCache(path)

    merged = cache.merge(["Bearer def", "ghi", "ghi"])

    assert merged == ["abc", "def", "ghi"]
    assert read_lines(path) == ["abc", "def", "ghi"]


def test_credential_cache_remove(tmp_path):
    path = str(tmp_path / "tokens.txt")
    write_lines(path, ["abc", "def", "ghi"])
    cache = CredentialCache(path)

    assert cache.remove(["def", "zzz"]) == 1
    assert cache.load() == ["abc", "ghi"]
    assert cache.remove([]) == 0


def test_missing_credential_cache_is_empty(tmp_path):
    assert CredentialCache(str(tmp_path / "none.txt")).load() == []


def test_account_store_load_and_remove(tmp_path):
    path = str(tmp_path / "accounts.txt")
    write_lines(path, ["# accounts", "one@example.com|secret1", "malformed", "two@example.com|secret2", "|x"])
    accounts = AccountStore(path)

    loaded = accounts.load()
    assert [a.identifier for a in loaded] == ["one@example.com", "two@example.com"]

    accounts.remove(RawAccount(identifier="one@example.com", secret="secret1"))

    assert [a.identifier for a in accounts.load()] == ["two@example.com"]
    assert read_lines(path)[0] == "# accounts"


def test_missing_account_file_is_created_with_sample(tmp_path):
    path = tmp_path / "accounts.txt"

    assert AccountStore(str(path)).load() == []
    assert path.exists()
    assert all(line.startswith("#") for line in read_lines(str(path)))


def test_extract_profile_variants():
    profile = extract_profile(PROFILE)
    assert profile.name == "Jane Doe"
    assert profile.url == "https://www.linkedin.com/in/janedoe"
    assert profile.location == "Berlin"
    assert profile.extra == "500"
    assert profile.is_usable

    assert extract_profile(b'{"persons": [{"displayName": "null"}]}').is_usable is False
    assert extract_profile('{"persons": [{"displayName": "{}"}]}').is_usable is False
    assert extract_profile({"persons": []}).is_usable is False
    assert extract_profile("not json").is_usable is False
    assert extract_profile(None).is_usable is False
    assert extract_profile({"persons": [{"displayName": "A", "connectionCount": 12.0}]}).extra == "12"
    assert extract_profile({"persons": [{"displayName": "A", "connectionCount": "500+"}]}).extra == "500+"


def test_result_sink_writes_once_per_identifier(tmp_path):
    path = str(tmp_path / "hit.txt")
    sink = ResultSink(path)
    profile = ProfileData(name="Jane|Doe", url="u", location="l", extra="5")

    assert sink.write("Jane@Example.com", profile)
    assert not sink.write("jane@example.com", profile)

    assert read_lines(path) == ["Jane@Example.com|Jane/Doe|u|l|5"]
    assert sink.count == 1


def test_result_sink_preloads_existing_results(tmp_path):
    path = str(tmp_path / "hit.txt")
    write_lines(path, ["old@example.com|Old|u|l|1"])

    sink = ResultSink(path)

    assert sink.contains("OLD@example.com")
    assert not sink.write("old@example.com", ProfileData(name="Again"))
    assert sink.write("new@example.com", ProfileData(name="New"))
    assert len(read_lines(path)) == 2
