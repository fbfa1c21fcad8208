import pytest

from jsonpath_extractor import MISSING, extract, extract_all, parse_body, parse_path

DOC = {
    "data": {
        "token": "abc",
        "user": {"id": 7, "name": None},
        "items": [{"id": 1, "tags": ["a"]}, {"id": 2, "tags": ["b", "c"]}],
    },
    "meta": {"id": 99},
    "odd key": "spaced",
}


@pytest.mark.parametrize("path, expected", [
    ("$.data.token", "abc"),
    ("data.token", "abc"),
    ("$['data']['token']", "abc"),
    ('$["odd key"]', "spaced"),
    ("$.data.items[1].id", 2),
    ("$.data.items[-1].tags[0]", "b"),
    ("$.data.items[*].id", 1),
    ("$..id", 7),
    ("$.data.user.name", None),
    ("$", DOC),
])
def test_extract(path, expected):
    assert extract(DOC, path) == expected


@pytest.mark.parametrize("path", ["$.data.missing", "$.data.items[5]", "$.data.token.deeper", "$.data[", ""])
def test_extract_missing(path):
    assert extract(DOC, path) is MISSING


def test_extract_all_document_order():
    assert extract_all(DOC, "$..id") == [7, 1, 2, 99]
    assert extract_all(DOC, "$.data.items[*].tags[*]") == ["a", "b", "c"]


def test_missing_is_falsy_singleton():
    assert not MISSING
    assert repr(MISSING) == "MISSING"


def test_parse_path_tokens():
    assert parse_path("$.a[0]..b['c d'][*]") == [
        ("member", "a"), ("index", 0), ("deep", "b"), ("member", "c d"), ("wildcard", None),
    ]
    with pytest.raises(ValueError):
        parse_path("$.a[x]")


def test_parse_body():
    assert parse_body('{"a": 1}') == {"a": 1}
    assert parse_body(b"[1, 2]") == [1, 2]
    assert parse_body("not json") is MISSING
    assert parse_body("  ") is MISSING
