import pytest

from forit.errors import PredicateError
from forit.predicates import HostPredicate


@pytest.mark.parametrize(
    "pattern, hostname, expected",
    [
        ("*", "anything.example.com", True),
        ("web*", "web1", True),
        ("web*", "db1", False),
        ("webX", "webX", True),
        ("webX", "webX2", False),
        ("web?", "web7", True),
        ("web?", "web10", False),
        ("db[0-9]", "db3", True),
        ("db[0-9]", "dbx", False),
        ("db[!0-9]", "dbx", True),
        ("db[^0-9]", "db1", False),
        ("{web,db}-*", "db-primary", True),
        ("{web,db}-*", "cache-1", False),
        ("host\\*", "host*", True),
        ("host\\*", "host1", False),
        ("a.b", "axb", False),
        ("", "whatever", True),
    ],
)
def test_glob_matching(pattern: str, hostname: str, expected: bool) -> None:
    assert HostPredicate.compile(pattern).matches(hostname) is expected


@pytest.mark.parametrize("pattern", ["web[", "web[]", "{web,db", "web\\", "db[9-0]"])
def test_invalid_patterns_raise(pattern: str) -> None:
    with pytest.raises(PredicateError):
        HostPredicate.compile(pattern)
