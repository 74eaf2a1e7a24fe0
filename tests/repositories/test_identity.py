from pathlib import PurePosixPath

import pytest

from web_access_mcp.repositories.identity import ReferenceKind, RepositoryIdentity, RepositoryReference, parse_repository_url

HELLO = RepositoryIdentity(host="github.com", owner="octo", name="hello")


def test_identity():
    assert str(HELLO) == "octo/hello"
    assert HELLO.clone_url == "https://github.com/octo/hello.git"
    assert HELLO.relative_path == PurePosixPath("github.com/octo/hello")


def test_identity_is_hashable():
    assert {HELLO: 1}[RepositoryIdentity(host="github.com", owner="octo", name="hello")] == 1


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://github.com/octo/hello", RepositoryReference(identity=HELLO)),
        ("https://github.com/octo/hello/", RepositoryReference(identity=HELLO)),
        ("https://github.com/octo/hello.git", RepositoryReference(identity=HELLO)),
        ("http://www.github.com/octo/hello", RepositoryReference(identity=HELLO)),
        (
            "https://github.com/octo/hello/tree/main",
            RepositoryReference(identity=HELLO, kind=ReferenceKind.TREE, ref="main"),
        ),
        (
            "https://github.com/octo/hello/tree/v1.2/docs/api",
            RepositoryReference(identity=HELLO, kind=ReferenceKind.TREE, ref="v1.2", path="docs/api"),
        ),
        (
            "https://github.com/octo/hello/blob/main/src/app.py",
            RepositoryReference(identity=HELLO, kind=ReferenceKind.BLOB, ref="main", path="src/app.py"),
        ),
    ],
)
def test_parse_repository_url(url: str, expected: RepositoryReference):
    assert parse_repository_url(url) == expected


@pytest.mark.parametrize(
    "url",
    [
        "https://example.com/octo/hello",
        "https://github.com/octo",
        "https://github.com/",
        "https://github.com/orgs/octo",
        "https://github.com/topics/python",
        "https://github.com/octo/hello/issues/12",
        "https://github.com/octo/hello/pull/3",
        "https://github.com/octo/hello/tree",
        "https://github.com/octo/..",
        "ftp://github.com/octo/hello",
    ],
)
def test_parse_non_repository_urls(url: str):
    assert parse_repository_url(url) is None
