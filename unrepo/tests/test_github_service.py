import base64

import httpx
import pytest

from unrepo.core.errors import CollaboratorError, NotFoundError, ValidationError
from unrepo.features.github.service import GitHubService, parse_repo_url


@pytest.mark.parametrize(
    "value,expected",
    [
        ("https://github.com/octo/demo", ("octo", "demo")),
        ("http://www.github.com/octo/demo.git", ("octo", "demo")),
        ("github.com/octo/demo/tree/main/src", ("octo", "demo")),
        ("octo/demo", ("octo", "demo")),
    ],
)
def test_parse_repo_url(value, expected):
    assert parse_repo_url(value) == expected


@pytest.mark.parametrize("value", ["", "octo", "https://gitlab.com/octo/demo", "not a repository"])
def test_parse_repo_url_rejects(value):
    with pytest.raises(ValidationError):
        parse_repo_url(value)


def _service(handler, token="ghp_test"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return GitHubService(token, api_url="https://api.github.test", client=client)


def test_get_repository_maps_fields_and_sends_token():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["path"] = request.url.path
        return httpx.Response(
            200,
            json={
                "description": "demo",
                "stargazers_count": 12,
                "forks_count": 3,
                "language": "Go",
                "default_branch": "trunk",
            },
        )

    repo = _service(handler).get_repository("octo", "demo")

    assert repo == {"description": "demo", "stars": 12, "forks": 3, "language": "Go", "branch": "trunk"}
    assert seen == {"auth": "Bearer ghp_test", "path": "/repos/octo/demo"}


def test_anonymous_requests_carry_no_authorization():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={})

    _service(handler, token="").get_languages("octo", "demo")

    assert seen["auth"] is None


def test_missing_repository_raises_not_found():
    service = _service(lambda request: httpx.Response(404, json={"message": "Not Found"}))

    with pytest.raises(NotFoundError):
        service.get_repository("octo", "missing")


def test_upstream_error_raises_collaborator_error():
    service = _service(lambda request: httpx.Response(502))

    with pytest.raises(CollaboratorError):
        service.get_repository("octo", "demo")


def test_transport_error_raises_collaborator_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(CollaboratorError):
        _service(handler).get_languages("octo", "demo")


def test_file_tree_is_recursive_and_empty_repo_is_empty():
    def handler(request):
        if "empty" in request.url.path:
            return httpx.Response(409)
        assert request.url.params["recursive"] == "1"
        return httpx.Response(
            200,
            json={"tree": [{"path": "src", "type": "tree", "sha": "x"}, {"path": "src/a.py", "type": "blob", "size": 5}]},
        )

    service = _service(handler)

    assert service.get_file_tree("octo", "demo", "main") == [
        {"path": "src", "type": "tree", "size": None},
        {"path": "src/a.py", "type": "blob", "size": 5},
    ]
    assert service.get_file_tree("octo", "empty", "main") == []


def test_multiple_files_decodes_and_skips_missing():
    encoded = base64.b64encode(b"# Demo\n").decode("ascii")

    def handler(request):
        if request.url.path.endswith("README.md"):
            assert request.url.params["ref"] == "main"
            return httpx.Response(200, json={"encoding": "base64", "content": encoded})
        if request.url.path.endswith("go.mod"):
            return httpx.Response(500)
        return httpx.Response(404)

    files = _service(handler).get_multiple_files("octo", "demo", ["README.md", "go.mod", "setup.py"], "main")

    assert files == [{"path": "README.md", "content": "# Demo\n"}]
