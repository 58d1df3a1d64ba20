"""Tests for registry tag listing (registry_api.py)."""

from unittest.mock import MagicMock

import pytest
import requests

from registry_api import (
    HUB_TAGS_URL,
    RateLimited,
    RegistryClient,
    RegistryUnavailable,
    USER_AGENT,
    parse_image_reference,
)


def _response(status=200, json_data=None, headers=None, links=None):
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.links = links or {}
    resp.json.return_value = json_data if json_data is not None else {}
    return resp


def _client(*responses):
    session = MagicMock()
    session.headers = {}
    session.get.side_effect = list(responses)
    sleep = MagicMock()
    return RegistryClient(session=session, sleep=sleep), session, sleep


class TestParseImageReference:

    @pytest.mark.parametrize("image,expected", [
        ("postgres", ("registry-1.docker.io", "library/postgres")),
        ("n8nio/n8n", ("registry-1.docker.io", "n8nio/n8n")),
        ("docker.io/library/redis", ("registry-1.docker.io", "library/redis")),
        ("docker.io/redis", ("registry-1.docker.io", "library/redis")),
        ("ghcr.io/homarr-labs/homarr", ("ghcr.io", "homarr-labs/homarr")),
        ("lscr.io/linuxserver/plex", ("lscr.io", "linuxserver/plex")),
        ("localhost:5000/myapp", ("localhost:5000", "myapp")),
        ("localhost/myapp", ("localhost", "myapp")),
        ("quay.io/org/sub/app", ("quay.io", "org/sub/app")),
    ])
    def test_references(self, image, expected):
        assert parse_image_reference(image) == expected


class TestDockerHub:

    def test_sets_user_agent(self):
        client, session, _ = _client()
        assert session.headers["User-Agent"] == USER_AGENT

    def test_follows_pagination(self):
        page1 = _response(json_data={
            "results": [{"name": "17.2.0"}, {"name": "latest"}],
            "next": "https://registry.hub.docker.com/v2/repositories/library/postgres/tags/?page=2",
        })
        page2 = _response(json_data={"results": [{"name": "16.4.0"}], "next": None})
        client, session, _ = _client(page1, page2)

        assert client.list_tags("postgres") == ["17.2.0", "latest", "16.4.0"]

        first, second = session.get.call_args_list
        assert first.args[0] == HUB_TAGS_URL.format(path="library/postgres")
        assert first.kwargs["params"] == {"page_size": "100"}
        assert second.args[0].endswith("?page=2")
        assert second.kwargs["params"] is None

    def test_retries_short_retry_after(self):
        limited = _response(429, headers={"Retry-After": "7"})
        ok = _response(json_data={"results": [{"name": "1.0.0"}], "next": None})
        client, _, sleep = _client(limited, ok)

        assert client.list_tags("n8nio/n8n") == ["1.0.0"]
        sleep.assert_called_once_with(7)

    def test_long_retry_after_fails(self):
        client, _, sleep = _client(_response(429, headers={"Retry-After": "900"}))
        with pytest.raises(RateLimited):
            client.list_tags("n8nio/n8n")
        sleep.assert_not_called()

    def test_missing_retry_after_fails(self):
        client, _, _ = _client(_response(429))
        with pytest.raises(RateLimited):
            client.list_tags("n8nio/n8n")

    def test_persistent_rate_limit_gives_up(self):
        limited = [_response(429, headers={"Retry-After": "1"}) for _ in range(4)]
        client, session, sleep = _client(*limited)
        with pytest.raises(RateLimited):
            client.list_tags("n8nio/n8n")
        assert session.get.call_count == 4
        assert sleep.call_count == 3

    def test_http_error(self):
        client, _, _ = _client(_response(404))
        with pytest.raises(RegistryUnavailable, match="status 404"):
            client.list_tags("n8nio/missing")

    def test_transport_error(self):
        client, _, _ = _client(requests.ConnectionError("dns failure"))
        with pytest.raises(RegistryUnavailable, match="dns failure"):
            client.list_tags("n8nio/n8n")

    def test_invalid_json(self):
        resp = _response()
        resp.json.side_effect = ValueError("not json")
        client, _, _ = _client(resp)
        with pytest.raises(RegistryUnavailable):
            client.list_tags("n8nio/n8n")


class TestV2Registry:

    def test_ghcr_uses_token(self):
        token = _response(json_data={"token": "anon"})
        tags = _response(json_data={"tags": ["v1.40.0", "v1.41.0"]})
        client, session, _ = _client(token, tags)

        assert client.list_tags("ghcr.io/homarr-labs/homarr") == ["v1.40.0", "v1.41.0"]

        token_call, tags_call = session.get.call_args_list
        assert token_call.args[0] == "https://ghcr.io/token"
        assert token_call.kwargs["params"]["scope"] == "repository:homarr-labs/homarr:pull"
        assert tags_call.args[0] == "https://ghcr.io/v2/homarr-labs/homarr/tags/list"
        assert tags_call.kwargs["headers"]["Authorization"] == "Bearer anon"

    def test_lscr_delegates_auth_to_ghcr(self):
        token = _response(json_data={"token": "anon"})
        tags = _response(json_data={"tags": ["1.0.0"]})
        client, session, _ = _client(token, tags)

        client.list_tags("lscr.io/linuxserver/plex")
        token_call, tags_call = session.get.call_args_list
        assert token_call.args[0] == "https://ghcr.io/token"
        assert tags_call.args[0] == "https://lscr.io/v2/linuxserver/plex/tags/list"

    def test_follows_link_header(self):
        token = _response(json_data={"token": "t"})
        page1 = _response(json_data={"tags": ["1.0.0"]},
                          links={"next": {"url": "/v2/org/app/tags/list?last=1.0.0"}})
        page2 = _response(json_data={"tags": ["1.1.0"]})
        client, session, _ = _client(token, page1, page2)

        assert client.list_tags("quay.io/org/app") == ["1.0.0", "1.1.0"]
        assert session.get.call_args_list[2].args[0] == \
            "https://quay.io/v2/org/app/tags/list?last=1.0.0"

    def test_anonymous_when_token_unavailable(self):
        tags = _response(json_data={"tags": ["2.0.0"]})
        client, session, _ = _client(requests.ConnectionError("no auth"), tags)

        assert client.list_tags("registry.example.com/app") == ["2.0.0"]
        headers = session.get.call_args_list[1].kwargs["headers"]
        assert "Authorization" not in headers

    def test_error_status(self):
        client, _, _ = _client(_response(json_data={"token": "t"}), _response(401))
        with pytest.raises(RegistryUnavailable, match="status 401"):
            client.list_tags("ghcr.io/private/app")
