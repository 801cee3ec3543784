from unittest.mock import MagicMock, patch

import pytest
import requests

from app.billing.cache import RevalidationClient, billing_paths


def test_billing_paths_include_public_profile_and_collections():
    assert billing_paths("cinephile") == [
        "/app",
        "/settings/billing",
        "/settings/profile",
        "/c/cinephile",
        "/c/cinephile/[slug]",
    ]
    assert billing_paths(None) == ["/app", "/settings/billing", "/settings/profile"]


def test_disabled_client_is_a_noop():
    client = RevalidationClient(url=None)
    with patch("app.billing.cache.requests.post") as post:
        client.invalidate(["/app"])
    assert not client.enabled
    post.assert_not_called()


def test_posts_paths_with_secret():
    client = RevalidationClient(url="https://framevault.test/api/revalidate", secret="s3cret", timeout=2.0)
    with patch("app.billing.cache.requests.post", return_value=MagicMock()) as post:
        client.invalidate(["/app", "/c/cinephile"])

    post.assert_called_once_with(
        "https://framevault.test/api/revalidate",
        headers={"Content-Type": "application/json", "Authorization": "Bearer s3cret"},
        json={"paths": ["/app", "/c/cinephile"]},
        timeout=2.0,
    )
    post.return_value.raise_for_status.assert_called_once_with()


def test_error_status_raises():
    client = RevalidationClient(url="https://framevault.test/api/revalidate")
    resp = MagicMock()
    resp.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
    with patch("app.billing.cache.requests.post", return_value=resp):
        with pytest.raises(requests.HTTPError):
            client.invalidate(["/app"])
