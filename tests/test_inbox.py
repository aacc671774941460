import pytest

from errors import ValidationError
from inbox import InboxService


def test_ads_land_in_the_target_mailbox(client, auth_header):
    resp = client.post("/mailbox/ad", json={"content": "20% off lawn care", "targetUserId": "bob"},
                       headers=auth_header("acme"))
    assert resp.status_code == 200
    assert resp.json()["message"] == "Ad sent"
    client.post("/mailbox/ad", json={"content": "Free gutter check", "targetUserId": "bob"},
                headers=auth_header("acme"))

    ads = client.get("/mailbox", headers=auth_header("bob")).json()
    assert [ad["content"] for ad in ads] == ["20% off lawn care", "Free gutter check"]
    assert all(ad["senderId"] == "acme" for ad in ads)

    assert client.get("/mailbox", headers=auth_header("acme")).json() == []


def test_mailbox_requires_token(client):
    assert client.get("/mailbox").status_code == 401
    resp = client.post("/mailbox/ad", json={"content": "hi", "targetUserId": "bob"})
    assert resp.status_code == 401


def test_ad_validation(client, auth_header):
    resp = client.post("/mailbox/ad", json={"content": "", "targetUserId": "bob"}, headers=auth_header("acme"))
    assert resp.status_code == 400


def test_target_user_must_be_a_plain_id(client, auth_header):
    resp = client.post("/mailbox/ad", json={"content": "hi", "targetUserId": "a/b"}, headers=auth_header("acme"))
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"


def test_mailbox_of_a_slashed_user_id(store):
    with pytest.raises(ValidationError):
        InboxService(store).list_ads("a/b")
