"""Register, link, exchange, refresh and logout over HTTP."""

from sqlmodel import select

from server.models.registration import DeviceRegistration
from server.models.token import DeviceToken
from server.utils.security import hash_code, hash_token

API = "/api/v1/devices"


def _register(client, fingerprint="fp-test"):
    r = client.post(f"{API}/register", json={"deviceFingerprint": fingerprint})
    assert r.status_code == 200, r.text
    return r.json()


def _exchange(client, reg, fingerprint="fp-test", **extra):
    body = {"deviceId": reg["deviceId"], "code": reg["code"], "deviceFingerprint": fingerprint}
    body.update(extra)
    return client.post(f"{API}/exchange", json=body)


def test_register_returns_camel_case_and_stores_only_hash(client, session):
    reg = _register(client)
    assert set(reg) == {"deviceId", "code", "expiresAt"}
    assert reg["expiresAt"].endswith("+00:00")

    row = session.exec(
        select(DeviceRegistration).where(DeviceRegistration.device_id == reg["deviceId"])
    ).one()
    assert row.code_hash == hash_code(reg["code"])
    assert row.linked is False
    assert reg["code"] not in {row.code_hash, row.id, row.device_id}


def test_link_requires_web_session(client):
    reg = _register(client)
    r = client.post(f"{API}/link", json={"code": reg["code"]})
    assert r.status_code == 401
    assert r.headers["www-authenticate"] == "Bearer"

    r = client.post(f"{API}/link", json={"code": reg["code"]}, headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401


def test_link_twice_conflicts_and_keeps_first_user(client, session, make_headers):
    reg = _register(client)
    first = make_headers("user-first")
    second = make_headers("user-second")

    r = client.post(f"{API}/link", json={"code": reg["code"]}, headers=first)
    assert r.status_code == 200
    assert r.json() == {"deviceId": reg["deviceId"]}

    r = client.post(f"{API}/link", json={"code": reg["code"]}, headers=second)
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "already_linked"

    row = session.exec(
        select(DeviceRegistration).where(DeviceRegistration.device_id == reg["deviceId"])
    ).one()
    assert row.user_id == "user-first"


def test_link_accepts_code_as_typed(client, user):
    _, headers = user
    reg = _register(client)
    typed = f"{reg['code'][:5].lower()}-{reg['code'][5:].lower()}"
    r = client.post(f"{API}/link", json={"code": typed}, headers=headers)
    assert r.status_code == 200


def test_link_unknown_code(client, user):
    _, headers = user
    r = client.post(f"{API}/link", json={"code": "ZZZZZZZZZZ"}, headers=headers)
    assert r.status_code == 404
    assert r.json()["detail"]["error"] == "not_found"


def test_link_lockout_after_repeated_unknown_codes(client, user):
    _, headers = user
    for _ in range(3):
        r = client.post(f"{API}/link", json={"code": "0000000000"}, headers=headers)
        assert r.status_code == 404

    r = client.post(f"{API}/link", json={"code": "0000000000"}, headers=headers)
    assert r.status_code == 429
    assert int(r.headers["retry-after"]) > 0

    # a valid code is refused too while locked
    reg = _register(client)
    r = client.post(f"{API}/link", json={"code": reg["code"]}, headers=headers)
    assert r.status_code == 429


def test_exchange_before_link_is_pending(client, session):
    reg = _register(client)
    r = _exchange(client, reg)
    assert r.status_code == 425
    assert r.json()["detail"]["error"] == "not_ready"

    minted = session.exec(select(DeviceToken).where(DeviceToken.device_id == reg["deviceId"])).first()
    assert minted is None


def test_exchange_requires_matching_device_id(client, user):
    _, headers = user
    reg = _register(client)
    client.post(f"{API}/link", json={"code": reg["code"]}, headers=headers)

    other = _register(client)
    r = client.post(
        f"{API}/exchange",
        json={"deviceId": other["deviceId"], "code": reg["code"], "deviceFingerprint": "fp-test"},
    )
    assert r.status_code == 404


def test_exchange_rejects_other_fingerprint(client, user):
    _, headers = user
    reg = _register(client, fingerprint="fp-original")
    client.post(f"{API}/link", json={"code": reg["code"]}, headers=headers)

    r = _exchange(client, reg, fingerprint="fp-somebody-else")
    assert r.status_code == 404

    r = _exchange(client, reg, fingerprint="fp-original")
    assert r.status_code == 200


def test_exchange_round_trip(client, session, user):
    user_id, headers = user
    reg = _register(client)
    client.post(f"{API}/link", json={"code": reg["code"]}, headers=headers)

    r = _exchange(client, reg, deviceName="Kitchen display")
    assert r.status_code == 200
    data = r.json()
    assert set(data) == {"token", "expiresAt", "deviceId"}
    assert data["deviceId"] == reg["deviceId"]

    row = session.exec(select(DeviceToken).where(DeviceToken.device_id == reg["deviceId"])).one()
    assert row.token_hash == hash_token(data["token"])
    assert row.user_id == user_id
    assert row.device_name == "Kitchen display"

    r = client.get("/api/v1/ping", headers={"Authorization": f"Bearer {data['token']}"})
    assert r.status_code == 200
    assert r.json()["deviceId"] == reg["deviceId"]
    assert r.json()["userId"] == user_id


def test_refresh_rotates_without_overlap(client, paired):
    device_id, token, _, _ = paired
    old = {"Authorization": f"Bearer {token}"}

    r = client.post(f"{API}/refresh", headers=old)
    assert r.status_code == 200
    new_token = r.json()["token"]
    assert new_token != token
    assert r.json()["deviceId"] == device_id

    assert client.get("/api/v1/ping", headers=old).status_code == 401
    assert client.get("/api/v1/ping", headers={"Authorization": f"Bearer {new_token}"}).status_code == 200

    # the old value cannot rotate again either
    r = client.post(f"{API}/refresh", headers=old)
    assert r.status_code == 401
    assert r.json()["detail"]["error"] == "invalid_token"


def test_refresh_without_token(client):
    r = client.post(f"{API}/refresh")
    assert r.status_code == 401


def test_logout_invalidates_token(client, paired):
    _, token, _, _ = paired
    headers = {"Authorization": f"Bearer {token}"}

    assert client.post(f"{API}/logout", headers=headers).status_code == 204
    assert client.get("/api/v1/ping", headers=headers).status_code == 401
    assert client.post(f"{API}/logout", headers=headers).status_code == 401


def test_errors_never_echo_secrets(client, paired):
    _, token, _, _ = paired
    client.post(f"{API}/logout", headers={"Authorization": f"Bearer {token}"})
    r = client.get("/api/v1/ping", headers={"Authorization": f"Bearer {token}"})
    assert token not in r.text
    assert hash_token(token) not in r.text


def test_revoked_device_cannot_reuse_its_code(client, user):
    _, headers = user
    reg = _register(client)
    client.post(f"{API}/link", json={"code": reg["code"]}, headers=headers)
    token = _exchange(client, reg).json()["token"]

    assert client.delete(f"/api/v1/devices/{reg['deviceId']}", headers=headers).status_code == 204
    r = _exchange(client, reg)
    assert r.status_code == 404
    assert client.get("/api/v1/ping", headers={"Authorization": f"Bearer {token}"}).status_code == 401


def test_logged_out_device_cannot_reuse_its_code(client, user):
    _, headers = user
    reg = _register(client)
    client.post(f"{API}/link", json={"code": reg["code"]}, headers=headers)
    token = _exchange(client, reg).json()["token"]

    assert client.post(f"{API}/logout", headers={"Authorization": f"Bearer {token}"}).status_code == 204
    assert _exchange(client, reg).status_code == 404
