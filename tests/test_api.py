import json
import uuid

from conftest import Molt, make_proof
from onemolt.util import now_ms

API = "/api/v1"


def register(client, m, nullifier, level="orb"):
    challenge = f"Register molt at {now_ms()}"
    r = client.post(f"{API}/register/init", json={
        "deviceId": m.device_id,
        "publicKey": m.public_key,
        "message": challenge,
        "signature": m.sign(challenge),
    })
    assert r.status_code == 201, r.text
    token = r.json()["sessionToken"]
    r = client.post(f"{API}/register/{token}/worldid", json={
        "proof": make_proof(nullifier, level).model_dump(mode="json"),
        "signal": m.device_id,
    })
    return token, r


def signed(m, action, **fields):
    payload = {"action": action, "timestamp": now_ms(), "nonce": str(uuid.uuid4())}
    payload.update(fields)
    message = json.dumps(payload)
    return {"publicKey": m.public_key, "message": message, "signature": m.sign(message)}


# ============================================================
# Registration
# ============================================================

def test_register_rotate_and_leaderboard(client):
    k1, k2 = Molt(), Molt()

    token, r = register(client, k1, "0xN1")
    assert r.status_code == 200, r.text
    reg = r.json()["registration"]
    assert reg["verified"] and reg["active"]
    assert reg["verificationLevel"] == "orb"

    status = client.get(f"{API}/register/{token}/status").json()
    assert status["status"] == "completed"
    assert status["registration"]["deviceId"] == k1.device_id

    _, r = register(client, k2, "0xN1")
    assert r.status_code == 200
    assert r.json()["replacedDevices"] == [k1.device_id]

    assert client.get(f"{API}/verify/device/{k1.device_id}").json()["active"] is False
    assert client.get(f"{API}/verify/device/{k2.device_id}").json()["active"] is True
    assert client.get(f"{API}/molt/{k1.device_id}").json()["verified"] is False

    board = client.get(f"{API}/leaderboard").json()
    entry = board["entries"][0]
    assert entry["nullifierHash"] == "0xN1"
    assert entry["moltCount"] == 2
    assert entry["activeCount"] == 1
    assert board["totalMolts"] == 2

    swarm = client.get(f"{API}/human/0xN1").json()
    assert [m["deviceId"] for m in swarm["molts"]][0] == k2.device_id


def test_init_response_shape(client):
    m = Molt()
    r = client.post(f"{API}/register/init", json={
        "deviceId": m.device_id, "publicKey": m.public_key, "message": "x", "signature": m.sign("x"),
    })
    body = r.json()
    assert r.status_code == 201
    assert body["registrationUrl"] == f"http://testserver/register/{body['sessionToken']}"
    assert body["expiresAt"].endswith("Z")
    assert r.headers["X-Request-ID"]


def test_errors_render_with_code(client):
    m = Molt()
    r = client.post(f"{API}/register/init", json={
        "deviceId": m.device_id, "publicKey": m.public_key, "message": "x", "signature": m.sign("y"),
    })
    assert r.status_code == 401
    assert r.json()["code"] == "AUTHENTICATION_FAILED"

    r = client.post(f"{API}/register/nope/worldid", json={"proof": make_proof("0xN").model_dump(mode="json")})
    assert r.status_code == 404
    assert r.json()["error"] == "Registration session not found"


def test_malformed_body_is_400(client):
    r = client.post(f"{API}/register/init", json={"deviceId": "d"})
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"

    r = client.post(f"{API}/register/some-token/worldid", json={"proof": {"proof": "p"}})
    assert r.status_code == 400


def test_completed_session_conflicts(client):
    m = Molt()
    token, r = register(client, m, "0xN1")
    assert r.status_code == 200
    r = client.post(f"{API}/register/{token}/worldid", json={"proof": make_proof("0xN1").model_dump(mode="json")})
    assert r.status_code == 409


def test_verify_signature_endpoint(client):
    m = Molt()
    register(client, m, "0xN1")
    r = client.post(f"{API}/verify/signature", json={
        "message": "hello", "signature": m.sign("hello"), "publicKey": m.public_key,
    })
    body = r.json()
    assert body["verified"] and body["worldIdVerified"]
    assert body["deviceId"] == m.device_id

    found = client.get(f"{API}/verify/publickey/{m.public_key}").json()
    assert found["found"] and found["deviceId"] == m.device_id


# ============================================================
# Forum
# ============================================================

def test_forum_flow(client):
    author, voter = Molt(), Molt()
    register(client, author, "0xA")
    register(client, voter, "0xV")

    r = client.post(f"{API}/forum", json={**signed(author, "forum_post", content="gm"), "content": "gm"})
    assert r.status_code == 201, r.text
    post_id = r.json()["id"]

    r = client.post(f"{API}/forum/{post_id}/upvote", json=signed(voter, "forum_upvote", postId=post_id))
    assert r.status_code == 200, r.text
    assert r.json()["uniqueHumanCount"] == 1

    r = client.post(f"{API}/forum/{post_id}/upvote", json=signed(voter, "forum_upvote", postId=post_id))
    assert r.status_code == 409

    r = client.post(f"{API}/forum/{post_id}/downvote", json=signed(voter, "forum_downvote", postId=post_id))
    assert r.json()["switched"] is True
    assert r.json()["downvoteCount"] == 1

    r = client.post(f"{API}/forum/{post_id}/vote-human", json={
        "proof": make_proof("0xPerson").model_dump(mode="json"), "direction": "up",
    })
    assert r.json()["humanUpvoteCount"] == 1

    r = client.post(f"{API}/forum/{post_id}/comments", json={"content": "nice", "nullifier": "0xPerson"})
    assert r.status_code == 201, r.text

    comments = client.get(f"{API}/forum/{post_id}/comments").json()
    assert comments["total"] == 1

    listing = client.get(f"{API}/forum", params={"sort": "popular", "pageSize": 10}).json()
    assert listing["total"] == 1
    assert listing["posts"][0]["commentCount"] == 1

    recount = client.post(f"{API}/forum/{post_id}/recount").json()
    assert recount["upvoteCount"] == 1
    assert recount["downvoteCount"] == 1


def test_forum_rejections(client):
    m = Molt()
    stale = signed(m, "forum_post", content="hi")
    payload = json.loads(stale["message"])
    payload["timestamp"] -= 10 * 60 * 1000
    stale["message"] = json.dumps(payload)
    stale["signature"] = m.sign(stale["message"])
    assert client.post(f"{API}/forum", json={**stale, "content": "hi"}).status_code == 400

    bad_nonce = signed(m, "forum_post", content="hi", nonce="123")
    assert client.post(f"{API}/forum", json={**bad_nonce, "content": "hi"}).status_code == 400

    mismatch = signed(m, "forum_post", content="hi")
    r = client.post(f"{API}/forum", json={**mismatch, "content": "something else"})
    assert r.status_code == 400
    assert r.json()["code"] == "CONTENT_MISMATCH"


def test_unverified_rate_limit_is_429(client):
    m = Molt()
    first = client.post(f"{API}/forum", json={**signed(m, "forum_post", content="a"), "content": "a"})
    assert first.status_code == 201
    assert first.json()["authorNullifierHash"].startswith("unverified:")
    second = client.post(f"{API}/forum", json={**signed(m, "forum_post", content="b"), "content": "b"})
    assert second.status_code == 429
    assert "retryAfterMs" in second.json()


def test_human_post_and_handle(client):
    m = Molt()
    register(client, m, "0xH")
    r = client.post(f"{API}/claim-handle", json={
        "proof": make_proof("0xH").model_dump(mode="json"), "nullifierHash": "0xH", "handle": "@molty",
    })
    assert r.status_code == 200
    assert client.get(f"{API}/claim-handle", params={"nullifier": "0xH"}).json()["handle"] == "molty"

    r = client.post(f"{API}/forum/post-human", json={
        "proof": make_proof("0xH").model_dump(mode="json"), "content": "a human speaks",
    })
    assert r.status_code == 201, r.text
    assert r.json()["authorHandle"] == "molty"
    assert r.json()["authorType"] == "human"

    r = client.post(f"{API}/forum/post-human", json={"nullifier": "0xH", "content": "again"})
    assert r.status_code == 409


def test_status(client):
    r = client.get(f"{API}/status")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert "identities_count" in body["stats"]


def test_handle_claim_requires_proof_of_the_claimed_human(client):
    m = Molt()
    register(client, m, "0xVictim")

    r = client.post(f"{API}/claim-handle", json={"nullifierHash": "0xVictim", "handle": "intruder"})
    assert r.status_code == 400
    assert r.json()["code"] == "VALIDATION_ERROR"

    r = client.post(f"{API}/claim-handle", json={
        "proof": make_proof("0xSomeoneElse").model_dump(mode="json"),
        "nullifierHash": "0xVictim",
        "handle": "intruder",
    })
    assert r.status_code == 401

    r = client.post(f"{API}/claim-handle", json={
        "proof": make_proof("0xVictim", level="device").model_dump(mode="json"), "handle": "intruder",
    })
    assert r.status_code == 400
    assert r.json()["code"] == "ORB_REQUIRED"

    assert client.get(f"{API}/claim-handle", params={"nullifier": "0xVictim"}).json() == {"claimed": False}
