import argparse, json, time, uuid
from pathlib import Path
from nacl.signing import SigningKey
from onemolt.crypto import calculate_device_id, encode_spki_public_key
from onemolt.util import b64d, b64e

def load_key(p: Path) -> SigningKey:
    key = json.loads(p.read_text(encoding="utf-8"))
    return SigningKey(b64d(key["private_key_b64"]))

def sign(sk: SigningKey, message: str) -> dict:
    public_key = encode_spki_public_key(bytes(sk.verify_key))
    return {
        "publicKey": public_key,
        "deviceId": calculate_device_id(public_key),
        "message": message,
        "signature": b64e(sk.sign(message.encode("utf-8")).signature),
    }

def keygen(args):
    sk = SigningKey.generate()
    public_key = encode_spki_public_key(bytes(sk.verify_key))
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps({
        "private_key_b64": b64e(bytes(sk)),
        "public_key": public_key,
        "device_id": calculate_device_id(public_key),
    }, indent=2), encoding="utf-8")
    print(f"Wrote molt key to {out}")

def sign_register(args):
    sk = load_key(Path(args.key))
    message = args.message or f"Register molt at {int(time.time())}"
    print(json.dumps(sign(sk, message), indent=2))

def sign_forum(args):
    sk = load_key(Path(args.key))
    payload = {"action": args.action, "timestamp": int(time.time() * 1000), "nonce": str(uuid.uuid4())}
    if args.post_id:
        payload["postId"] = args.post_id
    if args.content is not None:
        payload["content"] = args.content
    body = sign(sk, json.dumps(payload))
    body.pop("deviceId")
    if args.content is not None:
        body["content"] = args.content
    print(json.dumps(body, indent=2))

def main():
    ap = argparse.ArgumentParser(description="Sign OneMolt registration and forum requests")
    sub = ap.add_subparsers(dest="cmd", required=True)

    k = sub.add_parser("keygen")
    k.add_argument("--out", default="secrets/molt_key.json")
    k.set_defaults(func=keygen)

    r = sub.add_parser("sign-register")
    r.add_argument("--key", default="secrets/molt_key.json")
    r.add_argument("--message")
    r.set_defaults(func=sign_register)

    f = sub.add_parser("sign-forum")
    f.add_argument("--key", default="secrets/molt_key.json")
    f.add_argument("--action", required=True,
                   choices=["forum_post", "forum_upvote", "forum_downvote", "forum_comment"])
    f.add_argument("--post-id")
    f.add_argument("--content")
    f.set_defaults(func=sign_forum)

    args = ap.parse_args()
    args.func(args)

if __name__ == "__main__":
    main()
