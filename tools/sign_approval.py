"""Sign a certificate content hash with an approver key from tools/gen_keys.py.

Usage: PYTHONPATH=. python tools/sign_approval.py <approver_id> <content_hash>
Prints the base64 signature to pass as "signature" to POST /certificates/process.
"""
import json, sys
from nacl.signing import SigningKey
from certledger_api.util import b64d, b64e


def main(actor_id: str, content_hash: str):
    raw = json.load(open(f"secrets/approver_{actor_id}.json", "r", encoding="utf-8"))
    sk = SigningKey(b64d(raw["private_key_b64"]))
    print(b64e(sk.sign(content_hash.encode("utf-8")).signature))


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print("Usage: python tools/sign_approval.py <approver_id> <content_hash>")
        raise SystemExit(2)
    main(sys.argv[1], sys.argv[2])
