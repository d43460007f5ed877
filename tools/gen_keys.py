"""Generate a local attestation signing key, approver keys and the trust store.

Usage: PYTHONPATH=. python tools/gen_keys.py [approver_id ...]
"""
import os, json, sys
from nacl.signing import SigningKey
from certledger_api.util import b64e

os.makedirs("secrets", exist_ok=True)
os.makedirs("trust", exist_ok=True)

approvers = sys.argv[1:] or ["reg-01"]

sk = SigningKey.generate()
with open("secrets/certledger_signing_key.json","w",encoding="utf-8") as f:
    json.dump({"kid":"certledger-attestation-01", "private_key_b64": b64e(bytes(sk))}, f, indent=2)

approver_keys = {}
for actor_id in approvers:
    ak = SigningKey.generate()
    with open(f"secrets/approver_{actor_id}.json","w",encoding="utf-8") as f:
        json.dump({"actor_id": actor_id, "private_key_b64": b64e(bytes(ak))}, f, indent=2)
    approver_keys[actor_id] = b64e(bytes(ak.verify_key))

trust = {
  "trust_store_id":"certledger-trust-store-demo",
  "trust_store_version":"1.0.0",
  "attestation_keys": {
    "certledger-attestation-01": b64e(bytes(sk.verify_key))
  },
  "approver_keys": approver_keys
}

with open("trust/trust_store.json","w",encoding="utf-8") as f:
    json.dump(trust, f, indent=2)

print(f"Generated attestation key, {len(approver_keys)} approver key(s) and trust store.")
