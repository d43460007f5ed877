"""Check a verification attestation offline against the trust store.

Usage: curl http://localhost:8000/certificates/verify/<id> | jq .attestation > attestation.json
       PYTHONPATH=. python tools/verify_attestation.py attestation.json [trust/trust_store.json]
"""
import json, sys
from certledger.canonicalization import canonicalize
from certledger_api.keys import verify_ed25519


def main(path, trust_path):
    att = json.load(open(path, "r", encoding="utf-8"))
    trust = json.load(open(trust_path, "r", encoding="utf-8"))
    sigs = att.pop("signatures", [])
    if not sigs:
        print("FAIL: no signature")
        sys.exit(1)
    pub = trust.get("attestation_keys", {}).get(sigs[0].get("kid"))
    if not pub:
        print("FAIL: unknown kid", sigs[0].get("kid"))
        sys.exit(1)
    if not verify_ed25519(sigs[0].get("sig_b64", ""), canonicalize(att), pub):
        print("FAIL: signature does not verify")
        sys.exit(1)
    print(f"PASS: {att.get('cert_id')} is_valid={att.get('is_valid')} tamper_state={att.get('tamper_state')}")


if __name__ == "__main__":
    if len(sys.argv) not in (2, 3):
        print("Usage: python tools/verify_attestation.py <attestation.json> [trust_store.json]")
        raise SystemExit(2)
    main(sys.argv[1], sys.argv[2] if len(sys.argv) == 3 else "trust/trust_store.json")
