"""Verify the hash-chain integrity of the audit log exported from /audit/log.

Usage: curl http://localhost:8000/audit/log > audit_log.json
       PYTHONPATH=. python tools/verify_audit_chain.py audit_log.json
"""
import json, sys
from certledger.audit import verify_chain


def main(path):
    log = json.load(open(path, "r", encoding="utf-8"))
    ok, bad_seq = verify_chain(log)
    if not ok:
        print("FAIL: chain mismatch at seq", bad_seq)
        sys.exit(1)
    head = log[-1]["entry_hash"] if log else None
    print(f"PASS: audit chain valid ({len(log)} entries, head {head})")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python tools/verify_audit_chain.py <audit_log_export.json>")
        raise SystemExit(2)
    main(sys.argv[1])
