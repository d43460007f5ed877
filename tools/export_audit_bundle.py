"""Export an auditor bundle:
- trust store snapshot
- full audit log from the database, with its chain verification result
- audit proof (entry count, head entry hash)
- database statistics
Produces: audit_bundle_<epoch>.zip
"""
import json, zipfile, time
from pathlib import Path

from certledger.audit import verify_chain
from certledger_api.db import export_audit_log_full, get_db_stats, init_db


def main():
    ts = int(time.time())
    out = Path(f"audit_bundle_{ts}.zip")

    init_db()
    log = export_audit_log_full()
    ok, bad_seq = verify_chain(log)
    proof = {
        "entries": len(log),
        "head_entry_hash": log[-1]["entry_hash"] if log else None,
        "chain_intact": ok,
        "first_bad_seq": bad_seq,
        "exported_at_epoch": ts,
    }

    with zipfile.ZipFile(out, "w", zipfile.ZIP_DEFLATED) as z:
        z.writestr("audit_log.json", json.dumps(log, indent=2, sort_keys=True))
        z.writestr("audit_proof.json", json.dumps(proof, indent=2, sort_keys=True))
        z.writestr("db_stats.json", json.dumps(get_db_stats(), indent=2, sort_keys=True))
        if Path("trust/trust_store.json").exists():
            z.write("trust/trust_store.json", arcname="trust_store.json")

    print(str(out))
    if not ok:
        print("WARNING: audit chain broken at seq", bad_seq)


if __name__ == "__main__":
    main()
