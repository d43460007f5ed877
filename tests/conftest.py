import os
import sys
import tempfile

import pytest

# Ensure the packages are in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Change to project directory
os.chdir(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Configuration is read at import time
_tmp = tempfile.mkdtemp(prefix="certledger-tests-")
os.environ["DB_PATH"] = os.path.join(_tmp, "certledger.db")
os.environ["CERTLEDGER_ENV"] = "dev"
os.environ["CERTLEDGER_SIGNER"] = "ephemeral"
os.environ["LEDGER_BACKEND"] = "simulated"
os.environ["AUDIT_MIRROR_BACKEND"] = "none"
os.environ["VERIFY_RPM"] = "10000"
os.environ["PROCESS_RPM"] = "10000"
os.environ["LOG_JSON"] = "0"
os.environ["LOG_LEVEL"] = "WARNING"

# Initialize app at module load time
from certledger_api import main
from certledger_api.db import init_db, reset_db

init_db()
main._startup()


# Reset database and rate limits before each test for isolation
@pytest.fixture(autouse=True)
def _reset_db():
    reset_db()
    main.verify_limiter.reset()
    main.process_limiter.reset()
    yield
