"""
CertLedger Concurrency Test Suite

Independent callers racing on one certificate, each on its own thread.

Critical invariants tested:
    TWO DECISIONS NEVER BOTH WIN THE SAME TRANSITION
    A CERTIFICATE OR REVOCATION IS NEVER SUBMITTED TO THE LEDGER TWICE
    A CERTIFICATE CANNOT BE REVERTED WHILE IT IS BEING ANCHORED
"""

import threading
import time
import unittest

from certledger import (
    Actor,
    AnchoringError,
    AuthorizationError,
    CertLedgerError,
    CertificateStatus,
    InvalidTransitionError,
    RevocationStatus,
    Role,
    SimulatedLedgerClient,
)

from support import DEPT, FRAUD_DESCRIPTION, REGISTRAR, SUPER, T0, VALIDATOR, Harness

WAIT = 5


class GatedLedgerClient(SimulatedLedgerClient):
    """Holds every submission at a gate until the test opens it."""

    def __init__(self):
        super().__init__()
        self.gated = False
        self.entered = threading.Event()
        self.gate = threading.Event()

    def submit(self, payload, cost_limit):
        if self.gated:
            self.entered.set()
            self.gate.wait(WAIT)
        return super().submit(payload, cost_limit)


class Race:
    """Runs ``target(i)`` on ``count`` threads released together by a barrier."""

    def __init__(self, target, count):
        self.results = []
        self.errors = []
        self._lock = threading.Lock()
        self._barrier = threading.Barrier(count)
        self._target = target
        self.threads = [threading.Thread(target=self._run, args=(i,), daemon=True) for i in range(count)]

    def _run(self, i):
        self._barrier.wait(WAIT)
        try:
            value = self._target(i)
        except CertLedgerError as e:
            with self._lock:
                self.errors.append(e)
        else:
            with self._lock:
                self.results.append(value)

    def start(self):
        for t in self.threads:
            t.start()
        return self

    def wait_for_outcomes(self, n):
        deadline = time.monotonic() + WAIT
        while len(self.results) + len(self.errors) < n:
            if time.monotonic() > deadline:
                raise AssertionError(f"only {len(self.results) + len(self.errors)} of {n} callers finished")
            time.sleep(0.01)

    def join(self):
        for t in self.threads:
            t.join(WAIT)
            if t.is_alive():
                raise AssertionError("caller thread did not finish")
        return self


class ConcurrencyTestCase(unittest.TestCase):

    def setUp(self):
        self.client = GatedLedgerClient()
        self.h = Harness(client=self.client, auto_anchor=False)

    def signed_off(self):
        cert = self.h.submit()
        self.h.approve_all(cert.cert_id)
        return cert

    def status(self, cert_id):
        return self.h.store.get_certificate(cert_id).status


class TestApprovalRaces(ConcurrencyTestCase):

    def test_two_validators_race_to_one_transition(self):
        cert = self.h.submit()
        validators = [VALIDATOR, Actor("val-2", Role.VALIDATOR)]

        race = Race(lambda i: self.h.lifecycle.process(cert.cert_id, "APPROVE", validators[i], now=T0), 2)
        race.start().join()

        self.assertEqual(len(race.results), 1)
        self.assertEqual(len(race.errors), 1)
        # The loser re-read the certificate and found it waiting on a registrar
        self.assertIsInstance(race.errors[0], AuthorizationError)
        self.assertEqual(self.status(cert.cert_id), CertificateStatus.PENDING_L2)
        history = self.h.store.get_certificate(cert.cert_id).history
        self.assertEqual([e.action for e in history].count("VALIDATION_APPROVED"), 1)


class TestAnchorRaces(ConcurrencyTestCase):

    def test_concurrent_anchor_calls_submit_once(self):
        cert = self.signed_off()
        self.client.gated = True

        race = Race(lambda i: self.h.lifecycle.anchor(cert.cert_id, DEPT, now=T0), 4).start()
        self.assertTrue(self.client.entered.wait(WAIT))
        race.wait_for_outcomes(3)
        self.client.gate.set()
        race.join()

        self.assertEqual(len(race.results), 1)
        self.assertEqual(len(race.errors), 3)
        for error in race.errors:
            self.assertIsInstance(error, AnchoringError)
            self.assertEqual(error.code, "ANCHOR_IN_FLIGHT")
        self.assertEqual(self.client.submit_calls, 1)
        self.assertEqual(self.status(cert.cert_id), CertificateStatus.ISSUED)

    def test_revert_while_anchoring_is_refused(self):
        cert = self.signed_off()
        self.client.gated = True

        race = Race(lambda i: self.h.lifecycle.anchor(cert.cert_id, DEPT, now=T0), 1).start()
        self.assertTrue(self.client.entered.wait(WAIT))
        with self.assertRaises(InvalidTransitionError):
            self.h.lifecycle.revert(cert.cert_id, REGISTRAR, "name misspelled", now=T0)
        self.client.gate.set()
        race.join()

        self.assertEqual(race.errors, [])
        stored = self.h.store.get_certificate(cert.cert_id)
        self.assertEqual(stored.status, CertificateStatus.ISSUED)
        self.assertEqual(stored.anchor_ref, race.results[0])
        self.assertEqual(self.client.submit_calls, 1)


class TestRevocationRaces(ConcurrencyTestCase):

    def setUp(self):
        super().setUp()
        self.cert = self.signed_off()
        self.h.lifecycle.anchor(self.cert.cert_id, DEPT, now=T0)
        workflow = self.h.lifecycle.revocations
        record = workflow.initiate(self.cert.cert_id, "FRAUDULENT_CREDENTIALS", FRAUD_DESCRIPTION, DEPT, now=T0)
        workflow.decide(record.revocation_id, "DEPARTMENT", "APPROVED", DEPT, now=T0)
        workflow.decide(record.revocation_id, "REGISTRAR", "APPROVED", REGISTRAR, now=T0)
        workflow.decide(record.revocation_id, "SUPER_AUTHORITY", "APPROVED", SUPER, now=T0)
        self.revocation_id = record.revocation_id
        self.workflow = workflow
        self.issued_submits = self.client.submit_calls

    def execute(self, i):
        return self.workflow.execute(self.revocation_id, DEPT, now=T0)

    def test_simultaneous_executions_anchor_once(self):
        race = Race(self.execute, 2).start().join()

        self.assertEqual(self.client.submit_calls - self.issued_submits, 1)
        # A caller that starts after the winner finished sees a revoked certificate
        for error in race.errors:
            self.assertIn(error.code, ("ANCHOR_IN_FLIGHT", "INVALID_TRANSITION"))
        for record in race.results:
            self.assertEqual(record.status, RevocationStatus.EXECUTED)
        self.assertEqual(self.status(self.cert.cert_id), CertificateStatus.REVOKED)

    def test_execution_in_flight_blocks_other_callers(self):
        self.client.gated = True

        race = Race(self.execute, 3).start()
        self.assertTrue(self.client.entered.wait(WAIT))
        race.wait_for_outcomes(2)
        self.client.gate.set()
        race.join()

        self.assertEqual(len(race.results), 1)
        self.assertEqual([e.code for e in race.errors], ["ANCHOR_IN_FLIGHT", "ANCHOR_IN_FLIGHT"])
        self.assertEqual(self.client.submit_calls - self.issued_submits, 1)
        executed = self.workflow.get(self.revocation_id)
        self.assertEqual(executed.status, RevocationStatus.EXECUTED)
        self.assertIsNone(executed.execution_claim)


if __name__ == "__main__":
    unittest.main()
