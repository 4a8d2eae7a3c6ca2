"""
Ledger policy constants, read from the environment.

- LEDGER_GRACE_PERIOD_HOURS: delay after period end before PAST_DUE expires (default: 48)
- LEDGER_SWEEP_INTERVAL_SECONDS: seconds between sweep runs (default: 3600)
- LEDGER_SWEEP_BATCH_SIZE: max grants expired per sweep run (default: 200)
- LEDGER_TENANT_LOCK_TIMEOUT_SECONDS: interactive wait for a tenant lock (default: 5)
- LEDGER_SWEEP_LOCK_TIMEOUT_SECONDS: sweep wait for a tenant lock (default: 0, skip)
- LEDGER_PROVISIONER_FACTORY: "module:callable" returning the worker's ResourceProvisioner
  (default: unset, log-only provisioner)
"""

import os

GRACE_PERIOD_HOURS = int(os.getenv("LEDGER_GRACE_PERIOD_HOURS", "48"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("LEDGER_SWEEP_INTERVAL_SECONDS", "3600"))
SWEEP_BATCH_SIZE = int(os.getenv("LEDGER_SWEEP_BATCH_SIZE", "200"))
TENANT_LOCK_TIMEOUT_SECONDS = float(os.getenv("LEDGER_TENANT_LOCK_TIMEOUT_SECONDS", "5"))
SWEEP_LOCK_TIMEOUT_SECONDS = float(os.getenv("LEDGER_SWEEP_LOCK_TIMEOUT_SECONDS", "0"))
PROVISIONER_FACTORY = os.getenv("LEDGER_PROVISIONER_FACTORY", "")
