"""
Entitlement ledger for tenant subdomain quotas.

A tenant's quota is the sum of its live entitlement grants: one free
baseline grant plus any purchased addon grants. The ledger ingests
billing-provider events, expires lapsed grants on a periodic sweep and
gates resource creation against the remaining quota.
"""

__version__ = "0.1.0"
