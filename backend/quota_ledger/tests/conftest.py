"""
Root test configuration and fixtures.

Provides:
- db_engine: SQLite in-memory engine (single shared connection)
- file_db_engine: temp-file SQLite engine for multi-threaded tests
- session_factory / db_session
- tier_catalog: the packaged tiers.yml
- Fake collaborators that record calls
- ledger: a LedgerService wired to all of the above
"""

import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest
import yaml
from sqlalchemy.orm import sessionmaker, Session

import quota_ledger.config.tiers as tiers_module
from quota_ledger.config.tiers import TierCatalog
from quota_ledger.database.session import build_engine, init_database
from quota_ledger.db_base import Base
from quota_ledger.models.base import utcnow
from quota_ledger.models.grant import Grant, GrantStatus, GrantTier
from quota_ledger.models.tenant_resource import TenantResource
from quota_ledger.services.collaborators import ProvisioningResult
from quota_ledger.services.ledger_service import LedgerService
from quota_ledger.services.tenant_scope import TenantLockManager

# Set test environment
os.environ.setdefault("ENV", "test")


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine():
    """SQLite in-memory engine with all ledger tables."""
    engine = build_engine("sqlite:///:memory:")
    init_database(engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def file_db_engine(tmp_path):
    """
    Temp-file SQLite engine.

    Each thread gets its own connection, unlike the in-memory engine.
    """
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_database(engine)

    yield engine

    engine.dispose()


def _make_factory(engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return _make_factory(db_engine)


@pytest.fixture
def file_session_factory(file_db_engine) -> sessionmaker:
    return _make_factory(file_db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Config
# =============================================================================

@pytest.fixture
def tier_catalog() -> TierCatalog:
    return TierCatalog.from_yaml(Path(tiers_module.__file__).parent / "tiers.yml")


@pytest.fixture(autouse=True)
def _reset_tier_catalog():
    yield
    tiers_module.reset_tier_catalog()


# =============================================================================
# Fake collaborators
# =============================================================================

class FakeProvisioner:
    """Records provision/deprovision calls; can be told to fail."""

    def __init__(self):
        self.provisioned: List[Dict[str, Any]] = []
        self.deprovisioned: List[Dict[str, Any]] = []
        self.fail_with: Optional[str] = None
        self.raise_exc: Optional[Exception] = None
        self._lock = threading.Lock()
        self._counter = 0

    def provision(self, tenant_id: str, resource_params: Dict[str, Any]) -> ProvisioningResult:
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_with is not None:
            return ProvisioningResult(success=False, error=self.fail_with)
        with self._lock:
            self._counter += 1
            external_id = f"ext-{self._counter}"
            self.provisioned.append({"tenant_id": tenant_id, **resource_params})
        return ProvisioningResult(success=True, external_id=external_id)

    def deprovision(self, tenant_id: str, resource_params: Dict[str, Any]) -> bool:
        with self._lock:
            self.deprovisioned.append({"tenant_id": tenant_id, **resource_params})
        return True


class FakeNotifier:
    def __init__(self):
        self.calls: List[tuple] = []

    def notify_expired(self, tenant_id: str, tier: str, deactivated_count: int) -> None:
        self.calls.append((tenant_id, tier, deactivated_count))


class FakeBillingProvider:
    def __init__(self):
        self.calls: List[tuple] = []
        self.raise_exc: Optional[Exception] = None

    def cancel_subscription(self, external_ref: str, cancel_at_period_end: bool) -> None:
        if self.raise_exc is not None:
            raise self.raise_exc
        self.calls.append((external_ref, cancel_at_period_end))


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def billing_provider() -> FakeBillingProvider:
    return FakeBillingProvider()


# =============================================================================
# Service
# =============================================================================

@pytest.fixture
def ledger(session_factory, provisioner, notifier, billing_provider, tier_catalog) -> LedgerService:
    return LedgerService(
        session_factory,
        provisioner,
        notifier,
        billing_provider=billing_provider,
        tier_catalog=tier_catalog,
        lock_manager=TenantLockManager(),
        lock_timeout=1.0,
    )


# =============================================================================
# Data helpers
# =============================================================================

@pytest.fixture
def make_grant(session_factory):
    """
    Factory fixture that inserts and commits a grant.

    Usage:
        grant = make_grant("tenant-1", GrantTier.ADDON_SMALL, capacity=7)
    """
    def _make(
        tenant_id: str,
        tier: GrantTier = GrantTier.ADDON_SMALL,
        status: GrantStatus = GrantStatus.ACTIVE,
        capacity: int = 7,
        period_end: Optional[datetime] = None,
        external_ref: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Grant:
        session = session_factory()
        try:
            grant = Grant(
                tenant_id=tenant_id,
                tier=tier.value,
                status=status.value,
                capacity=capacity,
                period_start=(period_end - timedelta(days=30)) if period_end else None,
                period_end=period_end,
                external_ref=external_ref,
                created_at=created_at or utcnow(),
            )
            session.add(grant)
            session.commit()
            return grant
        finally:
            session.close()
    return _make


@pytest.fixture
def make_resources(session_factory):
    """Factory fixture that inserts `count` active resources for a tenant."""
    def _make(tenant_id: str, count: int) -> List[TenantResource]:
        session = session_factory()
        try:
            resources = [
                TenantResource(tenant_id=tenant_id, name=f"site-{i}", external_id=f"seed-{i}")
                for i in range(count)
            ]
            session.add_all(resources)
            session.commit()
            return resources
        finally:
            session.close()
    return _make


@pytest.fixture
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def make_yaml_config(tmp_path):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("tiers.yml", {"tiers": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = tmp_path / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow-running")
