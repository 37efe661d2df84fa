"""
Telemetry — получение квот, нормализация, фильтрация и группировка.
"""

from quota_waker.telemetry.accounts_refresh import AccountQuotaState, AccountsQuotaRefresher
from quota_waker.telemetry.engine import TelemetryEngine
from quota_waker.telemetry.history import QuotaHistory
from quota_waker.telemetry.models import ModelQuotaRecord, QuotaGroup, QuotaSnapshot, RawQuotaEntry
from quota_waker.telemetry.snapshot import SnapshotBuilder
from quota_waker.telemetry.sources import LocalProbeSource, QuotaSource, RawQuota, RemoteQuotaSource

__all__ = [
    "AccountQuotaState",
    "AccountsQuotaRefresher",
    "LocalProbeSource",
    "ModelQuotaRecord",
    "QuotaGroup",
    "QuotaHistory",
    "QuotaSnapshot",
    "QuotaSource",
    "RawQuota",
    "RawQuotaEntry",
    "RemoteQuotaSource",
    "SnapshotBuilder",
    "TelemetryEngine",
]
