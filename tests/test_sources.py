from __future__ import annotations

import asyncio
import json
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from finance_sync.errors import CredentialValidationError, SourceAuthenticationError, SourceError
from finance_sync.models import AccountTransactions, DateRange, RawTransaction, StepSignal, SyncOptions
from finance_sync.settings import SyncSettings, backoff_delay
from finance_sync.sources import (
    ReplaySource,
    credential_key,
    prepare_credential,
    replay_source_factory,
    validate_credential,
)
from pydantic import ValidationError

CAPTURE = {
    "success": True,
    "accounts": [
        {
            "accountNumber": "4580",
            "txns": [
                {
                    "date": "2024-01-09T22:00:00.000Z",
                    "processedDate": "2024-02-02T00:00:00.000Z",
                    "chargedAmount": -120.5,
                    "originalAmount": -361.5,
                    "originalCurrency": "ILS",
                    "description": "IKEA",
                    "category": "Home",
                    "installments": {"number": 1, "total": 3},
                },
                {"date": "2023-12-20", "chargedAmount": -10, "description": "Too early"},
                {"date": "2024-01-15", "chargedAmount": -35, "description": "Wolt", "category": "N/A"},
            ],
        }
    ],
}


def _collect(source, date_range: DateRange) -> list:
    cred = prepare_credential("max", {"username": "u", "password": "p"})

    async def run():
        return [item async for item in source.fetch(cred, date_range, SyncOptions())]

    return asyncio.run(run())


def test_raw_transaction_accepts_scraper_shape() -> None:
    record = RawTransaction.model_validate(CAPTURE["accounts"][0]["txns"][0])
    assert record.date == date(2024, 1, 9)
    assert record.processed_date == date(2024, 2, 2)
    assert record.amount == Decimal("-120.5")
    assert (record.installment_number, record.installment_total) == (1, 3)
    assert record.to_record()["description"] == "IKEA"

    assert RawTransaction.model_validate({"date": "2024-01-01", "amount": "5", "description": "x"}).amount == 5
    with pytest.raises(ValidationError):
        RawTransaction.model_validate({"date": "2024-01-01", "chargedAmount": 1, "description": "  "})


def test_replay_source_filters_by_range_and_emits_steps() -> None:
    items = _collect(ReplaySource(CAPTURE), DateRange(start=date(2024, 1, 1)))

    steps = [i.step for i in items if isinstance(i, StepSignal)]
    assert steps == [
        "startScraping",
        "loginStarted",
        "loginSuccess",
        "fetchingTransactions",
        "processingAccount",
        "endScraping",
    ]
    (batch,) = [i for i in items if isinstance(i, AccountTransactions)]
    assert batch.account_number == "4580"
    assert [t.description for t in batch.transactions] == ["IKEA", "Wolt"]
    assert batch.transactions[1].category is None


def test_replay_source_reports_login_and_transport_failures() -> None:
    rejected = ReplaySource({"success": False, "errorType": "INVALID_PASSWORD", "errorMessage": "bad pw"})
    with pytest.raises(SourceAuthenticationError) as auth:
        _collect(rejected, DateRange(start=date(2024, 1, 1)))
    assert auth.value.retryable is False
    assert auth.value.hint

    timeout = ReplaySource({"success": False, "errorType": "TIMEOUT"})
    with pytest.raises(SourceError) as err:
        _collect(timeout, DateRange(start=date(2024, 1, 1)))
    assert err.value.retryable is True


def test_replay_factory_reads_vendor_files(tmp_path: Path) -> None:
    (tmp_path / "max.json").write_text(json.dumps(CAPTURE), encoding="utf-8")
    factory = replay_source_factory(tmp_path)

    items = _collect(factory("max"), DateRange(start=date(2024, 1, 10), end=date(2024, 1, 31)))
    (batch,) = [i for i in items if isinstance(i, AccountTransactions)]
    assert [t.description for t in batch.transactions] == ["Wolt"]

    with pytest.raises(SourceError) as missing:
        _collect(factory("isracard"), DateRange(start=date(2024, 1, 1)))
    assert missing.value.retryable is False


def test_credential_validation_per_vendor() -> None:
    validate_credential(prepare_credential("max", {"username": "u", "password": "p"}))

    hapoalim = prepare_credential("hapoalim", {"username": "AB123", "password": "p", "nickname": "joint"})
    validate_credential(hapoalim)
    assert hapoalim.fields["userCode"] == "AB123"
    assert hapoalim.nickname == "joint"

    with pytest.raises(CredentialValidationError) as missing:
        validate_credential(prepare_credential("isracard", {"id": "123", "password": "p"}))
    assert missing.value.missing_fields == ("card6Digits",)

    with pytest.raises(CredentialValidationError, match="Invalid vendor"):
        validate_credential(prepare_credential("paypal", {"username": "u", "password": "p"}))


def test_credential_key_prefers_stored_id() -> None:
    assert credential_key(prepare_credential("max", {"username": "u"}, credential_id="7")) == "id:7"
    assert credential_key(prepare_credential("max", {"username": "u"})) == "max:u"


def test_billing_cycle_range() -> None:
    cycle = DateRange.billing_cycle(2024, 3, 10)
    assert (cycle.start, cycle.end) == (date(2024, 2, 10), date(2024, 3, 9))
    january = DateRange.billing_cycle(2024, 1, 31)
    assert (january.start, january.end) == (date(2023, 12, 31), date(2024, 1, 30))
    with pytest.raises(ValueError):
        DateRange(start=date(2024, 2, 1), end=date(2024, 1, 1))


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite:///x.db")
    monkeypatch.setenv("FS_MAX_RETRIES", "2")
    monkeypatch.setenv("FS_UPDATE_CATEGORY_ON_RESCRAPE", "no")
    monkeypatch.setenv("FS_RECURRING_EXCLUDED_CATEGORIES", "Bank, Income ,Transfers")
    monkeypatch.setenv("FS_REPLAY_DIR", str(tmp_path))

    settings = SyncSettings.from_env()
    assert settings.database_url == "sqlite:///x.db"
    assert settings.max_retries == 2
    assert settings.update_category_on_rescrape is False
    assert settings.recurring_excluded_categories == ("Bank", "Income", "Transfers")
    assert settings.replay_dir == tmp_path
    assert settings.retry_base_delay == 5.0
    assert settings.default_sync_days == 30

    monkeypatch.setenv("FS_REPLAY_DIR", "")
    assert SyncSettings.from_env().replay_dir is None
    overridden = SyncSettings(database_url="sqlite:///y.db", max_retries=0)
    assert (overridden.database_url, overridden.max_retries) == ("sqlite:///y.db", 0)

    monkeypatch.setenv("FS_MAX_RETRIES", "-1")
    with pytest.raises(ValueError):
        SyncSettings.from_env()


def test_backoff_delay_doubles_and_caps() -> None:
    assert [backoff_delay(5.0, n) for n in (0, 1, 2, 3)] == [0.0, 5.0, 10.0, 20.0]
    assert backoff_delay(5.0, 10) == 60.0
