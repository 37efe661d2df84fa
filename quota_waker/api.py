"""
Quota Waker HTTP API — управление расписанием, снапшотами и аккаунтами.

Авторизация: Bearer {API_SECRET_KEY}. /health открыт.
"""

import asyncio
import hmac
import os
import types
from pathlib import Path
from typing import Any, Literal, Union, get_args, get_origin

from fastapi import Body, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, Field

from quota_waker.accounts.credentials import Credential
from quota_waker.accounts.manager import AccountManager
from quota_waker.config import (
    MUTABLE_FIELDS,
    Settings,
    apply_overrides,
    get_current_overrides,
    save_overrides,
    settings as default_settings,
)
from quota_waker.errors import ScheduleValidationError
from quota_waker.scheduler.config import PRESETS
from quota_waker.telemetry.accounts_refresh import AccountsQuotaRefresher
from quota_waker.telemetry.engine import TelemetryEngine
from quota_waker.telemetry.history import QuotaHistory
from quota_waker.telemetry.snapshot import SnapshotBuilder
from quota_waker.triggers.history import TriggerHistory
from quota_waker.triggers.orchestrator import TriggerOrchestrator

# Поля, содержащие секреты — маскируются в GET /config
_SECRET_FIELDS: frozenset[str] = frozenset({
    "oauth_client_secret",
    "local_probe_csrf_token",
})


def _resolve_field_type(config: Settings, field_name: str) -> str:
    """Определить строковый тип поля Settings для API-ответа."""
    if field_name in _SECRET_FIELDS:
        return "secret"
    annotation = type(config).model_fields[field_name].annotation
    # Unwrap Optional/Union (str | None → str)
    origin = get_origin(annotation)
    if origin is Union or isinstance(annotation, types.UnionType):
        args = [a for a in get_args(annotation) if a is not type(None)]
        annotation = args[0] if args else annotation
    if get_origin(annotation) is Literal:
        return "enum"
    if annotation is bool:
        return "bool"
    if annotation is int:
        return "int"
    if annotation is float:
        return "float"
    if annotation is Path or annotation is type(Path()):
        return "path"
    if get_origin(annotation) is list:
        inner = get_args(annotation)
        inner_name = inner[0].__name__ if inner else "str"
        return f"list[{inner_name}]"
    return "str"


def _get_api_secret() -> str:
    return os.environ.get("API_SECRET_KEY", "")


def _verify_secret(authorization: str) -> None:
    """Проверка Bearer-токена — constant-time сравнение."""
    secret = _get_api_secret()
    if not secret:
        raise HTTPException(status_code=503, detail="API_SECRET_KEY not configured")
    expected = f"Bearer {secret}"
    if not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _mask(value: str | None) -> str:
    """Маскировать секрет: 4 символа слева + звёздочки + 4 символа справа."""
    if not value:
        return ""
    if len(value) <= 8:
        return "****"
    return value[:4] + "*" * (len(value) - 8) + value[-4:]


class PatchConfig(BaseModel):
    """Partial update мутабельных полей."""

    quota_source: Literal["local", "remote"] | None = None
    grouping_enabled: bool | None = None
    recommended_models_only: bool | None = None
    visible_models: list[str] | None = None
    timezone: str | None = None


assert set(PatchConfig.model_fields.keys()) == MUTABLE_FIELDS, (
    f"PatchConfig fields {set(PatchConfig.model_fields)} != MUTABLE_FIELDS {MUTABLE_FIELDS}"
)


class TriggerRequest(BaseModel):
    models: list[str] | None = None
    accounts: list[str] | None = None
    prompt: str | None = None


class SwitchAccount(BaseModel):
    email: str


class ImportAccount(BaseModel):
    email: str
    refresh_token: str
    access_token: str = ""
    expires_at: float = 0.0
    project_id: str | None = None


class GroupName(BaseModel):
    model_ids: list[str] = Field(min_length=1)
    name: str = Field(min_length=1)


# Lock для атомарности read-modify-write overrides
_config_lock = asyncio.Lock()


def _build_config_response(config: Settings) -> dict[str, Any]:
    """Построить ответ GET /config с маскировкой секретов и флагом mutable."""
    result: dict[str, Any] = {}

    for field_name in type(config).model_fields:
        value = getattr(config, field_name)
        mutable = field_name in MUTABLE_FIELDS

        if field_name in _SECRET_FIELDS and isinstance(value, str):
            value = _mask(value)

        if isinstance(value, Path):
            value = str(value)

        result[field_name] = {
            "value": value,
            "mutable": mutable,
            "type": _resolve_field_type(config, field_name),
        }

    return result


def create_app(
    orchestrator: TriggerOrchestrator,
    engine: TelemetryEngine,
    accounts: AccountManager,
    builder: SnapshotBuilder,
    history: TriggerHistory,
    quota_history: QuotaHistory,
    refresher: AccountsQuotaRefresher,
    config: Settings | None = None,
) -> FastAPI:
    """Создать FastAPI-приложение управления."""
    config = config or default_settings
    app = FastAPI(title="Quota Waker API", docs_url=None, redoc_url=None)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "source": engine.current_source,
            "synced": engine.has_synced,
            "policy": orchestrator.active_policy,
        }

    # ==================== Config ====================

    @app.get("/config")
    async def get_config(authorization: str = Header(...)) -> dict[str, Any]:
        _verify_secret(authorization)
        return _build_config_response(config)

    @app.patch("/config")
    async def patch_config(body: PatchConfig, authorization: str = Header(...)) -> dict[str, Any]:
        _verify_secret(authorization)

        updates = body.model_dump(exclude_none=True)
        if not updates:
            raise HTTPException(status_code=400, detail="No fields to update")

        async with _config_lock:
            source = updates.pop("quota_source", None)
            if source is not None:
                engine.set_source(source)
            apply_overrides(updates, target=config)
            current = get_current_overrides()
            current.update(updates)
            if source is not None:
                current["quota_source"] = source
            save_overrides(current)

        if updates:
            # Фильтры и группировка применяются к уже полученным данным
            await engine.reprocess_and_publish()
        return _build_config_response(config)

    # ==================== Snapshot ====================

    @app.get("/snapshot")
    async def get_snapshot(authorization: str = Header(...)) -> dict[str, Any] | None:
        _verify_secret(authorization)
        snapshot = engine.last_snapshot
        return snapshot.to_dict() if snapshot else None

    @app.post("/snapshot/refresh")
    async def refresh_snapshot(authorization: str = Header(...)) -> dict[str, Any] | None:
        _verify_secret(authorization)
        snapshot = await engine.refresh()
        return snapshot.to_dict() if snapshot else None

    @app.post("/snapshot/reprocess")
    async def reprocess_snapshot(authorization: str = Header(...)) -> dict[str, Any] | None:
        _verify_secret(authorization)
        snapshot = await engine.reprocess_and_publish()
        return snapshot.to_dict() if snapshot else None

    @app.put("/groups/name")
    async def set_group_name(body: GroupName, authorization: str = Header(...)) -> dict[str, Any] | None:
        _verify_secret(authorization)
        builder.set_group_name(body.model_ids, body.name)
        snapshot = await engine.reprocess_and_publish()
        return snapshot.to_dict() if snapshot else None

    @app.delete("/groups/mappings")
    async def reset_group_mappings(authorization: str = Header(...)) -> dict[str, Any] | None:
        _verify_secret(authorization)
        builder.reset_group_mappings()
        snapshot = await engine.reprocess_and_publish()
        return snapshot.to_dict() if snapshot else None

    # ==================== Schedule ====================

    @app.get("/schedule")
    async def get_schedule(authorization: str = Header(...)) -> dict[str, Any]:
        _verify_secret(authorization)
        next_at = orchestrator.next_scheduled_run()
        return {
            "config": orchestrator.config.model_dump(mode="json"),
            "mode": orchestrator.active_policy,
            "timers": orchestrator.registered_timers(),
            "next_run": next_at.isoformat() if next_at else None,
        }

    @app.put("/schedule")
    async def put_schedule(
        body: dict[str, Any] = Body(...),
        authorization: str = Header(...),
    ) -> dict[str, Any]:
        _verify_secret(authorization)
        try:
            saved = await orchestrator.save_schedule(body)
        except ScheduleValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {"config": saved.model_dump(mode="json"), "mode": saved.mode}

    @app.get("/schedule/next-runs")
    async def get_next_runs(
        count: int = Query(5, ge=1, le=50),
        authorization: str = Header(...),
    ) -> list[str]:
        _verify_secret(authorization)
        return [run.isoformat() for run in orchestrator.preview_runs(count)]

    @app.get("/schedule/presets")
    async def get_presets(authorization: str = Header(...)) -> dict[str, Any]:
        _verify_secret(authorization)
        return {name: policy.model_dump(mode="json") for name, policy in PRESETS.items()}

    # ==================== History / trigger ====================

    @app.get("/history")
    async def get_history(authorization: str = Header(...)) -> list[dict[str, Any]]:
        _verify_secret(authorization)
        return [record.to_dict() for record in history.list_records()]

    @app.delete("/history")
    async def clear_history(authorization: str = Header(...)) -> dict[str, str]:
        _verify_secret(authorization)
        history.clear()
        return {"status": "ok"}

    @app.post("/trigger")
    async def trigger(body: TriggerRequest, authorization: str = Header(...)) -> list[dict[str, Any]]:
        _verify_secret(authorization)
        try:
            records = await orchestrator.trigger_now(body.models, body.accounts, body.prompt)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return [record.to_dict() for record in records]

    # ==================== Accounts ====================

    @app.get("/accounts")
    async def list_accounts(authorization: str = Header(...)) -> list[dict[str, Any]]:
        _verify_secret(authorization)
        return accounts.list_accounts()

    @app.post("/accounts")
    async def import_account(body: ImportAccount, authorization: str = Header(...)) -> dict[str, str]:
        _verify_secret(authorization)
        await accounts.import_account(Credential(**body.model_dump()))
        return {"status": "ok"}

    @app.post("/accounts/active")
    async def switch_account(body: SwitchAccount, authorization: str = Header(...)) -> dict[str, str]:
        _verify_secret(authorization)
        try:
            await accounts.switch_account(body.email)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {"status": "ok"}

    @app.delete("/accounts/{email}")
    async def remove_account(email: str, authorization: str = Header(...)) -> dict[str, str]:
        _verify_secret(authorization)
        if not await accounts.remove_account(email):
            raise HTTPException(status_code=404, detail=f"Account not found: {email}")
        return {"status": "ok"}

    @app.get("/accounts/quotas")
    async def list_account_quotas(authorization: str = Header(...)) -> list[dict[str, Any]]:
        _verify_secret(authorization)
        return [state.to_dict() for state in refresher.states()]

    @app.post("/accounts/quotas/refresh")
    async def refresh_account_quotas(authorization: str = Header(...)) -> list[dict[str, Any]]:
        _verify_secret(authorization)
        return [state.to_dict() for state in await refresher.refresh_all()]

    @app.post("/accounts/{email}/quota/refresh")
    async def refresh_account_quota(email: str, authorization: str = Header(...)) -> dict[str, Any]:
        _verify_secret(authorization)
        try:
            state = await refresher.refresh_account(email)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return state.to_dict()

    # ==================== Quota history ====================

    def _active_email() -> str | None:
        return next((a["email"] for a in accounts.list_accounts() if a["active"]), None)

    @app.get("/quota-history")
    async def get_quota_history(
        email: str | None = None,
        range_days: float | None = Query(None),
        model_id: str | None = None,
        authorization: str = Header(...),
    ) -> dict[str, Any]:
        _verify_secret(authorization)
        result = quota_history.query(email or _active_email(), range_days, model_id)
        if result is None:
            raise HTTPException(status_code=404, detail="No account for quota history")
        return result

    @app.delete("/quota-history")
    async def clear_quota_history(
        email: str | None = None,
        authorization: str = Header(...),
    ) -> dict[str, Any]:
        _verify_secret(authorization)
        return {"cleared": quota_history.clear(email)}

    return app
