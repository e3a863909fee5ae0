"""
HTTP surface of the vault (aiohttp).

One application serves one user: it owns a single :class:`VaultSession`
and exposes the session lifecycle, item CRUD and import/export as JSON
endpoints under ``/vault``. The idle auto-lock runs as a task on the
server's event loop.
"""
import logging
from typing import Any, Optional, TypeVar

import orjson
from aiohttp import web
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .data import VaultItem, VaultSession
from .exceptions import (
    UNLOCK_FAILED,
    DecryptionError,
    PreconditionError,
    StorageError,
    ValidationError,
)
from .vault.config import VaultConfig
from .vault.crypto import generate_password
from .vault.manager import SessionManager
from .vault.mutations import VaultMutationService

logger = logging.getLogger("dualkey.vault")

RequestModel = TypeVar("RequestModel", bound=BaseModel)


def _dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=_dumps)


def _item_payload(position: int, item: VaultItem) -> dict:
    return {"index": position, **item.model_dump()}


class NameRequest(BaseModel):
    name: str = ""

    model_config = {"extra": "ignore", "strict": True}


class UnlockRequest(BaseModel):
    vault_name: Optional[str] = None
    master_secret: str = ""
    second_secret: str = ""
    second_secret_label: str = ""

    model_config = {"extra": "ignore", "strict": True}


class ItemRequest(BaseModel):
    label: str = ""
    site: str = ""
    username: str = ""
    password: str = ""

    model_config = {"extra": "ignore", "strict": True}


class TimeoutRequest(BaseModel):
    minutes: Optional[float] = None

    model_config = {"extra": "ignore"}


async def _read_json(
    request: web.Request, model: type[RequestModel]
) -> RequestModel:
    """Parse the JSON body into ``model``.

    Raises:
        ValidationError: If the body is not a JSON object or a field has
            the wrong type; ``field`` names the first offending field.
    """
    raw = await request.read()
    try:
        body = orjson.loads(raw) if raw else {}
    except orjson.JSONDecodeError:
        raise ValidationError("Request body must be JSON", field="body") from None
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", field="body")
    try:
        return model.model_validate(body)
    except PydanticValidationError as err:
        loc = err.errors()[0]["loc"]
        field = str(loc[0]) if loc else "body"
        raise ValidationError(f"Invalid value for {field}", field=field) from None


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except ValidationError as err:
        return json_response({"error": err.message, "field": err.field}, status=400)
    except DecryptionError:
        return json_response({"error": UNLOCK_FAILED}, status=401)
    except PreconditionError as err:
        return json_response({"error": err.message}, status=409)
    except StorageError as err:
        logger.error("Storage failure on %s: %s", request.path, err)
        return json_response({"error": "Storage failure"}, status=500)


class VaultHandler:
    """Request handlers bound to one manager and one session."""

    def __init__(
        self,
        manager: SessionManager,
        service: VaultMutationService,
        session: VaultSession,
    ):
        self.manager = manager
        self.service = service
        self.session = session

    def setup(self, app: web.Application) -> None:
        app.add_routes([
            web.get("/vault/names", self.list_names),
            web.post("/vault/names", self.add_name),
            web.post("/vault/select", self.select),
            web.get("/vault/status", self.status),
            web.post("/vault/unlock", self.unlock),
            web.post("/vault/lock", self.lock),
            web.post("/vault/activity", self.activity),
            web.put("/vault/timeout", self.timeout),
            web.get("/vault/items", self.list_items),
            web.post("/vault/items", self.add_item),
            web.delete("/vault/items/{index}", self.delete_item),
            web.get("/vault/export", self.export),
            web.post("/vault/import", self.import_),
            web.get("/vault/password", self.password),
        ])

    async def list_names(self, request: web.Request) -> web.Response:
        return json_response({"names": self.manager.index.ensure_default()})

    async def add_name(self, request: web.Request) -> web.Response:
        body = await _read_json(request, NameRequest)
        names = self.manager.index.add(body.name)
        name = self.manager.select_vault(self.session, body.name)
        return json_response({"names": names, "selected": name})

    async def select(self, request: web.Request) -> web.Response:
        body = await _read_json(request, NameRequest)
        self.manager.select_vault(self.session, body.name)
        return json_response(self.manager.describe(self.session))

    async def status(self, request: web.Request) -> web.Response:
        return json_response(self.manager.describe(self.session))

    async def unlock(self, request: web.Request) -> web.Response:
        body = await _read_json(request, UnlockRequest)
        data = await self.manager.unlock_or_create(
            self.session,
            body.vault_name or self.session.vault_name or "",
            body.master_secret,
            body.second_secret,
            body.second_secret_label,
        )
        status = self.manager.describe(self.session)
        status["items"] = len(data.items)
        return json_response(status)

    async def lock(self, request: web.Request) -> web.Response:
        self.manager.lock(self.session)
        return json_response(self.manager.describe(self.session))

    async def activity(self, request: web.Request) -> web.Response:
        self.session.touch()
        return json_response(self.manager.describe(self.session))

    async def timeout(self, request: web.Request) -> web.Response:
        body = await _read_json(request, TimeoutRequest)
        minutes = self.manager.set_idle_minutes(self.session, body.minutes)
        return json_response({"minutes": minutes})

    async def list_items(self, request: web.Request) -> web.Response:
        found = self.service.search(self.session, request.query.get("q", ""))
        return json_response({"items": [_item_payload(p, i) for p, i in found]})

    async def add_item(self, request: web.Request) -> web.Response:
        body = await _read_json(request, ItemRequest)
        item = self.service.add_item(
            self.session,
            label=body.label,
            site=body.site,
            username=body.username,
            password=body.password,
        )
        position = len(self.session.items) - 1
        return json_response(_item_payload(position, item), status=201)

    async def delete_item(self, request: web.Request) -> web.Response:
        raw = request.match_info["index"]
        try:
            index = int(raw)
        except ValueError:
            raise ValidationError(f"No item at position {raw!r}", field="index") from None
        self.service.delete_item(self.session, index)
        return json_response({"deleted": index, "items": len(self.session.items)})

    async def export(self, request: web.Request) -> web.Response:
        filename, record = self.service.export_envelope(self.session)
        return web.Response(
            text=record,
            content_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    async def import_(self, request: web.Request) -> web.Response:
        content = await request.read()
        self.service.import_envelope(self.session, content)
        return json_response(self.manager.describe(self.session))

    async def password(self, request: web.Request) -> web.Response:
        try:
            length = int(request.query.get("length", 22))
        except ValueError:
            raise ValidationError("length must be an integer", field="length") from None
        if not 1 <= length <= 256:
            raise ValidationError("length must be between 1 and 256", field="length")
        self.session.touch()
        return json_response({"password": generate_password(length)})


session_key = web.AppKey("vault_session", VaultSession)


async def _lock_on_cleanup(app: web.Application) -> None:
    session = app[session_key]
    if session.is_unlocked:
        session.invalidate("server shutdown")


def create_app(
    config: Optional[VaultConfig] = None,
    manager: Optional[SessionManager] = None,
) -> web.Application:
    """Build the vault application.

    Args:
        config: Settings; read from the environment when omitted.
        manager: Pre-built manager (tests inject one over memory storage).
    """
    if manager is None:
        config = config or VaultConfig.from_env()
        manager = SessionManager.from_storage(config.create_storage(), config=config)
    session = VaultSession(
        vault_name=manager.index.pick(),
        idle_minutes=manager.config.idle_minutes,
    )
    app = web.Application(middlewares=[error_middleware])
    app[session_key] = session
    VaultHandler(manager, VaultMutationService(manager), session).setup(app)
    app.on_cleanup.append(_lock_on_cleanup)
    return app
