"""FastAPI endpoints for combat intents, rests, the bestiary and websocket sync."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator, Literal

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from gmtracker.backend.bestiary import BestiaryCatalog, create_catalog
from gmtracker.backend.config import BackendSettings, configure_logging, load_settings
from gmtracker.backend.controller import EncounterLifecycleController
from gmtracker.backend.errors import CatalogLookupError, RecordNotFoundError, StoreError
from gmtracker.backend.intents import dispatch_intent
from gmtracker.backend.models import CommandResult
from gmtracker.backend.repository import EncounterRepository, create_repository
from gmtracker.backend.rest import apply_rest, restorable_resources
from gmtracker.backend.state import build_combat_state
from gmtracker.backend.sync import LocalUpdateMarkers, RealtimeHPSyncBridge

logger = logging.getLogger(__name__)

CHANGE_POLL_INTERVAL_SECONDS = 0.5


class IntentEnvelope(BaseModel):
    intent: dict[str, Any]


class CommandResultModel(BaseModel):
    status: str
    message: str | None = None
    patch: dict[str, Any] = Field(default_factory=dict)


class CombatStateResponse(BaseModel):
    state: dict[str, Any]
    result: CommandResultModel | None = None


class RestRequest(BaseModel):
    rest_type: Literal["short", "long"]
    hit_dice_to_use: int = Field(default=0, ge=0, le=40)
    resource_ids: list[str] = Field(default_factory=list)


class RestResponse(BaseModel):
    restored_labels: list[str]
    healing: int
    update: dict[str, Any]


class RestorableResourcesResponse(BaseModel):
    resources: list[dict[str, Any]]


class CampaignWebSocketHub:
    def __init__(self) -> None:
        self._connections: dict[str, set[WebSocket]] = defaultdict(set)

    async def connect(self, campaign_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections[campaign_id].add(websocket)

    def disconnect(self, campaign_id: str, websocket: WebSocket) -> None:
        connections = self._connections.get(campaign_id)
        if connections is None:
            return
        connections.discard(websocket)
        if not connections:
            self._connections.pop(campaign_id, None)

    async def send_state(self, websocket: WebSocket, state: dict[str, Any]) -> None:
        await websocket.send_json({"type": "state.full", "state": state})

    async def broadcast_state(self, campaign_id: str, state: dict[str, Any]) -> None:
        stale_connections: list[WebSocket] = []
        for websocket in list(self._connections.get(campaign_id, set())):
            try:
                await self.send_state(websocket, state)
            except RuntimeError:
                stale_connections.append(websocket)
        for websocket in stale_connections:
            self.disconnect(campaign_id=campaign_id, websocket=websocket)


class CombatSessionRegistry:
    """One lifecycle controller (and HP bridge) per campaign."""

    def __init__(
        self,
        repository: EncounterRepository,
        catalog: BestiaryCatalog,
        sync_window_seconds: float,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.sync_window_seconds = sync_window_seconds
        self._controllers: dict[str, EncounterLifecycleController] = {}

    def get(self, campaign_id: str) -> EncounterLifecycleController:
        controller = self._controllers.get(campaign_id)
        if controller is not None:
            return controller
        bridge = RealtimeHPSyncBridge(
            repository=self.repository,
            markers=LocalUpdateMarkers(window=self.sync_window_seconds),
        )
        controller = EncounterLifecycleController(
            campaign_id=campaign_id,
            repository=self.repository,
            catalog=self.catalog,
            hp_sync=bridge,
        )
        result = controller.load()
        if result.status == "failed":
            raise HTTPException(status_code=502, detail=result.message)
        self._controllers[campaign_id] = controller
        return controller

    def campaign_ids(self) -> list[str]:
        return list(self._controllers)

    def close(self) -> None:
        for controller in self._controllers.values():
            controller.close()
        self._controllers.clear()


def _result_model(result: CommandResult) -> CommandResultModel:
    return CommandResultModel(status=result.status, message=result.message, patch=result.patch)


def create_app(
    repository: EncounterRepository | None = None,
    catalog: BestiaryCatalog | None = None,
    settings: BackendSettings | None = None,
) -> FastAPI:
    runtime_settings = settings if settings is not None else load_settings()
    encounter_repository = (
        repository if repository is not None else create_repository(runtime_settings.database_url)
    )
    bestiary = (
        catalog
        if catalog is not None
        else create_catalog(runtime_settings.bestiary_url, runtime_settings.bestiary_key)
    )
    registry = CombatSessionRegistry(
        repository=encounter_repository,
        catalog=bestiary,
        sync_window_seconds=runtime_settings.sync_window_seconds,
    )
    websocket_hub = CampaignWebSocketHub()

    async def publish_state(campaign_id: str) -> dict[str, Any]:
        state = build_combat_state(registry.get(campaign_id))
        await websocket_hub.broadcast_state(campaign_id=campaign_id, state=state)
        return state

    async def poll_changes() -> None:
        while True:
            try:
                delivered = encounter_repository.poll_changes(timeout=0)
            except StoreError as exc:
                logger.warning("Character change feed unavailable: %s", exc)
                delivered = 0
            if delivered:
                for campaign_id in registry.campaign_ids():
                    await publish_state(campaign_id)
            await asyncio.sleep(CHANGE_POLL_INTERVAL_SECONDS)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        poller: asyncio.Task[None] | None = None
        if hasattr(encounter_repository, "poll_changes"):
            poller = asyncio.create_task(poll_changes())
        try:
            yield
        finally:
            if poller is not None:
                poller.cancel()
            registry.close()

    app = FastAPI(title="GM Tracker API", version="0.3.0", lifespan=lifespan)
    app.state.websocket_hub = websocket_hub
    app.state.registry = registry

    def get_registry() -> CombatSessionRegistry:
        return registry

    @app.get("/api/campaigns/{campaign_id}/combat", response_model=CombatStateResponse)
    def get_combat(
        campaign_id: str,
        sessions: CombatSessionRegistry = Depends(get_registry),
    ) -> CombatStateResponse:
        return CombatStateResponse(state=build_combat_state(sessions.get(campaign_id)))

    @app.get("/api/campaigns/{campaign_id}/encounters/saved")
    def get_saved_encounters(
        campaign_id: str,
        sessions: CombatSessionRegistry = Depends(get_registry),
    ) -> dict[str, Any]:
        try:
            encounters = sessions.get(campaign_id).list_saved_encounters()
        except StoreError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"encounters": [encounter.to_row() for encounter in encounters]}

    @app.post("/api/campaigns/{campaign_id}/combat/intents", response_model=CombatStateResponse)
    async def post_intent(
        campaign_id: str,
        payload: IntentEnvelope,
        sessions: CombatSessionRegistry = Depends(get_registry),
    ) -> CombatStateResponse:
        controller = sessions.get(campaign_id)
        result = dispatch_intent(controller, payload.intent)
        if result.status == "failed":
            result.rollback()
            await publish_state(campaign_id)
            raise HTTPException(status_code=502, detail=result.message)
        state = await publish_state(campaign_id)
        return CombatStateResponse(state=state, result=_result_model(result))

    @app.get("/api/characters/{character_id}/rest/{rest_type}", response_model=RestorableResourcesResponse)
    def get_restorable_resources(character_id: str, rest_type: Literal["short", "long"]) -> RestorableResourcesResponse:
        try:
            character = encounter_repository.get_character(character_id)
        except RecordNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except StoreError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        resources = restorable_resources(character, rest_type)
        return RestorableResourcesResponse(resources=[asdict(resource) for resource in resources])

    @app.post("/api/characters/{character_id}/rest", response_model=RestResponse)
    async def post_rest(character_id: str, payload: RestRequest) -> RestResponse:
        try:
            result = apply_rest(
                encounter_repository,
                character_id,
                payload.rest_type,
                hit_dice_to_use=payload.hit_dice_to_use,
                selected_resource_ids=payload.resource_ids,
            )
        except RecordNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except StoreError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        for campaign_id in registry.campaign_ids():
            await publish_state(campaign_id)
        return RestResponse(
            restored_labels=result.restored_labels,
            healing=result.healing,
            update=result.update_data,
        )

    @app.get("/api/bestiary")
    def get_bestiary() -> dict[str, Any]:
        try:
            return {"monsters": bestiary.list_monsters()}
        except CatalogLookupError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.get("/api/bestiary/{slug}")
    def get_bestiary_entry(slug: str) -> dict[str, Any]:
        try:
            return {"monster": bestiary.get_monster(slug)}
        except CatalogLookupError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.websocket("/ws/campaigns/{campaign_id}")
    async def campaign_ws(
        websocket: WebSocket,
        campaign_id: str,
        sessions: CombatSessionRegistry = Depends(get_registry),
    ) -> None:
        controller = sessions.get(campaign_id)
        await websocket_hub.connect(campaign_id=campaign_id, websocket=websocket)
        await websocket_hub.send_state(websocket=websocket, state=build_combat_state(controller))

        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            websocket_hub.disconnect(campaign_id=campaign_id, websocket=websocket)

    return app


def main() -> None:
    import uvicorn

    settings = load_settings()
    configure_logging(settings)
    uvicorn.run("gmtracker.backend.api:app", host=settings.host, port=settings.port)


app = create_app()


if __name__ == "__main__":
    main()
