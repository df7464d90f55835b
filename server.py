#!/usr/bin/env python3
"""
Character Card Library Server - SQLite Edition
Indexes the character card PNGs of one folder, deduplicates them by content,
serves filter queries and keeps the index live as files change on disk.

Scan lifecycle events are pushed to clients over Server-Sent Events at
/api/events. Configuration lives in config.py (environment variables) and
settings.json (the cards folder).
"""

import os
import json
import asyncio
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, Query, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response, StreamingResponse
from pydantic import BaseModel
import uvicorn

import config
import thumbnails
from card_index import CardIndexDB, SORT_ORDERS
from scanner import ScanService, delete_card_file
from settings import Settings, SettingsError, get_settings, update_settings
from sync import EventHub, SyncOrchestrator, ORIGIN_APP
from watcher import FolderWatcher

logging.basicConfig(level=config.LOG_LEVEL, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15

app = FastAPI(title="Character Card Library", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

index: Optional[CardIndexDB] = None
hub: Optional[EventHub] = None
orchestrator: Optional[SyncOrchestrator] = None
watcher: Optional[FolderWatcher] = None


class SettingsBody(BaseModel):
    cards_folder_path: Optional[str] = None


class PrimaryFileBody(BaseModel):
    file_path: Optional[str] = None


def apply_cards_folder(folder_path: Optional[str], origin: str = ORIGIN_APP):
    """Point the watcher at the folder and request a scan; tear down on None."""
    if not folder_path:
        if watcher:
            watcher.restart(None)
        logger.info("Cards folder cleared, nothing to watch")
        return

    library_id = index.get_or_create_library(folder_path)
    if watcher:
        watcher.restart(folder_path, library_id)
    orchestrator.request_scan(origin, folder_path, library_id)


def current_library_id() -> Optional[str]:
    folder = get_settings(config.SETTINGS_FILE).cards_folder_path
    return index.get_library_id(folder) if folder else None


@app.on_event("startup")
async def startup():
    global index, hub, orchestrator, watcher

    index = CardIndexDB(config.DB_FILE)
    hub = EventHub()
    scanner = ScanService(index, concurrency=config.SCAN_CONCURRENCY,
                          make_thumbnails=config.THUMBNAILS_ENABLED,
                          thumbnails_dir=config.THUMBNAILS_DIR)
    orchestrator = SyncOrchestrator(index, hub, scanner)
    orchestrator.start()

    if config.WATCH_FILES:
        watcher = FolderWatcher(orchestrator)
    else:
        watcher = None
        logger.info("File watching disabled (CARD_WATCH_FILES=false)")

    try:
        folder = get_settings(config.SETTINGS_FILE).cards_folder_path
    except OSError as e:
        logger.error(f"Could not read settings: {e}")
        folder = None

    if folder and os.path.isdir(folder):
        try:
            apply_cards_folder(folder)
            logger.info(f"Server ready with {index.count_cards()} cards, startup scan requested for {folder}")
        except Exception as e:
            logger.error(f"Startup scan/watch failed for {folder}: {e}")
    else:
        logger.info(f"Cards folder not configured or missing ({folder}), waiting for settings")


@app.on_event("shutdown")
async def shutdown():
    if watcher:
        watcher.stop()
    if hub:
        hub.close_all()
    if orchestrator:
        await orchestrator.stop()
    if index:
        index.close()


# ===== SETTINGS =====

@app.get("/api/settings")
async def read_settings():
    return asdict(get_settings(config.SETTINGS_FILE))


@app.put("/api/settings")
async def write_settings(body: SettingsBody):
    """Save settings; a changed folder restarts the watcher and triggers a scan."""
    previous = get_settings(config.SETTINGS_FILE).cards_folder_path
    try:
        saved = update_settings(Settings(cards_folder_path=body.cards_folder_path), config.SETTINGS_FILE)
    except SettingsError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if saved.cards_folder_path != previous:
        logger.info(f"Cards folder changed: {previous} -> {saved.cards_folder_path}")
    apply_cards_folder(saved.cards_folder_path)
    return asdict(saved)


# ===== INDEX =====

@app.get("/api/index/status")
async def get_index_status():
    library_id = current_library_id()
    return {
        **orchestrator.status(),
        "watched_path": watcher.watched_path if watcher else None,
        "library_id": library_id,
        "cards_indexed": index.count_cards(library_id) if library_id else 0,
        "files_indexed": index.count_card_files(library_id) if library_id else 0,
        "subscribers": hub.subscriber_count,
    }


@app.post("/api/index/rescan")
async def trigger_rescan():
    """Request a scan of the configured folder; overlapping requests are coalesced."""
    folder = get_settings(config.SETTINGS_FILE).cards_folder_path
    if not folder:
        raise HTTPException(status_code=400, detail="No cards folder configured")
    library_id = index.get_or_create_library(folder)
    orchestrator.request_scan(ORIGIN_APP, folder, library_id)
    return {"status": "Scan requested", "running": orchestrator.running, "revision": orchestrator.revision}


# ===== CARDS =====

@app.get("/api/cards")
async def search_cards(
    q: Optional[str] = Query(None, description="Search in name, description and creator"),
    tags: Optional[str] = Query(None, description="Comma-separated tags, all must match"),
    creator: Optional[str] = Query(None, description="Exact creator"),
    spec_version: Optional[str] = Query(None, description="Comma-separated spec versions, e.g. 2.0,3.0"),
    has_creator_notes: Optional[bool] = None,
    has_system_prompt: Optional[bool] = None,
    has_post_history_instructions: Optional[bool] = None,
    has_personality: Optional[bool] = None,
    has_scenario: Optional[bool] = None,
    has_mes_example: Optional[bool] = None,
    has_character_book: Optional[bool] = None,
    min_alternate_greetings: Optional[int] = Query(None, ge=0),
    sort: str = Query("created_at_desc", description=f"One of: {', '.join(SORT_ORDERS)}"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0)
):
    """Search the cards of the configured library."""
    if sort not in SORT_ORDERS:
        raise HTTPException(status_code=400, detail=f"Unknown sort order: {sort}")

    library_id = current_library_id()
    if not library_id:
        return {"total": 0, "limit": limit, "offset": offset, "results": []}

    requested_flags = {
        "has_creator_notes": has_creator_notes,
        "has_system_prompt": has_system_prompt,
        "has_post_history_instructions": has_post_history_instructions,
        "has_personality": has_personality,
        "has_scenario": has_scenario,
        "has_mes_example": has_mes_example,
        "has_character_book": has_character_book,
    }
    flags = {column: value for column, value in requested_flags.items() if value is not None}

    results, total = index.search_cards(
        library_id,
        query=q,
        tags=[t.strip() for t in tags.split(",") if t.strip()] if tags else None,
        creator=creator,
        spec_versions=[v.strip() for v in spec_version.split(",") if v.strip()] if spec_version else None,
        flags=flags,
        min_alternate_greetings=min_alternate_greetings,
        sort=sort,
        limit=limit,
        offset=offset,
    )
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "results": [asdict(c) for c in results]
    }


@app.get("/api/cards/filters")
async def get_card_filters():
    library_id = current_library_id()
    if not library_id:
        return {"creators": [], "spec_versions": [], "tags": []}
    return index.get_filters(library_id)


@app.get("/api/cards/{card_id}")
async def get_card(card_id: str):
    card = index.get_card(card_id)
    if not card:
        raise HTTPException(status_code=404, detail="Card not found")
    card["files"] = [asdict(f) for f in card["files"]]
    return card


@app.get("/api/cards/{card_id}/export")
async def export_card(card_id: str):
    """Original embedded JSON, byte for byte as stored."""
    data_json = index.get_card_data_json(card_id)
    if data_json is None:
        raise HTTPException(status_code=404, detail="Card not found")
    return Response(content=data_json, media_type="application/json")


@app.put("/api/cards/{card_id}/primary-file")
async def set_primary_file(card_id: str, body: PrimaryFileBody):
    if not index.set_primary_file(card_id, body.file_path):
        raise HTTPException(status_code=404, detail="Card or file not found")
    return {"success": True, "card_id": card_id, "primary_file_path": body.file_path}


@app.get("/api/thumbnail/{card_id}")
async def get_thumbnail(card_id: str):
    path = thumbnails.thumbnail_path(card_id, config.THUMBNAILS_DIR)
    if not os.path.isfile(path):
        raise HTTPException(status_code=404, detail="Thumbnail not found")
    return FileResponse(path, media_type="image/webp")


# ===== DUPLICATES =====

@app.get("/api/duplicates")
async def get_duplicates():
    """Cards that have more than one physical copy."""
    library_id = current_library_id()
    if not library_id:
        return {"groups": []}
    groups = index.list_duplicate_groups(library_id)
    for group in groups:
        group["files"] = [asdict(f) for f in group["files"]]
    return {"groups": groups}


@app.delete("/api/card-files")
async def remove_card_file(
    path: str = Query(..., description="Full path of the card file"),
    delete_from_disk: bool = Query(False, description="Also delete the file itself")
):
    """Remove one backing file of a card; the card goes with its last file."""
    if index.get_tracked_file(path) is None:
        raise HTTPException(status_code=404, detail="File not tracked")
    try:
        deleted_card = delete_card_file(index, path, delete_from_disk, config.THUMBNAILS_DIR)
    except OSError as e:
        logger.error(f"Failed to delete {path}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"success": True, "deleted": path, "card_deleted": deleted_card["id"] if deleted_card else None}


# ===== EVENTS =====

@app.get("/api/events")
async def stream_events(request: Request):
    """Server-Sent Events stream of scan lifecycle events."""
    queue = hub.subscribe()
    logger.info(f"SSE client connected ({hub.subscriber_count} total)")

    async def event_stream():
        try:
            yield ": connected\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield ": ping\n\n"
                    continue
                if message is None:
                    break
                yield f"event: {message.event}\nid: {message.id}\ndata: {json.dumps(message.data)}\n\n"
        finally:
            hub.unsubscribe(queue)
            logger.info(f"SSE client disconnected ({hub.subscriber_count} total)")

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
    )


@app.get("/api/tags")
async def get_tags():
    return {"tags": index.get_all_tags()}


def main():
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    main()
