import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request, Response, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader

from library_app.config import Settings, configure_logging, settings as default_settings
from library_app.errors import (
    BusyError,
    CapacityError,
    ConflictError,
    ExternalServiceError,
    LibraryError,
    NotFoundError,
    ValidationError,
)
from library_app.library import Library
from library_app.schemas import (
    AutoArrangeRequest,
    BorrowingModel,
    BorrowRequest,
    CoverUploadResponse,
    FineCreate,
    FineModel,
    ItemCreate,
    ItemModel,
    ItemUpdate,
    PlacementModel,
    PlacementRequest,
    ShelfCreate,
    ShelfModel,
    ShelfUpdate,
    StatsModel,
    SweepRequest,
    describe_errors,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    CapacityError: 409,
    ConflictError: 409,
    ExternalServiceError: 502,
    BusyError: 503,
}


# --- Background overdue sweep ---
async def _overdue_sweeper(library: Library, interval: int) -> None:
    """Reclassify overdue borrowings every ``interval`` seconds until cancelled."""
    while True:
        try:
            swept = await asyncio.to_thread(library.ledger.sweep_overdue)
            if swept:
                logger.info(f"Background sweep marked {len(swept)} borrowing(s) overdue")
        except LibraryError as e:
            logger.error(f"Background overdue sweep failed: {e}")
        except Exception:
            logger.exception("Background overdue sweep crashed; will retry")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    cfg: Settings = app.state.settings
    logger.info(f"Starting {cfg.app_name} {cfg.app_version} ({cfg.environment})")
    owns_library = app.state.library is None
    if owns_library:
        app.state.library = Library(settings=cfg)

    sweeper = None
    if cfg.overdue_sweep_interval > 0:
        sweeper = asyncio.create_task(_overdue_sweeper(app.state.library, cfg.overdue_sweep_interval))
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        if owns_library:
            app.state.library.close()
            app.state.library = None


# --- Dependencies ---
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_library(request: Request) -> Library:
    library = request.app.state.library
    if library is None:
        raise HTTPException(status_code=503, detail="Library is not initialised.")
    return library


def get_api_key(request: Request, api_key: Optional[str] = Security(api_key_header)):
    """Dependency validating the API key on mutating endpoints."""
    if api_key and api_key == request.app.state.settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    status = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 500)
    return JSONResponse(status_code=status, content={"detail": exc.message, "code": exc.code})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report rejected request bodies and parameters like core validation failures."""
    return JSONResponse(
        status_code=ERROR_STATUS[ValidationError],
        content={"detail": describe_errors(exc.errors()), "code": ValidationError.code},
    )


# --- Helpers ---
def _item_model(item) -> ItemModel:
    return ItemModel(**item.to_dict())


def _shelf_model(shelf, occupancy: int) -> ShelfModel:
    return ShelfModel(**shelf.to_dict(), occupancy=occupancy)


def _borrowing_model(borrowing) -> BorrowingModel:
    return BorrowingModel(**borrowing.to_dict())


def _fine_model(fine) -> FineModel:
    return FineModel(**fine.to_dict())


router = APIRouter()
write_access = [Depends(get_api_key)]


# --- Health & stats ---
@router.get("/health")
def health(library: Library = Depends(get_library)):
    """Lightweight health check with a quick database round trip."""
    db_ok = True
    try:
        with library.db.connection() as conn:
            conn.execute("SELECT 1")
    except Exception:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "total_items": library.catalog.count_items(),
    }


@router.get("/stats", response_model=StatsModel)
def get_library_stats(library: Library = Depends(get_library)):
    return StatsModel(**library.get_statistics())


# --- Items ---
@router.get("/items", response_model=List[ItemModel])
def list_items(
    request: Request,
    response: Response,
    kind: Optional[str] = Query(None, description="book | journal"),
    q: Optional[str] = Query(None, description="Search title, author, publisher, ISBN or ISSN"),
    shelf_id: Optional[int] = Query(None),
    unplaced: bool = Query(False, description="Only items without a shelf"),
    sort_by: str = Query("title", description="title | author | created_at | id | available_copies"),
    order: str = Query("asc", description="asc | desc"),
    limit: Optional[int] = Query(None, ge=1, description="Page size (capped by MAX_PAGE_SIZE)"),
    offset: int = Query(0, ge=0),
    library: Library = Depends(get_library),
):
    cfg: Settings = request.app.state.settings
    limit = min(limit or cfg.default_page_size, cfg.max_page_size)
    items = library.catalog.list_items(
        kind=kind, query=q, shelf_id=shelf_id, unplaced=unplaced,
        sort_by=sort_by, order=order, limit=limit, offset=offset,
    )
    total = library.catalog.count_items(kind=kind, query=q, shelf_id=shelf_id, unplaced=unplaced)
    response.headers["X-Total-Count"] = str(total)
    return [_item_model(i) for i in items]


@router.post("/items", response_model=ItemModel, dependencies=write_access)
def create_item(payload: ItemCreate, library: Library = Depends(get_library)):
    return _item_model(library.catalog.create_item(payload))


@router.get("/items/{item_id}", response_model=ItemModel)
def get_item(item_id: int, library: Library = Depends(get_library)):
    return _item_model(library.catalog.get_item(item_id))


@router.put("/items/{item_id}", response_model=ItemModel, dependencies=write_access)
def update_item(item_id: int, update: ItemUpdate, library: Library = Depends(get_library)):
    return _item_model(library.catalog.update_item(item_id, update))


@router.delete("/items/{item_id}", dependencies=write_access)
def delete_item(item_id: int, library: Library = Depends(get_library)):
    item = library.catalog.delete_item(item_id)
    return {"message": "Item removed.", "item": _item_model(item)}


@router.put("/items/{item_id}/position", response_model=ItemModel, dependencies=write_access)
def place_item(item_id: int, payload: PlacementRequest, library: Library = Depends(get_library)):
    return _item_model(library.shelves.place_item(item_id, payload.shelf_id, payload.position))


@router.delete("/items/{item_id}/position", response_model=ItemModel, dependencies=write_access)
def unplace_item(item_id: int, library: Library = Depends(get_library)):
    return _item_model(library.shelves.remove_item(item_id))


@router.get("/items/{item_id}/cover")
def get_item_cover(item_id: int, library: Library = Depends(get_library)):
    """Proxy the item's cover image from object storage."""
    url = library.resolve_cover(item_id)
    fetched = library.covers.fetch_cover(url) if url else None
    if not fetched:
        raise HTTPException(status_code=404, detail="Cover not found.")
    content, media_type = fetched
    return Response(
        content=content,
        media_type=media_type,
        headers={"Cache-Control": "public, max-age=86400"},
    )


@router.post("/items/{item_id}/cover", response_model=CoverUploadResponse, dependencies=write_access)
async def upload_item_cover(
    item_id: int,
    request: Request,
    filename: str = Query("cover.jpg", description="Original file name; its extension names the object"),
    library: Library = Depends(get_library),
):
    """Upload the raw request body as the item's cover image."""
    content = await request.body()
    content_type = request.headers.get("content-type", "")
    url = await asyncio.to_thread(library.upload_cover, item_id, content, filename, content_type)
    return CoverUploadResponse(url=url, filename=url.rsplit("/", 1)[-1])


# --- Shelves ---
@router.get("/shelves", response_model=List[ShelfModel])
def list_shelves(category: Optional[str] = Query(None), library: Library = Depends(get_library)):
    return [_shelf_model(s, library.shelves.occupancy(s.id)) for s in library.shelves.list_shelves(category)]


@router.post("/shelves", response_model=ShelfModel, dependencies=write_access)
def create_shelf(payload: ShelfCreate, library: Library = Depends(get_library)):
    return _shelf_model(library.shelves.create_shelf(payload), 0)


@router.post("/shelves/auto-arrange", response_model=List[PlacementModel], dependencies=write_access)
def auto_arrange(payload: Optional[AutoArrangeRequest] = Body(default=None), library: Library = Depends(get_library)):
    item_ids = payload.item_ids if payload else None
    return [PlacementModel(**p.to_dict()) for p in library.shelves.auto_arrange(item_ids)]


@router.get("/shelves/{shelf_id}", response_model=ShelfModel)
def get_shelf(shelf_id: int, library: Library = Depends(get_library)):
    shelf = library.shelves.get_shelf(shelf_id)
    return _shelf_model(shelf, library.shelves.occupancy(shelf_id))


@router.put("/shelves/{shelf_id}", response_model=ShelfModel, dependencies=write_access)
def update_shelf(shelf_id: int, update: ShelfUpdate, library: Library = Depends(get_library)):
    shelf = library.shelves.update_shelf(shelf_id, update)
    return _shelf_model(shelf, library.shelves.occupancy(shelf_id))


@router.delete("/shelves/{shelf_id}", dependencies=write_access)
def delete_shelf(shelf_id: int, library: Library = Depends(get_library)):
    shelf = library.shelves.delete_shelf(shelf_id)
    return {"message": "Shelf removed.", "shelf": _shelf_model(shelf, 0)}


@router.get("/shelves/{shelf_id}/items", response_model=List[ItemModel])
def shelf_items(shelf_id: int, library: Library = Depends(get_library)):
    return [_item_model(i) for i in library.shelves.shelf_contents(shelf_id)]


# --- Borrowings ---
@router.get("/borrowings", response_model=List[BorrowingModel])
def list_borrowings(
    user_id: Optional[str] = Query(None),
    item_id: Optional[int] = Query(None),
    status: Optional[str] = Query(None, description="active | overdue | returned"),
    library: Library = Depends(get_library),
):
    return [_borrowing_model(b) for b in library.ledger.list_borrowings(user_id, item_id, status)]


@router.post("/borrowings", response_model=BorrowingModel, dependencies=write_access)
def borrow_item(payload: BorrowRequest, library: Library = Depends(get_library)):
    borrowing = library.ledger.borrow(payload.user_id, payload.item_id, payload.loan_period_days)
    return _borrowing_model(borrowing)


@router.post("/borrowings/sweep", response_model=List[BorrowingModel], dependencies=write_access)
def sweep_overdue(payload: Optional[SweepRequest] = Body(default=None), library: Library = Depends(get_library)):
    now = payload.now if payload else None
    return [_borrowing_model(b) for b in library.ledger.sweep_overdue(now)]


@router.get("/borrowings/{borrowing_id}", response_model=BorrowingModel)
def get_borrowing(borrowing_id: int, library: Library = Depends(get_library)):
    return _borrowing_model(library.ledger.get_borrowing(borrowing_id))


@router.post("/borrowings/{borrowing_id}/return", response_model=BorrowingModel, dependencies=write_access)
def return_item(borrowing_id: int, library: Library = Depends(get_library)):
    return _borrowing_model(library.ledger.return_item(borrowing_id))


# --- Fines ---
@router.get("/fines", response_model=List[FineModel])
def list_fines(
    user_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, description="unpaid | paid"),
    borrowing_id: Optional[int] = Query(None),
    library: Library = Depends(get_library),
):
    return [_fine_model(f) for f in library.ledger.list_fines(user_id, status, borrowing_id)]


@router.post("/fines", response_model=FineModel, dependencies=write_access)
def create_fine(payload: FineCreate, library: Library = Depends(get_library)):
    return _fine_model(library.ledger.create_fine(payload))


@router.get("/fines/{fine_id}", response_model=FineModel)
def get_fine(fine_id: int, library: Library = Depends(get_library)):
    return _fine_model(library.ledger.get_fine(fine_id))


@router.post("/fines/{fine_id}/pay", response_model=FineModel, dependencies=write_access)
def pay_fine(fine_id: int, library: Library = Depends(get_library)):
    return _fine_model(library.ledger.pay_fine(fine_id))


def create_app(library: Optional[Library] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the ASGI app.

    A given ``library`` is used as-is and left open on shutdown; otherwise
    one is created from ``settings`` when the app starts.
    """
    cfg = settings or (library.settings if library is not None else default_settings)
    configure_logging(cfg)

    app = FastAPI(title=cfg.app_name, version=cfg.app_version, debug=cfg.debug, lifespan=lifespan)
    app.state.settings = cfg
    app.state.library = library

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LibraryError, library_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()
