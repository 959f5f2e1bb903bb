"""HTTP API for the product inspection service.

Provides endpoints for Product, ComponentTest and ProductPhoto CRUD, photo
uploads, history queries and report exports (download and email handoff).
The module starts a background uploader that pushes uploaded photos to
Google Drive when USE_GOOGLE_DRIVE is enabled.

Copyright (c) Bryn Gwalad 2025
"""

from typing import List, Optional
import os
import re
import shutil
import asyncio
from pathlib import Path
from datetime import datetime, timedelta

from fastapi import FastAPI, Header, HTTPException, Query, UploadFile, File
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlmodel import select
from dotenv import load_dotenv
import logging

# Load environment variables from a .env file at project root if present.
load_dotenv()

from utils.database import RecordNotFound, RecordStore, get_session, init_db, log_history
from utils.gdrive import build_drive_service, download_file, drive_enabled, upload_file
from utils.screenshot import capture_screenshot
from report.builder import build_report_async
from report.document import normalize_status
from report.errors import ImageUnavailable, InvalidInput, SerializationFailure
from report.filenames import PURPOSE_DOWNLOAD, PURPOSE_EMAIL, timestamp_token
from .delivery import download_response, prepare_email_handoff
from .models import (
    ComponentCreate,
    ComponentStatus,
    ComponentTest,
    ComponentUpdate,
    EmailReportRequest,
    History,
    PhotoCreate,
    Product,
    ProductCreate,
    ProductPhoto,
    ReportRequest,
)

# Drive "view by id" URL prefix. Photos pushed to Drive are stored as
# IMAGE_BASE_URL + file id; the report loader recognises this prefix and
# downloads the file through the Drive API.
IMAGE_BASE_URL = os.getenv("IMAGE_BASE_URL", "https://drive.google.com/uc?export=view&id=")

# Uploaded photos are kept here until (and unless) they are pushed to Drive.
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
UPLOAD_URL_PREFIX = "/uploads"

# Reports saved by the email handoff, one sub-directory per export.
EXPORT_DIR = Path(os.getenv("EXPORT_DIR", "exports"))
EXPORT_DIR.mkdir(parents=True, exist_ok=True)
EXPORT_URL_PREFIX = "/exports"

ALLOWED_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".webp"}

# Admin users configuration: comma-separated list in env ADMIN_USERS, fallback to ['admin']
ADMIN_USERS = [u.strip() for u in os.getenv("ADMIN_USERS", "admin").split(",") if u.strip()]

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

app = FastAPI(title="Product Inspection API")
app.mount(UPLOAD_URL_PREFIX, StaticFiles(directory=str(UPLOAD_DIR)), name="uploads")
app.mount(EXPORT_URL_PREFIX, StaticFiles(directory=str(EXPORT_DIR)), name="exports")

# Module logger
logger = logging.getLogger("inventory_api")


def _serialize_product(product: Product) -> dict:
    return {
        "id": product.id,
        "inventory_id": product.inventory_id,
        "name": product.name,
        "description": product.description,
        "price": product.price,
        "updated_at": product.updated_at.isoformat() if product.updated_at else None,
    }


def _serialize_component(component: ComponentTest) -> dict:
    return {
        "id": component.id,
        "product_id": component.product_id,
        "name": component.name,
        "status": component.status,
        "notes": component.notes,
        "tested_at": component.tested_at.isoformat() if component.tested_at else None,
    }


def _serialize_photo(photo: ProductPhoto) -> dict:
    return {"id": photo.id, "product_id": photo.product_id, "url": photo.url}


def _get_product_or_404(store: RecordStore, product_id: int) -> Product:
    product = store.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def _touch_product(store: RecordStore, product_id: Optional[int]) -> None:
    """Bump the product's updated_at so listings show it first."""
    if product_id is not None and store.get(Product, product_id):
        store.update(Product, product_id, {})


@app.exception_handler(RecordNotFound)
async def record_not_found_handler(request, exc: RecordNotFound):
    return JSONResponse(status_code=404, content={"detail": f"{exc.model.__name__} not found"})


@app.on_event("startup")
async def on_startup():
    """Application startup handler.

    Initializes the database and starts the background uploader queue.
    """
    init_db()

    # Configure logger (do not override global config if already set by app)
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO)

    logger.info("Google Drive photo uploads %s", "enabled" if drive_enabled() else "disabled")
    app.state.upload_queue = asyncio.Queue()
    app.state.uploader_task = asyncio.create_task(_background_uploader(app.state.upload_queue))


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


@app.post("/products/")
def create_product(draft: ProductCreate, user_id: str = Header("system", alias="X-User-Id")):
    """Create a product together with its initial components and photos.

    Components start out untested. Uses `X-User-Id` for audit logging.
    """
    with get_session() as session:
        store = RecordStore(session)
        product = store.create(
            Product,
            {
                "inventory_id": draft.inventory_id.strip(),
                "name": draft.name.strip(),
                "description": draft.description,
                "price": draft.price,
            },
        )
        log_history("add", "Product", user_id, modified_id=product.id, session=session)

        for name in draft.components:
            if not name.strip():
                continue
            component = store.create(ComponentTest, {"product_id": product.id, "name": name.strip()})
            log_history("add", "ComponentTest", user_id, modified_id=component.id, session=session)

        for url in draft.photos:
            if not url.strip():
                continue
            photo = store.create(ProductPhoto, {"product_id": product.id, "url": url.strip()})
            log_history("add", "ProductPhoto", user_id, modified_id=photo.id, session=session)

        session.refresh(product)
        return _serialize_product(product)


@app.get("/products/")
def list_products(inventory_id: Optional[str] = Query(default=None)):
    """List products, most recently updated first, optionally filtered by inventory_id."""
    with get_session() as session:
        filters = {"inventory_id": inventory_id} if inventory_id is not None else None
        products = RecordStore(session).query(Product, filters, order_by=Product.updated_at.desc())
        return [_serialize_product(p) for p in products]


@app.get("/products/search")
def search_product(inventory_id: str = Query(..., min_length=1)):
    """Return the first product with the given inventory id or 404."""
    with get_session() as session:
        results = RecordStore(session).query(Product, {"inventory_id": inventory_id})
        if not results:
            raise HTTPException(status_code=404, detail="Product not found with this Inventory ID")
        return _serialize_product(results[0])


@app.get("/products/{product_id}")
def get_product(product_id: int):
    """Return a product by id or raise 404 if not found."""
    with get_session() as session:
        return _serialize_product(_get_product_or_404(RecordStore(session), product_id))


@app.delete("/products/{product_id}")
def delete_product(product_id: int, user_id: str = Header("system", alias="X-User-Id")):
    """Delete a product.

    Components are detached (product_id cleared) rather than deleted, photos
    are deleted. Every step is recorded in history.
    """
    with get_session() as session:
        store = RecordStore(session)
        _get_product_or_404(store, product_id)

        for component_id in [c.id for c in store.query(ComponentTest, {"product_id": product_id})]:
            store.update(ComponentTest, component_id, {"product_id": None})
            log_history("detach", "ComponentTest", user_id, modified_id=component_id, session=session)

        for photo_id in [p.id for p in store.query(ProductPhoto, {"product_id": product_id})]:
            store.remove(ProductPhoto, photo_id)
            log_history("delete", "ProductPhoto", user_id, modified_id=photo_id, session=session)

        store.remove(Product, product_id)
        log_history("delete", "Product", user_id, modified_id=product_id, session=session)
        return {"ok": True}


@app.get("/products/{product_id}/stats")
def product_stats(product_id: int):
    """Return working / not-working / untested counts for a product."""
    with get_session() as session:
        store = RecordStore(session)
        _get_product_or_404(store, product_id)
        statuses = [normalize_status(c.status) for c in store.query(ComponentTest, {"product_id": product_id})]
        return {
            "working": statuses.count(ComponentStatus.WORKING.value),
            "not_working": statuses.count(ComponentStatus.NOT_WORKING.value),
            "untested": statuses.count(ComponentStatus.UNTESTED.value),
            "total": len(statuses),
        }


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------


@app.get("/products/{product_id}/components")
def list_components(product_id: int):
    """List a product's components in the order they were added."""
    with get_session() as session:
        store = RecordStore(session)
        _get_product_or_404(store, product_id)
        return [_serialize_component(c) for c in store.query(ComponentTest, {"product_id": product_id})]


@app.post("/products/{product_id}/components")
def create_component(product_id: int, component: ComponentCreate, user_id: str = Header("system", alias="X-User-Id")):
    """Add an untested component to a product."""
    with get_session() as session:
        store = RecordStore(session)
        _get_product_or_404(store, product_id)
        record = store.create(ComponentTest, {"product_id": product_id, "name": component.name.strip()})
        log_history("add", "ComponentTest", user_id, modified_id=record.id, session=session)
        _touch_product(store, product_id)
        return _serialize_component(record)


@app.patch("/components/{component_id}")
def update_component(component_id: int, changes: ComponentUpdate, user_id: str = Header("system", alias="X-User-Id")):
    """Update a component's status and/or notes.

    Setting a status stamps `tested_at` with the current time.
    """
    fields = {}
    if changes.status is not None:
        fields["status"] = changes.status.value
        fields["tested_at"] = datetime.utcnow()
    if changes.notes is not None:
        fields["notes"] = changes.notes
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update: provide status and/or notes")

    with get_session() as session:
        store = RecordStore(session)
        record = store.update(ComponentTest, component_id, fields)
        log_history("update", "ComponentTest", user_id, modified_id=record.id, session=session)
        _touch_product(store, record.product_id)
        return _serialize_component(record)


# ---------------------------------------------------------------------------
# Photos
# ---------------------------------------------------------------------------


@app.get("/products/{product_id}/photos")
def list_photos(product_id: int):
    """List a product's photos in the order they were added."""
    with get_session() as session:
        store = RecordStore(session)
        _get_product_or_404(store, product_id)
        return [_serialize_photo(p) for p in store.query(ProductPhoto, {"product_id": product_id})]


@app.post("/products/{product_id}/photos")
def create_photo(product_id: int, photo: PhotoCreate, user_id: str = Header("system", alias="X-User-Id")):
    """Attach a photo given as a data URI or URL."""
    with get_session() as session:
        store = RecordStore(session)
        _get_product_or_404(store, product_id)
        record = store.create(ProductPhoto, {"product_id": product_id, "url": photo.url.strip()})
        log_history("add", "ProductPhoto", user_id, modified_id=record.id, session=session)
        _touch_product(store, product_id)
        return _serialize_photo(record)


@app.post("/products/{product_id}/photos/upload")
def upload_photo(product_id: int, file: UploadFile = File(...), user_id: str = Header("system", alias="X-User-Id")):
    """Save an uploaded image locally, attach it, and enqueue a Drive upload job when enabled."""
    original = file.filename or "upload"
    ext = os.path.splitext(original)[1].lower()
    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        raise HTTPException(status_code=400, detail=f"Unsupported image type {ext or '(none)'}")

    with get_session() as session:
        store = RecordStore(session)
        _get_product_or_404(store, product_id)

        ts = datetime.utcnow().strftime("%Y%m%dT%H%M%S%f")
        filename = f"{product_id}-{ts}{ext}"
        dest_path = UPLOAD_DIR / filename
        try:
            with open(dest_path, "wb") as dest:
                shutil.copyfileobj(file.file, dest)
        finally:
            file.file.close()

        record = store.create(ProductPhoto, {"product_id": product_id, "url": f"{UPLOAD_URL_PREFIX}/{filename}"})
        log_history("add", "ProductPhoto", user_id, modified_id=record.id, session=session)
        _touch_product(store, product_id)

        queue = getattr(app.state, "upload_queue", None)
        if drive_enabled() and queue is not None:
            job = {
                "photo_id": record.id,
                "path": str(dest_path),
                "filename": filename,
                "content_type": file.content_type,
                "user_id": user_id,
            }
            try:
                queue.put_nowait(job)
                logger.info("Enqueued upload job for photo=%s path=%s", record.id, job["path"])
            except asyncio.QueueFull:
                # leave the local file in place; the photo still resolves from disk
                logger.exception("Failed to enqueue upload job for photo=%s", record.id)

        return _serialize_photo(record)


@app.delete("/photos/{photo_id}")
def delete_photo(photo_id: int, user_id: str = Header("system", alias="X-User-Id")):
    """Delete a photo by id."""
    with get_session() as session:
        store = RecordStore(session)
        photo = store.get(ProductPhoto, photo_id)
        if not photo:
            raise HTTPException(status_code=404, detail="Photo not found")
        product_id = photo.product_id
        store.remove(ProductPhoto, photo_id)
        log_history("delete", "ProductPhoto", user_id, modified_id=photo_id, session=session)
        _touch_product(store, product_id)
        return {"ok": True}


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def _photo_loader():
    """Return a loader that resolves stored photo URLs to image bytes.

    Local uploads are read from UPLOAD_DIR and Drive links are downloaded
    through the Drive API. Other remote URLs are not fetched.
    """
    drive = {}

    def load(source: str) -> bytes:
        if source.startswith(UPLOAD_URL_PREFIX + "/"):
            path = UPLOAD_DIR / os.path.basename(source[len(UPLOAD_URL_PREFIX) + 1:])
            if not path.is_file():
                raise ImageUnavailable(f"uploaded file {path.name} is missing")
            return path.read_bytes()
        if source.startswith(IMAGE_BASE_URL):
            if not drive_enabled():
                raise ImageUnavailable("Google Drive is not enabled")
            if "service" not in drive:
                drive["service"] = build_drive_service()
            if drive["service"] is None:
                raise ImageUnavailable("Google Drive client is not available")
            return download_file(drive["service"], source[len(IMAGE_BASE_URL):])
        raise ImageUnavailable("remote image URLs are not fetched during export")

    return load


def _load_report_records(product_id: int):
    """Read the product, its components and photos fresh from the store."""
    with get_session() as session:
        store = RecordStore(session)
        product = _get_product_or_404(store, product_id)
        components = store.query(ComponentTest, {"product_id": product_id})
        photos = store.query(ProductPhoto, {"product_id": product_id})
        return product, components, photos


async def _build(product_id: int, screenshot: Optional[str], purpose: str, timestamp: Optional[int] = None):
    product, components, photos = await asyncio.to_thread(_load_report_records, product_id)
    shot = await asyncio.to_thread(capture_screenshot, screenshot)
    try:
        artifact = await build_report_async(
            product,
            components,
            photos,
            shot,
            purpose=purpose,
            timestamp=timestamp,
            loader=_photo_loader(),
        )
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except SerializationFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return product, artifact


@app.post("/products/{product_id}/report")
async def download_report(product_id: int, body: Optional[ReportRequest] = None):
    """Build the product's test report and return it as a .docx download.

    The optional body may carry a `screenshot` data URI of the test panel.
    """
    _, artifact = await _build(product_id, body.screenshot if body else None, PURPOSE_DOWNLOAD)
    return download_response(artifact)


@app.post("/products/{product_id}/report/email")
async def email_report(product_id: int, body: EmailReportRequest):
    """Build the report, save it for download and return a pre-filled email handoff.

    The returned `mailto` link cannot carry the attachment; its body asks the
    user to attach the downloaded document.
    """
    recipient = body.email.strip()
    if not EMAIL_RE.match(recipient):
        raise HTTPException(status_code=400, detail="A valid email address is required")

    token = timestamp_token()
    product, artifact = await _build(product_id, body.screenshot, PURPOSE_EMAIL, timestamp=token)
    try:
        handoff = prepare_email_handoff(artifact, product, recipient, EXPORT_DIR, token, url_prefix=EXPORT_URL_PREFIX)
    except OSError:
        logger.exception("Failed to save emailed report %s", artifact.filename)
        raise HTTPException(status_code=500, detail="Export failed, please retry")

    return {
        "filename": handoff.filename,
        "download_url": handoff.download_url,
        "recipient": handoff.recipient,
        "subject": handoff.subject,
        "body": handoff.body,
        "mailto": handoff.mailto,
    }


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@app.get("/history/", response_model=List[History])
def get_history(
    user_id: Optional[str] = None,
    table_modified: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    x_user_id: str = Header("system", alias="X-User-Id"),
):
    """Return history entries.

    Access control: only callers with X-User-Id present in ADMIN_USERS may read history.

    Filtering:
    - `user_id` exact match
    - `table_modified` exact match ("Product", "ComponentTest" or "ProductPhoto")
    - `date_from` and `date_to` are ISO dates (YYYY-MM-DD) or datetimes and filter on the `timestamp` field inclusive.
    - `limit` and `offset` provide pagination.
    """
    # enforce admin-only access via configured ADMIN_USERS
    if x_user_id not in ADMIN_USERS:
        raise HTTPException(status_code=403, detail="admin user required to access history")

    dt_from = None
    dt_to = None
    try:
        if date_from:
            dt_from = datetime.fromisoformat(date_from)
        if date_to:
            dt_to = datetime.fromisoformat(date_to)
            # if date only (YYYY-MM-DD) was provided, include entire day
            if len(date_to) == 10:
                dt_to = dt_to + timedelta(days=1) - timedelta(microseconds=1)
    except ValueError:
        raise HTTPException(status_code=400, detail="date_from/date_to must be ISO format (YYYY-MM-DD or full ISO datetime)")

    q = select(History)
    if user_id is not None:
        q = q.where(History.user_id == user_id)
    if table_modified is not None:
        q = q.where(History.table_modified == table_modified)
    if dt_from is not None:
        q = q.where(History.timestamp >= dt_from)
    if dt_to is not None:
        q = q.where(History.timestamp <= dt_to)

    # most recent first
    q = q.order_by(History.timestamp.desc()).offset(offset).limit(limit)

    with get_session() as session:
        return session.exec(q).all()


# ---------------------------------------------------------------------------
# Background Drive uploader
# ---------------------------------------------------------------------------


async def _background_uploader(queue: asyncio.Queue):
    """Background worker that processes photo upload jobs from the queue.

    Each job is a dict with keys: photo_id, path, filename, content_type, user_id.
    """
    while True:
        job = await queue.get()
        try:
            # run the blocking upload+db update in a thread
            await asyncio.to_thread(_process_upload_job, job)
        except Exception:
            # log exception; the local file stays in place and still resolves
            logger.exception("Background uploader failed processing job: %s", job)
        finally:
            queue.task_done()


def _process_upload_job(job: dict):
    """Upload a photo to Google Drive and point the ProductPhoto at the Drive URL.

    Designed to be run inside a thread via asyncio.to_thread().
    """
    logger.info("Processing upload job for photo=%s path=%s", job.get("photo_id"), job.get("path"))
    service = build_drive_service()
    if service is None:
        logger.error("No Drive client available; skipping upload for job=%s", job)
        return

    file_id = upload_file(service, job["path"], job["filename"], job.get("content_type"))
    if not file_id:
        return

    with get_session() as session:
        store = RecordStore(session)
        try:
            photo = store.update(ProductPhoto, job["photo_id"], {"url": IMAGE_BASE_URL + file_id})
        except RecordNotFound:
            logger.error("Photo %s was deleted before its Drive upload finished", job["photo_id"])
            return
        log_history("update", "ProductPhoto", job.get("user_id", "system"), modified_id=photo.id, session=session)
        logger.info("Updated photo=%s url=%s", photo.id, photo.url)

    try:
        os.remove(job["path"])
        logger.info("Removed local file %s after successful upload", job["path"])
    except OSError:
        logger.warning("Failed to remove local file %s after upload", job["path"])


@app.on_event("shutdown")
async def on_shutdown():
    # gracefully cancel uploader task
    task = getattr(app.state, "uploader_task", None)
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
