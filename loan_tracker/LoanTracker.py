import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from loan_tracker.db import gateway
from loan_tracker.db.deps import get_db
from loan_tracker.db.session import init_db
from loan_tracker.logging_config import setup_logging
from loan_tracker.schemas.catalog import AdjustAvailabilityDto, CreateItemDto, CreateVariantDto
from loan_tracker.schemas.loans import BatchLoanRequest, ConditionUpdateDto, CreateLoanDto
from loan_tracker.schemas.people import AttachPhotoDto, BatchPeopleRequest, CreatePersonDto
from loan_tracker.services import catalog_service, loan_service, roster_service
from loan_tracker.services.audit_service import list_audit, log_audit, serialize_audit
from loan_tracker.services.errors import LoanTrackerError
from loan_tracker.services.import_service import parse_people_sheet
from loan_tracker.services.scan_service import resolve_code
from loan_tracker.services.targets import target_for
from loan_tracker.services.view_cache import InventoryView

setup_logging(os.environ.get("LOG_LEVEL", "INFO"), os.environ.get("LOG_FILE") or None)

LOGGER = logging.getLogger("loan_tracker.api")
ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif"}


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if str(os.environ.get("LOAN_TRACKER_CREATE_TABLES", "true")).strip().lower() in {"1", "true", "yes", "on"}:
        init_db()
    yield


app = FastAPI(title="Loan Tracker", lifespan=lifespan)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

_INVENTORY_VIEW = InventoryView()


def get_inventory_view() -> InventoryView:
    return _INVENTORY_VIEW


@app.exception_handler(LoanTrackerError)
async def handle_service_error(request: Request, exc: LoanTrackerError):
    if exc.status_code >= 500:
        LOGGER.error("Request failed path=%s kind=%s error=%s", request.url.path, exc.kind, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "kind": exc.kind, "retryable": exc.retryable},
    )


def _read_image_upload(file: UploadFile) -> bytes:
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Unsupported file type. Please upload an image (jpg, png, webp, gif).")
    return file.file.read()


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    with gateway.store_call(db, "healthcheck"):
        db.execute(text("SELECT 1"))
    return {"status": "ok"}


# Catalog


@app.get("/api/items")
def get_items(db: Session = Depends(get_db), view: InventoryView = Depends(get_inventory_view)):
    return view.items(db)


@app.get("/api/items/{item_id}")
def get_item(item_id: str, db: Session = Depends(get_db)):
    return catalog_service.serialize_item(catalog_service.get_item(db, item_id))


@app.post("/api/items")
def create_item(payload: CreateItemDto, db: Session = Depends(get_db), view: InventoryView = Depends(get_inventory_view)):
    item = view.run(
        lambda: catalog_service.add_item(db, payload.name, payload.totalQuantity, payload.consumable),
        view.apply_item,
    )
    log_audit(db, "Item", item.id, "CreateItem", f"total={item.total_quantity} consumable={item.consumable}")
    return catalog_service.serialize_item(item)


@app.delete("/api/items/{item_id}")
def delete_item(item_id: str, db: Session = Depends(get_db), view: InventoryView = Depends(get_inventory_view)):
    view.run(lambda: catalog_service.delete_item(db, item_id), lambda _: view.forget_item(item_id))
    log_audit(db, "Item", item_id, "DeleteItem")
    return {"message": "Deleted"}


@app.post("/api/items/{item_id}/variants")
def create_variant(
    item_id: str,
    payload: CreateVariantDto,
    db: Session = Depends(get_db),
    view: InventoryView = Depends(get_inventory_view),
):
    variant = view.run(
        lambda: catalog_service.add_variant(db, item_id, payload.name, payload.totalQuantity),
        view.apply_variant,
    )
    log_audit(db, "ItemVariant", variant.id, "CreateVariant", f"item={item_id} total={variant.total_quantity}")
    return catalog_service.serialize_variant(variant)


@app.delete("/api/variants/{variant_id}")
def delete_variant(variant_id: str, db: Session = Depends(get_db), view: InventoryView = Depends(get_inventory_view)):
    variant = catalog_service.get_variant(db, variant_id)
    item_id = variant.item_id
    view.run(
        lambda: catalog_service.delete_variant(db, variant_id),
        lambda _: view.forget_variant(item_id, variant_id),
    )
    log_audit(db, "ItemVariant", variant_id, "DeleteVariant", f"item={item_id}")
    return {"message": "Deleted"}


@app.post("/api/items/{item_id}/availability")
def adjust_item_availability(
    item_id: str,
    payload: AdjustAvailabilityDto,
    db: Session = Depends(get_db),
    view: InventoryView = Depends(get_inventory_view),
):
    target = target_for(item_id, payload.variantID)
    row = view.run(lambda: catalog_service.adjust_availability(db, target, payload.delta))
    if payload.variantID:
        view.apply_variant(row)
        body = catalog_service.serialize_variant(row)
    else:
        view.apply_item(row)
        body = catalog_service.serialize_item(row)
    log_audit(db, "Item", item_id, "AdjustAvailability", f"variant={payload.variantID} delta={payload.delta}")
    return body


# Roster


@app.get("/api/people")
def get_people(db: Session = Depends(get_db)):
    return [roster_service.serialize_person(person) for person in roster_service.list_people(db)]


@app.post("/api/people")
def create_person(payload: CreatePersonDto, db: Session = Depends(get_db)):
    person = roster_service.add_person(db, payload.name, payload.dateOfBirth, payload.photoUrl)
    log_audit(db, "Person", person.id, "CreatePerson")
    return roster_service.serialize_person(person)


@app.post("/api/people/batch")
def create_people_batch(payload: BatchPeopleRequest, db: Session = Depends(get_db)):
    results = roster_service.batch_add_people(db, [row.model_dump() for row in payload.people])
    saved = sum(1 for result in results if result.status == "saved")
    log_audit(db, "Person", "batch", "BatchCreatePeople", f"saved={saved} total={len(results)}")
    return [roster_service.serialize_import_result(result) for result in results]


@app.post("/api/people/import")
def import_people(file: UploadFile = File(...), db: Session = Depends(get_db)):
    records = parse_people_sheet(file.file.read(), file.filename)
    results = roster_service.batch_add_people(db, records)
    saved = sum(1 for result in results if result.status == "saved")
    log_audit(db, "Person", "import", "ImportPeople", f"file={file.filename} saved={saved} total={len(results)}")
    return [roster_service.serialize_import_result(result) for result in results]


@app.post("/api/people/photos")
def upload_person_photo(file: UploadFile = File(...)):
    return {"path": roster_service.upload_person_photo(_read_image_upload(file), file.filename)}


@app.post("/api/people/{person_id}/photo")
def upload_and_attach_person_photo(person_id: str, file: UploadFile = File(...), db: Session = Depends(get_db)):
    roster_service.get_person(db, person_id)
    photo_ref = roster_service.upload_person_photo(_read_image_upload(file), file.filename)
    person = roster_service.attach_photo(db, person_id, photo_ref)
    log_audit(db, "Person", person_id, "AttachPhoto", photo_ref)
    return roster_service.serialize_person(person)


@app.put("/api/people/{person_id}/photo")
def attach_person_photo(person_id: str, payload: AttachPhotoDto, db: Session = Depends(get_db)):
    person = roster_service.attach_photo(db, person_id, payload.photoUrl)
    log_audit(db, "Person", person_id, "AttachPhoto", payload.photoUrl)
    return roster_service.serialize_person(person)


@app.get("/api/people/{person_id}/loans")
def get_person_loans(
    person_id: str,
    include_returned: bool = Query(True, alias="includeReturned"),
    db: Session = Depends(get_db),
):
    loans = loan_service.list_loans_for_person(db, person_id, include_returned=include_returned)
    return [loan_service.serialize_loan(loan) for loan in loans]


# Loans


@app.get("/api/loans/active")
def get_active_loans(
    include_consumables: bool = Query(False, alias="includeConsumables"),
    db: Session = Depends(get_db),
    view: InventoryView = Depends(get_inventory_view),
):
    return view.active_loans(db, include_consumables=include_consumables)


@app.get("/api/loans/{loan_id}")
def get_loan(loan_id: str, db: Session = Depends(get_db)):
    return loan_service.serialize_loan(loan_service.get_loan(db, loan_id))


@app.post("/api/loans")
def create_loan(payload: CreateLoanDto, db: Session = Depends(get_db), view: InventoryView = Depends(get_inventory_view)):
    loan = view.run(
        lambda: loan_service.create_loan(
            db,
            payload.itemID,
            payload.personID,
            payload.quantity,
            payload.notes,
            payload.variantID,
        ),
        view.apply_loan,
    )
    log_audit(db, "Loan", loan.id, "CreateLoan", f"person={loan.person_id} quantity={loan.quantity}")
    return loan_service.serialize_loan(loan)


@app.post("/api/loans/batch")
def create_loans_batch(payload: BatchLoanRequest, db: Session = Depends(get_db), view: InventoryView = Depends(get_inventory_view)):
    lines = [
        loan_service.BasketLine(
            item_id=line.itemID,
            variant_id=line.variantID,
            quantity=line.quantity,
            notes=line.notes or "",
        )
        for line in payload.items
    ]
    results = view.run(lambda: loan_service.commit_basket(db, payload.personID, lines))
    for result in results:
        if result.loan is not None:
            view.apply_loan(result.loan)
            log_audit(db, "Loan", result.loan.id, "CreateLoan", f"person={payload.personID} basket=true")
    if any(result.status != "created" for result in results):
        view.invalidate()
    return [loan_service.serialize_basket_result(result) for result in results]


@app.post("/api/loans/{loan_id}/return")
def return_loan(loan_id: str, db: Session = Depends(get_db), view: InventoryView = Depends(get_inventory_view)):
    loan = view.run(lambda: loan_service.return_loan(db, loan_id), view.apply_loan)
    log_audit(db, "Loan", loan_id, "ReturnLoan", f"quantity={loan.quantity}")
    return loan_service.serialize_loan(loan)


@app.put("/api/loans/{loan_id}/condition")
def update_loan_condition(
    loan_id: str,
    payload: ConditionUpdateDto,
    db: Session = Depends(get_db),
    view: InventoryView = Depends(get_inventory_view),
):
    loan = loan_service.update_condition_notes(db, loan_id, payload.conditionNotes, payload.conditionPhoto)
    view.apply_loan(loan)
    log_audit(db, "Loan", loan_id, "UpdateCondition")
    return loan_service.serialize_loan(loan)


@app.post("/api/loans/{loan_id}/condition-photo")
def upload_loan_condition_photo(
    loan_id: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    view: InventoryView = Depends(get_inventory_view),
):
    photo_ref = loan_service.upload_condition_photo(db, loan_id, _read_image_upload(file), file.filename)
    loan = loan_service.get_loan(db, loan_id)
    view.apply_loan(loan)
    log_audit(db, "Loan", loan_id, "UploadConditionPhoto", photo_ref)
    return {"path": photo_ref, "loan": loan_service.serialize_loan(loan)}


# Scan intake


@app.get("/api/scan/{code}")
def resolve_scanned_code(code: str, db: Session = Depends(get_db)):
    resolution = resolve_code(db, code)
    return {
        "code": resolution.code,
        "kind": resolution.kind,
        "person": roster_service.serialize_person(resolution.person) if resolution.person else None,
        "item": catalog_service.serialize_item(resolution.item) if resolution.item else None,
        "variant": catalog_service.serialize_variant(resolution.variant) if resolution.variant else None,
        "hasVariants": bool(resolution.item and resolution.item.variants),
    }


@app.get("/api/audit")
def get_audit(
    entity_type: str | None = Query(None, alias="entityType"),
    entity_id: str | None = Query(None, alias="entityID"),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    return [serialize_audit(row) for row in list_audit(db, entity_type, entity_id, limit)]


app.mount("/uploads", StaticFiles(directory=str(gateway.uploads_root()), check_dir=False), name="uploads")
