import hashlib
import hmac
import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Literal, Optional

from bson import ObjectId
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError
from pymongo.errors import DuplicateKeyError, PyMongoError

from billing import BillAmountError, BillAmounts, apply_bill_amounts, check_submittable, derive_amounts, round2
from config import ADMIN_PASSWORD, ADMIN_USERNAME, CORS_ORIGINS, LOG_LEVEL
from database import db, create_document, get_documents
from performance import (
    DateRange,
    client_packages,
    revenue_series,
    revenue_totals,
    summarize_performance,
    target_progress,
)
from schemas import (
    FINITE,
    HOUSE_SALE,
    Appointment as AppointmentSchema,
    Bill as BillSchema,
    BranchPeriod,
    BranchTarget as BranchTargetSchema,
    Client as ClientSchema,
    Doctor as DoctorSchema,
    DoctorTarget as DoctorTargetSchema,
    Service as ServiceSchema,
    Staff as StaffSchema,
    StaffTarget as StaffTargetSchema,
    TargetType,
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def ensure_indexes():
    if db is None:
        return
    db["doctor"].create_index("email", unique=True)
    logger.info("Database indexes ensured")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        ensure_indexes()
    except PyMongoError as e:
        logger.error(f"Failed to create database indexes: {e}")
    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Clinic & Spa Administration API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------- Error handlers ----------
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": _error_list(exc.errors())})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.warning(f"{request.method} {request.url.path} - Duplicate key: {exc}")
    return JSONResponse(status_code=409, content={"detail": "A record with this value already exists"})


@app.exception_handler(PyMongoError)
async def database_exception_handler(request: Request, exc: PyMongoError):
    logger.error(f"{request.method} {request.url.path} - Database error: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Database temporarily unavailable"})


# ---------- Helpers ----------
def _error_list(errors) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]


def object_id(value: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(400, "Invalid id")
    return ObjectId(value)


def to_dict(doc):
    if not doc:
        return doc
    doc["id"] = str(doc.pop("_id"))
    # Convert datetime/date fields to isoformat
    for k, v in list(doc.items()):
        if hasattr(v, "isoformat"):
            doc[k] = v.isoformat()
    return doc


def collection(name: str):
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db[name]


def sha256_hash(plain: str) -> str:
    return hashlib.sha256(plain.encode("utf-8")).hexdigest()


def validated(schema, data: dict) -> dict:
    """Run a merged document back through its schema before writing it."""
    try:
        return schema(**data).model_dump()
    except ValidationError as e:
        raise HTTPException(422, _error_list(e.errors()))


def find_or_404(name: str, doc_id: str, label: str) -> dict:
    doc = collection(name).find_one({"_id": object_id(doc_id)})
    if not doc:
        raise HTTPException(404, f"{label} not found")
    return doc


def insert(name: str, data) -> dict:
    doc_id = create_document(name, data)
    logger.info(f"Created {name} {doc_id}")
    return to_dict(collection(name).find_one({"_id": ObjectId(doc_id)}))


def merge_update(name: str, doc_id: str, changes: dict, schema, label: str, prepare=None) -> dict:
    existing = find_or_404(name, doc_id, label)
    merged = {k: v for k, v in existing.items() if k in schema.model_fields}
    merged.update(changes)
    update = validated(schema, merged)
    if prepare is not None:
        update = prepare(update)
    update["updated_at"] = datetime.now(timezone.utc)

    res = collection(name).update_one({"_id": existing["_id"]}, {"$set": update})
    if res.matched_count == 0:
        logger.warning(f"{label} {doc_id} vanished during update")
        raise HTTPException(404, f"{label} not found")
    return to_dict(collection(name).find_one({"_id": existing["_id"]}))


def delete_or_404(name: str, doc_id: str, label: str) -> dict:
    res = collection(name).delete_one({"_id": object_id(doc_id)})
    if res.deleted_count == 0:
        raise HTTPException(404, f"{label} not found")
    logger.info(f"Deleted {name} {doc_id}")
    return {"status": "deleted"}


def name_query(q: Optional[str]) -> dict:
    if not q:
        return {}
    return {"name": {"$regex": re.escape(q), "$options": "i"}}


def directory_names(name: str) -> dict:
    return {str(d["_id"]): d.get("name") for d in collection(name).find({}, {"name": 1})}


# ---------- Request Models ----------
class LoginRequest(BaseModel):
    username: str
    password: str


class DoctorUpdate(BaseModel):
    model_config = FINITE

    name: Optional[str] = None
    specialty: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    experience: Optional[float] = None
    qualification: Optional[str] = None
    availability: Optional[str] = None
    salary: Optional[float] = None


class StaffUpdate(BaseModel):
    model_config = FINITE

    name: Optional[str] = None
    role: Optional[str] = None
    phone: Optional[str] = None
    experience: Optional[float] = None
    qualification: Optional[str] = None
    salary: Optional[float] = None


class ClientUpdate(BaseModel):
    name: Optional[str] = None
    age: Optional[int] = None
    mobile: Optional[str] = None
    address: Optional[str] = None
    dob: Optional[datetime] = None
    gender: Optional[str] = None


class ServiceUpdate(BaseModel):
    model_config = FINITE

    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    sessions: Optional[int] = None


class AppointmentUpdate(BaseModel):
    client_name: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    contact: Optional[str] = None
    service: Optional[str] = None
    doctor_name: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None


class BillUpdate(BaseModel):
    model_config = FINITE

    client_name: Optional[str] = None
    assigned_staff: Optional[str] = None
    assigned_doctor: Optional[str] = None
    services: Optional[str] = None
    total_sessions: Optional[int] = None
    sessions_completed: Optional[int] = None
    cost: Optional[float] = None
    total_amount: Optional[float] = None
    amount_paid: Optional[float] = None
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    date: Optional[datetime] = None


class BillForm(BaseModel):
    """Amount fields of the bill form, exactly as typed."""
    cost: str = ""
    amount_paid: str = ""
    total_amount: str = ""
    pending_amount: str = ""
    changed: Literal["cost", "total_amount", "amount_paid"]


class BranchTargetCreate(BaseModel):
    model_config = FINITE

    amount: float = Field(..., gt=0)
    period: BranchPeriod


class BranchTargetUpdate(BaseModel):
    model_config = FINITE

    amount: Optional[float] = None
    period: Optional[str] = None


class StaffTargetUpdate(BaseModel):
    model_config = FINITE

    staff_id: Optional[str] = None
    target_amount: Optional[float] = None
    target_type: Optional[TargetType] = None


class DoctorTargetUpdate(BaseModel):
    model_config = FINITE

    doctor_id: Optional[str] = None
    target_amount: Optional[float] = None
    target_type: Optional[TargetType] = None


# ---------- Basic routes ----------
@app.get("/")
def read_root():
    return {"message": "Backend OK", "service": "Clinic & Spa Administration"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "❌ Not Set",
        "database_name": "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name if hasattr(db, 'name') else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    return response


@app.post("/api/login")
def login(payload: LoginRequest):
    user_ok = hmac.compare_digest(payload.username.encode("utf-8"), ADMIN_USERNAME.encode("utf-8"))
    pass_ok = hmac.compare_digest(sha256_hash(payload.password), sha256_hash(ADMIN_PASSWORD))
    if not (user_ok and pass_ok):
        logger.warning(f"Failed login for '{payload.username}'")
        raise HTTPException(401, "Invalid username or password")
    return {"status": "ok", "username": ADMIN_USERNAME}


# ---------- Doctors ----------
def _ensure_unique_email(email: str, exclude_id: Optional[ObjectId] = None):
    filt = {"email": email}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    if collection("doctor").find_one(filt):
        raise HTTPException(409, "A doctor with this email already exists")


@app.get("/api/doctors")
def list_doctors(q: Optional[str] = Query(None, description="Search by name")):
    return [to_dict(d) for d in collection("doctor").find(name_query(q))]


@app.get("/api/doctors/{doctor_id}")
def get_doctor(doctor_id: str):
    return to_dict(find_or_404("doctor", doctor_id, "Doctor"))


@app.post("/api/doctors")
def create_doctor(payload: DoctorSchema):
    _ensure_unique_email(payload.email)
    return insert("doctor", payload)


@app.put("/api/doctors/{doctor_id}")
def update_doctor(doctor_id: str, payload: DoctorUpdate):
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("email"):
        _ensure_unique_email(changes["email"].strip().lower(), object_id(doctor_id))
    return merge_update("doctor", doctor_id, changes, DoctorSchema, "Doctor")


@app.delete("/api/doctors/{doctor_id}")
def delete_doctor(doctor_id: str):
    return delete_or_404("doctor", doctor_id, "Doctor")


# ---------- Staff ----------
@app.get("/api/staff")
def list_staff(q: Optional[str] = Query(None, description="Search by name")):
    docs = collection("staff").find(name_query(q)).sort("created_at", -1)
    return [to_dict(d) for d in docs]


@app.get("/api/staff/{staff_id}")
def get_staff(staff_id: str):
    return to_dict(find_or_404("staff", staff_id, "Staff"))


@app.post("/api/staff")
def create_staff(payload: StaffSchema):
    return insert("staff", payload)


@app.put("/api/staff/{staff_id}")
def update_staff(staff_id: str, payload: StaffUpdate):
    return merge_update("staff", staff_id, payload.model_dump(exclude_unset=True), StaffSchema, "Staff")


@app.delete("/api/staff/{staff_id}")
def delete_staff(staff_id: str):
    return delete_or_404("staff", staff_id, "Staff")


# ---------- Clients ----------
@app.get("/api/clients")
def list_clients(q: Optional[str] = Query(None, description="Search by name")):
    docs = collection("client").find(name_query(q)).sort("created_at", -1)
    return [to_dict(d) for d in docs]


@app.get("/api/clients/{client_id}")
def get_client(client_id: str):
    return to_dict(find_or_404("client", client_id, "Client"))


@app.post("/api/clients")
def create_client(payload: ClientSchema):
    return insert("client", payload)


@app.put("/api/clients/{client_id}")
def update_client(client_id: str, payload: ClientUpdate):
    return merge_update("client", client_id, payload.model_dump(exclude_unset=True), ClientSchema, "Client")


@app.delete("/api/clients/{client_id}")
def delete_client(client_id: str):
    return delete_or_404("client", client_id, "Client")


# ---------- Services ----------
@app.get("/api/services")
def list_services():
    return [to_dict(d) for d in collection("service").find().sort("name")]


@app.get("/api/services/{service_id}")
def get_service(service_id: str):
    return to_dict(find_or_404("service", service_id, "Service"))


@app.post("/api/services")
def create_service(payload: ServiceSchema):
    return insert("service", payload)


@app.put("/api/services/{service_id}")
def update_service(service_id: str, payload: ServiceUpdate):
    return merge_update("service", service_id, payload.model_dump(exclude_unset=True), ServiceSchema, "Service")


@app.delete("/api/services/{service_id}")
def delete_service(service_id: str):
    return delete_or_404("service", service_id, "Service")


# ---------- Appointments ----------
@app.get("/api/appointments")
def list_appointments():
    docs = collection("appointment").find().sort([("date", 1), ("time", 1)])
    return [to_dict(d) for d in docs]


@app.get("/api/appointments/{appointment_id}")
def get_appointment(appointment_id: str):
    return to_dict(find_or_404("appointment", appointment_id, "Appointment"))


@app.post("/api/appointments")
def create_appointment(payload: AppointmentSchema):
    return insert("appointment", payload)


@app.put("/api/appointments/{appointment_id}")
def update_appointment(appointment_id: str, payload: AppointmentUpdate):
    changes = payload.model_dump(exclude_unset=True)
    return merge_update("appointment", appointment_id, changes, AppointmentSchema, "Appointment")


@app.delete("/api/appointments/{appointment_id}")
def delete_appointment(appointment_id: str):
    return delete_or_404("appointment", appointment_id, "Appointment")


# ---------- Bills ----------
def _bill_amounts(doc: dict, changed, new: bool = False) -> dict:
    try:
        return apply_bill_amounts(doc, changed, new=new)
    except BillAmountError as e:
        raise HTTPException(400, str(e))


@app.post("/api/bills/derive")
def derive_bill_form(payload: BillForm):
    """Recompute total/pending for the bill form without saving anything."""
    form = BillAmounts(
        cost=payload.cost,
        amount_paid=payload.amount_paid,
        total_amount=payload.total_amount,
        pending_amount=payload.pending_amount,
    )
    derived = derive_amounts(form, payload.changed)
    try:
        check_submittable(derived)
        errors = []
    except BillAmountError as e:
        errors = [str(e)]
    return {
        "cost": derived.cost,
        "amount_paid": derived.amount_paid,
        "total_amount": derived.total_amount,
        "pending_amount": derived.pending_amount,
        "submittable": not errors,
        "errors": errors,
    }


@app.get("/api/bills")
def list_bills(
    client: Optional[str] = Query(None, description="Filter by client name"),
    staff: Optional[str] = Query(None, description="Filter by assigned staff name"),
):
    filt = {}
    if client:
        filt["client_name"] = {"$regex": re.escape(client), "$options": "i"}
    if staff:
        filt["assigned_staff"] = staff
    docs = collection("bill").find(filt).sort("created_at", -1)
    return [to_dict(d) for d in docs]


@app.get("/api/bills/{bill_id}")
def get_bill(bill_id: str):
    return to_dict(find_or_404("bill", bill_id, "Bill"))


@app.post("/api/bills")
def create_bill(payload: BillSchema):
    doc = _bill_amounts(payload.model_dump(), payload.model_fields_set, new=True)
    return insert("bill", doc)


@app.put("/api/bills/{bill_id}")
def update_bill(bill_id: str, payload: BillUpdate):
    changes = payload.model_dump(exclude_unset=True)
    return merge_update(
        "bill", bill_id, changes, BillSchema, "Bill",
        prepare=lambda doc: _bill_amounts(doc, changes.keys()),
    )


@app.delete("/api/bills/{bill_id}")
def delete_bill(bill_id: str):
    return delete_or_404("bill", bill_id, "Bill")


# ---------- Targets ----------
def _populated(doc: dict, ref: str, names: dict) -> dict:
    doc = to_dict(doc)
    doc["assignee_name"] = names.get(doc.get(ref))
    return doc


def _list_targets(name: str, ref: str, directory: str) -> list:
    names = directory_names(directory)
    docs = collection(name).find().sort("created_at", -1)
    return [_populated(d, ref, names) for d in docs]


@app.get("/api/targets/staff")
def list_staff_targets():
    return _list_targets("stafftarget", "staff_id", "staff")


@app.post("/api/targets/staff")
def create_staff_target(payload: StaffTargetSchema):
    object_id(payload.staff_id)
    doc = insert("stafftarget", payload)
    doc["assignee_name"] = directory_names("staff").get(doc["staff_id"])
    return doc


@app.put("/api/targets/staff/{target_id}")
def update_staff_target(target_id: str, payload: StaffTargetUpdate):
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("staff_id"):
        object_id(changes["staff_id"])
    doc = merge_update("stafftarget", target_id, changes, StaffTargetSchema, "Target")
    doc["assignee_name"] = directory_names("staff").get(doc["staff_id"])
    return doc


@app.delete("/api/targets/staff/{target_id}")
def delete_staff_target(target_id: str):
    return delete_or_404("stafftarget", target_id, "Target")


@app.get("/api/targets/doctors")
def list_doctor_targets():
    return _list_targets("doctortarget", "doctor_id", "doctor")


@app.post("/api/targets/doctors")
def create_doctor_target(payload: DoctorTargetSchema):
    object_id(payload.doctor_id)
    doc = insert("doctortarget", payload)
    doc["assignee_name"] = directory_names("doctor").get(doc["doctor_id"])
    return doc


@app.put("/api/targets/doctors/{target_id}")
def update_doctor_target(target_id: str, payload: DoctorTargetUpdate):
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("doctor_id"):
        object_id(changes["doctor_id"])
    doc = merge_update("doctortarget", target_id, changes, DoctorTargetSchema, "Target")
    doc["assignee_name"] = directory_names("doctor").get(doc["doctor_id"])
    return doc


@app.delete("/api/targets/doctors/{target_id}")
def delete_doctor_target(target_id: str):
    return delete_or_404("doctortarget", target_id, "Target")


# ---------- Branch targets ----------
@app.get("/api/branch-targets")
def list_branch_targets():
    return [to_dict(d) for d in collection("branchtarget").find().sort("date_set", -1)]


@app.post("/api/branch-targets")
def create_branch_target(payload: BranchTargetCreate):
    target = BranchTargetSchema(amount=payload.amount, period=payload.period, date_set=datetime.now(timezone.utc))
    return insert("branchtarget", target)


@app.put("/api/branch-targets/{target_id}")
def update_branch_target(target_id: str, payload: BranchTargetUpdate):
    changes = payload.model_dump(exclude_unset=True)
    # Every edit counts as setting the target anew
    changes["date_set"] = datetime.now(timezone.utc)
    return merge_update("branchtarget", target_id, changes, BranchTargetSchema, "Branch target")


@app.delete("/api/branch-targets/{target_id}")
def delete_branch_target(target_id: str):
    return delete_or_404("branchtarget", target_id, "Branch target")


# ---------- Reports ----------
ASSIGNEE_SOURCES = {
    "staff": ("staff", "stafftarget", "staff_id", "assigned_staff"),
    "doctors": ("doctor", "doctortarget", "doctor_id", "assigned_doctor"),
}


@app.get("/api/reports/performance")
def performance_report(
    assignees: Literal["staff", "doctors"] = Query("staff"),
    range_: str = Query(DateRange.ALL_TIME.value, alias="range", description="AllTime, ThisMonth, LastMonth, ThisQuarter, HalfYear or ThisYear"),
    q: str = Query("", description="Case-insensitive name filter"),
):
    directory_name, targets_name, target_ref, bill_ref = ASSIGNEE_SOURCES[assignees]
    date_range = DateRange.parse(range_)

    directory = [to_dict(d) for d in collection(directory_name).find().sort("created_at", 1)]
    targets = get_documents(targets_name)
    bills = get_documents("bill")
    rows = summarize_performance(
        targets, bills, directory, date_range, q,
        target_ref=target_ref, bill_ref=bill_ref,
    )
    logger.info(
        f"Performance report ({assignees}, {date_range.value}): "
        f"{len(directory)} assignees, {len(targets)} targets, {len(bills)} bills"
    )
    return {"range": date_range.value, "assignees": assignees, "rows": rows}


@app.get("/api/reports/clients")
def client_package_report(q: str = Query("", description="Case-insensitive client name filter")):
    bills = [to_dict(b) for b in collection("bill").find().sort("created_at", 1)]
    return {"rows": client_packages(bills, q)}


@app.get("/api/dashboard")
def dashboard(range_: str = Query("ThisMonth", alias="range", description="Today, ThisWeek, ThisMonth, LastMonth, ThisQuarter, HalfYear or ThisYear")):
    bills = get_documents("bill")
    totals = revenue_totals(bills)
    series = revenue_series(bills, range_)

    branch_target = collection("branchtarget").find_one(sort=[("date_set", -1)])
    window_revenue = round2(sum(series["data"]))
    target_block = None
    if branch_target:
        target_block = {
            "amount": branch_target["amount"],
            "period": branch_target["period"],
            "achieved": window_revenue,
            "progress": target_progress(window_revenue, branch_target["amount"]),
        }

    return {
        "range": range_,
        "revenue": totals["revenue"],
        "pending": totals["pending"],
        "doctors": collection("doctor").count_documents({}),
        "staff": collection("staff").count_documents({}),
        "clients": collection("client").count_documents({}),
        "house_sales": collection("bill").count_documents({"assigned_staff": HOUSE_SALE}),
        "chart": series,
        "branch_target": target_block,
    }
