from fastapi import FastAPI, File, UploadFile, HTTPException, Depends, Header, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
import logging
from typing import Optional, List
import uvicorn
from datetime import datetime

from aquabill.bill_lifecycle import GatewayResult
from aquabill.config.settings import settings
from aquabill.directory import Caller, parse_role
from aquabill.errors import BillingError, ConsistencyError
from aquabill.models import schemas
from aquabill.services import Services, create_services

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Metered water billing for rental properties: flats, tenancy, readings, bills and payments",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global app components
services: Optional[Services] = None


@app.on_event("startup")
async def startup_event():
    """Initialize application components on startup"""
    global services

    try:
        logger.info("Initializing billing services...")
        services = create_services()

        health = services.storage.health_check()
        if not all(health.values()):
            logger.warning(f"Database health check issues: {health}")
        else:
            logger.info("Database is healthy")

        logger.info("Application startup completed successfully")

    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        raise


# Dependency functions
def get_services() -> Services:
    if services is None:
        raise HTTPException(status_code=500, detail="Billing services not initialized")
    return services


def get_caller(
    x_account_id: Optional[str] = Header(None),
    x_account_role: Optional[str] = Header(None),
    x_flat_id: Optional[int] = Header(None),
) -> Caller:
    """Identity asserted by the upstream auth layer"""
    if not x_account_id or not x_account_role:
        raise HTTPException(status_code=401, detail="Missing caller identity headers")
    return Caller(account_id=x_account_id, role=parse_role(x_account_role), flat_id=x_flat_id)


# Error handlers
@app.exception_handler(BillingError)
async def billing_error_handler(request, exc: BillingError):
    if isinstance(exc, ConsistencyError):
        logger.error(f"Consistency failure on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.kind} ({exc.message})")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(500)
async def internal_error_handler(request, exc):
    logger.error(f"Internal server error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
            "timestamp": datetime.now().isoformat()
        }
    )


# API Routes

@app.get("/health/", response_model=schemas.HealthResponse)
def health_check(svc: Services = Depends(get_services)):
    try:
        db_health = svc.storage.health_check()
        if all(db_health.values()):
            return schemas.HealthResponse(status="healthy", message="All systems operational")
        return schemas.HealthResponse(status="degraded", message=f"Database issues detected: {db_health}")
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return schemas.HealthResponse(status="unhealthy", message=f"Health check failed: {str(e)}")


# ---------------- Accounts & tenancy ----------------

@app.post("/accounts/", response_model=schemas.Account, status_code=status.HTTP_201_CREATED)
def register_account(data: schemas.AccountCreate, svc: Services = Depends(get_services)):
    return svc.directory.register_account(data.account_id, data.role, data.name, data.email, data.phone)


@app.get("/accounts/me", response_model=schemas.Account)
def my_account(caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.directory.get_account(caller.account_id)


@app.post("/signup/tenant", response_model=schemas.Account, status_code=status.HTTP_201_CREATED)
def signup_tenant(data: schemas.TenantSignup, svc: Services = Depends(get_services)):
    return svc.tenancy.signup_tenant(
        data.account_id, data.name, data.flat_code, email=data.email, phone=data.phone
    )


@app.post("/tenancy/bind", response_model=schemas.Account)
def bind_tenant(
    data: schemas.BindRequest,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    return svc.tenancy.bind_tenant(caller, data.flat_code)


@app.post("/flats/{flat_id}/vacate", response_model=schemas.Flat)
def vacate_flat(
    flat_id: int,
    data: schemas.VacateRequest,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    return svc.tenancy.unbind_tenant(caller, flat_id, final_reading=data.final_reading)


# ---------------- Properties ----------------

@app.post("/properties/", response_model=schemas.Property, status_code=status.HTTP_201_CREATED)
def create_property(
    data: schemas.PropertyCreate,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    return svc.properties.create_property(
        caller, data.name, data.address, data.city, data.property_code,
        data.water_rate_per_unit, data.fixed_charge,
    )


@app.get("/properties/", response_model=List[schemas.PropertySummary])
def list_properties(caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return [_property_summary(s) for s in svc.properties.list_properties(caller)]


@app.get("/properties/{property_id}", response_model=schemas.Property)
def get_property(property_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.properties.get_property(caller, property_id)


@app.patch("/properties/{property_id}/rates", response_model=schemas.Property)
def update_rates(
    property_id: int,
    data: schemas.RatesUpdate,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    return svc.properties.update_rates(caller, property_id, data.water_rate_per_unit, data.fixed_charge)


# ---------------- Flats ----------------

@app.post("/properties/{property_id}/flats", response_model=schemas.Flat, status_code=status.HTTP_201_CREATED)
def add_flat(
    property_id: int,
    data: schemas.FlatCreate,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    return svc.flats.add_flat(
        caller, property_id, data.flat_number, data.floor,
        tenant_name=data.tenant_name, tenant_phone=data.tenant_phone,
    )


@app.get("/properties/{property_id}/flats", response_model=List[schemas.FlatWithLatestBill])
def list_flats(property_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return [
        schemas.FlatWithLatestBill(
            flat=schemas.Flat.model_validate(entry["flat"]),
            latest_reading=_bill_or_none(entry["latest_reading"]),
        )
        for entry in svc.flats.list_flats(caller, property_id)
    ]


@app.get("/flats/{flat_id}", response_model=schemas.Flat)
def get_flat(flat_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.flats.get_flat(caller, flat_id)


@app.delete("/flats/{flat_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_flat(flat_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    svc.flats.delete_flat(caller, flat_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.patch("/flats/{flat_id}/free-allowance", response_model=schemas.Flat)
def set_free_allowance(
    flat_id: int,
    data: schemas.FreeAllowanceUpdate,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    return svc.flats.set_free_allowance(caller, flat_id, data.free_water_units)


# ---------------- Readings & bills ----------------

@app.post("/flats/{flat_id}/readings", response_model=schemas.Bill, status_code=status.HTTP_201_CREATED)
def record_reading(
    flat_id: int,
    data: schemas.ReadingCreate,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    return svc.billing.record_reading(caller, flat_id, data.current_reading, data.bill_month)


@app.get("/flats/{flat_id}/bills", response_model=List[schemas.Bill])
def list_bills(flat_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.billing.list_bills(caller, flat_id)


@app.get("/flats/{flat_id}/bills/latest", response_model=Optional[schemas.Bill])
def latest_bill(flat_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.billing.latest_bill(caller, flat_id)


@app.get("/bills/{bill_id}", response_model=schemas.Bill)
def get_bill(bill_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.billing.get_bill(caller, bill_id)


@app.patch("/bills/{bill_id}/amount", response_model=schemas.Bill)
def correct_bill_amount(
    bill_id: int,
    data: schemas.AmountCorrection,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    return svc.billing.correct_bill_amount(caller, bill_id, data.bill_amount)


@app.delete("/bills/{bill_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_bill(bill_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    svc.billing.delete_bill(caller, bill_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------- Payments ----------------

@app.get("/bills/{bill_id}/checkout", response_model=schemas.Checkout)
def checkout(bill_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.lifecycle.build_checkout(caller, bill_id)


@app.post("/bills/{bill_id}/payments/gateway", response_model=schemas.Payment, status_code=status.HTTP_201_CREATED)
def settle_with_gateway(
    bill_id: int,
    data: schemas.GatewayConfirmation,
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    result = GatewayResult(external_reference=data.external_reference, success=data.success)
    return svc.lifecycle.settle_with_gateway(caller, bill_id, result)


@app.post("/bills/{bill_id}/payments/proof", response_model=schemas.Payment, status_code=status.HTTP_201_CREATED)
async def submit_proof(
    bill_id: int,
    file: UploadFile = File(...),
    idempotency_key: Optional[str] = Header(None),
    caller: Caller = Depends(get_caller),
    svc: Services = Depends(get_services),
):
    """Upload a payment screenshot or PDF receipt for owner verification"""
    content = await file.read()
    return await run_in_threadpool(
        svc.lifecycle.submit_proof,
        caller, bill_id, content, file.content_type, file.filename, idempotency_key,
    )


@app.get("/bills/{bill_id}/payments", response_model=List[schemas.Payment])
def list_payments(bill_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.lifecycle.list_payments(caller, bill_id)


@app.post("/bills/{bill_id}/confirm", response_model=schemas.Bill)
def confirm_payment(bill_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.lifecycle.confirm_payment(caller, bill_id)


@app.get("/bills/{bill_id}/reminder", response_model=schemas.PaymentReminder)
def payment_reminder(bill_id: int, caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.dashboards.payment_reminder(caller, bill_id)


# ---------------- Dashboards ----------------

@app.get("/dashboard/owner", response_model=schemas.OwnerOverview)
def owner_dashboard(caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    overview = svc.dashboards.owner_overview(caller)
    overview["properties"] = [_property_summary(s) for s in overview["properties"]]
    return schemas.OwnerOverview(**overview)


@app.get("/dashboard/tenant", response_model=schemas.TenantOverview)
def tenant_dashboard(caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    overview = svc.dashboards.tenant_overview(caller)
    return schemas.TenantOverview(
        flat=schemas.Flat.model_validate(overview["flat"]),
        property=schemas.Property.model_validate(overview["property"]),
        bills=[schemas.Bill.model_validate(b) for b in overview["bills"]],
        total_pending=overview["total_pending"],
    )


@app.get("/notifications/", response_model=List[schemas.Notification])
def notifications(caller: Caller = Depends(get_caller), svc: Services = Depends(get_services)):
    return svc.dashboards.bill_notifications(caller)


@app.post("/flats/{flat_id}/unread-messages", status_code=status.HTTP_202_ACCEPTED)
def unread_messages(flat_id: int, data: schemas.UnreadMessages, svc: Services = Depends(get_services)):
    svc.dashboards.report_unread_messages(flat_id, data.count)
    return {"status": "accepted"}


def _property_summary(summary) -> schemas.PropertySummary:
    return schemas.PropertySummary(
        property=schemas.Property.model_validate(summary["property"]),
        total_flats=summary["total_flats"],
        occupied_flats=summary["occupied_flats"],
    )


def _bill_or_none(reading) -> Optional[schemas.Bill]:
    return schemas.Bill.model_validate(reading) if reading is not None else None


# Development server
if __name__ == "__main__":
    uvicorn.run(
        "aquabill.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
