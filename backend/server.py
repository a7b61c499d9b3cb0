from fastapi import FastAPI, APIRouter, HTTPException, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi.responses import JSONResponse, StreamingResponse
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError
import os
import logging
import re
from pathlib import Path
from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Dict, Any
import uuid
from datetime import datetime, timezone, timedelta
import jwt
import bcrypt

from errors import LogisticsError, NotFound, ValidationFailed
from fleet_service import FleetService
from inventory_service import InventoryService
from invoice_service import InvoiceService, generate_invoice_pdf
from numbering_service import NumberingService
from order_service import CustomerService, OrderService, DEPOT_CD_RE, MOBILE_RE
from payment_service import PaymentService, PayRecService, require_accounts
from trip_service import TripService, OPEN_TRIP_STATUSES

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
mongo_url = os.environ.get('MONGO_URI', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'fuel_logistics')]

APP_VERSION = "1.0.0"

app = FastAPI(title="Fuel Logistics API")

# ==================== CORS CONFIGURATION (MUST BE FIRST) ====================
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

cors_origins_env = os.environ.get('CORS_ORIGINS', '')
if cors_origins_env:
    cors_origins = [origin.strip() for origin in cors_origins_env.split(',') if origin.strip()]
else:
    cors_origins = DEFAULT_CORS_ORIGINS

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Requested-With",
        "Accept",
        "Origin",
    ],
    expose_headers=["Content-Disposition"],
    max_age=600,  # Cache preflight for 10 minutes
)

# ==================== HEALTH ENDPOINT (ROOT LEVEL) ====================
@app.get("/api/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {
        "ok": True,
        "time": datetime.now(timezone.utc).isoformat(),
        "service": "Fuel Logistics API",
        "version": APP_VERSION
    }

api_router = APIRouter(prefix="/api")

# JWT Configuration
SECRET_KEY = os.environ.get('JWT_SECRET', 'fuel-logistics-secret-change-in-production')
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 8

security = HTTPBearer()

# ==================== MODELS ====================

# E = Employee, D = Driver, C = Customer, A = Admin, AC = Accounts
USER_TYPES = ['A', 'E', 'D', 'C', 'AC']

class UserCreate(BaseModel):
    userId: str = Field(..., min_length=1, max_length=15)
    pwd: str = Field(..., min_length=4)
    userType: str
    mobileNo: str
    depotCd: str
    name: Optional[str] = None
    empCd: Optional[str] = None
    driverId: Optional[str] = None
    customerId: Optional[str] = None

class User(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    userId: str
    userType: str
    mobileNo: str
    depotCd: str
    name: Optional[str] = None
    empCd: Optional[str] = None
    driverId: Optional[str] = None
    customerId: Optional[str] = None
    is_active: bool = True
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

class UserLogin(BaseModel):
    userId: str
    pwd: str

class Token(BaseModel):
    access_token: str
    token_type: str
    user: Dict[str, Any]

# Depot Model
class DepotCreate(BaseModel):
    depotCd: str
    depotName: str = Field(..., max_length=20)
    depotAdd1: Optional[str] = None
    depotAdd2: Optional[str] = None
    depotAdd3: Optional[str] = None
    depotArea: Optional[str] = None
    city: Optional[str] = None
    pin: Optional[int] = None
    stateCd: Optional[str] = None
    gstin: Optional[str] = None
    contactNo: Optional[str] = None
    contactName: Optional[str] = None
    email: Optional[str] = None
    status: str = "Active"

class Depot(DepotCreate):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

class StationCreate(BaseModel):
    name: str
    location: Optional[str] = None

class RouteCreate(BaseModel):
    name: str
    depotCd: Optional[str] = None
    stationIds: List[str] = []

class ProductCreate(BaseModel):
    name: str
    productCode: Optional[str] = None
    uom: str = "Liter"

class OrderItemIn(BaseModel):
    productName: Optional[str] = None
    productCode: Optional[str] = None
    quantity: Optional[float] = None
    rate: Optional[float] = None

class OrderCreate(BaseModel):
    customerId: Optional[str] = None
    shipToAddress: Optional[str] = None
    items: Optional[List[OrderItemIn]] = None
    deliveryDate: Optional[str] = None
    deliveryTimeSlot: Optional[str] = None
    referenceNo: Optional[str] = None
    paymentMethod: Optional[str] = None
    creditDays: Optional[int] = None

class OrderStatusUpdate(BaseModel):
    orderStatus: str

class VehicleCreate(BaseModel):
    vehicleNo: str = Field(..., min_length=1, max_length=10)
    depotCd: str
    brand: Optional[str] = None
    model: Optional[str] = None
    capacity: Optional[float] = None
    calibratedCapacity: Optional[float] = None
    dipStickYesNo: bool = False
    gpsYesNo: bool = False
    loadSensorYesNo: bool = False
    routeId: Optional[str] = None

class DriverCreate(BaseModel):
    driverName: str
    depotCd: str
    empCd: Optional[str] = None
    mobileNo: Optional[str] = None
    pesoLicenseNo: Optional[str] = None
    licenseNumber: Optional[str] = None

class FleetDriverAssign(BaseModel):
    vehicleId: str
    driverId: Optional[str] = None
    assignedBy: Optional[str] = None

class FleetOrderLink(BaseModel):
    orderId: str

class TripAssign(BaseModel):
    fleetId: str
    orderId: str
    capacity: Optional[float] = None
    routeId: Optional[str] = None
    tripNo: Optional[str] = None
    remarks: Optional[str] = None

class TripOrderAdd(BaseModel):
    orderId: str

class DeliveryPlanCreate(BaseModel):
    tripId: str
    orderId: str

class TripLogin(BaseModel):
    tripId: Optional[str] = None
    driverId: Optional[str] = None
    vehicleNo: Optional[str] = None
    startKm: Optional[float] = None
    totalizerStart: Optional[float] = None
    routeId: Optional[str] = None
    remarks: Optional[str] = None

class TripLogout(BaseModel):
    tripId: Optional[str] = None
    endKm: Optional[float] = None
    totalizerEnd: Optional[float] = None

class DeliveryCreate(BaseModel):
    tripId: Optional[str] = None
    orderId: Optional[str] = None
    customerId: Optional[str] = None
    shipTo: Optional[str] = None
    qty: Optional[float] = None
    rate: Optional[float] = None

class LoadingCodeRequest(BaseModel):
    tripId: Optional[str] = None
    code: Optional[str] = None

class LoadingCreate(BaseModel):
    tripId: Optional[str] = None
    stationId: Optional[str] = None
    product: Optional[str] = None
    qty: Optional[float] = None
    code: Optional[str] = None
    vehicleId: Optional[str] = None

class LoadingStationMap(BaseModel):
    routeId: str
    stationId: str
    order: int = 0

class InventoryUpdate(BaseModel):
    balanceLiters: Optional[float] = None
    adjustQty: Optional[float] = None
    depotCd: Optional[str] = None
    reason: Optional[str] = None

class InvoiceFromTrip(BaseModel):
    invoiceDate: Optional[str] = None
    notes: Optional[str] = None

class PayRecStatus(BaseModel):
    status: Optional[str] = None

# ==================== HELPER FUNCTIONS ====================

GSTIN_RE = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z]{1}[1-9A-Z]{1}Z[0-9A-Z]{1}$")

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())

def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

def user_context(user: dict) -> dict:
    """The request-scoped view of a user handed to every route"""
    return {
        "id": user["id"],
        "userId": user.get("userId"),
        "name": user.get("name"),
        "userType": user.get("userType"),
        "empCd": user.get("empCd"),
        "depotCd": user.get("depotCd"),
        "isAdmin": user.get("userType") == "A",
        "driverId": user.get("driverId"),
        "customerId": user.get("customerId"),
    }

async def get_user_from_token(token: str):
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = payload.get("sub")
        if user_id is None:
            raise HTTPException(status_code=401, detail="Invalid token")
        user = await db.users.find_one({"id": user_id}, {"_id": 0, "pwd": 0})
        if user is None:
            raise HTTPException(status_code=401, detail="User not found")
        if not user.get("is_active", True):
            raise HTTPException(status_code=401, detail="Account disabled")
        return user_context(user)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(HTTPBearer(auto_error=False))
):
    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if credentials.scheme.lower() != "bearer" or not credentials.credentials:
        raise HTTPException(status_code=400, detail="Malformed Authorization header")
    return await get_user_from_token(credentials.credentials)

async def get_current_user_optional(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(HTTPBearer(auto_error=False)),
    token: Optional[str] = Query(None, description="Authentication token (alternative to Authorization header)")
):
    """Authorization header or ?token= (for PDF downloads opened in a new tab)"""
    if credentials:
        return await get_user_from_token(credentials.credentials)
    if token:
        return await get_user_from_token(token)
    raise HTTPException(status_code=401, detail="Authentication required")

async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(HTTPBearer(auto_error=False))
):
    if credentials is None:
        return None
    return await get_user_from_token(credentials.credentials)

async def require_admin(current_user: dict = Depends(get_current_user)):
    if not current_user.get("isAdmin"):
        raise HTTPException(status_code=403, detail="Admins only")
    return current_user

def ensure_depot_scope(current_user: dict, depot_cd: Optional[str]):
    """Non-admins may only touch documents of their own depot"""
    if current_user.get("isAdmin") or not depot_cd:
        return
    if str(depot_cd) != str(current_user.get("depotCd")):
        raise HTTPException(status_code=403, detail="Forbidden: depot mismatch")

def depot_filter(current_user: dict, depot_cd: Optional[str] = None) -> dict:
    if current_user.get("isAdmin"):
        return {"depotCd": depot_cd} if depot_cd else {}
    return {"depotCd": current_user.get("depotCd")}

def ensure_driver_self(current_user: dict, driver_id: str):
    if current_user.get("userType") == "D" and current_user.get("driverId") != driver_id:
        raise HTTPException(status_code=403, detail="Drivers can only view their own trips")

def validate_depot_cd(depot_cd: Optional[str]):
    if not depot_cd or not DEPOT_CD_RE.match(str(depot_cd)):
        raise ValidationFailed("Depot code must be a 3-digit number from 100-999", field="depotCd")

def validate_mobile(mobile: Optional[str], required: bool = False):
    if not mobile:
        if required:
            raise ValidationFailed("mobileNo is required", field="mobileNo")
        return
    if not MOBILE_RE.match(str(mobile)):
        raise ValidationFailed("Mobile number must be 10 digits", field="mobileNo")

def pdf_response(buffer, filename: str) -> StreamingResponse:
    return StreamingResponse(
        buffer,
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )

# ==================== ERROR HANDLERS ====================

@app.exception_handler(LogisticsError)
async def logistics_error_handler(request: Request, exc: LogisticsError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.error_code})

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", []) if part != "body"), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    message = f"{errors[0]['field']}: {errors[0]['msg']}" if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message, "errors": errors})

@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    key = ", ".join((exc.details or {}).get("keyValue", {}).keys()) if exc.details else ""
    logger.warning(f"Duplicate key on {request.url.path}: {key or exc}")
    return JSONResponse(status_code=409, content={"error": f"Duplicate key{': ' + key if key else ''}"})

@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal server error"})

# ==================== AUTH ROUTES ====================

@api_router.post("/auth/register", response_model=User)
async def register(user_data: UserCreate, current_user: Optional[dict] = Depends(get_optional_user)):
    """Admins create users; the very first user may register without a token"""
    if await db.users.count_documents({}) > 0:
        if current_user is None:
            raise HTTPException(status_code=401, detail="Missing Authorization header")
        if not current_user.get("isAdmin"):
            raise HTTPException(status_code=403, detail="Admins only")
    elif user_data.userType != "A":
        raise HTTPException(status_code=400, detail="The first user must be an admin")

    if user_data.userType not in USER_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid userType. Must be one of: {USER_TYPES}")
    validate_mobile(user_data.mobileNo, required=True)
    validate_depot_cd(user_data.depotCd)
    if user_data.userType == "D" and not user_data.driverId:
        raise HTTPException(status_code=400, detail="driverId is required for drivers")
    if user_data.userType == "C" and not user_data.customerId:
        raise HTTPException(status_code=400, detail="customerId is required for customers")

    existing = await db.users.find_one({"userId": user_data.userId})
    if existing:
        raise HTTPException(status_code=409, detail="userId already in use")

    user = User(**user_data.model_dump(exclude={"pwd"}))
    user_dict = user.model_dump()
    user_dict["pwd"] = hash_password(user_data.pwd)
    await db.users.insert_one(user_dict)
    return user

@api_router.post("/auth/login", response_model=Token)
async def login(credentials: UserLogin):
    user = await db.users.find_one({"userId": credentials.userId})
    if not user or not verify_password(credentials.pwd, user["pwd"]):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account disabled")

    if user.get("userType") == "D":
        has_trip = await db.trips.find_one(
            {"driverId": user.get("driverId"), "status": {"$in": OPEN_TRIP_STATUSES}}, {"_id": 0, "id": 1}
        )
        if not has_trip:
            raise HTTPException(status_code=403, detail="No trips assigned to you. Please check back later.")

    context = user_context(user)
    access_token = create_access_token({
        "sub": user["id"],
        "userType": context["userType"],
        "empCd": context["empCd"],
        "depotCd": context["depotCd"],
        "isAdmin": context["isAdmin"],
        "driverId": context["driverId"],
    })
    user_response = {k: v for k, v in user.items() if k not in ["_id", "pwd"]}
    return Token(access_token=access_token, token_type="bearer", user=user_response)

@api_router.get("/auth/me")
async def get_me(current_user: dict = Depends(get_current_user)):
    return current_user

@api_router.get("/users")
async def list_users(current_user: dict = Depends(require_admin)):
    return await db.users.find({}, {"_id": 0, "pwd": 0}).sort("userId", 1).to_list(1000)

@api_router.get("/users/{user_id}")
async def get_user(user_id: str, current_user: dict = Depends(require_admin)):
    user = await db.users.find_one({"id": user_id}, {"_id": 0, "pwd": 0})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user

@api_router.put("/users/{user_id}/status")
async def set_user_active(user_id: str, data: dict, current_user: dict = Depends(require_admin)):
    result = await db.users.update_one({"id": user_id}, {"$set": {"is_active": bool(data.get("is_active", True))}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    return {"message": "User updated"}

# ==================== DEPOT ROUTES ====================

@api_router.post("/depots", response_model=Depot)
async def create_depot(data: DepotCreate, current_user: dict = Depends(require_admin)):
    validate_depot_cd(data.depotCd)
    validate_mobile(data.contactNo)
    if data.gstin and not GSTIN_RE.match(data.gstin.upper()):
        raise ValidationFailed("Invalid GSTIN format", field="gstin")
    if data.status not in ("Active", "Inactive"):
        raise ValidationFailed("status must be Active or Inactive", field="status")
    depot = Depot(**data.model_dump())
    depot_dict = depot.model_dump()
    if depot_dict.get("gstin"):
        depot_dict["gstin"] = depot_dict["gstin"].upper()
    await db.depots.insert_one(depot_dict)
    return depot

@api_router.get("/depots")
async def list_depots(current_user: dict = Depends(get_current_user)):
    return await db.depots.find(depot_filter(current_user), {"_id": 0}).sort("depotCd", 1).to_list(1000)

@api_router.get("/depots/by-code/{depot_cd}")
async def get_depot_by_code(depot_cd: str, current_user: dict = Depends(get_current_user)):
    ensure_depot_scope(current_user, depot_cd)
    depot = await db.depots.find_one({"depotCd": depot_cd}, {"_id": 0})
    if not depot:
        raise HTTPException(status_code=404, detail="Depot not found")
    return depot

@api_router.put("/depots/{depot_id}")
async def update_depot(depot_id: str, data: dict, current_user: dict = Depends(require_admin)):
    depot = await db.depots.find_one({"id": depot_id}, {"_id": 0})
    if not depot:
        raise HTTPException(status_code=404, detail="Depot not found")
    changes = {k: v for k, v in data.items() if k not in ("id", "_id", "depotCd")}
    if "contactNo" in changes:
        validate_mobile(changes["contactNo"])
    if changes.get("gstin"):
        changes["gstin"] = changes["gstin"].upper()
        if not GSTIN_RE.match(changes["gstin"]):
            raise ValidationFailed("Invalid GSTIN format", field="gstin")
    changes["updated_at"] = datetime.now(timezone.utc).isoformat()
    await db.depots.update_one({"id": depot_id}, {"$set": changes})
    return await db.depots.find_one({"id": depot_id}, {"_id": 0})

@api_router.delete("/depots/{depot_id}")
async def delete_depot(depot_id: str, current_user: dict = Depends(require_admin)):
    depot = await db.depots.find_one({"id": depot_id}, {"_id": 0})
    if not depot:
        raise HTTPException(status_code=404, detail="Depot not found")
    if await db.vehicles.count_documents({"depotCd": depot["depotCd"]}) > 0:
        raise HTTPException(status_code=400, detail="Depot still has vehicles")
    await db.depots.delete_one({"id": depot_id})
    return {"deleted": True}

# ==================== STATION & ROUTE ROUTES ====================

@api_router.post("/stations")
async def create_station(data: StationCreate, current_user: dict = Depends(require_admin)):
    station = {**data.model_dump(), "id": str(uuid.uuid4()), "created_at": datetime.now(timezone.utc).isoformat()}
    await db.stations.insert_one(station)
    station.pop("_id", None)
    return station

@api_router.get("/stations")
async def list_stations(current_user: dict = Depends(get_current_user)):
    return await db.stations.find({}, {"_id": 0}).sort("name", 1).to_list(1000)

@api_router.put("/stations/{station_id}")
async def update_station(station_id: str, data: StationCreate, current_user: dict = Depends(require_admin)):
    result = await db.stations.update_one({"id": station_id}, {"$set": data.model_dump()})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Station not found")
    return await db.stations.find_one({"id": station_id}, {"_id": 0})

@api_router.delete("/stations/{station_id}")
async def delete_station(station_id: str, current_user: dict = Depends(require_admin)):
    result = await db.stations.delete_one({"id": station_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Station not found")
    await db.loading_masters.delete_many({"stationId": station_id})
    return {"deleted": True}

@api_router.post("/routes")
async def create_route(data: RouteCreate, current_user: dict = Depends(require_admin)):
    if data.depotCd:
        validate_depot_cd(data.depotCd)
    route = {**data.model_dump(), "id": str(uuid.uuid4()), "created_at": datetime.now(timezone.utc).isoformat()}
    await db.routes.insert_one(route)
    route.pop("_id", None)
    return route

@api_router.get("/routes")
async def list_routes(current_user: dict = Depends(get_current_user)):
    query = {} if current_user.get("isAdmin") else {"depotCd": {"$in": [current_user.get("depotCd"), None]}}
    return await db.routes.find(query, {"_id": 0}).sort("name", 1).to_list(1000)

@api_router.put("/routes/{route_id}")
async def update_route(route_id: str, data: RouteCreate, current_user: dict = Depends(require_admin)):
    result = await db.routes.update_one({"id": route_id}, {"$set": data.model_dump()})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Route not found")
    return await db.routes.find_one({"id": route_id}, {"_id": 0})

@api_router.delete("/routes/{route_id}")
async def delete_route(route_id: str, current_user: dict = Depends(require_admin)):
    result = await db.routes.delete_one({"id": route_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Route not found")
    await db.loading_masters.delete_many({"routeId": route_id})
    return {"deleted": True}

# ==================== PRODUCT ROUTES ====================

@api_router.post("/products")
async def create_product(data: ProductCreate, current_user: dict = Depends(require_admin)):
    product = {**data.model_dump(), "id": str(uuid.uuid4()), "created_at": datetime.now(timezone.utc).isoformat()}
    await db.products.insert_one(product)
    product.pop("_id", None)
    return product

@api_router.get("/products")
async def list_products(current_user: dict = Depends(get_current_user)):
    return await db.products.find({}, {"_id": 0}).sort("name", 1).to_list(1000)

@api_router.get("/products/{product_id}")
async def get_product(product_id: str, current_user: dict = Depends(get_current_user)):
    product = await db.products.find_one({"id": product_id}, {"_id": 0})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product

@api_router.put("/products/{product_id}")
async def update_product(product_id: str, data: ProductCreate, current_user: dict = Depends(require_admin)):
    result = await db.products.update_one({"id": product_id}, {"$set": data.model_dump()})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return await db.products.find_one({"id": product_id}, {"_id": 0})

@api_router.delete("/products/{product_id}")
async def delete_product(product_id: str, current_user: dict = Depends(require_admin)):
    result = await db.products.delete_one({"id": product_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"deleted": True}

# ==================== CUSTOMER ROUTES ====================

@api_router.get("/customers")
async def list_customers(q: Optional[str] = None, status: Optional[str] = None,
                         current_user: dict = Depends(get_current_user)):
    query = depot_filter(current_user)
    if status:
        query["status"] = status
    if q and q.strip():
        rx = {"$regex": re.escape(q.strip()), "$options": "i"}
        query["$or"] = [{"custCd": rx}, {"custName": rx}]
    return await db.customers.find(query, {"_id": 0}).sort("custName", 1).to_list(1000)

@api_router.get("/customers/mapped")
async def list_mapped_customers(current_user: dict = Depends(get_current_user)):
    """Customers mapped to the caller's employee code"""
    return await CustomerService(db).mapped_for(current_user.get("empCd"), current_user.get("isAdmin"))

@api_router.get("/customers/{customer_id}")
async def get_customer(customer_id: str, current_user: dict = Depends(get_current_user)):
    customer = await db.customers.find_one({"id": customer_id}, {"_id": 0})
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    ensure_depot_scope(current_user, customer.get("depotCd"))
    return customer

@api_router.post("/customers", status_code=201)
async def create_customer(data: dict, current_user: dict = Depends(require_admin)):
    return await CustomerService(db).create(data, current_user)

@api_router.put("/customers/{customer_id}")
async def update_customer(customer_id: str, data: dict, current_user: dict = Depends(require_admin)):
    return await CustomerService(db).update(customer_id, data, current_user)

@api_router.delete("/customers/{customer_id}")
async def delete_customer(customer_id: str, current_user: dict = Depends(require_admin)):
    return await CustomerService(db).delete(customer_id)

# ==================== ORDER ROUTES ====================

@api_router.post("/orders", status_code=201)
async def create_order(data: OrderCreate, current_user: dict = Depends(get_current_user)):
    return await OrderService(db).create(data.model_dump(exclude_none=True), current_user)

@api_router.get("/orders")
async def list_orders(status: Optional[str] = None, customerId: Optional[str] = None,
                      current_user: dict = Depends(get_current_user)):
    return await OrderService(db).list(current_user, status=status, customer_id=customerId)

@api_router.get("/orders/{order_id}")
async def get_order(order_id: str, current_user: dict = Depends(get_current_user)):
    order = await OrderService(db).get(order_id)
    ensure_depot_scope(current_user, order.get("depotCd"))
    return order

@api_router.patch("/orders/{order_id}/status")
async def update_order_status(order_id: str, data: OrderStatusUpdate, current_user: dict = Depends(get_current_user)):
    return await OrderService(db).set_status(order_id, data.orderStatus, current_user)

@api_router.delete("/orders/{order_id}")
async def delete_order(order_id: str, current_user: dict = Depends(get_current_user)):
    service = OrderService(db)
    order = await service.get(order_id)
    ensure_depot_scope(current_user, order.get("depotCd"))
    return await service.delete(order_id, current_user)

# ==================== VEHICLE ROUTES ====================

@api_router.post("/vehicles", status_code=201)
async def create_vehicle(data: VehicleCreate, current_user: dict = Depends(require_admin)):
    validate_depot_cd(data.depotCd)
    vehicle = {
        **data.model_dump(),
        "vehicleNo": data.vehicleNo.strip().upper(),
        "id": str(uuid.uuid4()),
        "lastKm": None,
        "lastTotalizer": None,
        "created_at": datetime.now(timezone.utc).isoformat()
    }
    await db.vehicles.insert_one(vehicle)
    vehicle.pop("_id", None)
    await FleetService(db).ensure_shell(vehicle)
    return vehicle

@api_router.get("/vehicles")
async def list_vehicles(depotCd: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    return await db.vehicles.find(depot_filter(current_user, depotCd), {"_id": 0}).sort("vehicleNo", 1).to_list(1000)

@api_router.get("/vehicles/{vehicle_id}")
async def get_vehicle(vehicle_id: str, current_user: dict = Depends(get_current_user)):
    vehicle = await db.vehicles.find_one({"id": vehicle_id}, {"_id": 0})
    if not vehicle:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    ensure_depot_scope(current_user, vehicle.get("depotCd"))
    return vehicle

@api_router.put("/vehicles/{vehicle_id}")
async def update_vehicle(vehicle_id: str, data: dict, current_user: dict = Depends(require_admin)):
    vehicle = await db.vehicles.find_one({"id": vehicle_id}, {"_id": 0})
    if not vehicle:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    changes = {k: v for k, v in data.items() if k not in ("id", "_id", "vehicleNo")}
    if "depotCd" in changes:
        validate_depot_cd(changes["depotCd"])
    changes["updated_at"] = datetime.now(timezone.utc).isoformat()
    await db.vehicles.update_one({"id": vehicle_id}, {"$set": changes})

    mirrored = {k: changes[k] for k in ("depotCd", "gpsYesNo") if k in changes}
    if mirrored:
        await db.fleets.update_one({"vehicleId": vehicle_id}, {"$set": mirrored})
    return await db.vehicles.find_one({"id": vehicle_id}, {"_id": 0})

@api_router.delete("/vehicles/{vehicle_id}")
async def delete_vehicle(vehicle_id: str, current_user: dict = Depends(require_admin)):
    vehicle = await db.vehicles.find_one({"id": vehicle_id}, {"_id": 0})
    if not vehicle:
        raise HTTPException(status_code=404, detail="Vehicle not found")
    open_trips = await db.trips.count_documents(
        {"vehicleNo": vehicle["vehicleNo"], "status": {"$in": OPEN_TRIP_STATUSES}}
    )
    if open_trips:
        raise HTTPException(status_code=400, detail="Vehicle has open trips")
    await db.vehicles.delete_one({"id": vehicle_id})
    await db.fleets.delete_one({"vehicleId": vehicle_id})
    return {"deleted": True}

# ==================== DRIVER ROUTES ====================

@api_router.post("/drivers", status_code=201)
async def create_driver(data: DriverCreate, current_user: dict = Depends(require_admin)):
    validate_depot_cd(data.depotCd)
    validate_mobile(data.mobileNo)
    driver = {
        **data.model_dump(),
        "id": str(uuid.uuid4()),
        "currentTripId": None,
        "created_at": datetime.now(timezone.utc).isoformat()
    }
    await db.drivers.insert_one(driver)
    driver.pop("_id", None)
    return driver

@api_router.get("/drivers")
async def list_drivers(depotCd: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    return await db.drivers.find(depot_filter(current_user, depotCd), {"_id": 0}).sort("driverName", 1).to_list(1000)

@api_router.get("/drivers/{driver_id}")
async def get_driver(driver_id: str, current_user: dict = Depends(get_current_user)):
    driver = await db.drivers.find_one({"id": driver_id}, {"_id": 0})
    if not driver:
        raise HTTPException(status_code=404, detail="Driver not found")
    ensure_depot_scope(current_user, driver.get("depotCd"))
    return driver

@api_router.put("/drivers/{driver_id}")
async def update_driver(driver_id: str, data: dict, current_user: dict = Depends(require_admin)):
    changes = {k: v for k, v in data.items() if k not in ("id", "_id", "currentTripId")}
    if "depotCd" in changes:
        validate_depot_cd(changes["depotCd"])
    if "mobileNo" in changes:
        validate_mobile(changes["mobileNo"])
    result = await db.drivers.update_one({"id": driver_id}, {"$set": changes})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Driver not found")
    return await db.drivers.find_one({"id": driver_id}, {"_id": 0})

@api_router.delete("/drivers/{driver_id}")
async def delete_driver(driver_id: str, current_user: dict = Depends(require_admin)):
    if await db.fleets.find_one({"driverId": driver_id}, {"_id": 0, "id": 1}):
        raise HTTPException(status_code=400, detail="Driver is paired with a vehicle")
    result = await db.drivers.delete_one({"id": driver_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Driver not found")
    return {"deleted": True}

# ==================== FLEET ROUTES ====================

@api_router.get("/fleets")
async def list_fleets(q: str = "", depotCd: str = "", gps: str = "",
                      current_user: dict = Depends(get_current_user)):
    scope = None if current_user.get("isAdmin") else current_user.get("depotCd")
    return await FleetService(db).list(q=q, depot_cd=depotCd, gps=gps, scope_depot=scope)

@api_router.put("/fleets/assign-driver")
async def assign_fleet_driver(data: FleetDriverAssign, current_user: dict = Depends(get_current_user)):
    fleet = await FleetService(db).assign_driver(
        data.vehicleId, data.driverId, data.assignedBy or current_user.get("userId")
    )
    return {"fleet": fleet}

@api_router.put("/fleets/release-driver")
async def release_fleet_driver(data: FleetDriverAssign, current_user: dict = Depends(get_current_user)):
    return {"fleet": await FleetService(db).release_driver(data.vehicleId)}

@api_router.put("/fleets/{fleet_id}/allocate")
async def allocate_fleet(fleet_id: str, data: FleetOrderLink, current_user: dict = Depends(get_current_user)):
    return {"order": await FleetService(db).allocate_to_order(fleet_id, data.orderId)}

@api_router.put("/fleets/{fleet_id}/release")
async def release_fleet(fleet_id: str, data: FleetOrderLink, current_user: dict = Depends(get_current_user)):
    return {"order": await FleetService(db).release_from_order(fleet_id, data.orderId)}

@api_router.post("/fleets/sync-from-vehicles")
async def sync_fleets(current_user: dict = Depends(require_admin)):
    return await FleetService(db).sync_from_vehicles()

# ==================== TRIP ROUTES ====================

@api_router.post("/trips/assign", status_code=201)
async def assign_trip(data: TripAssign, current_user: dict = Depends(get_current_user)):
    return await TripService(db).assign_trip(data.model_dump(), current_user)

@api_router.post("/trips/reset-serial")
async def reset_trip_serial(current_user: dict = Depends(require_admin)):
    return await NumberingService(db).reset_trip_serial()

@api_router.post("/trips/login")
async def trip_login(data: TripLogin, current_user: dict = Depends(get_current_user)):
    payload = data.model_dump()
    if current_user.get("userType") == "D" and not payload.get("driverId"):
        payload["driverId"] = current_user.get("driverId")
    return await TripService(db).login(payload, current_user)

@api_router.post("/trips/logout")
async def trip_logout(data: TripLogout, current_user: dict = Depends(get_current_user)):
    return await TripService(db).logout(data.model_dump(), current_user)

@api_router.get("/trips")
async def list_trips(status: Optional[str] = None, depotCd: Optional[str] = None,
                     current_user: dict = Depends(get_current_user)):
    query = depot_filter(current_user, depotCd)
    if current_user.get("userType") == "D":
        query = {"driverId": current_user.get("driverId")}
    if status:
        query["status"] = status
    return await db.trips.find(query, {"_id": 0}).sort("createdAt", -1).to_list(1000)

@api_router.get("/trips/assigned/{driver_id}")
async def get_assigned_trips(driver_id: str, current_user: dict = Depends(get_current_user)):
    ensure_driver_self(current_user, driver_id)
    return await db.trips.find(
        {"driverId": driver_id, "status": "ASSIGNED"}, {"_id": 0}
    ).sort("createdAt", -1).to_list(100)

@api_router.get("/trips/active/{driver_id}")
async def get_active_trip(driver_id: str, current_user: dict = Depends(get_current_user)):
    ensure_driver_self(current_user, driver_id)
    trip = await db.trips.find_one({"driverId": driver_id, "status": "ACTIVE"}, {"_id": 0})
    if not trip:
        raise HTTPException(status_code=404, detail="No active trip")
    trip["pending"] = await InventoryService(db).pending_deliveries(trip["id"])
    return trip

@api_router.get("/trips/{trip_id}")
async def get_trip(trip_id: str, current_user: dict = Depends(get_current_user)):
    trip = await db.trips.find_one({"id": trip_id}, {"_id": 0})
    if not trip:
        raise HTTPException(status_code=404, detail="Trip not found")
    ensure_depot_scope(current_user, trip.get("depotCd"))
    vehicle = await db.vehicles.find_one({"vehicleNo": trip.get("vehicleNo")}, {"_id": 0})
    driver = await db.drivers.find_one({"id": trip.get("driverId")}, {"_id": 0, "driverName": 1})
    trip["vehicle"] = vehicle
    trip["driverName"] = (driver or {}).get("driverName")
    trip["plans"] = await db.delivery_plans.find({"tripId": trip_id}, {"_id": 0}).to_list(1000)
    return trip

@api_router.get("/trips/{trip_id}/capacity")
async def get_trip_capacity(trip_id: str, current_user: dict = Depends(get_current_user)):
    return await TripService(db).capacity_summary(trip_id)

@api_router.post("/trips/{trip_id}/orders", status_code=201)
async def add_order_to_trip(trip_id: str, data: TripOrderAdd, current_user: dict = Depends(get_current_user)):
    return await TripService(db).add_order(trip_id, data.orderId, current_user)

@api_router.get("/trips/{trip_id}/invoice")
async def download_trip_invoice(trip_id: str, current_user: dict = Depends(get_current_user_optional)):
    """Aggregated invoice PDF for a trip, built from its recorded deliveries"""
    invoice = await InvoiceService(db).prefill_from_trip(trip_id)
    return pdf_response(generate_invoice_pdf(invoice), f"invoice_{invoice.get('tripNo') or trip_id}.pdf")

@api_router.delete("/trips/{trip_id}")
async def delete_trip(trip_id: str, current_user: dict = Depends(require_admin)):
    return await TripService(db).cancel_trip(trip_id)

# ==================== DELIVERY PLAN & DELIVERY ROUTES ====================

@api_router.get("/delivery-plans/{trip_id}")
async def list_delivery_plans(trip_id: str, current_user: dict = Depends(get_current_user)):
    return await db.delivery_plans.find({"tripId": trip_id}, {"_id": 0}).to_list(1000)

@api_router.post("/delivery-plans", status_code=201)
async def create_delivery_plan(data: DeliveryPlanCreate, current_user: dict = Depends(get_current_user)):
    return await TripService(db).add_order(data.tripId, data.orderId, current_user)

@api_router.get("/deliveries/pending/{trip_id}")
async def list_pending_deliveries(trip_id: str, current_user: dict = Depends(get_current_user)):
    return await InventoryService(db).pending_deliveries(trip_id)

@api_router.get("/deliveries/completed/{trip_id}")
async def list_completed_deliveries(trip_id: str, current_user: dict = Depends(get_current_user)):
    return await InventoryService(db).completed_deliveries(trip_id)

@api_router.post("/deliveries", status_code=201)
async def create_delivery(data: DeliveryCreate, current_user: dict = Depends(get_current_user)):
    return await InventoryService(db).record_delivery(data.model_dump(), current_user)

# ==================== LOADING ROUTES ====================

@api_router.get("/loadings/stations")
async def list_loading_stations(current_user: dict = Depends(get_current_user)):
    masters = await db.loading_masters.find({}, {"_id": 0}).sort("order", 1).to_list(1000)
    route_ids = list({m["routeId"] for m in masters})
    station_ids = list({m["stationId"] for m in masters})
    routes = {r["id"]: r for r in await db.routes.find({"id": {"$in": route_ids}}, {"_id": 0}).to_list(1000)}
    stations = {s["id"]: s for s in await db.stations.find({"id": {"$in": station_ids}}, {"_id": 0}).to_list(1000)}
    for m in masters:
        m["routeName"] = (routes.get(m["routeId"]) or {}).get("name")
        m["stationName"] = (stations.get(m["stationId"]) or {}).get("name")
    return masters

@api_router.post("/loadings/stations", status_code=201)
async def map_loading_station(data: LoadingStationMap, current_user: dict = Depends(require_admin)):
    if not await db.routes.find_one({"id": data.routeId}, {"_id": 0, "id": 1}):
        raise NotFound("Route")
    if not await db.stations.find_one({"id": data.stationId}, {"_id": 0, "id": 1}):
        raise NotFound("Station")
    if await db.loading_masters.find_one({"routeId": data.routeId, "stationId": data.stationId}, {"_id": 0, "id": 1}):
        raise HTTPException(status_code=400, detail="This station is already mapped to that route")
    master = {**data.model_dump(), "id": str(uuid.uuid4()), "created_at": datetime.now(timezone.utc).isoformat()}
    await db.loading_masters.insert_one(master)
    master.pop("_id", None)
    return master

@api_router.delete("/loadings/stations/{mapping_id}")
async def unmap_loading_station(mapping_id: str, current_user: dict = Depends(require_admin)):
    result = await db.loading_masters.delete_one({"id": mapping_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Mapping not found")
    return {"deleted": True}

@api_router.get("/loadings/stations/{route_id}")
async def list_route_stations(route_id: str, current_user: dict = Depends(get_current_user)):
    masters = await db.loading_masters.find({"routeId": route_id}, {"_id": 0}).sort("order", 1).to_list(1000)
    stations = {s["id"]: s for s in await db.stations.find(
        {"id": {"$in": [m["stationId"] for m in masters]}}, {"_id": 0}
    ).to_list(1000)}
    return [
        {"id": m["stationId"], "name": (stations.get(m["stationId"]) or {}).get("name")}
        for m in masters
    ]

@api_router.post("/loadings/generate-code")
async def generate_loading_code(data: LoadingCodeRequest, current_user: dict = Depends(get_current_user)):
    result = await InventoryService(db).generate_code(data.tripId)
    if os.environ.get('EXPOSE_LOADING_CODE', '').lower() not in ("1", "true", "yes"):
        result.pop("code", None)
    return result

@api_router.post("/loadings/verify-code")
async def verify_loading_code(data: LoadingCodeRequest, current_user: dict = Depends(get_current_user)):
    return await InventoryService(db).verify_code(data.tripId, data.code)

@api_router.post("/loadings", status_code=201)
async def create_loading(data: LoadingCreate, current_user: dict = Depends(get_current_user)):
    return await InventoryService(db).record_loading(data.model_dump(), current_user)

@api_router.get("/loadings")
async def list_loadings(tripId: Optional[str] = None, current_user: dict = Depends(get_current_user)):
    query = depot_filter(current_user)
    if tripId:
        query["tripId"] = tripId
    return await db.loadings.find(query, {"_id": 0}).sort("createdAt", -1).to_list(1000)

# ==================== BOWSER INVENTORY ROUTES ====================

@api_router.get("/bowser-inventories")
async def list_bowser_inventories(current_user: dict = Depends(get_current_user)):
    return await db.bowser_inventories.find(depot_filter(current_user), {"_id": 0}).sort("vehicleNo", 1).to_list(1000)

@api_router.get("/bowser-inventories/{vehicle_no}")
async def get_bowser_inventory(vehicle_no: str, current_user: dict = Depends(get_current_user)):
    inv = await InventoryService(db).get_inventory(vehicle_no)
    if not inv:
        raise HTTPException(status_code=404, detail="No inventory for vehicle")
    ensure_depot_scope(current_user, inv.get("depotCd"))
    return inv

@api_router.put("/bowser-inventories/{vehicle_no}")
async def update_bowser_inventory(vehicle_no: str, data: InventoryUpdate, current_user: dict = Depends(require_admin)):
    """Set an opening balance, or apply a signed adjustment"""
    service = InventoryService(db)
    if data.balanceLiters is not None:
        vehicle = await db.vehicles.find_one({"vehicleNo": vehicle_no}, {"_id": 0})
        if not vehicle:
            raise HTTPException(status_code=404, detail="Vehicle not found")
        return await service.set_opening(vehicle_no, data.balanceLiters, data.depotCd or vehicle.get("depotCd"),
                                         data.reason or "OPENING")
    if data.adjustQty is not None:
        return await service.adjust(vehicle_no, data.adjustQty, data.reason or current_user.get("userId"))
    raise HTTPException(status_code=400, detail="balanceLiters or adjustQty is required")

@api_router.get("/bowser-inventories/{vehicle_no}/ledger")
async def get_bowser_ledger(vehicle_no: str, limit: int = 200, current_user: dict = Depends(get_current_user)):
    return await InventoryService(db).ledger(vehicle_no, min(max(limit, 1), 1000))

# ==================== INVOICE ROUTES ====================

@api_router.get("/invoices")
async def list_invoices(q: str = "", page: int = 1, limit: int = 50,
                        date_from: Optional[str] = Query(None, alias="from"),
                        date_to: Optional[str] = Query(None, alias="to"),
                        current_user: dict = Depends(get_current_user)):
    return await InvoiceService(db).list_invoices(q, date_from, date_to, page, limit)

@api_router.get("/invoices/prefill-from-trip/{trip_id}")
async def prefill_invoice_from_trip(trip_id: str, current_user: dict = Depends(get_current_user)):
    return await InvoiceService(db).prefill_from_trip(trip_id)

@api_router.post("/invoices/from-trip/{trip_id}", status_code=201)
async def create_invoice_from_trip(trip_id: str, data: Optional[InvoiceFromTrip] = None,
                                   current_user: dict = Depends(get_current_user)):
    overrides = data.model_dump(exclude_none=True) if data else {}
    return await InvoiceService(db).create_from_trip(trip_id, overrides, current_user)

@api_router.get("/invoices/{invoice_id}")
async def get_invoice(invoice_id: str, current_user: dict = Depends(get_current_user)):
    return await InvoiceService(db).get_invoice(invoice_id)

@api_router.get("/invoices/{invoice_id}/pdf")
async def download_invoice_pdf(invoice_id: str, current_user: dict = Depends(get_current_user_optional)):
    invoice = await InvoiceService(db).get_invoice(invoice_id)
    return pdf_response(generate_invoice_pdf(invoice), f"{invoice.get('invoiceNo', 'invoice')}.pdf")

# ==================== PAYMENT ROUTES ====================

@api_router.get("/payments")
async def list_payments(q: str = "", status: Optional[str] = None, transType: Optional[str] = None,
                        mode: Optional[str] = None, page: int = 1, limit: int = 50,
                        includeDeleted: bool = False,
                        date_from: Optional[str] = Query(None, alias="from"),
                        date_to: Optional[str] = Query(None, alias="to"),
                        current_user: dict = Depends(get_current_user)):
    return await PaymentService(db).list_payments(q, status, transType, mode, date_from, date_to,
                                                  page, limit, includeDeleted)

@api_router.get("/payments/{payment_id}")
async def get_payment(payment_id: str, current_user: dict = Depends(get_current_user)):
    return await PaymentService(db).get_payment(payment_id)

@api_router.post("/payments", status_code=201)
async def create_payment(data: dict, current_user: dict = Depends(get_current_user)):
    return await PaymentService(db).create_payment(data, current_user)

@api_router.put("/payments/{payment_id}")
async def update_payment(payment_id: str, data: dict, current_user: dict = Depends(get_current_user)):
    return await PaymentService(db).update_payment(payment_id, data, current_user)

@api_router.post("/payments/{payment_id}/submit")
async def submit_payment(payment_id: str, current_user: dict = Depends(get_current_user)):
    return await PaymentService(db).submit_payment(payment_id, current_user)

@api_router.post("/payments/{payment_id}/reset")
async def reset_payment(payment_id: str, current_user: dict = Depends(get_current_user)):
    return await PaymentService(db).reset_payment(payment_id, current_user)

@api_router.delete("/payments/{payment_id}")
async def delete_payment(payment_id: str, current_user: dict = Depends(get_current_user)):
    return await PaymentService(db).delete_payment(payment_id, current_user)

# ==================== PAYREC ROUTES ====================

@api_router.post("/payrecs", status_code=201)
async def create_payrec(data: dict, current_user: dict = Depends(get_current_user)):
    require_accounts(current_user)
    return await PayRecService(db).create(data, current_user)

@api_router.get("/payrecs")
async def list_payrecs(q: Optional[str] = None, trType: Optional[str] = None, mode: Optional[str] = None,
                       partyCode: Optional[str] = None, forPartyCode: Optional[str] = None,
                       status: Optional[str] = None, page: int = 1, limit: int = 20,
                       date_from: Optional[str] = Query(None, alias="from"),
                       date_to: Optional[str] = Query(None, alias="to"),
                       current_user: dict = Depends(get_current_user)):
    require_accounts(current_user)
    return await PayRecService(db).list(q, date_from, date_to, trType, mode, partyCode, forPartyCode,
                                        status, page, limit)

@api_router.get("/payrecs/{payrec_id}")
async def get_payrec(payrec_id: str, current_user: dict = Depends(get_current_user)):
    require_accounts(current_user)
    return await PayRecService(db).get(payrec_id)

@api_router.put("/payrecs/{payrec_id}")
async def update_payrec(payrec_id: str, data: dict, current_user: dict = Depends(get_current_user)):
    require_accounts(current_user)
    return await PayRecService(db).update(payrec_id, data, current_user)

@api_router.patch("/payrecs/{payrec_id}/status")
async def set_payrec_status(payrec_id: str, data: PayRecStatus, current_user: dict = Depends(get_current_user)):
    require_accounts(current_user)
    return await PayRecService(db).set_status(payrec_id, data.status, current_user)

@api_router.patch("/payrecs/{payrec_id}/restore")
async def restore_payrec(payrec_id: str, current_user: dict = Depends(get_current_user)):
    require_accounts(current_user)
    return await PayRecService(db).restore(payrec_id, current_user)

@api_router.delete("/payrecs/{payrec_id}")
async def delete_payrec(payrec_id: str, current_user: dict = Depends(get_current_user)):
    require_accounts(current_user)
    return await PayRecService(db).soft_delete(payrec_id, current_user)

# ==================== 404 CATCH-ALL (MUST BE LAST) ====================

@api_router.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def api_not_found(path: str, request: Request):
    return JSONResponse(status_code=404, content={"error": f"No API route for {request.method} {request.url.path}"})


app.include_router(api_router)

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

@app.on_event("startup")
async def startup_event():
    logger.info(f"CORS origins: {cors_origins}")
    index_specs = [
        ("orders", [("orderNo", 1)], True),
        ("trips", [("tripNo", 1)], True),
        ("trips", [("fleetId", 1), ("status", 1)], False),
        ("customers", [("custCd", 1)], True),
        ("vehicles", [("vehicleNo", 1)], True),
        ("fleets", [("vehicleId", 1)], True),
        ("depots", [("depotCd", 1)], True),
        ("depots", [("depotName", 1)], True),
        ("users", [("userId", 1)], True),
        ("invoices", [("invoiceNo", 1)], True),
        ("loading_auths", [("tripId", 1)], True),
        ("bowser_inventories", [("vehicleNo", 1)], True),
        ("stations", [("name", 1)], True),
        ("delivery_plans", [("tripId", 1)], False),
        ("deliveries", [("tripId", 1)], False),
        ("payments", [("status", 1)], False),
        ("payrecs", [("partyCode", 1), ("date", -1)], False),
        ("bowser_ledger", [("vehicleNo", 1), ("timeStamp", -1)], False),
    ]
    for collection, keys, unique in index_specs:
        try:
            await db[collection].create_index(keys, unique=unique)
        except Exception as e:
            logger.warning(f"Failed to create index on {collection} {keys}: {e}")
    logger.info("Indexes ensured")

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("server:app", host="0.0.0.0", port=int(os.environ.get('PORT', 8000)))
