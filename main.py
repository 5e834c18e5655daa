import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Response, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session

import accounts
import catalog
import schemas
import security
from config import Settings
from database import Database, get_db
from orders import OrderService
from permissions import Principal
from security import get_current_user, get_settings, require_admin

logger = logging.getLogger(__name__)

router = APIRouter()


def ok(message: str, data=None) -> dict:
    return {"message": message, "status": "success", "data": data}


def found(items: list, noun: str) -> str:
    return f"{noun} retrieved successfully" if items else f"No {noun.lower()} found"


# --------------------------- 인증 ---------------------------
@router.post("/auth/signup", response_model=schemas.Envelope[schemas.UserResponse], status_code=status.HTTP_201_CREATED)
def signup(body: schemas.SignUp, db: Session = Depends(get_db)):
    user = accounts.signup(db, body)
    return ok("User registered successfully", schemas.UserResponse.model_validate(user))


@router.post("/auth/login", response_model=schemas.TokenResponse)
def login(body: schemas.UserLogin, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    token, user = security.authenticate(db, body.email, body.password, settings)
    return {"access_token": token, "token_type": "bearer", "user": schemas.UserResponse.model_validate(user)}


@router.post("/auth/admin/login", response_model=schemas.TokenResponse)
def admin_login(body: schemas.UserLogin, db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    token, user = security.authenticate_admin(db, body.email, body.password, settings)
    return {"access_token": token, "token_type": "bearer", "user": schemas.UserResponse.model_validate(user)}


# --------------------------- 사용자 ---------------------------
@router.post("/users", response_model=schemas.Envelope[schemas.UserResponse], status_code=status.HTTP_201_CREATED)
def create_user(body: schemas.UserCreate, db: Session = Depends(get_db), user: Principal = Depends(require_admin)):
    created = accounts.create_user(db, body, user)
    return ok("User created successfully", schemas.UserResponse.model_validate(created))


@router.get("/users", response_model=schemas.Envelope[List[schemas.UserResponse]])
def list_users(db: Session = Depends(get_db), user: Principal = Depends(get_current_user)):
    users = accounts.list_users(db, user)
    return ok(found(users, "Users"), [schemas.UserResponse.model_validate(u) for u in users])


@router.get("/users/{user_id}", response_model=schemas.Envelope[schemas.UserResponse])
def get_user(user_id: int, db: Session = Depends(get_db), user: Principal = Depends(get_current_user)):
    return ok("User retrieved successfully", schemas.UserResponse.model_validate(accounts.get_user(db, user_id, user)))


@router.patch("/users/{user_id}", response_model=schemas.Envelope[schemas.UserResponse])
def update_user(
    user_id: int,
    body: schemas.UserUpdate,
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
):
    updated = accounts.update_user(db, user_id, body, user)
    return ok("User updated successfully", schemas.UserResponse.model_validate(updated))


@router.delete("/users/{user_id}", response_model=schemas.Envelope[None])
def delete_user(user_id: int, db: Session = Depends(get_db), user: Principal = Depends(require_admin)):
    accounts.delete_user(db, user_id, user)
    return ok("User deleted successfully")


# --------------------------- 배송지 ---------------------------
@router.post("/addresses", response_model=schemas.Envelope[schemas.AddressResponse], status_code=status.HTTP_201_CREATED)
def create_address(body: schemas.AddressCreate, db: Session = Depends(get_db), user: Principal = Depends(get_current_user)):
    address = accounts.create_address(db, user, body)
    return ok("Address created successfully", schemas.AddressResponse.model_validate(address))


@router.get("/addresses", response_model=schemas.Envelope[List[schemas.AddressResponse]])
def list_addresses(db: Session = Depends(get_db), user: Principal = Depends(get_current_user)):
    addresses = accounts.list_addresses(db, user)
    return ok(found(addresses, "Addresses"), [schemas.AddressResponse.model_validate(a) for a in addresses])


@router.get("/addresses/{address_id}", response_model=schemas.Envelope[schemas.AddressResponse])
def get_address(address_id: int, db: Session = Depends(get_db), user: Principal = Depends(get_current_user)):
    address = accounts.get_address(db, address_id, user)
    return ok("Address retrieved successfully", schemas.AddressResponse.model_validate(address))


@router.patch("/addresses/{address_id}", response_model=schemas.Envelope[schemas.AddressResponse])
def update_address(
    address_id: int,
    body: schemas.AddressUpdate,
    db: Session = Depends(get_db),
    user: Principal = Depends(get_current_user),
):
    address = accounts.update_address(db, address_id, user, body)
    return ok("Address updated successfully", schemas.AddressResponse.model_validate(address))


@router.delete("/addresses/{address_id}", response_model=schemas.Envelope[None])
def delete_address(address_id: int, db: Session = Depends(get_db), user: Principal = Depends(get_current_user)):
    accounts.delete_address(db, address_id, user)
    return ok("Address deleted successfully")


@router.patch("/addresses/{address_id}/set-default", response_model=schemas.Envelope[schemas.AddressResponse])
def set_default_address(address_id: int, db: Session = Depends(get_db), user: Principal = Depends(get_current_user)):
    address = accounts.set_default_address(db, address_id, user)
    return ok("Address set as default successfully", schemas.AddressResponse.model_validate(address))


# --------------------------- 카테고리 ---------------------------
@router.post("/categories", response_model=schemas.Envelope[schemas.CategoryResponse], status_code=status.HTTP_201_CREATED)
def create_category(body: schemas.CategoryCreate, db: Session = Depends(get_db), user: Principal = Depends(require_admin)):
    category = catalog.create_category(db, body)
    return ok("Category created successfully", schemas.CategoryResponse.model_validate(category))


@router.get("/categories", response_model=schemas.Envelope[List[schemas.CategoryResponse]])
def list_categories(db: Session = Depends(get_db)):
    categories = catalog.list_categories(db)
    message = "Categories found" if categories else "No categories found"
    return ok(message, [schemas.CategoryResponse.model_validate(c) for c in categories])


@router.get("/categories/{category_id}", response_model=schemas.Envelope[schemas.CategoryDetail])
def get_category(category_id: int, db: Session = Depends(get_db)):
    return ok("Category found", schemas.CategoryDetail.model_validate(catalog.get_category(db, category_id)))


@router.delete("/categories/{category_id}", response_model=schemas.Envelope[None])
def delete_category(category_id: int, db: Session = Depends(get_db), user: Principal = Depends(require_admin)):
    catalog.delete_category(db, category_id)
    return ok("Category deleted successfully")


# --------------------------- 속성 ---------------------------
@router.post("/attributes", response_model=schemas.Envelope[schemas.AttributeResponse], status_code=status.HTTP_201_CREATED)
def create_attribute(body: schemas.AttributeCreate, db: Session = Depends(get_db), user: Principal = Depends(require_admin)):
    attribute = catalog.create_attribute(db, body)
    return ok("Attribute created successfully", schemas.AttributeResponse.model_validate(attribute))


@router.get("/attributes", response_model=schemas.Envelope[List[schemas.AttributeSummary]])
def list_attributes(db: Session = Depends(get_db)):
    attributes = catalog.list_attributes(db)
    return ok(found(attributes, "Attributes"), [schemas.AttributeSummary.model_validate(a) for a in attributes])


@router.get("/attributes/{attribute_id}", response_model=schemas.Envelope[schemas.AttributeResponse])
def get_attribute(attribute_id: int, db: Session = Depends(get_db)):
    attribute = catalog.get_attribute(db, attribute_id)
    return ok("Attribute retrieved successfully", schemas.AttributeResponse.model_validate(attribute))


@router.patch("/attributes/{attribute_id}", response_model=schemas.Envelope[schemas.AttributeResponse])
def update_attribute(
    attribute_id: int,
    body: schemas.AttributeUpdate,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_admin),
):
    attribute = catalog.update_attribute(db, attribute_id, body)
    return ok("Attribute updated successfully", schemas.AttributeResponse.model_validate(attribute))


@router.delete("/attributes/{attribute_id}", response_model=schemas.Envelope[None])
def delete_attribute(attribute_id: int, db: Session = Depends(get_db), user: Principal = Depends(require_admin)):
    catalog.delete_attribute(db, attribute_id)
    return ok("Attribute deleted successfully")


@router.post(
    "/attribute-values",
    response_model=schemas.Envelope[schemas.AttributeValueResponse],
    status_code=status.HTTP_201_CREATED,
)
def create_attribute_value(
    body: schemas.AttributeValueCreate,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_admin),
):
    value = catalog.create_attribute_value(db, body)
    return ok("Attribute value created successfully", schemas.AttributeValueResponse.model_validate(value))


@router.get("/attribute-values", response_model=schemas.Envelope[List[schemas.AttributeValueResponse]])
def list_attribute_values(db: Session = Depends(get_db)):
    values = catalog.list_attribute_values(db)
    return ok(found(values, "Attribute values"), [schemas.AttributeValueResponse.model_validate(v) for v in values])


@router.get(
    "/attribute-values/attribute/{attribute_id}",
    response_model=schemas.Envelope[List[schemas.AttributeValueResponse]],
)
def list_values_for_attribute(attribute_id: int, db: Session = Depends(get_db)):
    values = catalog.list_values_for_attribute(db, attribute_id)
    message = "Attribute values retrieved successfully" if values else "No values found for this attribute"
    return ok(message, [schemas.AttributeValueResponse.model_validate(v) for v in values])


@router.get("/attribute-values/{value_id}", response_model=schemas.Envelope[schemas.AttributeValueResponse])
def get_attribute_value(value_id: int, db: Session = Depends(get_db)):
    value = catalog.get_attribute_value(db, value_id)
    return ok("Attribute value retrieved successfully", schemas.AttributeValueResponse.model_validate(value))


@router.patch("/attribute-values/{value_id}", response_model=schemas.Envelope[schemas.AttributeValueResponse])
def update_attribute_value(
    value_id: int,
    body: schemas.AttributeValueUpdate,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_admin),
):
    value = catalog.update_attribute_value(db, value_id, body)
    return ok("Attribute value updated successfully", schemas.AttributeValueResponse.model_validate(value))


@router.delete("/attribute-values/{value_id}", response_model=schemas.Envelope[None])
def delete_attribute_value(value_id: int, db: Session = Depends(get_db), user: Principal = Depends(require_admin)):
    catalog.delete_attribute_value(db, value_id)
    return ok("Attribute value deleted successfully")


# --------------------------- 상품 ---------------------------
@router.post("/products", response_model=schemas.Envelope[schemas.ProductResponse], status_code=status.HTTP_201_CREATED)
def create_product(body: schemas.ProductCreate, db: Session = Depends(get_db), user: Principal = Depends(require_admin)):
    product = catalog.create_product(db, body)
    return ok("Product created successfully", schemas.ProductResponse.model_validate(product))


@router.get("/products", response_model=schemas.Envelope[List[schemas.ProductResponse]])
def list_products(db: Session = Depends(get_db)):
    products = catalog.list_products(db)
    message = "Products found" if products else "No products found"
    return ok(message, [schemas.ProductResponse.model_validate(p) for p in products])


@router.get("/products/{product_id}", response_model=schemas.Envelope[schemas.ProductResponse])
def get_product(product_id: int, db: Session = Depends(get_db)):
    return ok("Product found", schemas.ProductResponse.model_validate(catalog.get_product(db, product_id)))


@router.patch("/products/{product_id}", response_model=schemas.Envelope[schemas.ProductResponse])
def update_product(
    product_id: int,
    body: schemas.ProductUpdate,
    db: Session = Depends(get_db),
    user: Principal = Depends(require_admin),
):
    product = catalog.update_product(db, product_id, body)
    return ok("Product updated successfully", schemas.ProductResponse.model_validate(product))


@router.delete("/products/{product_id}", response_model=schemas.Envelope[None])
def delete_product(product_id: int, db: Session = Depends(get_db), user: Principal = Depends(require_admin)):
    catalog.delete_product(db, product_id)
    return ok("Product deleted successfully")


@router.post(
    "/products/{product_id}/images",
    response_model=schemas.Envelope[schemas.ImageResponse],
    status_code=status.HTTP_201_CREATED,
)
def upload_product_image(
    product_id: int,
    image: UploadFile = File(...),
    alt_text: Optional[str] = Form(None),
    variant_id: Optional[int] = Form(None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    user: Principal = Depends(require_admin),
):
    record = catalog.upload_product_image(
        db, product_id, image, settings.upload_dir, settings.public_base_url, alt_text, variant_id
    )
    return ok("Image uploaded successfully", schemas.ImageResponse.model_validate(record))


# --------------------------- 주문 ---------------------------
def get_order_service(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)) -> OrderService:
    return OrderService(db, settings)


@router.post("/orders", response_model=schemas.Envelope[schemas.OrderResponse], status_code=status.HTTP_201_CREATED)
def create_order(
    body: schemas.OrderCreate,
    service: OrderService = Depends(get_order_service),
    user: Principal = Depends(get_current_user),
):
    # 주문자는 항상 토큰의 사용자
    order = service.create(user, body.items, body.payment_method)
    return ok("Order created successfully", schemas.OrderResponse.model_validate(order))


@router.get("/orders", response_model=schemas.Envelope[List[schemas.OrderResponse]])
def list_orders(service: OrderService = Depends(get_order_service), user: Principal = Depends(get_current_user)):
    orders = service.find_all(user)
    return ok(found(orders, "Orders"), [schemas.OrderResponse.model_validate(o) for o in orders])


@router.get("/orders/{order_id}", response_model=schemas.Envelope[schemas.OrderResponse])
def get_order(
    order_id: int,
    service: OrderService = Depends(get_order_service),
    user: Principal = Depends(get_current_user),
):
    return ok("Order retrieved successfully", schemas.OrderResponse.model_validate(service.find_one(order_id, user)))


@router.patch("/orders/{order_id}/status", response_model=schemas.Envelope[schemas.OrderResponse])
def update_order_status(
    order_id: int,
    body: schemas.OrderStatusUpdate,
    service: OrderService = Depends(get_order_service),
    user: Principal = Depends(get_current_user),
):
    order = service.update_status(order_id, body.status, user)
    return ok("Order status updated successfully", schemas.OrderResponse.model_validate(order))


@router.get("/orders/{order_id}/receipt", response_class=Response)
def download_receipt(
    order_id: int,
    service: OrderService = Depends(get_order_service),
    user: Principal = Depends(get_current_user),
):
    pdf = service.receipt(order_id, user)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="receipt-{order_id}.pdf"'},
    )


# --------------------------- 초기화 ---------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    database: Database = app.state.database
    database.open()
    if settings.admin_email and settings.admin_password:
        db = database.session()
        try:
            accounts.ensure_admin(db, settings.admin_email, settings.admin_password)
        finally:
            db.close()
    logger.info("application started")
    yield
    database.close()
    logger.info("application stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(title="Shop API", version="1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.database = Database(settings.database_url)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 업로드 이미지 경로
    os.makedirs(settings.upload_dir, exist_ok=True)
    app.mount("/static/images", StaticFiles(directory=settings.upload_dir), name="images")

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
