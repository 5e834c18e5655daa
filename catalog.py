import logging
import os
import shutil
import time
from typing import Dict, Iterable, List, Sequence
from uuid import uuid4

from fastapi import UploadFile
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload, selectinload

import models
import schemas
from database import UnitOfWork
from errors import Conflict, InsufficientStock, InvalidRequest, NotFound

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png"}


# --------------------------- 카테고리 ---------------------------
def _slug_taken(db: Session, model, slug: str) -> bool:
    return db.query(model.id).filter(model.slug == slug).first() is not None


def create_category(db: Session, dto: schemas.CategoryCreate) -> models.Category:
    if _slug_taken(db, models.Category, dto.slug):
        raise Conflict("Category with this slug already exists")
    if dto.parent_id is not None and not db.get(models.Category, dto.parent_id):
        raise NotFound("Parent category not found")
    category = models.Category(name=dto.name, slug=dto.slug, parent_id=dto.parent_id)
    with UnitOfWork(db, conflict="Category with this slug already exists"):
        db.add(category)
    return category


def list_categories(db: Session) -> List[models.Category]:
    return (
        db.query(models.Category)
        .options(joinedload(models.Category.parent), selectinload(models.Category.children))
        .order_by(models.Category.id)
        .all()
    )


def get_category(db: Session, category_id: int) -> models.Category:
    category = db.get(models.Category, category_id)
    if not category:
        raise NotFound("Category not found")
    return category


def delete_category(db: Session, category_id: int) -> None:
    category = get_category(db, category_id)
    if db.query(func.count(models.Product.id)).filter(models.Product.category_id == category_id).scalar():
        raise Conflict("Cannot delete category with associated products")
    if db.query(func.count(models.Category.id)).filter(models.Category.parent_id == category_id).scalar():
        raise Conflict("Cannot delete category with subcategories")
    with UnitOfWork(db):
        db.delete(category)


# --------------------------- 속성 ---------------------------
def create_attribute(db: Session, dto: schemas.AttributeCreate) -> models.Attribute:
    if db.query(models.Attribute.id).filter(models.Attribute.name == dto.name).first():
        raise Conflict("Attribute with this name already exists")
    attribute = models.Attribute(name=dto.name)
    with UnitOfWork(db, conflict="Attribute with this name already exists"):
        db.add(attribute)
    return attribute


def list_attributes(db: Session) -> List[models.Attribute]:
    return db.query(models.Attribute).order_by(models.Attribute.name).all()


def get_attribute(db: Session, attribute_id: int) -> models.Attribute:
    attribute = db.get(models.Attribute, attribute_id, options=[selectinload(models.Attribute.values)])
    if not attribute:
        raise NotFound("Attribute not found")
    return attribute


def update_attribute(db: Session, attribute_id: int, dto: schemas.AttributeUpdate) -> models.Attribute:
    attribute = get_attribute(db, attribute_id)
    if dto.name and dto.name != attribute.name:
        if db.query(models.Attribute.id).filter(models.Attribute.name == dto.name).first():
            raise Conflict("Attribute with this name already exists")
        with UnitOfWork(db, conflict="Attribute with this name already exists"):
            attribute.name = dto.name
    return attribute


def delete_attribute(db: Session, attribute_id: int) -> None:
    attribute = get_attribute(db, attribute_id)
    with UnitOfWork(db):
        db.delete(attribute)


# --------------------------- 속성 값 ---------------------------
def _value_exists(db: Session, attribute_id: int, value: str, exclude_id: int | None = None) -> bool:
    q = db.query(models.AttributeValue.id).filter(
        models.AttributeValue.attribute_id == attribute_id,
        models.AttributeValue.value == value,
    )
    if exclude_id is not None:
        q = q.filter(models.AttributeValue.id != exclude_id)
    return q.first() is not None


def create_attribute_value(db: Session, dto: schemas.AttributeValueCreate) -> models.AttributeValue:
    if not db.get(models.Attribute, dto.attribute_id):
        raise NotFound("Attribute not found")
    # 값의 유일성은 속성 단위
    if _value_exists(db, dto.attribute_id, dto.value):
        raise Conflict("Attribute value already exists for this attribute")
    value = models.AttributeValue(value=dto.value, attribute_id=dto.attribute_id)
    with UnitOfWork(db, conflict="Attribute value already exists for this attribute"):
        db.add(value)
    return value


def list_attribute_values(db: Session) -> List[models.AttributeValue]:
    return (
        db.query(models.AttributeValue)
        .options(joinedload(models.AttributeValue.attribute))
        .order_by(models.AttributeValue.value)
        .all()
    )


def list_values_for_attribute(db: Session, attribute_id: int) -> List[models.AttributeValue]:
    if not db.get(models.Attribute, attribute_id):
        raise NotFound("Attribute not found")
    return (
        db.query(models.AttributeValue)
        .filter(models.AttributeValue.attribute_id == attribute_id)
        .order_by(models.AttributeValue.value)
        .all()
    )


def get_attribute_value(db: Session, value_id: int) -> models.AttributeValue:
    value = db.get(models.AttributeValue, value_id)
    if not value:
        raise NotFound("Attribute value not found")
    return value


def update_attribute_value(db: Session, value_id: int, dto: schemas.AttributeValueUpdate) -> models.AttributeValue:
    value = get_attribute_value(db, value_id)
    if dto.value and dto.value != value.value:
        if _value_exists(db, value.attribute_id, dto.value, exclude_id=value.id):
            raise Conflict("Attribute value already exists for this attribute")
        with UnitOfWork(db, conflict="Attribute value already exists for this attribute"):
            value.value = dto.value
    return value


def delete_attribute_value(db: Session, value_id: int) -> None:
    value = get_attribute_value(db, value_id)
    with UnitOfWork(db):
        db.delete(value)


# --------------------------- 상품 ---------------------------
def generate_sku() -> str:
    return f"SKU-{int(time.time() * 1000)}-{uuid4().hex[:9]}"


def _product_query(db: Session):
    return db.query(models.Product).options(
        joinedload(models.Product.category),
        selectinload(models.Product.images),
        selectinload(models.Product.variants)
        .selectinload(models.ProductVariant.attributes)
        .joinedload(models.VariantAttribute.attribute_value)
        .joinedload(models.AttributeValue.attribute),
        selectinload(models.Product.variants).selectinload(models.ProductVariant.images),
    )


def _check_skus(db: Session, variants: Sequence[schemas.VariantIn], product_id: int | None = None) -> None:
    skus = [v.sku for v in variants if v.sku]
    if len(skus) != len(set(skus)):
        raise Conflict("Duplicate SKU in request")
    if not skus:
        return
    q = db.query(models.ProductVariant.sku).filter(models.ProductVariant.sku.in_(skus))
    if product_id is not None:
        q = q.filter(models.ProductVariant.product_id != product_id)
    taken = q.first()
    if taken:
        raise Conflict(f"Variant with SKU {taken.sku} already exists")


def _attribute_links(db: Session, attributes: Iterable[schemas.VariantAttributeIn]) -> List[models.VariantAttribute]:
    links = []
    seen = set()
    for a in attributes:
        if a.value_id in seen:
            continue
        seen.add(a.value_id)
        value = db.get(models.AttributeValue, a.value_id)
        if not value or value.attribute_id != a.attribute_id:
            raise NotFound(f"Attribute value {a.value_id} not found for attribute {a.attribute_id}")
        links.append(models.VariantAttribute(attribute_value_id=value.id))
    return links


def _sync_links(db: Session, variant: models.ProductVariant, attributes: Sequence[schemas.VariantAttributeIn]) -> None:
    # 같은 (옵션, 값) 쌍을 지웠다 다시 넣으면 유니크 제약에 걸리므로 차이만 반영
    wanted = {link.attribute_value_id: link for link in _attribute_links(db, attributes)}
    variant.attributes = [a for a in variant.attributes if a.attribute_value_id in wanted]
    present = {a.attribute_value_id for a in variant.attributes}
    variant.attributes.extend(link for value_id, link in wanted.items() if value_id not in present)


def _build_variant(db: Session, v: schemas.VariantIn) -> models.ProductVariant:
    return models.ProductVariant(
        sku=v.sku or generate_sku(),
        price=v.price,
        stock=v.stock or 0,
        attributes=_attribute_links(db, v.attributes),
        images=_build_images(v.images or [], models.ImageType.VARIANT),
    )


def _build_images(
    images: Sequence[schemas.ImageIn], image_type: models.ImageType = models.ImageType.PRODUCT
) -> List[models.ProductImage]:
    # 옵션 이미지는 variant 쪽 컬렉션에만 붙는다 (product_id 없음)
    return [
        models.ProductImage(
            url=img.url,
            alt_text=img.alt_text,
            position=img.position if img.position is not None else index,
            type=image_type.value,
        )
        for index, img in enumerate(images)
    ]


def _lock_variants(db: Session, product_id: int) -> None:
    # 재고를 덮어쓰기 전에 행을 잠그고 커밋된 최신 값으로 갱신
    (
        db.query(models.ProductVariant)
        .filter(models.ProductVariant.product_id == product_id)
        .order_by(models.ProductVariant.id)
        .with_for_update()
        .populate_existing()
        .all()
    )


def create_product(db: Session, dto: schemas.ProductCreate) -> models.Product:
    if _slug_taken(db, models.Product, dto.slug):
        raise Conflict("Product with this slug already exists")
    if not db.get(models.Category, dto.category_id):
        raise NotFound("Category not found")
    _check_skus(db, dto.variants)

    product = models.Product(
        name=dto.name,
        slug=dto.slug,
        description=dto.description,
        category_id=dto.category_id,
        is_active=dto.is_active,
        images=_build_images(dto.images),
        variants=[_build_variant(db, v) for v in dto.variants],
    )
    with UnitOfWork(db, conflict="Product slug or variant SKU already exists"):
        db.add(product)
    logger.info("product %s created with %d variants", product.id, len(product.variants))
    return get_product(db, product.id)


def list_products(db: Session) -> List[models.Product]:
    return _product_query(db).order_by(models.Product.id).all()


def get_product(db: Session, product_id: int) -> models.Product:
    product = _product_query(db).filter(models.Product.id == product_id).first()
    if not product:
        raise NotFound("Product not found")
    return product


def _ordered_variant_ids(db: Session, variant_ids: Iterable[int]) -> set:
    ids = list(variant_ids)
    if not ids:
        return set()
    rows = db.query(models.OrderItem.variant_id).filter(models.OrderItem.variant_id.in_(ids)).distinct().all()
    return {r.variant_id for r in rows}


def update_product(db: Session, product_id: int, dto: schemas.ProductUpdate) -> models.Product:
    """상품 수정.

    variants 가 주어지면 SKU 기준으로 맞춘다:
      - 기존 SKU 는 가격/속성 갱신, stock 이 주어졌을 때만 재고를 그 값으로 설정
      - 새 SKU 는 생성
      - 목록에 없는 기존 SKU 는 삭제 (주문에 쓰인 옵션이면 409)

    옵션 행은 잠근 뒤 다시 읽으므로 stock 을 생략하면 동시에 커밋된 주문 차감이
    그대로 유지된다. stock 을 주면 잠금 시점 이후로는 관리자가 준 값이 이긴다.
    """
    product = get_product(db, product_id)
    if dto.category_id is not None and not db.get(models.Category, dto.category_id):
        raise NotFound("Category not found")
    if dto.variants is not None:
        _check_skus(db, dto.variants, product_id=product.id)

    with UnitOfWork(db, conflict="Variant with this SKU already exists"):
        if dto.variants is not None:
            _lock_variants(db, product.id)
        if dto.name is not None:
            product.name = dto.name
        if dto.description is not None:
            product.description = dto.description
        if dto.is_active is not None:
            product.is_active = dto.is_active
        if dto.category_id is not None:
            product.category_id = dto.category_id
        if dto.images is not None:
            product.images = _build_images(dto.images)

        if dto.variants is not None:
            existing: Dict[str, models.ProductVariant] = {v.sku: v for v in product.variants}
            keep = []
            for v in dto.variants:
                current = existing.pop(v.sku, None) if v.sku else None
                if current is None:
                    keep.append(_build_variant(db, v))
                    continue
                current.price = v.price
                if v.stock is not None:
                    current.stock = v.stock
                if v.images is not None:
                    current.images = _build_images(v.images, models.ImageType.VARIANT)
                _sync_links(db, current, v.attributes)
                keep.append(current)
            in_use = _ordered_variant_ids(db, [v.id for v in existing.values()])
            if in_use:
                raise Conflict("Cannot remove variants that appear on existing orders")
            product.variants = keep

    db.expire(product)
    return get_product(db, product.id)


def delete_product(db: Session, product_id: int) -> None:
    product = get_product(db, product_id)
    if _ordered_variant_ids(db, [v.id for v in product.variants]):
        raise Conflict("Cannot delete product with existing orders")
    with UnitOfWork(db):
        db.delete(product)


def upload_product_image(
    db: Session,
    product_id: int,
    image: UploadFile,
    upload_dir: str,
    public_base_url: str = "",
    alt_text: str | None = None,
    variant_id: int | None = None,
) -> models.ProductImage:
    """이미지 파일을 저장하고 상품 (variant_id 가 있으면 해당 옵션) 에 붙인다."""
    product = get_product(db, product_id)
    variant = None
    if variant_id is not None:
        variant = next((v for v in product.variants if v.id == variant_id), None)
        if variant is None:
            raise NotFound("Variant not found for this product")
    ext = os.path.splitext(image.filename or "")[1].lower()
    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        raise InvalidRequest("Only jpg, jpeg and png images can be uploaded")

    file_name = f"{uuid4().hex}{ext}"
    file_path = os.path.join(upload_dir, file_name)
    with open(file_path, "wb") as buffer:
        shutil.copyfileobj(image.file, buffer)

    url = f"{public_base_url.rstrip('/')}/static/images/{file_name}"
    if variant is not None:
        record = models.ProductImage(
            variant_id=variant.id,
            url=url,
            alt_text=alt_text,
            position=len(variant.images),
            type=models.ImageType.VARIANT.value,
        )
    else:
        record = models.ProductImage(
            product_id=product.id,
            url=url,
            alt_text=alt_text,
            position=len(product.images),
            type=models.ImageType.PRODUCT.value,
        )
    try:
        with UnitOfWork(db):
            db.add(record)
    except Exception:
        os.remove(file_path)
        raise
    return record


# --------------------------- 주문용 재고 계약 ---------------------------
def get_variants_by_ids(db: Session, ids: Iterable[int], lock: bool = False) -> List[models.ProductVariant]:
    """옵션 일괄 조회. lock=True 면 id 오름차순으로 FOR UPDATE (데드락 방지를 위해 순서 고정)."""
    q = (
        db.query(models.ProductVariant)
        .options(selectinload(models.ProductVariant.product))
        .filter(models.ProductVariant.id.in_(set(ids)))
        .order_by(models.ProductVariant.id)
    )
    if lock:
        q = q.with_for_update(of=models.ProductVariant).populate_existing()
    return q.all()


def decrement_stock(uow: UnitOfWork, variant: models.ProductVariant, quantity: int) -> None:
    # 조건부 원자 차감: 동시 주문이 있어도 재고가 음수가 되지 않는다
    updated = (
        uow.session.query(models.ProductVariant)
        .filter(models.ProductVariant.id == variant.id, models.ProductVariant.stock >= quantity)
        .update({models.ProductVariant.stock: models.ProductVariant.stock - quantity}, synchronize_session=False)
    )
    if updated != 1:
        uow.session.expire(variant)
        logger.warning("stock race lost for %s (requested %d)", variant.sku, quantity)
        raise InsufficientStock(variant.sku, variant.stock, quantity)
    uow.session.expire(variant, ["stock"])


def increment_stock(uow: UnitOfWork, variant: models.ProductVariant, quantity: int) -> None:
    uow.session.query(models.ProductVariant).filter(models.ProductVariant.id == variant.id).update(
        {models.ProductVariant.stock: models.ProductVariant.stock + quantity}, synchronize_session=False
    )
    uow.session.expire(variant, ["stock"])
