"""주문 워크플로우.

주문 생성 (재고 검증 → 원자적 차감 → 주문/주문상품 생성), 역할별 조회,
상태 전이와 취소 시 재고 복원을 담당한다. 모든 다중 행 변경은 하나의
UnitOfWork 안에서 일어나며 실패하면 통째로 롤백된다.
"""
import logging
from collections import OrderedDict
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session, joinedload, selectinload

import accounts
import catalog
import models
import receipts
import schemas
from config import Settings
from database import UnitOfWork, run_in_unit_of_work
from errors import InsufficientStock, InvalidTransition, NotFound
from models import OrderStatus, PaymentMethod
from permissions import Policy, Principal, ensure_allowed

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def validate_transition(current: OrderStatus, target: OrderStatus) -> None:
    """배송완료 → 취소만 허용, 취소된 주문은 변경 불가. 나머지는 자유롭게 전이."""
    if current is OrderStatus.CANCELLED:
        raise InvalidTransition(current.value, target.value, "Cannot change status of a cancelled order")
    if current is OrderStatus.DELIVERED and target is not OrderStatus.CANCELLED:
        raise InvalidTransition(current.value, target.value, "Cannot change status of a delivered order")


def line_total(price: Decimal, quantity: int) -> Decimal:
    return (Decimal(price) * quantity).quantize(CENTS, rounding=ROUND_HALF_UP)


class OrderService:
    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    def _query(self):
        return self.db.query(models.Order).options(
            joinedload(models.Order.user),
            selectinload(models.Order.items)
            .joinedload(models.OrderItem.variant)
            .joinedload(models.ProductVariant.product),
        )

    def _load(self, order_id: int) -> Optional[models.Order]:
        return self._query().filter(models.Order.id == order_id).populate_existing().first()

    # --------------------------- 생성 ---------------------------
    def create(
        self,
        principal: Principal,
        items: Sequence[schemas.OrderItemIn],
        payment_method: Optional[PaymentMethod] = None,
    ) -> models.Order:
        # 같은 옵션이 여러 줄로 들어오면 합산해서 재고와 비교
        requested: "OrderedDict[int, int]" = OrderedDict()
        for item in items:
            requested[item.variant_id] = requested.get(item.variant_id, 0) + item.quantity
        method = payment_method or PaymentMethod(self.settings.default_payment_method)

        def work(uow: UnitOfWork) -> models.Order:
            variants = catalog.get_variants_by_ids(uow.session, requested.keys(), lock=True)
            by_id = {v.id: v for v in variants}
            if set(requested) - set(by_id):
                raise NotFound("One or more product variants not found")

            # 모두 검증한 뒤에만 차감
            for variant_id, quantity in requested.items():
                variant = by_id[variant_id]
                if variant.stock < quantity:
                    logger.warning(
                        "insufficient stock for %s: available=%d requested=%d", variant.sku, variant.stock, quantity
                    )
                    raise InsufficientStock(variant.sku, variant.stock, quantity)

            total = Decimal("0.00")
            order_items = []
            for item in items:
                variant = by_id[item.variant_id]
                price = Decimal(variant.price)
                total += line_total(price, item.quantity)
                order_items.append(models.OrderItem(variant_id=variant.id, quantity=item.quantity, price=price))

            for variant_id, quantity in requested.items():
                catalog.decrement_stock(uow, by_id[variant_id], quantity)

            order = models.Order(
                user_id=principal.id,
                status=OrderStatus.PENDING.value,
                payment_method=method.value,
                total=total.quantize(CENTS),
                items=order_items,
            )
            uow.session.add(order)
            uow.session.flush()
            return order

        order = run_in_unit_of_work(
            self.db, work, max_attempts=self.settings.tx_max_attempts, backoff=self.settings.tx_retry_backoff
        )
        logger.info("order %s created by user %s total=%s", order.id, principal.id, order.total)
        return self._load(order.id)

    # --------------------------- 조회 ---------------------------
    def find_all(self, principal: Principal) -> List[models.Order]:
        """관리자는 전체, 그 외에는 본인 주문만. 최신순."""
        q = self._query()
        if not principal.is_admin:
            q = q.filter(models.Order.user_id == principal.id)
        return q.order_by(models.Order.created_at.desc(), models.Order.id.desc()).all()

    def find_one(self, order_id: int, principal: Principal) -> models.Order:
        order = self._load(order_id)
        if not order:
            raise NotFound("Order not found")
        ensure_allowed(
            Policy.OWNER_OR_ADMIN, principal, order.user_id, "You do not have permission to view this order"
        )
        return order

    # --------------------------- 상태 변경 ---------------------------
    def update_status(self, order_id: int, new_status: OrderStatus, principal: Principal) -> models.Order:
        ensure_allowed(Policy.ADMIN_ONLY, principal, message="Only administrators can update order status")
        new_status = OrderStatus(new_status)

        def work(uow: UnitOfWork) -> OrderStatus:
            order = (
                uow.session.query(models.Order)
                .options(selectinload(models.Order.items).joinedload(models.OrderItem.variant))
                .filter(models.Order.id == order_id)
                .with_for_update(of=models.Order)
                .populate_existing()
                .first()
            )
            if not order:
                raise NotFound("Order not found")
            current = OrderStatus(order.status)
            validate_transition(current, new_status)

            # compare-and-set: 동시에 바뀐 경우 재고 복원이 두 번 일어나지 않도록
            updated = (
                uow.session.query(models.Order)
                .filter(models.Order.id == order_id, models.Order.status == current.value)
                .update({models.Order.status: new_status.value}, synchronize_session=False)
            )
            if updated != 1:
                raise InvalidTransition(current.value, new_status.value, "Order status was changed concurrently")

            if new_status is OrderStatus.CANCELLED:
                for item in order.items:
                    catalog.increment_stock(uow, item.variant, item.quantity)
                logger.info("stock restored for cancelled order %s (%d items)", order_id, len(order.items))
            return current

        previous = run_in_unit_of_work(
            self.db, work, max_attempts=self.settings.tx_max_attempts, backoff=self.settings.tx_retry_backoff
        )
        logger.info("order %s status %s -> %s by %s", order_id, previous.value, new_status.value, principal.id)
        return self._load(order_id)

    # --------------------------- 영수증 ---------------------------
    def receipt(self, order_id: int, principal: Principal) -> bytes:
        order = self.find_one(order_id, principal)
        address = accounts.get_default_address(self.db, order.user_id)
        return receipts.render_receipt(order, address, store_name=self.settings.store_name)
