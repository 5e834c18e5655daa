import logging
from typing import List

from sqlalchemy.orm import Session

import models
import schemas
from database import UnitOfWork
from errors import Conflict, Forbidden, NotFound
from permissions import Policy, Principal, ensure_allowed, is_allowed
from security import hash_password

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS_RACE = "Default address was changed concurrently, please retry"


# --------------------------- 사용자 ---------------------------
def _email_taken(db: Session, email: str) -> bool:
    return db.query(models.User.id).filter(models.User.email == email).first() is not None


def signup(db: Session, dto: schemas.SignUp) -> models.User:
    if _email_taken(db, dto.email):
        raise Conflict("An account with this email already exists")
    user = models.User(email=dto.email, password=hash_password(dto.password), role=models.Role.CUSTOMER.value)
    with UnitOfWork(db, conflict="An account with this email already exists"):
        db.add(user)
    logger.info("user %s signed up", user.id)
    return user


def create_user(db: Session, dto: schemas.UserCreate, principal: Principal) -> models.User:
    if _email_taken(db, dto.email):
        raise Conflict("User with this email already exists")
    if dto.role != models.Role.CUSTOMER and not is_allowed(Policy.ADMIN_ONLY, principal):
        raise Forbidden("Only administrators can create admin users")
    user = models.User(email=dto.email, password=hash_password(dto.password), role=dto.role.value)
    with UnitOfWork(db, conflict="User with this email already exists"):
        db.add(user)
    return user


def list_users(db: Session, principal: Principal) -> List[models.User]:
    ensure_allowed(Policy.ADMIN_ONLY, principal, message="Only administrators can view all users")
    return db.query(models.User).order_by(models.User.created_at.desc(), models.User.id.desc()).all()


def get_user(db: Session, user_id: int, principal: Principal) -> models.User:
    ensure_allowed(Policy.OWNER_OR_ADMIN, principal, user_id, "You can only view your own profile")
    user = db.get(models.User, user_id)
    if not user:
        raise NotFound("User not found")
    return user


def update_user(db: Session, user_id: int, dto: schemas.UserUpdate, principal: Principal) -> models.User:
    ensure_allowed(Policy.OWNER_OR_ADMIN, principal, user_id, "You can only update your own profile")
    if dto.role is not None:
        ensure_allowed(Policy.ADMIN_ONLY, principal, message="Only administrators can change user roles")

    user = db.get(models.User, user_id)
    if not user:
        raise NotFound("User not found")
    if dto.email and dto.email != user.email and _email_taken(db, dto.email):
        raise Conflict("Email already in use")

    with UnitOfWork(db, conflict="Email already in use"):
        if dto.email:
            user.email = dto.email
        if dto.password:
            user.password = hash_password(dto.password)
        if dto.role is not None:
            user.role = dto.role.value
    return user


def delete_user(db: Session, user_id: int, principal: Principal) -> None:
    ensure_allowed(Policy.ADMIN_ONLY, principal, message="Only administrators can delete users")
    user = db.get(models.User, user_id)
    if not user:
        raise NotFound("User not found")
    if user_id == principal.id:
        raise Forbidden("You cannot delete your own account")
    if db.query(models.Order.id).filter(models.Order.user_id == user_id).first():
        raise Conflict("Cannot delete a user with existing orders")
    with UnitOfWork(db):
        db.delete(user)
    logger.info("user %s deleted by %s", user_id, principal.id)


def ensure_admin(db: Session, email: str, password: str) -> models.User:
    """초기 관리자 계정. 이미 있으면 그대로 둔다."""
    email = email.lower()
    user = db.query(models.User).filter(models.User.email == email).first()
    if user:
        return user
    user = models.User(email=email, password=hash_password(password), role=models.Role.ADMIN.value)
    with UnitOfWork(db):
        db.add(user)
    logger.info("bootstrap admin %s created", email)
    return user


# --------------------------- 배송지 ---------------------------
def _unset_defaults(uow: UnitOfWork, user_id: int, exclude_id: int | None = None) -> None:
    q = uow.session.query(models.Address).filter(
        models.Address.user_id == user_id, models.Address.is_default.is_(True)
    )
    if exclude_id is not None:
        q = q.filter(models.Address.id != exclude_id)
    q.update({models.Address.is_default: False}, synchronize_session="fetch")


def _owned_address(db: Session, address_id: int, principal: Principal, action: str) -> models.Address:
    address = db.get(models.Address, address_id)
    if not address:
        raise NotFound("Address not found")
    ensure_allowed(
        Policy.OWNER_ONLY,
        principal,
        address.user_id,
        f"You do not have permission to {action} this address",
    )
    return address


def create_address(db: Session, principal: Principal, dto: schemas.AddressCreate) -> models.Address:
    address = models.Address(user_id=principal.id, **dto.model_dump())
    with UnitOfWork(db, conflict=DEFAULT_ADDRESS_RACE) as uow:
        if dto.is_default:
            _unset_defaults(uow, principal.id)
        db.add(address)
    return address


def list_addresses(db: Session, principal: Principal) -> List[models.Address]:
    return (
        db.query(models.Address)
        .filter(models.Address.user_id == principal.id)
        .order_by(models.Address.is_default.desc(), models.Address.id)
        .all()
    )


def get_address(db: Session, address_id: int, principal: Principal) -> models.Address:
    return _owned_address(db, address_id, principal, "view")


def update_address(db: Session, address_id: int, principal: Principal, dto: schemas.AddressUpdate) -> models.Address:
    address = _owned_address(db, address_id, principal, "update")
    changes = dto.model_dump(exclude_unset=True)
    with UnitOfWork(db, conflict=DEFAULT_ADDRESS_RACE) as uow:
        if changes.get("is_default") and not address.is_default:
            _unset_defaults(uow, principal.id, exclude_id=address.id)
        for key, value in changes.items():
            if value is None and key in ("first_name", "last_name", "phone", "address", "is_default"):
                continue
            setattr(address, key, value)
    return address


def delete_address(db: Session, address_id: int, principal: Principal) -> None:
    address = _owned_address(db, address_id, principal, "delete")
    with UnitOfWork(db):
        db.delete(address)


def set_default_address(db: Session, address_id: int, principal: Principal) -> models.Address:
    address = _owned_address(db, address_id, principal, "modify")
    with UnitOfWork(db, conflict=DEFAULT_ADDRESS_RACE) as uow:
        _unset_defaults(uow, principal.id, exclude_id=address.id)
        address.is_default = True
    return address


def get_default_address(db: Session, user_id: int) -> models.Address | None:
    return (
        db.query(models.Address)
        .filter(models.Address.user_id == user_id, models.Address.is_default.is_(True))
        .first()
    )
