import logging
import time
from typing import Callable, Iterator, TypeVar

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from errors import Conflict

logger = logging.getLogger(__name__)

Base = declarative_base()

T = TypeVar("T")

# PostgreSQL 직렬화 실패 / 데드락
RETRYABLE_SQLSTATES = {"40001", "40P01"}
RETRYABLE_MESSAGES = ("deadlock detected", "could not serialize access", "database is locked")


class Database:
    """엔진과 세션 팩토리를 소유하는 영속성 핸들.

    앱 시작 시 open(), 종료 시 close() 로 수명을 명시적으로 관리한다.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self.engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    def open(self) -> None:
        if self.engine is not None:
            return
        connect_args = {}
        if self.url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine = create_engine(self.url, echo=self.echo, connect_args=connect_args)
        if self.url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

        import models  # noqa: F401  테이블 등록

        Base.metadata.create_all(bind=self.engine)
        logger.info("database opened: %s", self.engine.url.render_as_string(hide_password=True))

    def close(self) -> None:
        if self.engine is None:
            return
        self.engine.dispose()
        logger.info("database closed")
        self.engine = None
        self._session_factory = None

    def session(self) -> Session:
        if self._session_factory is None:
            raise RuntimeError("Database is not open")
        return self._session_factory()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


class UnitOfWork:
    """하나의 트랜잭션 경계. 정상 종료 시 commit, 예외 시 rollback 후 재발생.

    conflict 가 주어지면 무결성 위반 (사전 검사 이후 경합으로 생긴 중복 등) 을
    그 메시지의 Conflict 로 바꿔 올린다.
    """

    def __init__(self, session: Session, conflict: str | None = None):
        self.session = session
        self.conflict = conflict

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            try:
                self.session.commit()
            except Exception as e:
                self.session.rollback()
                self._raise_conflict(e)
                raise
        else:
            self.session.rollback()
            self._raise_conflict(exc)
        return False

    def _raise_conflict(self, exc: BaseException) -> None:
        if self.conflict and isinstance(exc, IntegrityError):
            logger.info("integrity violation mapped to conflict: %s", exc.orig)
            raise Conflict(self.conflict) from exc


def _sqlstate(exc: BaseException) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


def is_retryable(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    if _sqlstate(exc) in RETRYABLE_SQLSTATES:
        return True
    msg = str(exc).lower()
    return any(k in msg for k in RETRYABLE_MESSAGES)


def run_in_unit_of_work(
    session: Session,
    fn: Callable[[UnitOfWork], T],
    max_attempts: int = 3,
    backoff: float = 0.05,
) -> T:
    """fn(uow) 를 트랜잭션 안에서 실행. 일시적 DB 오류만 제한 횟수 재시도한다."""
    attempt = 0
    while True:
        attempt += 1
        try:
            with UnitOfWork(session) as uow:
                return fn(uow)
        except DBAPIError as e:
            if attempt >= max_attempts or not is_retryable(e):
                raise
            logger.warning("transient database failure (attempt %d/%d): %s", attempt, max_attempts, e)
            time.sleep(backoff * attempt)
